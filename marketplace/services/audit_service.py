"""Sponsor audit log.

One append-only row per workflow transition, written in the same
transaction as the transition itself.
"""

import uuid
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.clock import utcnow
from marketplace.models.audit import SponsorActionAudit

REQUEST_CREATED = "request_created"
REQUEST_APPROVED = "request_approved"
REQUEST_DENIED = "request_denied"
LINK_REVOKED = "link_revoked"

ACTION_TYPES = (REQUEST_CREATED, REQUEST_APPROVED, REQUEST_DENIED, LINK_REVOKED)

DEFAULT_AUDIT_LIMIT = 200
MAX_AUDIT_LIMIT = 500


def record_action(
    db: AsyncSession,
    *,
    action_type: str,
    sponsor_id: uuid.UUID,
    family_member_id: uuid.UUID,
    sponsor_request_id: uuid.UUID | None = None,
    family_link_id: uuid.UUID | None = None,
    details: dict | None = None,
    at: datetime | None = None,
) -> SponsorActionAudit:
    """Queue an audit row on the session; it is flushed with the transition."""
    if action_type not in ACTION_TYPES:
        raise ValueError(f"Unknown sponsor action type: {action_type!r}")

    entry = SponsorActionAudit(
        action_type=action_type,
        sponsor_id=sponsor_id,
        family_member_id=family_member_id,
        sponsor_request_id=sponsor_request_id,
        family_link_id=family_link_id,
        details=details,
        created_at=at or utcnow(),
    )
    db.add(entry)
    return entry


async def list_actions(
    db: AsyncSession,
    *,
    sponsor_id: uuid.UUID | None = None,
    family_member_id: uuid.UUID | None = None,
    limit: int = DEFAULT_AUDIT_LIMIT,
) -> list[SponsorActionAudit]:
    """Return audit rows newest first, optionally filtered by participant."""
    query = select(SponsorActionAudit)
    if sponsor_id is not None:
        query = query.where(SponsorActionAudit.sponsor_id == sponsor_id)
    if family_member_id is not None:
        query = query.where(SponsorActionAudit.family_member_id == family_member_id)

    query = query.order_by(SponsorActionAudit.created_at.desc()).limit(
        min(max(limit, 1), MAX_AUDIT_LIMIT)
    )
    result = await db.execute(query)
    return list(result.scalars().all())
