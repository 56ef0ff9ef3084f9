"""Sponsor Service.

Family-verification workflow: a family member asks a DoD-verified sponsor
to vouch for them, the sponsor approves or denies, and may later revoke the
resulting link, which puts the sponsor on cooldown.

Request state machine::

    [none]  --request_approval-->  pending
    pending --approve_request-->   approved   (terminal)
    pending --deny_request----->   denied     (terminal)

Link state machine::

    [none]  --approve_request-->   active
    active  --revoke_link------>   revoked    (terminal, starts cooldown)

Each operation runs in the caller's session; the request-scoped ``get_db``
dependency commits it once the handler returns.  Partial unique indexes on
``family_links`` and ``sponsor_requests`` back the "one active link per
sponsor" and "one pending request per family member" rules, so concurrent
callers that both pass the checks below end in a 409 instead of duplicates.

``expires_at`` on a request is informational: an expired pending request
can still be approved or denied.
"""

import logging
import uuid
from datetime import datetime, timedelta

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.config import settings
from marketplace.core.clock import ensure_utc, utcnow
from marketplace.core.exceptions import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
    store_errors,
)
from marketplace.models.sponsor import FamilyLink, SponsorCooldown, SponsorRequest
from marketplace.models.user import User
from marketplace.schemas.sponsor import (
    ActiveFamily,
    CooldownInfo,
    DashboardRequest,
    SponsorDashboard,
)
from marketplace.services import audit_service

logger = logging.getLogger(__name__)

NO_REASON = "No reason provided"


def _clean(value: str | None) -> str | None:
    """Strip a free-text field; blank becomes None."""
    if value is None:
        return None
    return value.strip() or None


def _ensure_sponsor_or_admin(actor: User, sponsor_id: uuid.UUID) -> None:
    if not actor.is_admin and actor.id != sponsor_id:
        raise ForbiddenError("Only the sponsor or an admin can manage this request")


async def _sponsor_has_active_link(db: AsyncSession, sponsor_id: uuid.UUID) -> bool:
    result = await db.execute(
        select(FamilyLink.id).where(
            FamilyLink.sponsor_id == sponsor_id,
            FamilyLink.status == "active",
        ).limit(1)
    )
    return result.first() is not None


async def _member_has_active_link(db: AsyncSession, family_member_id: uuid.UUID) -> bool:
    result = await db.execute(
        select(FamilyLink.id).where(
            FamilyLink.family_member_id == family_member_id,
            FamilyLink.status == "active",
        ).limit(1)
    )
    return result.first() is not None



async def _active_cooldown_until(
    db: AsyncSession, sponsor_id: uuid.UUID, now: datetime,
) -> datetime | None:
    result = await db.execute(
        select(SponsorCooldown.cooldown_until).where(
            SponsorCooldown.sponsor_id == sponsor_id,
            SponsorCooldown.cooldown_until > now,
        )
    )
    return ensure_utc(result.scalar_one_or_none())


async def _upsert_cooldown(
    db: AsyncSession, sponsor_id: uuid.UUID, until: datetime, reason: str,
) -> None:
    """Insert or overwrite the single cooldown row for ``sponsor_id``."""
    insert = pg_insert if db.get_bind().dialect.name == "postgresql" else sqlite_insert
    stmt = insert(SponsorCooldown).values(
        id=uuid.uuid4(),
        sponsor_id=sponsor_id,
        cooldown_until=until,
        reason=reason,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[SponsorCooldown.sponsor_id],
        set_={"cooldown_until": until, "reason": reason},
    )
    await db.execute(stmt)



async def _get_pending_request(
    db: AsyncSession, request_id: uuid.UUID | None,
) -> SponsorRequest:
    if request_id is None:
        raise ValidationError("Request ID required")

    result = await db.execute(
        select(SponsorRequest).where(
            SponsorRequest.id == request_id,
            SponsorRequest.status == "pending",
        )
    )
    request = result.scalar_one_or_none()
    if request is None:
        raise NotFoundError("Request not found or already processed")
    return request


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------

async def request_approval(
    db: AsyncSession,
    actor: User,
    email: str | None,
    sponsor_username: str | None,
) -> SponsorRequest:
    """Create a pending approval request from a family member to a sponsor.

    Checks run in a fixed order and the first failure wins:

    1. family member exists (404)
    2. sponsor exists (404)
    3. sponsor is DoD verified (403)
    4. family member has no active link (409)
    5. family member has no pending request (409)
    6. sponsor is not on cooldown (429, carries ``cooldownUntil``)
    """
    email = (email or "").strip().lower()
    username = (sponsor_username or "").strip().lower()
    if not email or not username:
        raise ValidationError("Email and sponsor username required")

    if not actor.is_admin and actor.email.lower() != email:
        raise ForbiddenError("You can only request sponsor approval for your own account")

    with store_errors("Failed to create approval request"):
        result = await db.execute(select(User).where(func.lower(User.email) == email))
        family_member = result.scalar_one_or_none()
        if family_member is None:
            raise NotFoundError("User not found")

        result = await db.execute(
            select(User).where(func.lower(User.username) == username)
        )
        sponsor = result.scalar_one_or_none()
        if sponsor is None:
            raise NotFoundError("Sponsor not found")

        if sponsor.dow_verified_at is None:
            raise ForbiddenError("Sponsor must be DoD verified first")

        if await _member_has_active_link(db, family_member.id):
            raise ConflictError("You already have an active family member link")

        pending = await db.execute(
            select(SponsorRequest.id).where(
                SponsorRequest.family_member_id == family_member.id,
                SponsorRequest.status == "pending",
            ).limit(1)
        )
        if pending.first() is not None:
            raise ConflictError("You already have a pending approval request")

        now = utcnow()
        cooldown_until = await _active_cooldown_until(db, sponsor.id, now)
        if cooldown_until is not None:
            raise RateLimitedError(
                "Sponsor is in cooldown period", cooldownUntil=cooldown_until,
            )

        request = SponsorRequest(
            id=uuid.uuid4(),
            family_member_id=family_member.id,
            sponsor_id=sponsor.id,
            sponsor_username=username,
            status="pending",
            created_at=now,
            expires_at=now + timedelta(days=settings.SPONSOR_REQUEST_TTL_DAYS),
        )
        db.add(request)
        try:
            await db.flush()
        except IntegrityError:
            await db.rollback()
            raise ConflictError("You already have a pending approval request")

        audit_service.record_action(
            db,
            action_type=audit_service.REQUEST_CREATED,
            sponsor_id=sponsor.id,
            family_member_id=family_member.id,
            sponsor_request_id=request.id,
            details={"familyMemberEmail": email, "sponsorUsername": username},
            at=now,
        )
        await db.flush()

    logger.info("Sponsor request %s created for sponsor %s", request.id, sponsor.id)
    return request


async def get_sponsor_dashboard(
    db: AsyncSession,
    actor: User,
    sponsor_id: uuid.UUID | None,
) -> SponsorDashboard:
    """Everything the sponsor panel shows: requests, active link, cooldown.

    Each section is loaded in its own savepoint.  A store failure in one
    section rolls back only that savepoint, is logged, the section comes
    back empty, and its name is listed in ``warnings``; the call itself
    does not fail and the surrounding transaction stays usable.
    """
    if sponsor_id is None:
        raise ValidationError("Sponsor ID required")
    _ensure_sponsor_or_admin(actor, sponsor_id)

    dashboard = SponsorDashboard()

    try:
        async with db.begin_nested():
            result = await db.execute(
                select(
                    SponsorRequest.id,
                    SponsorRequest.family_member_id,
                    SponsorRequest.status,
                    SponsorRequest.created_at,
                    SponsorRequest.expires_at,
                    SponsorRequest.approved_at,
                    SponsorRequest.denied_at,
                    SponsorRequest.denial_reason,
                    User.username,
                    User.email,
                    User.avatar_url,
                )
                .join(User, SponsorRequest.family_member_id == User.id)
                .where(SponsorRequest.sponsor_id == sponsor_id)
                .order_by(SponsorRequest.created_at.desc())
            )
            rows = result.all()
        dashboard.requests = [
            DashboardRequest.model_validate(dict(row._mapping)) for row in rows
        ]
    except SQLAlchemyError:
        logger.exception("Error fetching sponsor requests for %s", sponsor_id)
        dashboard.warnings.append("requests")

    try:
        async with db.begin_nested():
            result = await db.execute(
                select(
                    FamilyLink.id,
                    FamilyLink.family_member_id,
                    FamilyLink.created_at.label("linked_at"),
                    User.username,
                    User.email,
                    User.avatar_url,
                )
                .join(User, FamilyLink.family_member_id == User.id)
                .where(FamilyLink.sponsor_id == sponsor_id, FamilyLink.status == "active")
                .limit(1)
            )
            row = result.first()
        if row is not None:
            dashboard.active_family = ActiveFamily.model_validate(dict(row._mapping))
    except SQLAlchemyError:
        logger.exception("Error fetching family link for %s", sponsor_id)
        dashboard.warnings.append("activeFamily")

    try:
        async with db.begin_nested():
            result = await db.execute(
                select(
                    SponsorCooldown.cooldown_until.label("until"),
                    SponsorCooldown.reason,
                )
                .where(
                    SponsorCooldown.sponsor_id == sponsor_id,
                    SponsorCooldown.cooldown_until > utcnow(),
                )
                .limit(1)
            )
            row = result.first()
        if row is not None:
            dashboard.cooldown = CooldownInfo.model_validate(dict(row._mapping))
    except SQLAlchemyError:
        logger.exception("Error fetching sponsor cooldown for %s", sponsor_id)
        dashboard.warnings.append("cooldown")

    return dashboard



async def approve_request(
    db: AsyncSession,
    actor: User,
    request_id: uuid.UUID | None,
) -> FamilyLink:
    """Approve a pending request, link the pair, and family-verify the member."""
    with store_errors("Failed to approve request"):
        request = await _get_pending_request(db, request_id)
        _ensure_sponsor_or_admin(actor, request.sponsor_id)

        if await _sponsor_has_active_link(db, request.sponsor_id):
            raise ConflictError("Sponsor already has an active family member")

        now = utcnow()
        link = FamilyLink(
            id=uuid.uuid4(),
            sponsor_id=request.sponsor_id,
            family_member_id=request.family_member_id,
            status="active",
            created_at=now,
        )
        db.add(link)
        try:
            await db.flush()
        except IntegrityError:
            await db.rollback()
            raise ConflictError("Sponsor already has an active family member")

        request.status = "approved"
        request.approved_at = now

        family_member = await db.get(User, request.family_member_id)
        if family_member is not None:
            family_member.family_verified_at = now

        audit_service.record_action(
            db,
            action_type=audit_service.REQUEST_APPROVED,
            sponsor_id=request.sponsor_id,
            family_member_id=request.family_member_id,
            sponsor_request_id=request.id,
            family_link_id=link.id,
            at=now,
        )
        await db.flush()

    logger.info("Sponsor request %s approved, link %s created", request.id, link.id)
    return link


async def deny_request(
    db: AsyncSession,
    actor: User,
    request_id: uuid.UUID | None,
    reason: str | None = None,
) -> SponsorRequest:
    """Deny a pending request. The family member's verification is untouched."""
    reason = _clean(reason)

    with store_errors("Failed to deny request"):
        request = await _get_pending_request(db, request_id)
        _ensure_sponsor_or_admin(actor, request.sponsor_id)

        now = utcnow()
        request.status = "denied"
        request.denied_at = now
        request.denial_reason = reason

        audit_service.record_action(
            db,
            action_type=audit_service.REQUEST_DENIED,
            sponsor_id=request.sponsor_id,
            family_member_id=request.family_member_id,
            sponsor_request_id=request.id,
            details={"reason": reason or NO_REASON},
            at=now,
        )
        await db.flush()

    logger.info("Sponsor request %s denied", request.id)
    return request


async def revoke_link(
    db: AsyncSession,
    actor: User,
    link_id: uuid.UUID | None,
    reason: str | None = None,
) -> datetime:
    """Revoke an active link and put the sponsor on cooldown.

    Returns the new ``cooldown_until``.  Any earlier cooldown row for the
    sponsor is overwritten.
    """
    if link_id is None:
        raise ValidationError("Link ID required")
    reason = _clean(reason)

    with store_errors("Failed to revoke link"):
        result = await db.execute(
            select(FamilyLink).where(
                FamilyLink.id == link_id,
                FamilyLink.status == "active",
            )
        )
        link = result.scalar_one_or_none()
        if link is None:
            raise NotFoundError("Link not found or not active")
        _ensure_sponsor_or_admin(actor, link.sponsor_id)

        now = utcnow()
        link.status = "revoked"
        link.revoked_at = now
        link.revocation_reason = reason

        family_member = await db.get(User, link.family_member_id)
        if family_member is not None:
            family_member.family_verified_at = None

        cooldown_until = now + timedelta(days=settings.SPONSOR_COOLDOWN_DAYS)
        await _upsert_cooldown(db, link.sponsor_id, cooldown_until, reason or "Link revoked")

        audit_service.record_action(
            db,
            action_type=audit_service.LINK_REVOKED,
            sponsor_id=link.sponsor_id,
            family_member_id=link.family_member_id,
            family_link_id=link.id,
            details={
                "reason": reason or NO_REASON,
                "cooldownUntil": cooldown_until.isoformat(),
            },
            at=now,
        )
        await db.flush()

    logger.info(
        "Family link %s revoked, cooldown applied until %s",
        link.id, cooldown_until.isoformat(),
    )
    return cooldown_until


async def purge_expired_cooldowns(db: AsyncSession, retention: timedelta) -> int:
    """Delete cooldown rows that ended more than ``retention`` ago.

    Expired rows never block anything; this only keeps the table small.
    """
    cutoff = utcnow() - retention
    result = await db.execute(
        delete(SponsorCooldown).where(SponsorCooldown.cooldown_until < cutoff)
    )
    return result.rowcount or 0
