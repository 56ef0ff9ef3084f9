"""Sponsor router.

Family-verification endpoints used by the marketplace client and the
admin console's sponsor panel.
"""

import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.config import settings
from marketplace.core.dependencies import get_current_user, require_admin
from marketplace.core.rate_limit import limiter
from marketplace.database import get_db
from marketplace.models.user import User
from marketplace.schemas.common import MessageResponse
from marketplace.schemas.sponsor import (
    ApproveRequestBody,
    ApproveResponse,
    AuditEntry,
    AuditList,
    DenyRequestBody,
    RevokeLinkBody,
    RevokeResponse,
    SponsorDashboard,
    SponsorRequestCreate,
    SponsorRequestCreated,
)
from marketplace.services import audit_service, sponsor_service

router = APIRouter(prefix="/sponsor", tags=["Sponsor"])


@router.post(
    "/request",
    response_model=SponsorRequestCreated,
    status_code=status.HTTP_201_CREATED,
)
@limiter.limit(settings.SPONSOR_REQUEST_RATE_LIMIT)
async def request_approval(
    request: Request,
    body: SponsorRequestCreate,
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: User = Depends(get_current_user),
):
    """Ask a verified sponsor to vouch for the calling family member."""
    sponsor_request = await sponsor_service.request_approval(
        db, current_user, body.email, body.sponsor_username,
    )
    return SponsorRequestCreated(
        request_id=sponsor_request.id,
        expires_at=sponsor_request.expires_at,
    )


@router.get("/requests", response_model=SponsorDashboard)
async def get_requests(
    db: Annotated[AsyncSession, Depends(get_db)],
    sponsor_id: Annotated[uuid.UUID | None, Query(alias="sponsorId")] = None,
    current_user: User = Depends(get_current_user),
):
    """Sponsor dashboard: all requests, the active family member, and cooldown."""
    return await sponsor_service.get_sponsor_dashboard(db, current_user, sponsor_id)


@router.post("/approve", response_model=ApproveResponse)
async def approve_request(
    body: ApproveRequestBody,
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: User = Depends(get_current_user),
):
    link = await sponsor_service.approve_request(db, current_user, body.request_id)
    return ApproveResponse(link_id=link.id, family_member_id=link.family_member_id)


@router.post("/deny", response_model=MessageResponse)
async def deny_request(
    body: DenyRequestBody,
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: User = Depends(get_current_user),
):
    await sponsor_service.deny_request(db, current_user, body.request_id, body.reason)
    return MessageResponse(message="Request denied")


@router.post("/revoke", response_model=RevokeResponse)
async def revoke_link(
    body: RevokeLinkBody,
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: User = Depends(get_current_user),
):
    """Revoke the active link; the sponsor goes on cooldown."""
    cooldown_until = await sponsor_service.revoke_link(
        db, current_user, body.link_id, body.reason,
    )
    return RevokeResponse(cooldown_until=cooldown_until)


@router.get("/audit", response_model=AuditList)
async def list_audit(
    db: Annotated[AsyncSession, Depends(get_db)],
    sponsor_id: Annotated[uuid.UUID | None, Query(alias="sponsorId")] = None,
    family_member_id: Annotated[uuid.UUID | None, Query(alias="familyMemberId")] = None,
    limit: Annotated[
        int, Query(ge=1, le=audit_service.MAX_AUDIT_LIMIT)
    ] = audit_service.DEFAULT_AUDIT_LIMIT,
    current_user: User = Depends(require_admin),
):
    """Sponsor workflow audit trail, newest first. Requires admin role."""
    entries = await audit_service.list_actions(
        db,
        sponsor_id=sponsor_id,
        family_member_id=family_member_id,
        limit=limit,
    )
    return AuditList(audit=[AuditEntry.model_validate(entry) for entry in entries])
