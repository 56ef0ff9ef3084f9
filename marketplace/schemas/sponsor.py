import uuid

from marketplace.schemas.common import CamelModel, UTCDateTime


# -- Request bodies -----------------------------------------------------------
# Ids and names are optional at the schema level so that a missing field
# yields the workflow's own 400 message instead of a generic validation error.

class SponsorRequestCreate(CamelModel):
    email: str | None = None
    sponsor_username: str | None = None


class ApproveRequestBody(CamelModel):
    request_id: uuid.UUID | None = None


class DenyRequestBody(CamelModel):
    request_id: uuid.UUID | None = None
    reason: str | None = None


class RevokeLinkBody(CamelModel):
    link_id: uuid.UUID | None = None
    reason: str | None = None


# -- Responses ----------------------------------------------------------------

class SponsorRequestCreated(CamelModel):
    request_id: uuid.UUID
    message: str = "Approval request sent to sponsor"
    expires_at: UTCDateTime


class ApproveResponse(CamelModel):
    message: str = "Family member approved"
    link_id: uuid.UUID
    family_member_id: uuid.UUID


class RevokeResponse(CamelModel):
    message: str = "Link revoked and cooldown applied"
    cooldown_until: UTCDateTime


class DashboardRequest(CamelModel):
    id: uuid.UUID
    family_member_id: uuid.UUID
    username: str
    email: str
    avatar_url: str | None = None
    status: str
    created_at: UTCDateTime | None = None
    expires_at: UTCDateTime
    approved_at: UTCDateTime | None = None
    denied_at: UTCDateTime | None = None
    denial_reason: str | None = None


class ActiveFamily(CamelModel):
    id: uuid.UUID
    family_member_id: uuid.UUID
    username: str
    email: str
    avatar_url: str | None = None
    linked_at: UTCDateTime | None = None


class CooldownInfo(CamelModel):
    until: UTCDateTime
    reason: str | None = None


class SponsorDashboard(CamelModel):
    requests: list[DashboardRequest] = []
    active_family: ActiveFamily | None = None
    cooldown: CooldownInfo | None = None
    # Sections that could not be loaded and were returned empty
    warnings: list[str] = []


class AuditEntry(CamelModel):
    id: uuid.UUID
    sponsor_id: uuid.UUID
    family_member_id: uuid.UUID
    sponsor_request_id: uuid.UUID | None = None
    family_link_id: uuid.UUID | None = None
    action_type: str
    details: dict | None = None
    created_at: UTCDateTime | None = None


class AuditList(CamelModel):
    audit: list[AuditEntry]
