import uuid

from marketplace.schemas.common import CamelModel, UTCDateTime


class UserResponse(CamelModel):
    id: uuid.UUID
    username: str
    email: str
    avatar_url: str | None = None
    role: str
    dow_verified_at: UTCDateTime | None = None
    family_verified_at: UTCDateTime | None = None
    created_at: UTCDateTime | None = None
