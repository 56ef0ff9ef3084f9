"""SQLAlchemy ORM models.

All models are imported here so that Alembic can discover them
via ``Base.metadata`` when generating migrations.
"""

from marketplace.models.audit import SponsorActionAudit  # noqa: F401
from marketplace.models.sponsor import FamilyLink, SponsorCooldown, SponsorRequest  # noqa: F401
from marketplace.models.user import RefreshToken, User  # noqa: F401

__all__ = [
    "FamilyLink",
    "RefreshToken",
    "SponsorActionAudit",
    "SponsorCooldown",
    "SponsorRequest",
    "User",
]
