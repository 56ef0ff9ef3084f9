import uuid
from datetime import datetime

from sqlalchemy import JSON, DateTime, ForeignKey, Index, String, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from marketplace.database import Base


class SponsorActionAudit(Base):
    """Append-only record of one sponsor workflow transition."""

    __tablename__ = "sponsor_actions_audit"
    __table_args__ = (
        Index("ix_sponsor_audit_sponsor_created", "sponsor_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4,
    )
    sponsor_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    family_member_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    sponsor_request_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("sponsor_requests.id"), nullable=True
    )
    family_link_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("family_links.id"), nullable=True
    )
    action_type: Mapped[str] = mapped_column(
        String(30), nullable=False
    )  # 'request_created', 'request_approved', 'request_denied', 'link_revoked'
    details: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<SponsorActionAudit(id={self.id}, action_type={self.action_type!r})>"
