import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, String, Text, Uuid, func, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from marketplace.database import Base


class SponsorRequest(Base):
    __tablename__ = "sponsor_requests"
    __table_args__ = (
        Index("ix_sponsor_requests_sponsor_created", "sponsor_id", "created_at"),
        # At most one pending request per family member
        Index(
            "uq_sponsor_requests_pending_member",
            "family_member_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4,
    )
    family_member_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    sponsor_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    sponsor_username: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending"
    )  # 'pending', 'approved', 'denied'
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    approved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    denied_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    denial_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    # Relationships
    family_member: Mapped["User"] = relationship(  # noqa: F821
        foreign_keys=[family_member_id]
    )
    sponsor: Mapped["User"] = relationship(foreign_keys=[sponsor_id])  # noqa: F821

    def __repr__(self) -> str:
        return f"<SponsorRequest(id={self.id}, status={self.status!r})>"


class FamilyLink(Base):
    __tablename__ = "family_links"
    __table_args__ = (
        Index("ix_family_links_member_status", "family_member_id", "status"),
        # One family member per sponsor
        Index(
            "uq_family_links_active_sponsor",
            "sponsor_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
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
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="active"
    )  # 'active', 'revoked'
    revoked_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    revocation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    # Relationships
    family_member: Mapped["User"] = relationship(  # noqa: F821
        foreign_keys=[family_member_id]
    )
    sponsor: Mapped["User"] = relationship(foreign_keys=[sponsor_id])  # noqa: F821

    def __repr__(self) -> str:
        return f"<FamilyLink(id={self.id}, status={self.status!r})>"


class SponsorCooldown(Base):
    __tablename__ = "sponsor_cooldowns"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4,
    )
    sponsor_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), unique=True, nullable=False
    )
    cooldown_until: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<SponsorCooldown(sponsor_id={self.sponsor_id}, until={self.cooldown_until})>"
