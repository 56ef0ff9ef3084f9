"""Initial schema: users, tokens, and the sponsor workflow tables.

Revision ID: 001
Revises: None
Create Date: 2026-10-12

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create all tables."""

    # ── users ─────────────────────────────────────────────────────────
    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("username", sa.String(50), nullable=False, unique=True),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("password_hash", sa.String(255), nullable=True),
        sa.Column("avatar_url", sa.Text(), nullable=True),
        sa.Column("role", sa.String(20), nullable=False, server_default="user"),
        sa.Column("dow_verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("family_verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # ── refresh_tokens ────────────────────────────────────────────────
    op.create_table(
        "refresh_tokens",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.Uuid(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("token_hash", sa.String(255), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("revoked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # ── sponsor_requests ──────────────────────────────────────────────
    op.create_table(
        "sponsor_requests",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("family_member_id", sa.Uuid(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("sponsor_id", sa.Uuid(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("sponsor_username", sa.String(50), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("denied_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("denial_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_sponsor_requests_sponsor_created",
        "sponsor_requests",
        ["sponsor_id", "created_at"],
    )

    # ── family_links ──────────────────────────────────────────────────
    op.create_table(
        "family_links",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("sponsor_id", sa.Uuid(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("family_member_id", sa.Uuid(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revocation_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_family_links_member_status",
        "family_links",
        ["family_member_id", "status"],
    )

    # ── sponsor_cooldowns ─────────────────────────────────────────────
    op.create_table(
        "sponsor_cooldowns",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("sponsor_id", sa.Uuid(), sa.ForeignKey("users.id"), nullable=False, unique=True),
        sa.Column("cooldown_until", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
    )

    # ── sponsor_actions_audit ─────────────────────────────────────────
    op.create_table(
        "sponsor_actions_audit",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("sponsor_id", sa.Uuid(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("family_member_id", sa.Uuid(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("sponsor_request_id", sa.Uuid(), sa.ForeignKey("sponsor_requests.id"), nullable=True),
        sa.Column("family_link_id", sa.Uuid(), sa.ForeignKey("family_links.id"), nullable=True),
        sa.Column("action_type", sa.String(30), nullable=False),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_sponsor_audit_sponsor_created",
        "sponsor_actions_audit",
        ["sponsor_id", "created_at"],
    )


def downgrade() -> None:
    """Drop all tables in reverse dependency order."""
    op.drop_index("ix_sponsor_audit_sponsor_created", table_name="sponsor_actions_audit")
    op.drop_table("sponsor_actions_audit")
    op.drop_table("sponsor_cooldowns")
    op.drop_index("ix_family_links_member_status", table_name="family_links")
    op.drop_table("family_links")
    op.drop_index("ix_sponsor_requests_sponsor_created", table_name="sponsor_requests")
    op.drop_table("sponsor_requests")
    op.drop_table("refresh_tokens")
    op.drop_table("users")
