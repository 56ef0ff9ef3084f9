"""Enforce one active link per sponsor and one pending request per member.

Partial unique indexes turn concurrent duplicates (two approvals for the
same sponsor, two requests from the same family member) into constraint
violations instead of silently creating a second row.

Revision ID: 002
Revises: 001
Create Date: 2026-10-14
"""

from alembic import op
import sqlalchemy as sa

revision = "002"
down_revision = "001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_index(
        "uq_family_links_active_sponsor",
        "family_links",
        ["sponsor_id"],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
        sqlite_where=sa.text("status = 'active'"),
    )
    op.create_index(
        "uq_sponsor_requests_pending_member",
        "sponsor_requests",
        ["family_member_id"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
        sqlite_where=sa.text("status = 'pending'"),
    )


def downgrade() -> None:
    op.drop_index("uq_sponsor_requests_pending_member", table_name="sponsor_requests")
    op.drop_index("uq_family_links_active_sponsor", table_name="family_links")
