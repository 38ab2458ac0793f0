"""Initial schema for the client portal state store.

Creates users, subscriptions, portals, updates, files, activities,
notifications and job_runs.

Revision ID: 001
Revises: None
Create Date: 2026-09-01 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.text("now()"),
    )


def upgrade() -> None:
    # ------------------------------------------------------------------
    # users
    # ------------------------------------------------------------------
    op.create_table(
        "users",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(256), nullable=True),
        sa.Column("email", sa.String(320), nullable=False, unique=True),
        sa.Column("role", sa.String(32), nullable=False, server_default="client"),
        _created_at(),
    )

    # ------------------------------------------------------------------
    # subscriptions
    # ------------------------------------------------------------------
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("user_id", sa.String(64), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("plan_id", sa.String(64), nullable=False),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("ends_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_subscriptions_user_active", "subscriptions", ["user_id", "is_active"])

    # ------------------------------------------------------------------
    # portals
    # ------------------------------------------------------------------
    op.create_table(
        "portals",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(64), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("client_id", sa.String(64), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("status", sa.String(32), nullable=False, server_default="active"),
        sa.Column("due_date", sa.Date(), nullable=True),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_portals_created_by", "portals", ["created_by"])
    op.create_index("ix_portals_client", "portals", ["client_id"])
    op.create_index("ix_portals_status_due", "portals", ["status", "due_date"])

    # ------------------------------------------------------------------
    # updates (and replies)
    # ------------------------------------------------------------------
    op.create_table(
        "updates",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("portal_id", sa.String(64), sa.ForeignKey("portals.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.String(64), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("title", sa.String(512), nullable=True),
        sa.Column("content", sa.Text(), nullable=False, server_default=""),
        sa.Column(
            "parent_update_id",
            sa.String(64),
            sa.ForeignKey("updates.id", ondelete="CASCADE"),
            nullable=True,
        ),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_updates_portal", "updates", ["portal_id"])
    op.create_index("ix_updates_parent", "updates", ["parent_update_id"])

    # ------------------------------------------------------------------
    # files
    # ------------------------------------------------------------------
    op.create_table(
        "files",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("portal_id", sa.String(64), sa.ForeignKey("portals.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.String(64), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("update_id", sa.String(64), sa.ForeignKey("updates.id", ondelete="SET NULL"), nullable=True),
        sa.Column("file_name", sa.String(512), nullable=False),
        sa.Column("file_url", sa.String(2048), nullable=False),
        sa.Column("file_type", sa.String(128), nullable=True),
        sa.Column("file_size", sa.BigInteger(), nullable=False, server_default="0"),
        _created_at(),
    )
    op.create_index("ix_files_portal", "files", ["portal_id"])

    # ------------------------------------------------------------------
    # activities
    # ------------------------------------------------------------------
    op.create_table(
        "activities",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("portal_id", sa.String(64), sa.ForeignKey("portals.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.String(64), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("type", sa.String(64), nullable=False),
        sa.Column("meta", postgresql.JSONB(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_activities_portal_created", "activities", ["portal_id", "created_at"])

    # ------------------------------------------------------------------
    # notifications
    # ------------------------------------------------------------------
    op.create_table(
        "notifications",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("user_id", sa.String(64), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("portal_id", sa.String(64), sa.ForeignKey("portals.id", ondelete="CASCADE"), nullable=True),
        sa.Column("type", sa.String(64), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("link", sa.String(2048), nullable=True),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        _created_at(),
    )
    op.create_index("ix_notifications_user_read", "notifications", ["user_id", "is_read"])
    op.create_index("ix_notifications_user_created", "notifications", ["user_id", "created_at"])
    op.create_index(
        "ix_notifications_portal_type_created",
        "notifications",
        ["portal_id", "type", "created_at"],
    )

    # ------------------------------------------------------------------
    # job_runs
    # ------------------------------------------------------------------
    op.create_table(
        "job_runs",
        sa.Column("job_name", sa.String(128), primary_key=True),
        sa.Column("last_run_on", sa.Date(), nullable=True),
        sa.Column("last_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_status", sa.String(32), nullable=True),
        sa.Column("last_result", postgresql.JSONB(), nullable=True),
    )


def downgrade() -> None:
    op.drop_table("job_runs")
    op.drop_table("notifications")
    op.drop_table("activities")
    op.drop_table("files")
    op.drop_table("updates")
    op.drop_table("portals")
    op.drop_table("subscriptions")
    op.drop_table("users")
