"""create backups and tenant-scoped tables

Revision ID: 0001_init
Revises:
Create Date: 2026-10-18
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def _jsonb() -> postgresql.JSONB:
    return postgresql.JSONB(astext_type=sa.Text())


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now())


def _scoped_table(name: str, *columns: sa.Column, scope_column: str = "org_id") -> None:
    op.create_table(
        name,
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(scope_column, sa.String(), nullable=False),
        *columns,
    )
    op.create_index(f"ix_{name}_{scope_column}", name, [scope_column], unique=False)


def upgrade() -> None:
    # Backup records: lifecycle, storage location and envelope parameters.
    op.create_table(
        "backups",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("organization_id", sa.String(), nullable=True),
        sa.Column("format", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("created_by", sa.String(), nullable=False),
        _created_at(),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("storage_path", sa.String(), nullable=True),
        sa.Column("byte_size", sa.BigInteger(), nullable=True),
        sa.Column("checksum", sa.String(length=64), nullable=True),
        sa.Column("included_tables", _jsonb(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("metadata_json", _jsonb(), nullable=False, server_default=sa.text("'{}'::jsonb")),
    )
    op.create_index("ix_backups_organization_id", "backups", ["organization_id"], unique=False)
    op.create_index("ix_backups_status_expires_at", "backups", ["status", "expires_at"], unique=False)
    op.create_index("ix_backups_kind_created_at", "backups", ["kind", "created_at"], unique=False)

    # Tenant-owned tables, parents before children.
    _scoped_table(
        "announcements",
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("is_pinned", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.String(), nullable=True),
        _created_at(),
    )
    _scoped_table(
        "announcement_interactions",
        sa.Column(
            "announcement_id",
            sa.String(),
            sa.ForeignKey("announcements.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("interaction_type", sa.String(), nullable=False),
        _created_at(),
    )
    _scoped_table(
        "files",
        sa.Column("folder_id", sa.String(), nullable=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("storage_path", sa.String(), nullable=False),
        sa.Column("mime_type", sa.String(), nullable=True),
        sa.Column("size_bytes", sa.BigInteger(), nullable=True),
        sa.Column("uploaded_by", sa.String(), nullable=True),
        _created_at(),
    )
    _scoped_table(
        "file_uploads",
        sa.Column("file_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("storage_path", sa.String(), nullable=True),
        _created_at(),
    )
    _scoped_table(
        "folders",
        sa.Column("parent_id", sa.String(), nullable=True),
        sa.Column("name", sa.String(), nullable=False),
        _created_at(),
    )
    _scoped_table(
        "jobs",
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("progress", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("input_json", _jsonb(), nullable=True),
        sa.Column("output_json", _jsonb(), nullable=True),
        sa.Column("created_by", sa.String(), nullable=True),
        _created_at(),
    )
    _scoped_table(
        "scheduled_jobs",
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("cron", sa.String(), nullable=False),
        sa.Column("payload_json", _jsonb(), nullable=True),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
        scope_column="organization_id",
    )
    _scoped_table(
        "report_templates",
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("template_json", _jsonb(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        _created_at(),
    )
    _scoped_table(
        "webhooks",
        sa.Column("url", sa.String(), nullable=False),
        sa.Column("events", _jsonb(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("secret", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
    )
    _scoped_table(
        "webhook_deliveries",
        sa.Column(
            "webhook_id",
            sa.String(),
            sa.ForeignKey("webhooks.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("event", sa.String(), nullable=False),
        sa.Column("status_code", sa.Integer(), nullable=True),
        sa.Column("payload_json", _jsonb(), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
    )
    _scoped_table(
        "notifications",
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("body", sa.Text(), nullable=True),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
    )
    _scoped_table(
        "notification_preferences",
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("channel", sa.String(), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
    )
    _scoped_table(
        "example_posts",
        sa.Column("author_id", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        _created_at(),
    )
    _scoped_table(
        "example_comments",
        sa.Column(
            "post_id",
            sa.String(),
            sa.ForeignKey("example_posts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("author_id", sa.String(), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        _created_at(),
    )
    _scoped_table(
        "user_role_assignments",
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("role", sa.String(), nullable=False),
        _created_at(),
        scope_column="tenant_id",
    )


_SCOPED_TABLES = (
    ("announcements", "org_id"),
    ("announcement_interactions", "org_id"),
    ("files", "org_id"),
    ("file_uploads", "org_id"),
    ("folders", "org_id"),
    ("jobs", "org_id"),
    ("scheduled_jobs", "organization_id"),
    ("report_templates", "org_id"),
    ("webhooks", "org_id"),
    ("webhook_deliveries", "org_id"),
    ("notifications", "org_id"),
    ("notification_preferences", "org_id"),
    ("example_posts", "org_id"),
    ("example_comments", "org_id"),
    ("user_role_assignments", "tenant_id"),
)


def downgrade() -> None:
    for name, scope_column in reversed(_SCOPED_TABLES):
        op.drop_index(f"ix_{name}_{scope_column}", table_name=name)
        op.drop_table(name)
    op.drop_index("ix_backups_kind_created_at", table_name="backups")
    op.drop_index("ix_backups_status_expires_at", table_name="backups")
    op.drop_index("ix_backups_organization_id", table_name="backups")
    op.drop_table("backups")
