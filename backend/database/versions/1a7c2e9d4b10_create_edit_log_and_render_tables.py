"""create_edit_log_and_render_tables

Revision ID: 1a7c2e9d4b10
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "1a7c2e9d4b10"
down_revision = None
branch_labels = None
depends_on = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def upgrade() -> None:
    op.create_table(
        "source_assets",
        sa.Column("asset_id", sa.Uuid(), nullable=False),
        sa.Column("content_hash", sa.String(length=64), nullable=False),
        sa.Column("storage_key", sa.String(), nullable=False),
        sa.Column("size_bytes", sa.BigInteger(), nullable=False),
        sa.Column("content_type", sa.String(), nullable=True),
        sa.Column("original_name", sa.String(), nullable=True),
        # Reference counting
        sa.Column("ref_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("asset_id"),
        sa.UniqueConstraint("content_hash"),
        sa.CheckConstraint("ref_count >= 0", name="ck_source_assets_ref_count"),
    )

    op.create_table(
        "projects",
        sa.Column("project_id", sa.Uuid(), nullable=False),
        sa.Column("project_name", sa.String(), nullable=False),
        sa.Column("source_asset_id", sa.Uuid(), nullable=True),
        sa.Column("current_version", sa.Integer(), nullable=False, server_default="0"),
        # Latest artifact pointers
        sa.Column("latest_proxy_key", sa.String(), nullable=True),
        sa.Column("latest_proxy_version", sa.Integer(), nullable=True),
        sa.Column("latest_export_key", sa.String(), nullable=True),
        sa.Column("latest_export_version", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["source_asset_id"], ["source_assets.asset_id"]),
        sa.PrimaryKeyConstraint("project_id"),
    )

    op.create_table(
        "edit_operations",
        sa.Column("batch_id", sa.Uuid(), nullable=False),
        sa.Column("project_id", sa.Uuid(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("ops", JSONType, nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["project_id"], ["projects.project_id"], ondelete="CASCADE"
        ),
        sa.PrimaryKeyConstraint("batch_id"),
    )
    op.create_index(
        "ix_edit_operations_project_version",
        "edit_operations",
        ["project_id", "version"],
        unique=True,
    )

    op.create_table(
        "export_versions",
        sa.Column("export_id", sa.Uuid(), nullable=False),
        sa.Column("project_id", sa.Uuid(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("storage_key", sa.String(), nullable=False),
        sa.Column("size_bytes", sa.BigInteger(), nullable=False),
        sa.Column("resolution", sa.String(), nullable=True),
        sa.Column("format", sa.String(), nullable=False, server_default="mp4"),
        sa.Column("duration_seconds", sa.Float(), nullable=True),
        # GC state
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("pinned", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("gc_candidate", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("gc_marked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["project_id"], ["projects.project_id"], ondelete="CASCADE"
        ),
        sa.PrimaryKeyConstraint("export_id"),
        sa.CheckConstraint(
            "NOT (pinned AND gc_candidate)", name="ck_export_versions_pin_gc"
        ),
    )
    op.create_index(
        "ix_export_versions_project_version",
        "export_versions",
        ["project_id", "version"],
        unique=True,
    )
    op.create_index("ix_export_versions_status", "export_versions", ["status"])

    op.create_table(
        "render_jobs",
        sa.Column("job_id", sa.Uuid(), nullable=False),
        sa.Column("project_id", sa.Uuid(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        # Job type and status
        sa.Column("job_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("progress", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("active_key", sa.String(), nullable=True),
        sa.Column("options", JSONType, nullable=False),
        # Output details
        sa.Column("output_key", sa.String(), nullable=True),
        sa.Column("output_size_bytes", sa.BigInteger(), nullable=True),
        sa.Column("export_id", sa.Uuid(), nullable=True),
        sa.Column("cached", sa.Boolean(), nullable=False, server_default=sa.false()),
        # Error handling
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("error_message", sa.String(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("rq_job_id", sa.String(), nullable=True),
        # Timestamps
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(
            ["project_id"], ["projects.project_id"], ondelete="CASCADE"
        ),
        sa.PrimaryKeyConstraint("job_id"),
        sa.UniqueConstraint("active_key"),
    )
    op.create_index("ix_render_jobs_project_id", "render_jobs", ["project_id"])
    op.create_index("ix_render_jobs_status", "render_jobs", ["status"])
    op.create_index(
        "ix_render_jobs_project_status", "render_jobs", ["project_id", "status"]
    )


def downgrade() -> None:
    op.drop_index("ix_render_jobs_project_status", table_name="render_jobs")
    op.drop_index("ix_render_jobs_status", table_name="render_jobs")
    op.drop_index("ix_render_jobs_project_id", table_name="render_jobs")
    op.drop_table("render_jobs")

    op.drop_index("ix_export_versions_status", table_name="export_versions")
    op.drop_index("ix_export_versions_project_version", table_name="export_versions")
    op.drop_table("export_versions")

    op.drop_index("ix_edit_operations_project_version", table_name="edit_operations")
    op.drop_table("edit_operations")

    op.drop_table("projects")
    op.drop_table("source_assets")
