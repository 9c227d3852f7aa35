from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB

from database.base import Base
from utils.time_utils import utcnow

JSONType = JSON().with_variant(JSONB(), "postgresql")


class SourceAsset(Base):
    """
    Content-addressed source media.

    One row per distinct byte stream, keyed by its SHA-256 digest. ref_count
    tracks how many projects point at the asset; bytes may only be removed
    once it drops to zero.
    """

    __tablename__ = "source_assets"

    asset_id = Column(Uuid, primary_key=True, default=uuid4)
    content_hash = Column(String(64), nullable=False, unique=True)
    storage_key = Column(String, nullable=False)
    size_bytes = Column(BigInteger, nullable=False, default=0)
    content_type = Column(String, nullable=True)
    original_name = Column(String, nullable=True)
    ref_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("ref_count >= 0", name="ck_source_assets_ref_count"),
    )

    def __repr__(self):
        return (
            f"<SourceAsset asset_id={self.asset_id} "
            f"content_hash={self.content_hash[:12]} ref_count={self.ref_count}>"
        )


class Project(Base):
    __tablename__ = "projects"

    project_id = Column(Uuid, primary_key=True, default=uuid4)
    project_name = Column(String, nullable=False)
    source_asset_id = Column(
        Uuid, ForeignKey("source_assets.asset_id"), nullable=True
    )

    # Only the edit log append may advance current_version.
    current_version = Column(Integer, nullable=False, default=0)

    latest_proxy_key = Column(String, nullable=True)
    latest_proxy_version = Column(Integer, nullable=True)
    latest_export_key = Column(String, nullable=True)
    latest_export_version = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    def __repr__(self):
        return (
            f"<Project project_id={self.project_id} project_name={self.project_name} "
            f"current_version={self.current_version}>"
        )


class EditOperation(Base):
    """
    One appended batch of edit operations.

    Rows are never updated or deleted. For a project the versions present
    are exactly 1..current_version.
    """

    __tablename__ = "edit_operations"

    batch_id = Column(Uuid, primary_key=True, default=uuid4)
    project_id = Column(
        Uuid,
        ForeignKey("projects.project_id", ondelete="CASCADE"),
        nullable=False,
    )
    version = Column(Integer, nullable=False)
    ops = Column(JSONType, nullable=False)  # [{"type": ..., "parameters": {...}}, ...]
    user_id = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index(
            "ix_edit_operations_project_version",
            project_id,
            version,
            unique=True,
        ),
    )

    def __repr__(self):
        return (
            f"<EditOperation batch_id={self.batch_id} project_id={self.project_id} "
            f"version={self.version} ops={len(self.ops or [])}>"
        )


class ExportVersion(Base):
    """
    Full-resolution render of one edit-log version.

    status walks active -> gc_candidate -> archived -> deleted. pinned and
    gc_candidate are never both true.
    """

    __tablename__ = "export_versions"

    export_id = Column(Uuid, primary_key=True, default=uuid4)
    project_id = Column(
        Uuid,
        ForeignKey("projects.project_id", ondelete="CASCADE"),
        nullable=False,
    )
    version = Column(Integer, nullable=False)
    storage_key = Column(String, nullable=False)
    size_bytes = Column(BigInteger, nullable=False, default=0)
    resolution = Column(String, nullable=True)  # e.g. "1920x1080"
    format = Column(String, nullable=False, default="mp4")
    duration_seconds = Column(Float, nullable=True)

    status = Column(String, nullable=False, default="active")
    pinned = Column(Boolean, nullable=False, default=False)
    gc_candidate = Column(Boolean, nullable=False, default=False)
    gc_marked_at = Column(DateTime(timezone=True), nullable=True)
    archived_at = Column(DateTime(timezone=True), nullable=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index(
            "ix_export_versions_project_version",
            project_id,
            version,
            unique=True,
        ),
        Index("ix_export_versions_status", status),
        CheckConstraint(
            "NOT (pinned AND gc_candidate)", name="ck_export_versions_pin_gc"
        ),
    )

    def __repr__(self):
        return (
            f"<ExportVersion export_id={self.export_id} project_id={self.project_id} "
            f"version={self.version} status={self.status} pinned={self.pinned}>"
        )


class RenderJob(Base):
    """
    Persisted render queue entry.

    active_key is set while the job is pending, queued or processing so that
    at most one live job exists per (job_type, project, version).
    """

    __tablename__ = "render_jobs"

    job_id = Column(Uuid, primary_key=True, default=uuid4)
    project_id = Column(
        Uuid,
        ForeignKey("projects.project_id", ondelete="CASCADE"),
        nullable=False,
    )
    version = Column(Integer, nullable=False)

    job_type = Column(String, nullable=False)  # "proxy" or "export"
    status = Column(String, nullable=False, default="pending")
    progress = Column(Integer, nullable=False, default=0)
    active_key = Column(String, nullable=True, unique=True)

    options = Column(JSONType, nullable=False, default=dict)  # resolution, format

    output_key = Column(String, nullable=True)
    output_size_bytes = Column(BigInteger, nullable=True)
    export_id = Column(Uuid, nullable=True)
    cached = Column(Boolean, nullable=False, default=False)

    error_code = Column(String, nullable=True)
    error_message = Column(String, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)

    rq_job_id = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_render_jobs_project_id", project_id),
        Index("ix_render_jobs_status", status),
        Index("ix_render_jobs_project_status", project_id, status),
    )

    def __repr__(self):
        return (
            f"<RenderJob job_id={self.job_id} job_type={self.job_type} "
            f"project_id={self.project_id} version={self.version} "
            f"status={self.status} progress={self.progress}%>"
        )
