"""
Garbage collector for export versions.

Exports move one way through three stages:

    active -> gc_candidate -> archived -> deleted

- Mark (calculate) only flips flags. It re-checks ``pinned = false`` and
  ``status = 'active'`` inside the same UPDATE, so a pin always wins.
- Archive moves bytes from export/ to archive/ for candidates.
- Delete removes archived bytes permanently and needs explicit confirmation.

Archive and delete commit each export id on its own and report per-id
results; one failure never blocks the rest of the batch.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session as DBSession

from database.models import ExportVersion, Project
from models.export_models import ExportState
from models.gc_models import (
    GCArchiveReport,
    GCCalculateReport,
    GCCandidate,
    GCCandidateListResponse,
    GCDeleteReport,
    GCItemResult,
    GCProjectError,
)
from operators import export_operator
from operators.errors import EditorError, StateError, ValidationError
from utils import storage
from utils.time_utils import as_utc, utcnow

logger = logging.getLogger(__name__)

GC_TTL_DAYS = int(os.getenv("GC_TTL_DAYS", "30"))
GC_KEEP_LATEST_N = int(os.getenv("GC_KEEP_LATEST_N", "3"))


def _candidate(export: ExportVersion, project_name: str | None = None) -> GCCandidate:
    return GCCandidate(
        export_id=export.export_id,
        project_id=export.project_id,
        project_name=project_name,
        version=export.version,
        storage_key=export.storage_key,
        size_bytes=export.size_bytes or 0,
        resolution=export.resolution,
        duration_seconds=export.duration_seconds,
        created_at=export.created_at,
        gc_marked_at=export.gc_marked_at,
    )


# =============================================================================
# MARK
# =============================================================================


def mark_project_exports(
    db: DBSession,
    project_id: UUID,
    ttl_days: int = GC_TTL_DAYS,
    keep_latest_n: int = GC_KEEP_LATEST_N,
    now: datetime | None = None,
    report: GCCalculateReport | None = None,
    project_name: str | None = None,
) -> GCCalculateReport:
    """Apply the retention policy to one project. Safe to run repeatedly."""
    if ttl_days < 0 or keep_latest_n < 0:
        raise ValidationError("ttl_days and keep_latest_n must be >= 0")

    report = report or GCCalculateReport(total_projects=1)
    now = now or utcnow()
    cutoff = now - timedelta(days=ttl_days)

    exports = (
        db.query(ExportVersion)
        .filter(
            ExportVersion.project_id == project_id,
            ExportVersion.status != ExportState.DELETED.value,
        )
        .order_by(ExportVersion.version.desc())
        .populate_existing()
        .all()
    )

    for index, export in enumerate(exports):
        if index < keep_latest_n:
            report.exports_kept += 1
            continue
        if export.pinned:
            report.exports_pinned += 1
            continue
        if export.status == ExportState.GC_CANDIDATE.value:
            report.candidates_already_marked += 1
            report.candidates.append(_candidate(export, project_name))
            continue
        if export.status != ExportState.ACTIVE.value:
            continue
        if as_utc(export.created_at) >= cutoff:
            report.exports_kept += 1
            continue

        result = db.execute(
            update(ExportVersion)
            .where(
                ExportVersion.export_id == export.export_id,
                ExportVersion.pinned.is_(False),
                ExportVersion.status == ExportState.ACTIVE.value,
            )
            .values(
                gc_candidate=True,
                gc_marked_at=now,
                status=ExportState.GC_CANDIDATE.value,
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()
        if result.rowcount == 1:
            db.refresh(export)
            report.candidates_marked += 1
            report.candidates.append(_candidate(export, project_name))
            logger.info(
                "gc_mark export_id=%s project_id=%s version=%s",
                export.export_id,
                project_id,
                export.version,
            )
        else:
            report.exports_pinned += 1

    report.projects_processed += 1
    return report


def calculate_gc_candidates(
    db: DBSession,
    ttl_days: int = GC_TTL_DAYS,
    keep_latest_n: int = GC_KEEP_LATEST_N,
    now: datetime | None = None,
) -> GCCalculateReport:
    """Mark stage over every project."""
    if ttl_days < 0 or keep_latest_n < 0:
        raise ValidationError("ttl_days and keep_latest_n must be >= 0")

    now = now or utcnow()
    projects = db.query(Project.project_id, Project.project_name).all()
    report = GCCalculateReport(total_projects=len(projects))

    for project_id, project_name in projects:
        try:
            mark_project_exports(
                db,
                project_id,
                ttl_days=ttl_days,
                keep_latest_n=keep_latest_n,
                now=now,
                report=report,
                project_name=project_name,
            )
        except SQLAlchemyError as e:
            db.rollback()
            logger.exception("gc_mark_failed project_id=%s", project_id)
            report.errors.append(GCProjectError(project_id=project_id, error=str(e)))

    logger.info(
        "gc_calculate projects=%s marked=%s already_marked=%s pinned=%s kept=%s errors=%s",
        report.projects_processed,
        report.candidates_marked,
        report.candidates_already_marked,
        report.exports_pinned,
        report.exports_kept,
        len(report.errors),
    )
    return report


def run_retention(db: DBSession, project_id: UUID) -> GCCalculateReport:
    """Retention step run after every successful export."""
    return mark_project_exports(
        db, project_id, ttl_days=GC_TTL_DAYS, keep_latest_n=GC_KEEP_LATEST_N
    )


def list_gc_candidates(
    db: DBSession,
    older_than_days: int = 0,
    now: datetime | None = None,
) -> GCCandidateListResponse:
    if older_than_days < 0:
        raise ValidationError("older_than_days must be >= 0")

    cutoff = (now or utcnow()) - timedelta(days=older_than_days)
    rows = (
        db.query(ExportVersion, Project.project_name)
        .join(Project, Project.project_id == ExportVersion.project_id)
        .filter(
            ExportVersion.status == ExportState.GC_CANDIDATE.value,
            ExportVersion.gc_candidate.is_(True),
        )
        .order_by(ExportVersion.gc_marked_at.asc())
        .populate_existing()
        .all()
    )

    candidates = [
        _candidate(export, project_name)
        for export, project_name in rows
        if export.gc_marked_at is None or as_utc(export.gc_marked_at) <= cutoff
    ]
    total_size = sum(c.size_bytes for c in candidates)
    return GCCandidateListResponse(
        count=len(candidates),
        total_size=total_size,
        total_size_mb=round(total_size / (1024 * 1024), 2),
        candidates=candidates,
    )


# =============================================================================
# ARCHIVE
# =============================================================================


def _archive_one(db: DBSession, export_id: UUID) -> GCItemResult:
    export = export_operator.get_export(db, export_id)
    if export.pinned or export.status != ExportState.GC_CANDIDATE.value:
        raise StateError(
            f"Export {export_id} is {export.status}"
            f"{' and pinned' if export.pinned else ''}; only unpinned gc candidates can be archived"
        )

    source_key = export.storage_key
    target_key = storage.archive_key(export.export_id, export.version, export.format)
    moved = False
    if source_key != target_key and storage.exists(source_key):
        storage.move_file(source_key, target_key)
        moved = True
    elif not storage.exists(target_key):
        logger.warning(
            "gc_archive_missing_file export_id=%s key=%s", export_id, source_key
        )

    result = db.execute(
        update(ExportVersion)
        .where(
            ExportVersion.export_id == export_id,
            ExportVersion.status == ExportState.GC_CANDIDATE.value,
            ExportVersion.pinned.is_(False),
        )
        .values(
            status=ExportState.ARCHIVED.value,
            gc_candidate=False,
            storage_key=target_key,
            archived_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        if moved:
            storage.move_file(target_key, source_key)
        raise StateError(f"Export {export_id} changed state during archive")
    db.commit()

    export_operator.repoint_latest_export(db, export.project_id, source_key)
    logger.info(
        "gc_archive export_id=%s project_id=%s version=%s key=%s",
        export_id,
        export.project_id,
        export.version,
        target_key,
    )
    return GCItemResult(export_id=export_id, ok=True, storage_key=target_key)


def archive_exports(db: DBSession, export_ids: list[UUID]) -> GCArchiveReport:
    report = GCArchiveReport(total_requested=len(export_ids))
    for export_id in export_ids:
        try:
            item = _archive_one(db, export_id)
        except EditorError as e:
            db.rollback()
            item = GCItemResult(export_id=export_id, ok=False, error_code=e.code, error=str(e))
        except (OSError, SQLAlchemyError) as e:
            db.rollback()
            logger.exception("gc_archive_failed export_id=%s", export_id)
            item = GCItemResult(
                export_id=export_id, ok=False, error_code="internal_error", error=str(e)
            )

        if item.ok:
            report.archived += 1
        else:
            report.failed += 1
        report.results.append(item)
    return report


# =============================================================================
# DELETE
# =============================================================================


def _delete_one(db: DBSession, export_id: UUID) -> GCItemResult:
    export = export_operator.get_export(db, export_id)
    if export.pinned or export.status != ExportState.ARCHIVED.value:
        raise StateError(
            f"Export {export_id} is {export.status}; only archived exports can be deleted"
        )

    result = db.execute(
        update(ExportVersion)
        .where(
            ExportVersion.export_id == export_id,
            ExportVersion.status == ExportState.ARCHIVED.value,
            ExportVersion.pinned.is_(False),
        )
        .values(status=ExportState.DELETED.value, deleted_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise StateError(f"Export {export_id} changed state during delete")
    db.commit()

    key = export.storage_key
    freed = storage.size_of(key) or 0
    try:
        storage.delete_file(key)
    except OSError:
        db.execute(
            update(ExportVersion)
            .where(
                ExportVersion.export_id == export_id,
                ExportVersion.status == ExportState.DELETED.value,
            )
            .values(status=ExportState.ARCHIVED.value, deleted_at=None)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        raise

    logger.warning(
        "gc_delete export_id=%s project_id=%s version=%s key=%s bytes_freed=%s",
        export_id,
        export.project_id,
        export.version,
        key,
        freed,
    )
    return GCItemResult(export_id=export_id, ok=True, storage_key=key, bytes_freed=freed)


def delete_archived_exports(
    db: DBSession, export_ids: list[UUID], confirmed: bool = False
) -> GCDeleteReport:
    if not confirmed:
        raise ValidationError("Permanent deletion requires confirmed=true")

    report = GCDeleteReport(total_requested=len(export_ids))
    for export_id in export_ids:
        try:
            item = _delete_one(db, export_id)
        except EditorError as e:
            db.rollback()
            item = GCItemResult(export_id=export_id, ok=False, error_code=e.code, error=str(e))
        except (OSError, SQLAlchemyError) as e:
            db.rollback()
            logger.exception("gc_delete_failed export_id=%s", export_id)
            item = GCItemResult(
                export_id=export_id, ok=False, error_code="internal_error", error=str(e)
            )

        if item.ok:
            report.deleted += 1
            report.bytes_freed += item.bytes_freed
        else:
            report.failed += 1
        report.results.append(item)
    return report
