"""
Export Version Registry.

One ExportVersion row per (project, version). Rows are created by export
workers, flipped by pin toggles and walked through the GC states by
gc_operator. Deleted rows stay as tombstones; exporting the same version
again revives the tombstone instead of inserting a second row.
"""

from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session as DBSession

from database.models import ExportVersion, Project
from models.export_models import ExportState, ExportVersionResponse
from operators.errors import (
    ExportNotFoundError,
    ProjectNotFoundError,
    StateError,
)
from utils import storage
from utils.time_utils import utcnow

logger = logging.getLogger(__name__)

# States whose artifact still lives under export/.
LIVE_STATES = (ExportState.ACTIVE.value, ExportState.GC_CANDIDATE.value)


def get_export(db: DBSession, export_id: UUID) -> ExportVersion:
    export = (
        db.query(ExportVersion)
        .filter(ExportVersion.export_id == export_id)
        .populate_existing()
        .first()
    )
    if not export:
        raise ExportNotFoundError(export_id)
    return export


def get_export_by_version(db: DBSession, project_id: UUID, version: int) -> ExportVersion:
    export = (
        db.query(ExportVersion)
        .filter(
            ExportVersion.project_id == project_id,
            ExportVersion.version == version,
        )
        .populate_existing()
        .first()
    )
    if not export:
        raise ExportNotFoundError(f"{project_id}@v{version}")
    return export


def find_existing_export(
    db: DBSession, project_id: UUID, version: int
) -> ExportVersion | None:
    """The non-deleted export for (project, version), if any."""
    return (
        db.query(ExportVersion)
        .filter(
            ExportVersion.project_id == project_id,
            ExportVersion.version == version,
            ExportVersion.status != ExportState.DELETED.value,
        )
        .populate_existing()
        .first()
    )


def list_exports(db: DBSession, project_id: UUID) -> list[ExportVersion]:
    if db.query(Project.project_id).filter(Project.project_id == project_id).first() is None:
        raise ProjectNotFoundError(project_id)
    return (
        db.query(ExportVersion)
        .filter(ExportVersion.project_id == project_id)
        .order_by(ExportVersion.version.desc())
        .populate_existing()
        .all()
    )


def register_export(
    db: DBSession,
    project_id: UUID,
    version: int,
    storage_key: str,
    size_bytes: int,
    resolution: str | None = None,
    export_format: str = "mp4",
    duration_seconds: float | None = None,
    pinned: bool = False,
) -> tuple[ExportVersion, bool]:
    """
    Record a finished export.

    Returns:
        (export, created). created is False when a live row for the pair
        already existed, in which case that row is returned untouched.
    """
    existing = find_existing_export(db, project_id, version)
    if existing:
        return existing, False

    tombstone = (
        db.query(ExportVersion)
        .filter(
            ExportVersion.project_id == project_id,
            ExportVersion.version == version,
            ExportVersion.status == ExportState.DELETED.value,
        )
        .populate_existing()
        .first()
    )
    if tombstone:
        result = db.execute(
            update(ExportVersion)
            .where(
                ExportVersion.export_id == tombstone.export_id,
                ExportVersion.status == ExportState.DELETED.value,
            )
            .values(
                storage_key=storage_key,
                size_bytes=size_bytes,
                resolution=resolution,
                format=export_format,
                duration_seconds=duration_seconds,
                status=ExportState.ACTIVE.value,
                pinned=pinned,
                gc_candidate=False,
                gc_marked_at=None,
                archived_at=None,
                deleted_at=None,
                created_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            db.commit()
            db.refresh(tombstone)
            logger.info(
                "export_revived export_id=%s project_id=%s version=%s",
                tombstone.export_id,
                project_id,
                version,
            )
            return tombstone, True
        db.rollback()
        return get_export_by_version(db, project_id, version), False

    export = ExportVersion(
        project_id=project_id,
        version=version,
        storage_key=storage_key,
        size_bytes=size_bytes,
        resolution=resolution,
        format=export_format,
        duration_seconds=duration_seconds,
        status=ExportState.ACTIVE.value,
        pinned=pinned,
        gc_candidate=False,
    )
    db.add(export)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return get_export_by_version(db, project_id, version), False

    db.refresh(export)
    logger.info(
        "export_registered export_id=%s project_id=%s version=%s size=%s",
        export.export_id,
        project_id,
        version,
        size_bytes,
    )
    return export, True


def update_latest_export_pointer(
    db: DBSession, project_id: UUID, version: int, storage_key: str
) -> bool:
    """Point the project at this export unless a newer version already won."""
    result = db.execute(
        update(Project)
        .where(
            Project.project_id == project_id,
            or_(
                Project.latest_export_version.is_(None),
                Project.latest_export_version <= version,
            ),
        )
        .values(
            latest_export_key=storage_key,
            latest_export_version=version,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def repoint_latest_export(db: DBSession, project_id: UUID, stale_key: str) -> None:
    """Move latest_export_key off an artifact that is leaving export/."""
    replacement = (
        db.query(ExportVersion)
        .filter(
            ExportVersion.project_id == project_id,
            ExportVersion.status.in_(LIVE_STATES),
            ExportVersion.storage_key != stale_key,
            # a pinned archive is active again but its bytes stay under archive/
            ExportVersion.storage_key.startswith(f"{storage.EXPORT_PREFIX}/"),
        )
        .order_by(ExportVersion.version.desc())
        .populate_existing()
        .first()
    )
    db.execute(
        update(Project)
        .where(
            Project.project_id == project_id,
            Project.latest_export_key == stale_key,
        )
        .values(
            latest_export_key=replacement.storage_key if replacement else None,
            latest_export_version=replacement.version if replacement else None,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()


def set_pinned(db: DBSession, export_id: UUID, pinned: bool) -> ExportVersion:
    """
    Pin or unpin an export.

    Pinning is allowed in any state except deleted. It clears the GC marking
    and forces the state back to active, so a concurrent Mark (which requires
    pinned = false) can never win afterwards.
    """
    export = get_export(db, export_id)
    if export.status == ExportState.DELETED.value:
        raise StateError(f"Export {export_id} is deleted and cannot be pinned")

    if pinned:
        values = {
            "pinned": True,
            "gc_candidate": False,
            "gc_marked_at": None,
            "status": ExportState.ACTIVE.value,
        }
    else:
        values = {"pinned": False}

    result = db.execute(
        update(ExportVersion)
        .where(
            ExportVersion.export_id == export_id,
            ExportVersion.status != ExportState.DELETED.value,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise StateError(f"Export {export_id} was deleted concurrently")
    db.commit()
    db.refresh(export)

    logger.info(
        "export_pin export_id=%s project_id=%s version=%s pinned=%s",
        export.export_id,
        export.project_id,
        export.version,
        export.pinned,
    )
    return export


def toggle_pin(db: DBSession, export_id: UUID) -> ExportVersion:
    export = get_export(db, export_id)
    return set_pinned(db, export_id, not export.pinned)


def toggle_pin_by_version(db: DBSession, project_id: UUID, version: int) -> ExportVersion:
    export = get_export_by_version(db, project_id, version)
    return set_pinned(db, export.export_id, not export.pinned)


def export_to_response(export: ExportVersion) -> ExportVersionResponse:
    return ExportVersionResponse(
        export_id=export.export_id,
        project_id=export.project_id,
        version=export.version,
        storage_key=export.storage_key,
        size_bytes=export.size_bytes or 0,
        resolution=export.resolution,
        format=export.format,
        duration_seconds=export.duration_seconds,
        status=ExportState(export.status),
        pinned=export.pinned,
        gc_candidate=export.gc_candidate,
        gc_marked_at=export.gc_marked_at,
        archived_at=export.archived_at,
        deleted_at=export.deleted_at,
        created_at=export.created_at,
    )


def backfill_legacy_exports(db: DBSession, dry_run: bool = False) -> dict:
    """
    Register export files that predate the registry as pinned exports.

    Files must follow ``export/{project_id}/v{version}.{format}``. Anything
    else, or files for unknown projects, is reported as skipped. Pinning keeps
    the collector away from exports nobody has reviewed yet.
    """
    registered: list[str] = []
    skipped: list[str] = []

    for key in storage.list_keys(storage.EXPORT_PREFIX):
        parts = key.split("/")
        stem, _, ext = parts[-1].partition(".")
        try:
            project_id = UUID(parts[1])
            version = int(stem.removeprefix("v"))
        except (IndexError, ValueError):
            skipped.append(key)
            continue
        if len(parts) != 3 or not stem.startswith("v") or not ext:
            skipped.append(key)
            continue

        if db.query(Project.project_id).filter(Project.project_id == project_id).first() is None:
            skipped.append(key)
            continue
        already = (
            db.query(ExportVersion.export_id)
            .filter(
                ExportVersion.project_id == project_id,
                ExportVersion.version == version,
            )
            .first()
        )
        if already:
            continue

        if not dry_run:
            export, created = register_export(
                db,
                project_id,
                version,
                storage_key=key,
                size_bytes=storage.size_of(key) or 0,
                export_format=ext,
                pinned=True,
            )
            if not created:
                continue
            update_latest_export_pointer(db, project_id, version, key)
        registered.append(key)
        logger.info("export_backfill key=%s dry_run=%s", key, dry_run)

    return {"dry_run": dry_run, "registered": registered, "skipped": skipped}
