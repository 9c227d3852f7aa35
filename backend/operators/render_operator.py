"""
Render Job Queue and Workers.

Jobs are persisted in ``render_jobs`` and executed by rq workers (or inline,
in the calling process, when RENDER_EXECUTION_MODE=inline).

- enqueue collapses duplicate requests: ``active_key`` is unique while a job
  for the same (type, project, version) is pending, queued or processing.
- a worker claims a job with a conditional UPDATE, so a job re-delivered by
  rq or by crash recovery runs at most once at a time.
- workers are idempotent: an existing proxy file or ExportVersion row is
  reported as success without calling the transcoding engine.
- project pointers are updated last, after the artifact is committed, and
  only move forward (highest version wins).
"""

from __future__ import annotations

import logging
import os
from datetime import timedelta
from typing import Any
from uuid import UUID

from redis.exceptions import RedisError
from rq.exceptions import InvalidJobOperation, NoSuchJobError
from rq.job import Job
from sqlalchemy import delete, or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session as DBSession

from database.base import SessionLocal
from database.models import ExportVersion, Project, RenderJob as RenderJobModel, SourceAsset
from models.render_models import (
    ACTIVE_JOB_STATUSES,
    DEFAULT_EXPORT_RESOLUTION,
    FINISHED_JOB_STATUSES,
    ExportFormat,
    RenderJobResponse,
    RenderJobStatus,
    RenderJobType,
    RenderManifest,
    RenderPreset,
)
from operators import edit_log_operator, export_operator, gc_operator
from operators.errors import (
    EditorError,
    ProjectNotFoundError,
    RenderJobNotFoundError,
    StateError,
    TranscodingFailure,
    ValidationError,
)
from redis_client import queue_for, redis_rq
from redis_client.events import build_render_event, publish_render_event
from utils import storage
from utils.time_utils import as_utc, utcnow
from utils.transcoder import RENDER_JOB_TIMEOUT_SECONDS, Transcoder, get_transcoder

logger = logging.getLogger(__name__)

RENDER_EXECUTION_MODE = os.getenv("RENDER_EXECUTION_MODE", "queue").strip().lower()

_ACTIVE = [status.value for status in ACTIVE_JOB_STATUSES]
_FINISHED = [status.value for status in FINISHED_JOB_STATUSES]
_CLAIMABLE = [RenderJobStatus.PENDING.value, RenderJobStatus.QUEUED.value]

_ENQUEUE_ATTEMPTS = 3


def _active_key(job_type: str, project_id: UUID, version: int) -> str:
    return f"{job_type}:{project_id}:v{version}"


def _rq_job_id(job_id: UUID) -> str:
    return f"render-{job_id}"


def _emit(job: RenderJobModel, sequence: int) -> None:
    publish_render_event(build_render_event(job, sequence))


def _next_sequence(job: RenderJobModel, step: int) -> int:
    # attempts grows on every claim, so sequences stay ordered across re-runs.
    return (job.attempts or 0) * 1000 + step


# =============================================================================
# ENQUEUE / DISPATCH
# =============================================================================


def _resolve_version(project: Project, version: int | None) -> int:
    if version is None:
        version = project.current_version
    if version < 1 or version > project.current_version:
        raise ValidationError(
            f"Version {version} does not exist for project {project.project_id} "
            f"(current version is {project.current_version})"
        )
    return version


def get_active_job(
    db: DBSession, job_type: RenderJobType, project_id: UUID, version: int
) -> RenderJobModel | None:
    return (
        db.query(RenderJobModel)
        .filter(RenderJobModel.active_key == _active_key(job_type.value, project_id, version))
        .populate_existing()
        .first()
    )


def enqueue_render_job(
    db: DBSession,
    job_type: RenderJobType,
    project_id: UUID,
    version: int,
    options: dict[str, Any] | None = None,
    dispatch: bool = True,
) -> tuple[RenderJobModel, bool]:
    """
    Persist a render job for (job_type, project, version) and hand it off.

    Returns:
        (job, created). When a live job for the same target already exists it
        is returned with created=False and nothing new is queued.
    """
    project = (
        db.query(Project)
        .filter(Project.project_id == project_id)
        .populate_existing()
        .first()
    )
    if not project:
        raise ProjectNotFoundError(project_id)
    version = _resolve_version(project, version)
    key = _active_key(job_type.value, project_id, version)

    for _ in range(_ENQUEUE_ATTEMPTS):
        existing = get_active_job(db, job_type, project_id, version)
        if existing:
            logger.info(
                "render_job_deduplicated job_id=%s job_type=%s project_id=%s version=%s",
                existing.job_id,
                job_type.value,
                project_id,
                version,
            )
            return existing, False

        job = RenderJobModel(
            project_id=project_id,
            version=version,
            job_type=job_type.value,
            status=RenderJobStatus.PENDING.value,
            progress=0,
            active_key=key,
            options=options or {},
        )
        db.add(job)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            continue

        db.refresh(job)
        logger.info(
            "render_job_created job_id=%s job_type=%s project_id=%s version=%s",
            job.job_id,
            job_type.value,
            project_id,
            version,
        )
        _emit(job, 0)
        if dispatch:
            job = dispatch_render_job(db, job.job_id)
        return job, True

    existing = get_active_job(db, job_type, project_id, version)
    if existing:
        return existing, False
    raise StateError(f"Could not enqueue {job_type.value} job for {project_id}@v{version}")


def request_proxy(
    db: DBSession, project_id: UUID, version: int | None = None
) -> tuple[RenderJobModel, bool]:
    project = (
        db.query(Project)
        .filter(Project.project_id == project_id)
        .populate_existing()
        .first()
    )
    if not project:
        raise ProjectNotFoundError(project_id)
    return enqueue_render_job(
        db, RenderJobType.PROXY, project_id, _resolve_version(project, version)
    )


def request_export(
    db: DBSession,
    project_id: UUID,
    version: int | None = None,
    resolution: str = DEFAULT_EXPORT_RESOLUTION,
    export_format: ExportFormat = ExportFormat.MP4,
) -> tuple[int, ExportVersion | None, RenderJobModel | None]:
    """
    Ask for a full-resolution export.

    Returns:
        (version, existing_export, job). Exactly one of existing_export and
        job is set: an export that already exists is returned without
        queueing anything.
    """
    project = (
        db.query(Project)
        .filter(Project.project_id == project_id)
        .populate_existing()
        .first()
    )
    if not project:
        raise ProjectNotFoundError(project_id)
    version = _resolve_version(project, version)

    existing = export_operator.find_existing_export(db, project_id, version)
    if existing:
        return version, existing, None

    job, _ = enqueue_render_job(
        db,
        RenderJobType.EXPORT,
        project_id,
        version,
        options={"resolution": resolution, "format": ExportFormat(export_format).value},
    )
    return version, None, job


def dispatch_render_job(db: DBSession, job_id: UUID) -> RenderJobModel:
    """Hand a pending or queued job to rq, or run it now in inline mode."""
    job = get_render_job(db, job_id)
    if job.status not in _CLAIMABLE:
        return job

    if RENDER_EXECUTION_MODE == "inline":
        return run_render_job(db, job_id)

    rq_job_id = _rq_job_id(job.job_id)
    db.execute(
        update(RenderJobModel)
        .where(RenderJobModel.job_id == job_id)
        .values(rq_job_id=rq_job_id)
        .execution_options(synchronize_session=False)
    )
    db.commit()

    try:
        queue_for(job.job_type).enqueue(
            execute_render_job,
            str(job.job_id),
            job_id=rq_job_id,
            job_timeout=RENDER_JOB_TIMEOUT_SECONDS + 60,
            result_ttl=3600,
            failure_ttl=86400,
        )
    except RedisError:
        # Left pending; recover_render_jobs picks it up on the next worker start.
        logger.exception("render_job_enqueue_failed job_id=%s", job_id)
        db.refresh(job)
        return job

    db.execute(
        update(RenderJobModel)
        .where(
            RenderJobModel.job_id == job_id,
            RenderJobModel.status == RenderJobStatus.PENDING.value,
        )
        .values(status=RenderJobStatus.QUEUED.value)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(job)
    if job.status == RenderJobStatus.QUEUED.value:
        _emit(job, 1)
    logger.info("render_job_queued job_id=%s queue=%s", job_id, job.job_type)
    return job


# =============================================================================
# EXECUTION
# =============================================================================


def _claim(db: DBSession, job_id: UUID) -> bool:
    result = db.execute(
        update(RenderJobModel)
        .where(
            RenderJobModel.job_id == job_id,
            RenderJobModel.status.in_(_CLAIMABLE),
        )
        .values(
            status=RenderJobStatus.PROCESSING.value,
            progress=5,
            started_at=utcnow(),
            attempts=RenderJobModel.attempts + 1,
            error_code=None,
            error_message=None,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def _set_progress(db: DBSession, job: RenderJobModel, progress: int, step: int) -> None:
    db.execute(
        update(RenderJobModel)
        .where(
            RenderJobModel.job_id == job.job_id,
            RenderJobModel.status == RenderJobStatus.PROCESSING.value,
        )
        .values(progress=progress)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(job)
    _emit(job, _next_sequence(job, step))


def _finish(
    db: DBSession,
    job: RenderJobModel,
    status: RenderJobStatus,
    **values: Any,
) -> RenderJobModel:
    if status == RenderJobStatus.COMPLETED:
        values.setdefault("progress", 100)
    db.execute(
        update(RenderJobModel)
        .where(
            RenderJobModel.job_id == job.job_id,
            RenderJobModel.status == RenderJobStatus.PROCESSING.value,
        )
        .values(status=status.value, active_key=None, completed_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(job)
    _emit(job, _next_sequence(job, 999))
    return job


def _source_path(db: DBSession, project: Project):
    if project.source_asset_id is None:
        raise ValidationError(f"Project {project.project_id} has no source asset")
    asset = (
        db.query(SourceAsset)
        .filter(SourceAsset.asset_id == project.source_asset_id)
        .first()
    )
    if not asset or not storage.exists(asset.storage_key):
        raise ValidationError(
            f"Source media for project {project.project_id} is missing from storage"
        )
    return storage.resolve_path(asset.storage_key)


def _transcode(
    db: DBSession,
    job: RenderJobModel,
    project: Project,
    preset: RenderPreset,
    output_key: str,
    transcoder: Transcoder,
) -> float | None:
    source_path = _source_path(db, project)
    operations = edit_log_operator.build_edit_decision_list(db, job.project_id, job.version)

    temp_path = storage.temp_output_path(f".{preset.container.value}")
    try:
        manifest = RenderManifest(
            job_id=job.job_id,
            project_id=job.project_id,
            version=job.version,
            source_path=str(source_path),
            operations=operations,
            preset=preset,
            output_path=str(temp_path),
        )
        _set_progress(db, job, 10, 10)
        result = transcoder.render(manifest)
        storage.commit_file(temp_path, output_key)
    finally:
        storage.discard_temp(temp_path)
    _set_progress(db, job, 90, 90)
    return result.duration_seconds


def update_latest_proxy_pointer(
    db: DBSession, project_id: UUID, version: int, storage_key: str
) -> bool:
    result = db.execute(
        update(Project)
        .where(
            Project.project_id == project_id,
            or_(
                Project.latest_proxy_version.is_(None),
                Project.latest_proxy_version <= version,
            ),
        )
        .values(
            latest_proxy_key=storage_key,
            latest_proxy_version=version,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def _process_proxy(
    db: DBSession, job: RenderJobModel, project: Project, transcoder: Transcoder
) -> dict[str, Any]:
    key = storage.proxy_key(job.project_id, job.version)
    cached = storage.exists(key)
    if not cached:
        _transcode(db, job, project, RenderPreset.proxy_preview(), key, transcoder)

    update_latest_proxy_pointer(db, job.project_id, job.version, key)
    return {
        "output_key": key,
        "output_size_bytes": storage.size_of(key),
        "cached": cached,
    }


def _process_export(
    db: DBSession, job: RenderJobModel, project: Project, transcoder: Transcoder
) -> dict[str, Any]:
    existing = export_operator.find_existing_export(db, job.project_id, job.version)
    if existing:
        return {
            "output_key": existing.storage_key,
            "output_size_bytes": existing.size_bytes,
            "export_id": existing.export_id,
            "cached": True,
        }

    options = job.options or {}
    resolution = options.get("resolution") or DEFAULT_EXPORT_RESOLUTION
    export_format = ExportFormat(options.get("format") or ExportFormat.MP4.value)
    key = storage.export_key(job.project_id, job.version, export_format.value)

    duration = None
    cached = storage.exists(key)
    if not cached:
        duration = _transcode(
            db,
            job,
            project,
            RenderPreset.full_export(resolution, export_format),
            key,
            transcoder,
        )

    export, _ = export_operator.register_export(
        db,
        job.project_id,
        job.version,
        storage_key=key,
        size_bytes=storage.size_of(key) or 0,
        resolution=resolution,
        export_format=export_format.value,
        duration_seconds=duration,
    )
    export_operator.update_latest_export_pointer(
        db, job.project_id, export.version, export.storage_key
    )

    try:
        gc_operator.run_retention(db, job.project_id)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("render_job_retention_failed project_id=%s", job.project_id)

    return {
        "output_key": export.storage_key,
        "output_size_bytes": export.size_bytes,
        "export_id": export.export_id,
        "cached": cached,
    }


def run_render_job(
    db: DBSession,
    job_id: UUID,
    transcoder: Transcoder | None = None,
) -> RenderJobModel:
    """
    Execute one job in the current process.

    A job that cannot be claimed (already running, finished or cancelled) is
    returned unchanged. Engine failures mark the job failed and leave the
    project pointers as they were.
    """
    transcoder = transcoder or get_transcoder()

    if not _claim(db, job_id):
        job = get_render_job(db, job_id)
        logger.info("render_job_skip job_id=%s status=%s", job_id, job.status)
        return job

    job = get_render_job(db, job_id)
    db.refresh(job)
    _emit(job, _next_sequence(job, 0))
    logger.info(
        "render_job_start job_id=%s job_type=%s project_id=%s version=%s attempt=%s",
        job.job_id,
        job.job_type,
        job.project_id,
        job.version,
        job.attempts,
    )

    try:
        project = (
            db.query(Project)
            .filter(Project.project_id == job.project_id)
            .populate_existing()
            .first()
        )
        if not project:
            raise ProjectNotFoundError(job.project_id)
        if job.job_type == RenderJobType.PROXY.value:
            outcome = _process_proxy(db, job, project, transcoder)
        else:
            outcome = _process_export(db, job, project, transcoder)
    except EditorError as e:
        db.rollback()
        log = logger.error if isinstance(e, TranscodingFailure) else logger.warning
        log(
            "render_job_failed job_id=%s error_code=%s error=%s",
            job.job_id,
            e.code,
            e,
        )
        return _finish(
            db,
            job,
            RenderJobStatus.FAILED,
            error_code=e.code,
            error_message=str(e),
        )
    except Exception as e:
        db.rollback()
        logger.exception("render_job_crashed job_id=%s", job.job_id)
        _finish(
            db,
            job,
            RenderJobStatus.FAILED,
            error_code="internal_error",
            error_message=f"{type(e).__name__}: {e}",
        )
        raise

    job = _finish(db, job, RenderJobStatus.COMPLETED, **outcome)
    logger.info(
        "render_job_completed job_id=%s output_key=%s cached=%s",
        job.job_id,
        job.output_key,
        job.cached,
    )
    return job


def execute_render_job(job_id: str) -> str:
    """rq entry point."""
    db = SessionLocal()
    try:
        job = run_render_job(db, UUID(job_id))
        return job.status
    finally:
        db.close()


# =============================================================================
# STATUS / CANCEL / CLEANUP / RECOVERY
# =============================================================================


def get_render_job(db: DBSession, job_id: UUID) -> RenderJobModel:
    job = (
        db.query(RenderJobModel)
        .filter(RenderJobModel.job_id == job_id)
        .populate_existing()
        .first()
    )
    if not job:
        raise RenderJobNotFoundError(job_id)
    return job


def list_render_jobs(
    db: DBSession,
    project_id: UUID,
    status: RenderJobStatus | None = None,
    job_type: RenderJobType | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[RenderJobModel], int]:
    query = (
        db.query(RenderJobModel)
        .filter(RenderJobModel.project_id == project_id)
        .populate_existing()
    )

    if status:
        query = query.filter(RenderJobModel.status == status.value)
    if job_type:
        query = query.filter(RenderJobModel.job_type == job_type.value)

    total = query.count()
    jobs = (
        query.order_by(RenderJobModel.created_at.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )

    return jobs, total


def cancel_render_job(
    db: DBSession,
    job_id: UUID,
    reason: str | None = None,
) -> RenderJobModel:
    """Remove a job that has not started yet. Running jobs cannot be cancelled."""
    job = get_render_job(db, job_id)

    result = db.execute(
        update(RenderJobModel)
        .where(
            RenderJobModel.job_id == job_id,
            RenderJobModel.status.in_(_CLAIMABLE),
        )
        .values(
            status=RenderJobStatus.CANCELLED.value,
            active_key=None,
            error_message=reason or "Cancelled by user",
            completed_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        db.refresh(job)
        raise StateError(f"Cannot cancel job in {job.status} state")
    db.commit()
    db.refresh(job)

    if job.rq_job_id:
        try:
            Job.fetch(job.rq_job_id, connection=redis_rq).cancel()
        except (NoSuchJobError, InvalidJobOperation):
            pass
        except RedisError:
            logger.warning("render_job_rq_cancel_failed job_id=%s", job_id, exc_info=True)

    _emit(job, _next_sequence(job, 999))
    logger.info(f"Cancelled render job {job_id}: {reason}")
    return job


def clear_finished_jobs(db: DBSession, ttl_seconds: int = 3600) -> int:
    """Delete finished job rows older than ttl_seconds. Returns the count."""
    cutoff = utcnow() - timedelta(seconds=ttl_seconds)
    finished = (
        db.query(RenderJobModel.job_id, RenderJobModel.completed_at)
        .filter(RenderJobModel.status.in_(_FINISHED))
        .all()
    )
    stale = [
        job_id
        for job_id, completed_at in finished
        if completed_at is not None and as_utc(completed_at) < cutoff
    ]
    if not stale:
        return 0

    db.execute(
        delete(RenderJobModel)
        .where(
            RenderJobModel.job_id.in_(stale),
            RenderJobModel.status.in_(_FINISHED),
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    logger.info("render_jobs_cleared count=%s ttl_seconds=%s", len(stale), ttl_seconds)
    return len(stale)


def recover_render_jobs(db: DBSession) -> int:
    """
    Re-dispatch jobs interrupted by a crash or never handed to the queue.

    Jobs stuck in processing go back to queued first. Re-running them is safe
    because workers skip work whose artifact already exists.
    """
    db.execute(
        update(RenderJobModel)
        .where(RenderJobModel.status == RenderJobStatus.PROCESSING.value)
        .values(status=RenderJobStatus.QUEUED.value, progress=0)
        .execution_options(synchronize_session=False)
    )
    db.commit()

    job_ids = [
        job_id
        for (job_id,) in db.query(RenderJobModel.job_id)
        .filter(RenderJobModel.status.in_(_CLAIMABLE))
        .order_by(RenderJobModel.created_at.asc())
        .all()
    ]
    for job_id in job_ids:
        dispatch_render_job(db, job_id)

    if job_ids:
        logger.info("render_jobs_recovered count=%s", len(job_ids))
    return len(job_ids)


def render_job_to_response(job: RenderJobModel) -> RenderJobResponse:
    return RenderJobResponse(
        job_id=job.job_id,
        project_id=job.project_id,
        job_type=RenderJobType(job.job_type),
        status=RenderJobStatus(job.status),
        progress=job.progress,
        version=job.version,
        options=job.options or {},
        output_key=job.output_key,
        output_size_bytes=job.output_size_bytes,
        export_id=job.export_id,
        cached=job.cached,
        error_code=job.error_code,
        error_message=job.error_message,
        created_at=job.created_at,
        started_at=job.started_at,
        completed_at=job.completed_at,
    )
