"""
Edit Log Operator - append-only, per-project versioned operation batches.

This module owns Project.current_version:
- append() assigns the next version and stores the batch atomically
- list_up_to() rebuilds the edit-decision list for a version
- latest_version() reports the current head

Appends on the same project are serialized by an in-process lock keyed by
project id, and the version bump itself is a compare-and-swap against the
persisted current_version so that separate processes cannot both claim the
same version. Appends on different projects never block each other.
"""

import logging
import os
import threading
import weakref
from typing import Any
from uuid import UUID

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session as DBSession

from database.models import EditOperation, Project
from models.edit_models import EditOperationSpec
from operators.errors import ConflictError, ProjectNotFoundError, ValidationError
from utils.time_utils import utcnow

logger = logging.getLogger(__name__)

EDIT_LOG_MAX_RETRIES = int(os.getenv("EDIT_LOG_MAX_RETRIES", "5"))

_ops_adapter = TypeAdapter(list[EditOperationSpec])

_locks_guard = threading.Lock()
# Entries disappear once no append holds the lock.
_project_locks: weakref.WeakValueDictionary = weakref.WeakValueDictionary()


def _project_lock(project_id: UUID) -> threading.Lock:
    with _locks_guard:
        lock = _project_locks.get(project_id)
        if lock is None:
            lock = threading.Lock()
            _project_locks[project_id] = lock
        return lock


def validate_ops(ops: Any) -> list[dict[str, Any]]:
    """Normalize a raw op list to ``[{"type", "parameters"}]`` or raise ValidationError."""
    if not isinstance(ops, list) or not ops:
        raise ValidationError("ops must be a non-empty list")
    try:
        specs = _ops_adapter.validate_python(ops)
    except PydanticValidationError as e:
        raise ValidationError(f"Malformed operation list: {e.errors(include_url=False)}") from e
    return [spec.model_dump() for spec in specs]


def append(
    db: DBSession,
    project_id: UUID,
    user_id: str,
    ops: list[Any],
    max_retries: int = EDIT_LOG_MAX_RETRIES,
) -> tuple[int, UUID]:
    """
    Append a batch of operations and advance the project's version by one.

    Returns:
        (version, batch_id)

    Raises:
        ValidationError: ops empty or malformed, or user_id missing
        ProjectNotFoundError: unknown project
        ConflictError: the version race was lost max_retries times
    """
    if not user_id or not str(user_id).strip():
        raise ValidationError("user_id is required")
    normalized = validate_ops(ops)

    with _project_lock(project_id):
        for attempt in range(1, max_retries + 1):
            current = (
                db.query(Project.current_version)
                .filter(Project.project_id == project_id)
                .scalar()
            )
            if current is None:
                raise ProjectNotFoundError(project_id)

            next_version = current + 1
            batch = EditOperation(
                project_id=project_id,
                version=next_version,
                ops=normalized,
                user_id=str(user_id),
            )
            try:
                db.add(batch)
                db.flush()
                claimed = db.execute(
                    update(Project)
                    .where(
                        Project.project_id == project_id,
                        Project.current_version == current,
                    )
                    .values(current_version=next_version, updated_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                if claimed.rowcount != 1:
                    db.rollback()
                    logger.info(
                        "edit_log_cas_conflict project_id=%s version=%s attempt=%s",
                        project_id,
                        next_version,
                        attempt,
                    )
                    continue
                db.commit()
            except IntegrityError:
                db.rollback()
                logger.info(
                    "edit_log_version_taken project_id=%s version=%s attempt=%s",
                    project_id,
                    next_version,
                    attempt,
                )
                continue

            logger.info(
                "edit_log_append project_id=%s version=%s batch_id=%s ops=%s",
                project_id,
                next_version,
                batch.batch_id,
                len(normalized),
            )
            return next_version, batch.batch_id

    raise ConflictError(project_id, max_retries)


def latest_version(db: DBSession, project_id: UUID) -> int:
    project = (
        db.query(Project)
        .filter(Project.project_id == project_id)
        .populate_existing()
        .first()
    )
    if not project:
        raise ProjectNotFoundError(project_id)
    return project.current_version


def list_up_to(db: DBSession, project_id: UUID, version: int) -> list[EditOperation]:
    """All batches with batch.version <= version, ascending."""
    if db.query(Project.project_id).filter(Project.project_id == project_id).first() is None:
        raise ProjectNotFoundError(project_id)
    return (
        db.query(EditOperation)
        .filter(
            EditOperation.project_id == project_id,
            EditOperation.version <= version,
        )
        .order_by(EditOperation.version.asc())
        .all()
    )


def list_operations(
    db: DBSession,
    project_id: UUID,
    version: int | None = None,
) -> tuple[int, list[EditOperation]]:
    """Batches up to ``version`` (all when None) together with current_version."""
    current = latest_version(db, project_id)
    target = current if version is None else version
    if target < 0:
        raise ValidationError("version must be >= 0")
    return current, list_up_to(db, project_id, target)


def flatten_operations(batches: list[EditOperation]) -> list[dict[str, Any]]:
    """Concatenate each batch's operations in version order into one EDL."""
    sequence: list[dict[str, Any]] = []
    for batch in sorted(batches, key=lambda b: b.version):
        for op in batch.ops or []:
            sequence.append(
                {"type": op["type"], "parameters": dict(op.get("parameters") or {})}
            )
    return sequence


def build_edit_decision_list(
    db: DBSession, project_id: UUID, version: int
) -> list[dict[str, Any]]:
    return flatten_operations(list_up_to(db, project_id, version))
