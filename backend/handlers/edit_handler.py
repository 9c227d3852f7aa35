"""REST API endpoints for the edit log.

Provides endpoints for:
- Appending a batch of edit operations (queues a proxy render)
- Listing the operation batches of a project
"""

import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from database.base import get_db
from database.models import EditOperation, Project
from dependencies.project import require_project
from handlers.http_errors import to_http_exception
from models.edit_models import (
    AppendOperationsRequest,
    AppendOperationsResponse,
    EditBatchListResponse,
    EditBatchResponse,
    EditOperationSpec,
)
from models.render_models import RenderJobType
from operators import edit_log_operator
from operators.errors import EditorError
from operators.render_operator import enqueue_render_job

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/projects/{project_id}", tags=["edit"])


def _batch_to_response(batch: EditOperation) -> EditBatchResponse:
    return EditBatchResponse(
        batch_id=batch.batch_id,
        version=batch.version,
        user_id=batch.user_id,
        ops=[EditOperationSpec.model_validate(op) for op in batch.ops or []],
        created_at=batch.created_at,
    )


def _append_and_queue_proxy(db: Session, project: Project, request: AppendOperationsRequest):
    ops = [op.model_dump() for op in request.ops]
    version, batch_id = edit_log_operator.append(
        db, project.project_id, request.user_id, ops
    )
    job, _ = enqueue_render_job(db, RenderJobType.PROXY, project.project_id, version)
    return version, batch_id, job


@router.post("/ops", response_model=AppendOperationsResponse)
async def append_operations(
    request: AppendOperationsRequest,
    project: Project = Depends(require_project),
    db: Session = Depends(get_db),
):
    try:
        version, batch_id, job = await run_in_threadpool(
            _append_and_queue_proxy, db, project, request
        )
    except EditorError as e:
        raise to_http_exception(e)

    logger.info(
        "ops_appended project_id=%s version=%s batch_id=%s proxy_job_id=%s",
        project.project_id,
        version,
        batch_id,
        job.job_id,
    )
    return AppendOperationsResponse(
        ok=True,
        project_id=project.project_id,
        version=version,
        batch_id=batch_id,
        job_id=job.job_id,
        ops=request.ops,
    )


@router.get("/ops", response_model=EditBatchListResponse)
async def list_operations(
    project: Project = Depends(require_project),
    db: Session = Depends(get_db),
    version: int | None = Query(None, ge=0, description="Only batches up to this version"),
):
    try:
        current_version, batches = edit_log_operator.list_operations(
            db, project.project_id, version
        )
    except EditorError as e:
        raise to_http_exception(e)

    return EditBatchListResponse(
        ok=True,
        project_id=project.project_id,
        current_version=current_version,
        operations=[_batch_to_response(batch) for batch in batches],
    )
