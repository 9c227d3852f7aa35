import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from database.base import get_db
from database.models import Project
from dependencies.project import require_project
from handlers.http_errors import to_http_exception
from models.render_models import (
    ExportCreateResponse,
    ExportRequest,
    ProxyRequest,
    RenderJobCancelResponse,
    RenderJobCreateResponse,
    RenderJobListResponse,
    RenderJobStatus,
    RenderJobStatusResponse,
    RenderJobType,
    RenderPreset,
    RenderPresetsResponse,
)
from operators.errors import EditorError
from operators.render_operator import (
    cancel_render_job,
    get_render_job,
    list_render_jobs,
    render_job_to_response,
    request_export,
    request_proxy,
)


router = APIRouter(prefix="/projects/{project_id}", tags=["render"])
presets_router = APIRouter(prefix="/render", tags=["render"])
logger = logging.getLogger(__name__)


@router.post("/exports", response_model=ExportCreateResponse)
async def create_export(
    request: ExportRequest | None = None,
    project: Project = Depends(require_project),
    db: Session = Depends(get_db),
):
    request = request or ExportRequest()
    try:
        version, existing, job = await run_in_threadpool(
            request_export,
            db,
            project.project_id,
            request.version,
            request.resolution,
            request.format,
        )
    except EditorError as e:
        raise to_http_exception(e)

    if existing:
        return ExportCreateResponse(
            ok=True,
            project_id=project.project_id,
            version=version,
            existing=True,
            export_id=existing.export_id,
            storage_key=existing.storage_key,
        )

    return ExportCreateResponse(
        ok=True,
        project_id=project.project_id,
        version=version,
        existing=False,
        export_id=job.export_id,
        storage_key=job.output_key,
        job=render_job_to_response(job),
    )


@router.post("/proxy", response_model=RenderJobCreateResponse)
async def create_proxy(
    request: ProxyRequest | None = None,
    project: Project = Depends(require_project),
    db: Session = Depends(get_db),
):
    request = request or ProxyRequest()
    try:
        job, _ = await run_in_threadpool(
            request_proxy, db, project.project_id, request.version
        )
    except EditorError as e:
        raise to_http_exception(e)

    return RenderJobCreateResponse(ok=True, job=render_job_to_response(job))


@router.get("/renders", response_model=RenderJobListResponse)
async def list_renders(
    project: Project = Depends(require_project),
    db: Session = Depends(get_db),
    status: RenderJobStatus | None = Query(None, description="Filter by status"),
    job_type: RenderJobType | None = Query(None, description="Filter by job type"),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    jobs, total = list_render_jobs(
        db=db,
        project_id=project.project_id,
        status=status,
        job_type=job_type,
        limit=limit,
        offset=offset,
    )

    return RenderJobListResponse(
        ok=True,
        jobs=[render_job_to_response(job) for job in jobs],
        total=total,
    )


@router.get("/renders/{job_id}", response_model=RenderJobStatusResponse)
async def get_render_status(
    job_id: UUID,
    project: Project = Depends(require_project),
    db: Session = Depends(get_db),
):
    try:
        job = get_render_job(db, job_id)
    except EditorError as e:
        raise to_http_exception(e)

    if job.project_id != project.project_id:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Render job not found"},
        )

    return RenderJobStatusResponse(ok=True, job=render_job_to_response(job))


@router.post("/renders/{job_id}/cancel", response_model=RenderJobCancelResponse)
async def cancel_render(
    job_id: UUID,
    project: Project = Depends(require_project),
    db: Session = Depends(get_db),
    reason: str | None = Query(None),
):
    try:
        job = get_render_job(db, job_id)
        if job.project_id != project.project_id:
            raise HTTPException(
                status_code=404,
                detail={"code": "not_found", "message": "Render job not found"},
            )
        job = cancel_render_job(db, job_id, reason)
    except EditorError as e:
        raise to_http_exception(e)

    return RenderJobCancelResponse(ok=True, job=render_job_to_response(job))


@presets_router.get("/presets", response_model=RenderPresetsResponse)
async def get_render_presets():
    return RenderPresetsResponse(
        ok=True,
        presets=[
            RenderPreset.proxy_preview(),
            RenderPreset.full_export(),
            RenderPreset.full_export("1280x720"),
        ],
    )
