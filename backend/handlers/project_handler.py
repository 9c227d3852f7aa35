import logging
from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from sqlalchemy.orm import Session

from database.base import get_db
from database.models import Project
from dependencies.project import require_project
from handlers.http_errors import to_http_exception
from models.api_models import (
    ProjectCreateResponse,
    ProjectGetResponse,
    ProjectListResponse,
)
from operators.errors import EditorError
from operators.project_operator import (
    create_project,
    list_projects,
    project_to_response,
    release_project_source,
)


router = APIRouter(prefix="/projects", tags=["projects"])
logger = logging.getLogger(__name__)


@router.post("/", response_model=ProjectCreateResponse)
async def project_create(
    project_name: str = Form(...),
    source: UploadFile | None = File(None),
    source_asset_id: UUID | None = Form(None),
    db: Session = Depends(get_db),
):
    source_bytes = None
    source_name = None
    content_type = None
    if source is not None:
        source_bytes = await source.read()
        if not source_bytes:
            raise HTTPException(
                status_code=400,
                detail={"code": "validation_error", "message": "Source file is empty"},
            )
        source_name = source.filename
        content_type = source.content_type

    try:
        project, duplicate = create_project(
            db,
            project_name,
            source_bytes=source_bytes,
            source_name=source_name,
            content_type=content_type,
            source_asset_id=source_asset_id,
        )
    except EditorError as e:
        raise to_http_exception(e)

    logger.info(
        "project_created project_id=%s source_asset_id=%s duplicate=%s",
        project.project_id,
        project.source_asset_id,
        duplicate,
    )
    return ProjectCreateResponse(
        ok=True,
        project=project_to_response(project),
        source_duplicate=duplicate,
    )


@router.get("/", response_model=ProjectListResponse)
async def project_list(db: Session = Depends(get_db)):
    projects = list_projects(db)
    return ProjectListResponse(
        ok=True,
        projects=[project_to_response(p) for p in projects],
    )


@router.get("/{project_id}", response_model=ProjectGetResponse)
async def project_get(project: Project = Depends(require_project)):
    return ProjectGetResponse(ok=True, project=project_to_response(project))


@router.post("/{project_id}/release-source", response_model=ProjectGetResponse)
async def project_release_source(
    project: Project = Depends(require_project),
    db: Session = Depends(get_db),
):
    try:
        project = release_project_source(project.project_id, db)
    except EditorError as e:
        raise to_http_exception(e)
    return ProjectGetResponse(ok=True, project=project_to_response(project))
