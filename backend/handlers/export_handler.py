from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from database.base import get_db
from database.models import Project
from dependencies.project import require_project
from handlers.http_errors import to_http_exception
from models.export_models import ExportGetResponse, ExportListResponse, PinToggleResponse
from operators.errors import EditorError
from operators.export_operator import (
    export_to_response,
    get_export,
    list_exports,
    toggle_pin,
    toggle_pin_by_version,
)

router = APIRouter(prefix="/projects/{project_id}", tags=["exports"])


def _not_found(export_id: UUID) -> HTTPException:
    return HTTPException(
        status_code=404,
        detail={"code": "not_found", "message": f"Export version not found: {export_id}"},
    )


@router.get("/exports", response_model=ExportListResponse)
async def exports_list(
    project: Project = Depends(require_project),
    db: Session = Depends(get_db),
):
    exports = list_exports(db, project.project_id)
    return ExportListResponse(
        ok=True,
        project_id=project.project_id,
        latest_export_key=project.latest_export_key,
        exports=[export_to_response(e) for e in exports],
    )


@router.get("/exports/{export_id}", response_model=ExportGetResponse)
async def export_get(
    export_id: UUID,
    project: Project = Depends(require_project),
    db: Session = Depends(get_db),
):
    try:
        export = get_export(db, export_id)
    except EditorError as e:
        raise to_http_exception(e)
    if export.project_id != project.project_id:
        raise _not_found(export_id)
    return ExportGetResponse(ok=True, export=export_to_response(export))


@router.post("/exports/{export_id}/pin", response_model=PinToggleResponse)
async def export_toggle_pin(
    export_id: UUID,
    project: Project = Depends(require_project),
    db: Session = Depends(get_db),
):
    try:
        export = get_export(db, export_id)
        if export.project_id != project.project_id:
            raise _not_found(export_id)
        export = toggle_pin(db, export_id)
    except EditorError as e:
        raise to_http_exception(e)
    return PinToggleResponse(ok=True, export=export_to_response(export))


@router.post("/versions/{version}/pin", response_model=PinToggleResponse)
async def version_toggle_pin(
    version: int,
    project: Project = Depends(require_project),
    db: Session = Depends(get_db),
):
    try:
        export = toggle_pin_by_version(db, project.project_id, version)
    except EditorError as e:
        raise to_http_exception(e)
    return PinToggleResponse(ok=True, export=export_to_response(export))
