from uuid import UUID

from sqlalchemy import update
from sqlalchemy.orm import Session as DBSession

from database.models import Project
from models.api_models import ProjectResponse
from operators import content_store_operator
from operators.errors import ProjectNotFoundError, ValidationError
from utils.time_utils import utcnow


def get_project_by_id(project_id: UUID, db: DBSession) -> Project | None:
    return (
        db.query(Project)
        .filter(Project.project_id == project_id)
        .populate_existing()
        .first()
    )


def get_project(project_id: UUID, db: DBSession) -> Project:
    project = get_project_by_id(project_id, db)
    if not project:
        raise ProjectNotFoundError(project_id)
    return project


def create_project(
    db: DBSession,
    name: str,
    source_bytes: bytes | None = None,
    source_name: str | None = None,
    content_type: str | None = None,
    source_asset_id: UUID | None = None,
) -> tuple[Project, bool]:
    """
    Create a project pointing at its source media.

    The source is either a fresh upload (deduplicated by content hash) or an
    existing asset id; either way the asset gains one reference.

    Returns:
        (project, source_was_duplicate)
    """
    if not name or not name.strip():
        raise ValidationError("project_name is required")
    if source_bytes is not None and source_asset_id is not None:
        raise ValidationError("Provide either a source upload or source_asset_id, not both")

    is_duplicate = False
    asset_id = None
    if source_bytes is not None:
        asset, is_duplicate = content_store_operator.ingest(
            db, source_bytes, original_name=source_name, content_type=content_type
        )
        asset_id = asset.asset_id
    elif source_asset_id is not None:
        asset = content_store_operator.retain(db, source_asset_id)
        asset_id = asset.asset_id
        is_duplicate = True

    project = Project(
        project_name=name.strip(),
        source_asset_id=asset_id,
        current_version=0,
    )
    db.add(project)
    try:
        db.commit()
    except Exception:
        db.rollback()
        if asset_id is not None:
            content_store_operator.release(db, asset_id)
        raise
    db.refresh(project)
    return project, is_duplicate


def list_projects(db: DBSession) -> list[Project]:
    return db.query(Project).order_by(Project.updated_at.desc()).populate_existing().all()


def release_project_source(project_id: UUID, db: DBSession) -> Project:
    """Detach the project's source asset and drop its reference."""
    project = get_project(project_id, db)
    asset_id = project.source_asset_id
    if asset_id is None:
        return project

    result = db.execute(
        update(Project)
        .where(
            Project.project_id == project_id,
            Project.source_asset_id == asset_id,
        )
        .values(source_asset_id=None, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        db.refresh(project)
        return project
    db.commit()

    content_store_operator.release(db, asset_id)
    db.refresh(project)
    return project


def project_to_response(project: Project) -> ProjectResponse:
    return ProjectResponse(
        project_id=project.project_id,
        project_name=project.project_name,
        source_asset_id=project.source_asset_id,
        current_version=project.current_version,
        latest_proxy_key=project.latest_proxy_key,
        latest_export_key=project.latest_export_key,
        created_at=project.created_at,
        updated_at=project.updated_at,
    )
