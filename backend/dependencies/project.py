from uuid import UUID
from fastapi import Depends, HTTPException, Path
from sqlalchemy.orm import Session

from database.base import get_db
from database.models import Project


def require_project(
    project_id: UUID = Path(...),
    db: Session = Depends(get_db),
) -> Project:
    project = db.query(Project).filter(Project.project_id == project_id).first()

    if not project:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": f"Project not found: {project_id}"},
        )

    return project
