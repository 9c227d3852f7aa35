from datetime import datetime
from uuid import UUID

from pydantic import BaseModel


class ProjectResponse(BaseModel):
    project_id: UUID
    project_name: str
    source_asset_id: UUID | None = None
    current_version: int
    latest_proxy_key: str | None = None
    latest_export_key: str | None = None
    created_at: datetime
    updated_at: datetime


class ProjectCreateResponse(BaseModel):
    ok: bool
    project: ProjectResponse
    source_duplicate: bool = False


class ProjectGetResponse(BaseModel):
    ok: bool
    project: ProjectResponse


class ProjectListResponse(BaseModel):
    ok: bool
    projects: list[ProjectResponse]


class AssetResponse(BaseModel):
    asset_id: UUID
    content_hash: str
    storage_key: str
    size_bytes: int
    content_type: str | None = None
    original_name: str | None = None
    ref_count: int
    created_at: datetime


class AssetIngestResponse(BaseModel):
    ok: bool
    asset: AssetResponse
    is_duplicate: bool


class AssetGetResponse(BaseModel):
    ok: bool
    asset: AssetResponse
