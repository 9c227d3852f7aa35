"""
Request and report schemas for the export garbage collector.

Archive and delete accept a batch of export ids and answer with one
``GCItemResult`` per id, so a failure on one id never hides the others.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field


class GCCalculateRequest(BaseModel):
    ttl_days: int = Field(default=30, ge=0)
    keep_latest_n: int = Field(default=3, ge=0)


class GCCandidate(BaseModel):
    export_id: UUID
    project_id: UUID
    project_name: str | None = None
    version: int
    storage_key: str
    size_bytes: int
    resolution: str | None = None
    duration_seconds: float | None = None
    created_at: datetime
    gc_marked_at: datetime | None = None


class GCProjectError(BaseModel):
    project_id: UUID
    error: str


class GCCalculateReport(BaseModel):
    total_projects: int = 0
    projects_processed: int = 0
    candidates_marked: int = 0
    candidates_already_marked: int = 0
    exports_pinned: int = 0
    exports_kept: int = 0
    errors: list[GCProjectError] = Field(default_factory=list)
    candidates: list[GCCandidate] = Field(default_factory=list)


class GCCandidateListResponse(BaseModel):
    ok: bool = True
    count: int
    total_size: int
    total_size_mb: float
    candidates: list[GCCandidate]


class GCBatchRequest(BaseModel):
    export_ids: list[UUID] = Field(min_length=1)


class GCDeleteRequest(GCBatchRequest):
    confirmed: bool = False


class GCItemResult(BaseModel):
    export_id: UUID
    ok: bool
    storage_key: str | None = None
    bytes_freed: int = 0
    error_code: str | None = None
    error: str | None = None


class GCArchiveReport(BaseModel):
    total_requested: int
    archived: int = 0
    failed: int = 0
    results: list[GCItemResult] = Field(default_factory=list)


class GCDeleteReport(BaseModel):
    total_requested: int
    deleted: int = 0
    failed: int = 0
    bytes_freed: int = 0
    results: list[GCItemResult] = Field(default_factory=list)


class UnusedAsset(BaseModel):
    asset_id: UUID
    content_hash: str
    storage_key: str
    size_bytes: int
    ref_count: int
    created_at: datetime


class UnusedAssetsResponse(BaseModel):
    ok: bool = True
    count: int
    total_size: int
    total_size_mb: float
    assets: list[UnusedAsset]


class AssetPurgeReport(BaseModel):
    purged: int = 0
    bytes_freed: int = 0
    skipped: list[UUID] = Field(default_factory=list)
