from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel


class ExportState(str, Enum):
    """Lifecycle of an export version; only moves forward, except pin -> active."""

    ACTIVE = "active"
    GC_CANDIDATE = "gc_candidate"
    ARCHIVED = "archived"
    DELETED = "deleted"


class ExportVersionResponse(BaseModel):
    export_id: UUID
    project_id: UUID
    version: int
    storage_key: str
    size_bytes: int
    resolution: str | None = None
    format: str
    duration_seconds: float | None = None
    status: ExportState
    pinned: bool
    gc_candidate: bool
    gc_marked_at: datetime | None = None
    archived_at: datetime | None = None
    deleted_at: datetime | None = None
    created_at: datetime


class ExportListResponse(BaseModel):
    ok: bool = True
    project_id: UUID
    latest_export_key: str | None = None
    exports: list[ExportVersionResponse]


class PinToggleResponse(BaseModel):
    ok: bool = True
    export: ExportVersionResponse


class ExportGetResponse(BaseModel):
    ok: bool = True
    export: ExportVersionResponse
