"""
Pydantic models for the edit log.

Operation descriptors are opaque to the backend: only the external
transcoding engine interprets ``type`` and ``parameters``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class EditOperationSpec(BaseModel):
    """Single operation descriptor: a ``{type, parameters}`` pair."""

    model_config = ConfigDict(extra="forbid")

    type: str = Field(min_length=1, description="Operation type understood by the engine")
    parameters: dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("parameters", "params"),
        description="Engine-specific parameters",
    )


class AppendOperationsRequest(BaseModel):
    user_id: str = Field(min_length=1)
    ops: list[EditOperationSpec] = Field(min_length=1)


class AppendOperationsResponse(BaseModel):
    ok: bool = True
    project_id: UUID
    version: int
    batch_id: UUID
    job_id: UUID | None = None
    ops: list[EditOperationSpec]


class EditBatchResponse(BaseModel):
    batch_id: UUID
    version: int
    user_id: str
    ops: list[EditOperationSpec]
    created_at: datetime


class EditBatchListResponse(BaseModel):
    ok: bool = True
    project_id: UUID
    current_version: int
    operations: list[EditBatchResponse]
