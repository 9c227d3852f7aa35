"""
Pydantic models for proxy and export rendering.

This module defines:
- Render job types, statuses and quality presets
- Export request options
- Job status responses
- The manifest handed to the external transcoding engine
- Render events published to the notification channel
"""

from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


# =============================================================================
# ENUMS
# =============================================================================


class RenderJobType(str, Enum):
    """Type of render job."""

    PROXY = "proxy"  # Fast low-resolution preview of a version
    EXPORT = "export"  # Full-resolution output of a version


class RenderJobStatus(str, Enum):
    """Status of a render job."""

    PENDING = "pending"  # Row created, not yet handed to the queue
    QUEUED = "queued"  # Waiting for a worker slot
    PROCESSING = "processing"  # Worker claimed the job
    COMPLETED = "completed"  # Artifact written and pointers updated
    FAILED = "failed"  # Engine or bookkeeping failure
    CANCELLED = "cancelled"  # Removed from the queue before it started


ACTIVE_JOB_STATUSES = (
    RenderJobStatus.PENDING,
    RenderJobStatus.QUEUED,
    RenderJobStatus.PROCESSING,
)
FINISHED_JOB_STATUSES = (
    RenderJobStatus.COMPLETED,
    RenderJobStatus.FAILED,
    RenderJobStatus.CANCELLED,
)


class VideoCodec(str, Enum):
    """Supported video codecs."""

    H264 = "h264"
    H265 = "h265"
    VP9 = "vp9"


class AudioCodec(str, Enum):
    """Supported audio codecs."""

    AAC = "aac"
    OPUS = "opus"


class RenderQuality(str, Enum):
    """Preset quality levels."""

    PROXY = "proxy"  # Low resolution, fastest encode
    STANDARD = "standard"  # Full resolution export


class ExportFormat(str, Enum):
    """Container formats accepted for exports."""

    MP4 = "mp4"
    MOV = "mov"
    WEBM = "webm"


PROXY_HEIGHT = 480
DEFAULT_EXPORT_RESOLUTION = "1920x1080"
_RESOLUTION_PATTERN = re.compile(r"^(\d{2,5})x(\d{2,5})$")


# =============================================================================
# RENDER PRESETS
# =============================================================================


class VideoSettings(BaseModel):
    """Video encoding settings."""

    codec: VideoCodec = Field(default=VideoCodec.H264, description="Video codec")
    width: int | None = Field(
        default=None, description="Output width (None = keep aspect ratio)"
    )
    height: int | None = Field(
        default=None, description="Output height (None = source)"
    )
    crf: int | None = Field(
        default=23,
        ge=0,
        le=51,
        description="Constant Rate Factor (0=lossless, 23=default, 51=worst)",
    )
    preset: str = Field(
        default="medium",
        description="Encoding preset: ultrafast ... veryslow",
    )
    pixel_format: str = Field(default="yuv420p", description="Pixel format")


class AudioSettings(BaseModel):
    """Audio encoding settings."""

    codec: AudioCodec = Field(default=AudioCodec.AAC, description="Audio codec")
    bitrate: str = Field(default="192k", description="Audio bitrate")
    sample_rate: int = Field(default=48000, description="Sample rate in Hz")
    channels: int = Field(default=2, description="Number of audio channels")


class RenderPreset(BaseModel):
    """Quality profile passed to the transcoding engine."""

    name: str = Field(description="Preset name")
    quality: RenderQuality = Field(
        default=RenderQuality.STANDARD, description="Quality level"
    )
    container: ExportFormat = Field(default=ExportFormat.MP4)
    video: VideoSettings = Field(default_factory=VideoSettings)
    audio: AudioSettings = Field(default_factory=AudioSettings)

    @classmethod
    def proxy_preview(cls) -> RenderPreset:
        """Low-resolution proxy: 480 lines, fast encode."""
        return cls(
            name="Proxy Preview",
            quality=RenderQuality.PROXY,
            container=ExportFormat.MP4,
            video=VideoSettings(
                codec=VideoCodec.H264,
                width=None,
                height=PROXY_HEIGHT,
                crf=28,
                preset="veryfast",
            ),
            audio=AudioSettings(bitrate="128k"),
        )

    @classmethod
    def full_export(
        cls,
        resolution: str = DEFAULT_EXPORT_RESOLUTION,
        export_format: ExportFormat = ExportFormat.MP4,
    ) -> RenderPreset:
        """Full-resolution export in the requested container."""
        width, height = parse_resolution(resolution)
        if export_format == ExportFormat.WEBM:
            video = VideoSettings(
                codec=VideoCodec.VP9, width=width, height=height, crf=31, preset="good"
            )
            audio = AudioSettings(codec=AudioCodec.OPUS, bitrate="192k")
        else:
            video = VideoSettings(
                codec=VideoCodec.H264, width=width, height=height, crf=23, preset="medium"
            )
            audio = AudioSettings(bitrate="192k")
        return cls(
            name="Full Export",
            quality=RenderQuality.STANDARD,
            container=export_format,
            video=video,
            audio=audio,
        )


def parse_resolution(value: str) -> tuple[int, int]:
    match = _RESOLUTION_PATTERN.match(value.strip())
    if not match:
        raise ValueError(f"Invalid resolution {value!r}, expected WIDTHxHEIGHT")
    width, height = int(match.group(1)), int(match.group(2))
    if width % 2 or height % 2:
        raise ValueError(f"Resolution {value!r} must use even dimensions")
    return width, height


# =============================================================================
# REQUEST MODELS
# =============================================================================


class ExportRequest(BaseModel):
    """Request a full-resolution export of a version."""

    version: int | None = Field(
        default=None, description="Edit-log version to export (None = current)"
    )
    resolution: str = Field(default=DEFAULT_EXPORT_RESOLUTION)
    format: ExportFormat = Field(default=ExportFormat.MP4)

    @field_validator("resolution")
    @classmethod
    def _check_resolution(cls, value: str) -> str:
        parse_resolution(value)
        return value.strip()


class ProxyRequest(BaseModel):
    """Re-request a proxy render, e.g. after a failed proxy job."""

    version: int | None = Field(default=None, description="None = current version")


# =============================================================================
# RESPONSE MODELS
# =============================================================================


class RenderJobResponse(BaseModel):
    """Render job details."""

    job_id: UUID
    project_id: UUID
    job_type: RenderJobType
    status: RenderJobStatus
    progress: int = Field(ge=0, le=100, description="Progress percentage")
    version: int
    options: dict[str, Any] = Field(default_factory=dict)
    output_key: str | None = None
    output_size_bytes: int | None = None
    export_id: UUID | None = None
    cached: bool = False
    error_code: str | None = None
    error_message: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None


class RenderJobCreateResponse(BaseModel):
    ok: bool = True
    job: RenderJobResponse


class ExportCreateResponse(BaseModel):
    """Response to an export request.

    ``existing`` is true when the version had already been exported; no job
    is created in that case.
    """

    ok: bool = True
    project_id: UUID
    version: int
    existing: bool = False
    export_id: UUID | None = None
    storage_key: str | None = None
    job: RenderJobResponse | None = None


class RenderJobListResponse(BaseModel):
    ok: bool = True
    jobs: list[RenderJobResponse]
    total: int


class RenderJobStatusResponse(BaseModel):
    ok: bool = True
    job: RenderJobResponse


class RenderJobCancelResponse(BaseModel):
    ok: bool = True
    job: RenderJobResponse


class RenderPresetsResponse(BaseModel):
    ok: bool = True
    presets: list[RenderPreset]


# =============================================================================
# INTERNAL MODELS (for job processing)
# =============================================================================


class RenderManifest(BaseModel):
    """
    Manifest file passed to the external transcoding engine.

    Contains everything needed to produce one artifact:
    - Source media path
    - Flattened operation sequence (the EDL for the version)
    - Quality profile
    - Output location
    """

    job_id: UUID
    project_id: UUID
    version: int
    source_path: str
    operations: list[dict[str, Any]] = Field(default_factory=list)
    preset: RenderPreset
    output_path: str


class RenderEvent(BaseModel):
    """
    Progress/completion event for the editing surface.

    Delivery is at-least-once; consumers dedupe on ``event_id`` and order by
    ``(job_id, sequence)``.
    """

    event_id: UUID
    project_id: UUID
    job_id: UUID
    job_type: RenderJobType
    version: int
    status: RenderJobStatus
    progress: int = Field(ge=0, le=100)
    sequence: int = Field(ge=0)
    output_key: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    emitted_at: datetime


class RenderJobClearResponse(BaseModel):
    ok: bool = True
    cleared: int
