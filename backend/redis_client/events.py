"""
Render event notifications.

Events go out on the ``render-events:{project_id}`` pub/sub channel. Delivery
is at-least-once: a consumer may see the same event_id twice and should order
by (job_id, sequence).
"""

from __future__ import annotations

import logging
from uuid import UUID, uuid4

from redis.exceptions import RedisError

from models.render_models import RenderEvent, RenderJobStatus, RenderJobType
from redis_client import redis_events
from utils.time_utils import utcnow

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "render-events"


def channel_for(project_id: UUID) -> str:
    return f"{CHANNEL_PREFIX}:{project_id}"


def build_render_event(
    job,
    sequence: int,
    status: RenderJobStatus | None = None,
) -> RenderEvent:
    return RenderEvent(
        event_id=uuid4(),
        project_id=job.project_id,
        job_id=job.job_id,
        job_type=RenderJobType(job.job_type),
        version=job.version,
        status=status or RenderJobStatus(job.status),
        progress=job.progress or 0,
        sequence=sequence,
        output_key=job.output_key,
        error_code=job.error_code,
        error_message=job.error_message,
        emitted_at=utcnow(),
    )


def publish_render_event(event: RenderEvent) -> bool:
    """Publish one event. Returns False instead of raising when redis is down."""
    try:
        redis_events.publish(channel_for(event.project_id), event.model_dump_json())
        return True
    except RedisError:
        logger.exception(
            "Error publishing render event job_id=%s status=%s sequence=%s",
            event.job_id,
            event.status.value,
            event.sequence,
        )
        return False
