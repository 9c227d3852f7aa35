import os

import dotenv
from redis import Redis
from rq import Queue

dotenv.load_dotenv()

REDIS_RQ_URL = os.getenv("REDIS_RQ_URL", "redis://localhost:6379/1")
REDIS_EVENTS_URL = os.getenv("REDIS_EVENTS_URL", REDIS_RQ_URL)

PROXY_QUEUE = "proxy"
EXPORT_QUEUE = "export"

# rq stores pickled payloads, so its connection must not decode responses.
redis_rq = Redis.from_url(REDIS_RQ_URL)
redis_events = Redis.from_url(REDIS_EVENTS_URL, decode_responses=True)

proxy_queue = Queue(PROXY_QUEUE, connection=redis_rq)
export_queue = Queue(EXPORT_QUEUE, connection=redis_rq)


def queue_for(job_type: str) -> Queue:
    return proxy_queue if job_type == PROXY_QUEUE else export_queue


def init_redis() -> None:
    redis_rq.ping()
    redis_events.ping()
