import os
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv
from rq import Queue, Worker
from rq.job import Job
from rq.worker import SimpleWorker, SpawnWorker
from rq.worker_pool import WorkerPool

ROOT_DIR = Path(__file__).resolve().parents[2]
load_dotenv(ROOT_DIR / ".env")

from database.base import SessionLocal, init_db  # noqa: E402
from operators.render_operator import recover_render_jobs  # noqa: E402
from redis_client import EXPORT_QUEUE, PROXY_QUEUE, init_redis, redis_rq  # noqa: E402


logger = logging.getLogger(__name__)


LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
RENDER_WORKER_CONCURRENCY = int(os.getenv("RENDER_WORKER_CONCURRENCY", "2"))


def _attach_file_handler(
    logger_name: str,
    log_file_path: Path,
    level_name: str | None = None,
) -> None:
    logger_level = (level_name or LOG_LEVEL).upper()
    logger_level_value = getattr(logging, logger_level, logging.INFO)
    log_file_path.parent.mkdir(parents=True, exist_ok=True)

    file_handler = logging.FileHandler(log_file_path, encoding="utf-8")
    file_handler.setLevel(logger_level_value)
    file_handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")
    )

    target_logger = logging.getLogger(logger_name)
    if not any(
        isinstance(handler, logging.FileHandler)
        and getattr(handler, "baseFilename", None) == str(log_file_path)
        for handler in target_logger.handlers
    ):
        target_logger.addHandler(file_handler)
    target_logger.setLevel(logger_level_value)


def _configure_worker_logging() -> None:
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    render_jobs_log = os.getenv(
        "RENDER_JOBS_LOG_FILE", "backend/log/render_jobs.log"
    ).strip()
    render_jobs_log_level = os.getenv("RENDER_JOBS_LOG_LEVEL", "INFO").strip()
    if render_jobs_log:
        render_jobs_path = Path(render_jobs_log)
        if not render_jobs_path.is_absolute():
            render_jobs_path = ROOT_DIR / render_jobs_path
        _attach_file_handler("redis_client.worker", render_jobs_path, level_name=render_jobs_log_level)
        _attach_file_handler("operators.render_operator", render_jobs_path, level_name=render_jobs_log_level)
        _attach_file_handler("operators.gc_operator", render_jobs_path, level_name=render_jobs_log_level)
        _attach_file_handler("utils.transcoder", render_jobs_path, level_name=render_jobs_log_level)
        _attach_file_handler("rq.worker", render_jobs_path, level_name=render_jobs_log_level)


class LoggingWorker(Worker):
    def handle_exception(self, job: Job, *exc_info) -> None:
        self.log.error("Job failed: %s", job.id, exc_info=exc_info)
        super().handle_exception(job, *exc_info)


class LoggingSimpleWorker(SimpleWorker):
    def handle_exception(self, job: Job, *exc_info) -> None:
        self.log.error("Job failed: %s", job.id, exc_info=exc_info)
        super().handle_exception(job, *exc_info)


class LoggingSpawnWorker(SpawnWorker):
    def handle_exception(self, job: Job, *exc_info) -> None:
        self.log.error("Job failed: %s", job.id, exc_info=exc_info)
        super().handle_exception(job, *exc_info)


def _queues() -> list[Queue]:
    # Listen order gives proxies priority over exports.
    return [
        Queue(PROXY_QUEUE, connection=redis_rq),
        Queue(EXPORT_QUEUE, connection=redis_rq),
    ]


def _worker_class() -> type[Worker]:
    override = os.getenv("RQ_WORKER_CLASS", "").strip().lower()
    supports_wait4 = hasattr(os, "wait4")
    supports_fork = supports_wait4 and hasattr(os, "fork")
    supports_spawn = supports_wait4 and hasattr(os, "spawnv")
    if override == "simple":
        return LoggingSimpleWorker
    if override == "spawn" and supports_spawn:
        return LoggingSpawnWorker
    if override == "fork" and supports_fork:
        return LoggingWorker
    if supports_fork:
        return LoggingWorker
    if supports_spawn:
        return LoggingSpawnWorker
    return LoggingSimpleWorker


def _recover_jobs() -> None:
    db = SessionLocal()
    try:
        recovered = recover_render_jobs(db)
        logger.info("rq_worker_recovered_jobs count=%s", recovered)
    finally:
        db.close()


def main():
    _configure_worker_logging()
    logger.info(
        "rq_worker_start python_executable=%s concurrency=%s",
        sys.executable,
        RENDER_WORKER_CONCURRENCY,
    )

    init_redis()
    init_db()
    _recover_jobs()

    worker_class = _worker_class()
    if RENDER_WORKER_CONCURRENCY <= 1:
        worker = worker_class(_queues(), connection=redis_rq)
        worker.work()
        return

    pool = WorkerPool(
        _queues(),
        connection=redis_rq,
        num_workers=RENDER_WORKER_CONCURRENCY,
        worker_class=worker_class,
    )
    pool.start()


if __name__ == "__main__":
    main()
