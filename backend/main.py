import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv

import uvicorn
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

ROOT_DIR = Path(__file__).resolve().parents[1]
load_dotenv(ROOT_DIR / ".env")

from database.base import init_db  # noqa: E402
from handlers.asset_handler import router as asset_router  # noqa: E402
from handlers.edit_handler import router as edit_router  # noqa: E402
from handlers.export_handler import router as export_router  # noqa: E402
from handlers.gc_handler import router as gc_router  # noqa: E402
from handlers.health_handler import router as health_router  # noqa: E402
from handlers.project_handler import router as project_router  # noqa: E402
from handlers.render_handler import presets_router, router as render_router  # noqa: E402

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)


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


RENDER_JOBS_LOG_FILE = os.getenv(
    "RENDER_JOBS_LOG_FILE", "backend/log/render_jobs.log"
).strip()
RENDER_JOBS_LOG_LEVEL = os.getenv("RENDER_JOBS_LOG_LEVEL", "INFO").strip()
if RENDER_JOBS_LOG_FILE:
    render_jobs_log_path = Path(RENDER_JOBS_LOG_FILE)
    if not render_jobs_log_path.is_absolute():
        render_jobs_log_path = ROOT_DIR / render_jobs_log_path
    _attach_file_handler("handlers.render_handler", render_jobs_log_path, level_name=RENDER_JOBS_LOG_LEVEL)
    _attach_file_handler("handlers.gc_handler", render_jobs_log_path, level_name=RENDER_JOBS_LOG_LEVEL)
    _attach_file_handler("operators.render_operator", render_jobs_log_path, level_name=RENDER_JOBS_LOG_LEVEL)
    _attach_file_handler("operators.gc_operator", render_jobs_log_path, level_name=RENDER_JOBS_LOG_LEVEL)
    _attach_file_handler("utils.transcoder", render_jobs_log_path, level_name=RENDER_JOBS_LOG_LEVEL)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(title="Hybrid Edit Backend", lifespan=lifespan)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={
            "detail": {
                "code": "validation_error",
                "message": "Invalid request",
                "errors": jsonable_encoder(exc.errors()),
            }
        },
    )


app.include_router(health_router)
app.include_router(project_router)
app.include_router(asset_router)
app.include_router(edit_router)
app.include_router(render_router)
app.include_router(presets_router)
app.include_router(export_router)
app.include_router(gc_router)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://localhost:5173",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
