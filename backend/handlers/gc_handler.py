"""Operator endpoints for export garbage collection and unused source assets."""

import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from database.base import get_db
from handlers.http_errors import to_http_exception
from models.gc_models import (
    AssetPurgeReport,
    GCArchiveReport,
    GCBatchRequest,
    GCCalculateReport,
    GCCalculateRequest,
    GCCandidateListResponse,
    GCDeleteReport,
    GCDeleteRequest,
    UnusedAsset,
    UnusedAssetsResponse,
)
from models.render_models import RenderJobClearResponse
from operators import content_store_operator, gc_operator
from operators.errors import EditorError
from operators.render_operator import clear_finished_jobs

router = APIRouter(prefix="/admin", tags=["gc"])
logger = logging.getLogger(__name__)


@router.post("/gc/calculate", response_model=GCCalculateReport)
async def gc_calculate(
    request: GCCalculateRequest | None = None,
    db: Session = Depends(get_db),
):
    request = request or GCCalculateRequest(
        ttl_days=gc_operator.GC_TTL_DAYS, keep_latest_n=gc_operator.GC_KEEP_LATEST_N
    )
    try:
        return await run_in_threadpool(
            gc_operator.calculate_gc_candidates,
            db,
            ttl_days=request.ttl_days,
            keep_latest_n=request.keep_latest_n,
        )
    except EditorError as e:
        raise to_http_exception(e)


@router.get("/gc/candidates", response_model=GCCandidateListResponse)
async def gc_candidates(
    db: Session = Depends(get_db),
    older_than_days: int = Query(0, ge=0),
):
    try:
        return await run_in_threadpool(
            gc_operator.list_gc_candidates, db, older_than_days=older_than_days
        )
    except EditorError as e:
        raise to_http_exception(e)


@router.post("/gc/archive", response_model=GCArchiveReport)
async def gc_archive(request: GCBatchRequest, db: Session = Depends(get_db)):
    report = await run_in_threadpool(gc_operator.archive_exports, db, request.export_ids)
    logger.info(
        "gc_archive_batch requested=%s archived=%s failed=%s",
        report.total_requested,
        report.archived,
        report.failed,
    )
    return report


@router.post("/gc/delete", response_model=GCDeleteReport)
async def gc_delete(request: GCDeleteRequest, db: Session = Depends(get_db)):
    try:
        report = await run_in_threadpool(
            gc_operator.delete_archived_exports,
            db,
            request.export_ids,
            request.confirmed,
        )
    except EditorError as e:
        raise to_http_exception(e)

    logger.warning(
        "gc_delete_batch requested=%s deleted=%s failed=%s bytes_freed=%s",
        report.total_requested,
        report.deleted,
        report.failed,
        report.bytes_freed,
    )
    return report


@router.get("/gc/unused-assets", response_model=UnusedAssetsResponse)
async def gc_unused_assets(db: Session = Depends(get_db)):
    assets = await run_in_threadpool(content_store_operator.find_unused_assets, db)
    total_size = sum(asset.size_bytes or 0 for asset in assets)
    return UnusedAssetsResponse(
        ok=True,
        count=len(assets),
        total_size=total_size,
        total_size_mb=round(total_size / (1024 * 1024), 2),
        assets=[
            UnusedAsset(
                asset_id=asset.asset_id,
                content_hash=asset.content_hash,
                storage_key=asset.storage_key,
                size_bytes=asset.size_bytes or 0,
                ref_count=asset.ref_count,
                created_at=asset.created_at,
            )
            for asset in assets
        ],
    )


@router.post("/gc/unused-assets/purge", response_model=AssetPurgeReport)
async def gc_purge_unused_assets(
    db: Session = Depends(get_db),
    dry_run: bool = Query(False),
):
    return await run_in_threadpool(
        content_store_operator.purge_unused_assets, db, dry_run
    )


@router.post("/render-jobs/clear", response_model=RenderJobClearResponse)
async def render_jobs_clear(
    db: Session = Depends(get_db),
    ttl_seconds: int = Query(3600, ge=0),
):
    cleared = await run_in_threadpool(clear_finished_jobs, db, ttl_seconds=ttl_seconds)
    return RenderJobClearResponse(ok=True, cleared=cleared)
