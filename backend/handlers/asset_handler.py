from uuid import UUID

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from sqlalchemy.orm import Session

from database.base import get_db
from database.models import SourceAsset
from handlers.http_errors import to_http_exception
from models.api_models import AssetGetResponse, AssetIngestResponse, AssetResponse
from operators.content_store_operator import get_asset, ingest, release
from operators.errors import EditorError

router = APIRouter(prefix="/assets", tags=["assets"])


def _asset_to_response(asset: SourceAsset) -> AssetResponse:
    return AssetResponse(
        asset_id=asset.asset_id,
        content_hash=asset.content_hash,
        storage_key=asset.storage_key,
        size_bytes=asset.size_bytes or 0,
        content_type=asset.content_type,
        original_name=asset.original_name,
        ref_count=asset.ref_count,
        created_at=asset.created_at,
    )


@router.post("/", response_model=AssetIngestResponse)
async def asset_ingest(
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
):
    content = await file.read()
    if not content:
        raise HTTPException(
            status_code=400,
            detail={"code": "validation_error", "message": "File is empty"},
        )

    try:
        asset, is_duplicate = ingest(
            db, content, original_name=file.filename, content_type=file.content_type
        )
    except EditorError as e:
        raise to_http_exception(e)

    return AssetIngestResponse(
        ok=True, asset=_asset_to_response(asset), is_duplicate=is_duplicate
    )


@router.get("/{asset_id}", response_model=AssetGetResponse)
async def asset_get(asset_id: UUID, db: Session = Depends(get_db)):
    try:
        asset = get_asset(db, asset_id)
    except EditorError as e:
        raise to_http_exception(e)
    return AssetGetResponse(ok=True, asset=_asset_to_response(asset))


@router.post("/{asset_id}/release", response_model=AssetGetResponse)
async def asset_release(asset_id: UUID, db: Session = Depends(get_db)):
    try:
        asset = release(db, asset_id)
    except EditorError as e:
        raise to_http_exception(e)
    return AssetGetResponse(ok=True, asset=_asset_to_response(asset))
