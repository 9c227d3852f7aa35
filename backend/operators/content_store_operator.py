"""
Content Store Operator - content-addressed source assets with reference counts.

Identical byte streams share one SourceAsset row and one file under
``sources/{hash[:2]}/{hash}{ext}``. ref_count changes are single UPDATE
statements (``ref_count = ref_count + 1``), never read-modify-write, and bytes
are only removed once ref_count is zero.
"""

from __future__ import annotations

import hashlib
import logging
import mimetypes
import os
import threading
import weakref
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session as DBSession

from database.models import Project, SourceAsset
from models.gc_models import AssetPurgeReport
from operators.errors import AssetNotFoundError, StateError, ValidationError
from utils import storage
from utils.time_utils import utcnow

logger = logging.getLogger(__name__)

_locks_guard = threading.Lock()
_hash_locks: weakref.WeakValueDictionary = weakref.WeakValueDictionary()


def _hash_lock(content_hash: str) -> threading.Lock:
    with _locks_guard:
        lock = _hash_locks.get(content_hash)
        if lock is None:
            lock = threading.Lock()
            _hash_locks[content_hash] = lock
        return lock


def compute_sha256(contents: bytes) -> str:
    return hashlib.sha256(contents).hexdigest()


def _extension_for(original_name: str | None, content_type: str | None) -> str:
    if original_name:
        _, ext = os.path.splitext(original_name)
        if ext:
            return ext.lower()
    if content_type:
        return mimetypes.guess_extension(content_type) or ""
    return ""


def _increment(db: DBSession, content_hash: str) -> SourceAsset | None:
    result = db.execute(
        update(SourceAsset)
        .where(SourceAsset.content_hash == content_hash)
        .values(ref_count=SourceAsset.ref_count + 1, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return None
    db.commit()
    return (
        db.query(SourceAsset)
        .filter(SourceAsset.content_hash == content_hash)
        .populate_existing()
        .first()
    )


def ingest(
    db: DBSession,
    contents: bytes,
    original_name: str | None = None,
    content_type: str | None = None,
) -> tuple[SourceAsset, bool]:
    """
    Store a byte stream once and count the new reference to it.

    Returns:
        (asset, is_duplicate). For a duplicate no bytes are written and
        ref_count goes up by one; otherwise the bytes are stored and a new
        asset starts at ref_count 1.
    """
    if not contents:
        raise ValidationError("Cannot ingest an empty upload")

    content_hash = compute_sha256(contents)

    with _hash_lock(content_hash):
        existing = _increment(db, content_hash)
        if existing is not None:
            logger.info(
                "content_store_duplicate asset_id=%s hash=%s ref_count=%s",
                existing.asset_id,
                content_hash[:12],
                existing.ref_count,
            )
            return existing, True

        key = storage.source_key(content_hash, _extension_for(original_name, content_type))
        size = storage.write_bytes(key, contents)

        asset = SourceAsset(
            content_hash=content_hash,
            storage_key=key,
            size_bytes=size,
            content_type=content_type,
            original_name=original_name,
            ref_count=1,
        )
        db.add(asset)
        try:
            db.commit()
        except IntegrityError:
            # Another process inserted the same hash first; its bytes are identical.
            db.rollback()
            existing = _increment(db, content_hash)
            if existing is None:
                raise
            return existing, True

        db.refresh(asset)
        logger.info(
            "content_store_ingest asset_id=%s hash=%s size=%s key=%s",
            asset.asset_id,
            content_hash[:12],
            size,
            key,
        )
        return asset, False


def get_asset(db: DBSession, asset_id: UUID) -> SourceAsset:
    asset = (
        db.query(SourceAsset)
        .filter(SourceAsset.asset_id == asset_id)
        .populate_existing()
        .first()
    )
    if not asset:
        raise AssetNotFoundError(asset_id)
    return asset


def get_asset_by_hash(db: DBSession, content_hash: str) -> SourceAsset | None:
    return (
        db.query(SourceAsset)
        .filter(SourceAsset.content_hash == content_hash.lower())
        .populate_existing()
        .first()
    )


def retain(db: DBSession, asset_id: UUID) -> SourceAsset:
    """Count one more reference to an asset that already exists."""
    result = db.execute(
        update(SourceAsset)
        .where(SourceAsset.asset_id == asset_id)
        .values(ref_count=SourceAsset.ref_count + 1, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise AssetNotFoundError(asset_id)
    db.commit()
    asset = get_asset(db, asset_id)
    db.refresh(asset)
    return asset


def release(db: DBSession, asset_id: UUID) -> SourceAsset:
    """Drop one reference. At zero the asset becomes eligible for purge."""
    result = db.execute(
        update(SourceAsset)
        .where(SourceAsset.asset_id == asset_id, SourceAsset.ref_count > 0)
        .values(ref_count=SourceAsset.ref_count - 1, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        asset = get_asset(db, asset_id)
        raise StateError(f"Source asset {asset.asset_id} has no references to release")
    db.commit()

    asset = get_asset(db, asset_id)
    db.refresh(asset)
    logger.info(
        "content_store_release asset_id=%s ref_count=%s",
        asset.asset_id,
        asset.ref_count,
    )
    return asset


def _unreferenced_query(db: DBSession):
    referenced = select(Project.source_asset_id).where(
        Project.source_asset_id.isnot(None)
    )
    return (
        db.query(SourceAsset)
        .filter(
            SourceAsset.ref_count == 0,
            SourceAsset.asset_id.notin_(referenced),
        )
        .populate_existing()
    )


def find_unused_assets(db: DBSession) -> list[SourceAsset]:
    return _unreferenced_query(db).order_by(SourceAsset.created_at.asc()).all()


def purge_unused_assets(db: DBSession, dry_run: bool = False) -> AssetPurgeReport:
    """
    Physically remove assets whose ref_count is zero.

    The row is removed with a conditional DELETE that re-checks ref_count, so
    an asset that gained a reference after it was listed is skipped. The bytes
    go only after the row is gone.
    """
    report = AssetPurgeReport()
    for asset in find_unused_assets(db):
        if dry_run:
            report.purged += 1
            report.bytes_freed += asset.size_bytes or 0
            continue

        with _hash_lock(asset.content_hash):
            try:
                result = db.execute(
                    delete(SourceAsset)
                    .where(
                        SourceAsset.asset_id == asset.asset_id,
                        SourceAsset.ref_count == 0,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    db.rollback()
                    report.skipped.append(asset.asset_id)
                    continue
                db.commit()
            except IntegrityError:
                db.rollback()
                logger.warning(
                    "content_store_purge_skipped asset_id=%s reason=still_referenced",
                    asset.asset_id,
                )
                report.skipped.append(asset.asset_id)
                continue

            freed = storage.size_of(asset.storage_key) or 0
            storage.delete_file(asset.storage_key)

        report.purged += 1
        report.bytes_freed += freed
        logger.warning(
            "content_store_purge asset_id=%s key=%s bytes=%s",
            asset.asset_id,
            asset.storage_key,
            freed,
        )
    return report
