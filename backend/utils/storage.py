from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from uuid import UUID, uuid4

logger = logging.getLogger(__name__)

STORAGE_ROOT = os.getenv("STORAGE_ROOT", "./storage")

PROXY_PREFIX = "proxy"
EXPORT_PREFIX = "export"
ARCHIVE_PREFIX = "archive"
SOURCE_PREFIX = "sources"
TEMP_PREFIX = "tmp"


def root_path() -> Path:
    return Path(STORAGE_ROOT).resolve()


def resolve_path(key: str) -> Path:
    root = root_path()
    path = (root / key).resolve()
    if path != root and root not in path.parents:
        raise ValueError(f"Storage key escapes storage root: {key}")
    return path


def proxy_key(project_id: UUID, version: int) -> str:
    return f"{PROXY_PREFIX}/{project_id}/v{version}.mp4"


def export_key(project_id: UUID, version: int, export_format: str = "mp4") -> str:
    return f"{EXPORT_PREFIX}/{project_id}/v{version}.{export_format}"


def archive_key(export_id: UUID, version: int, export_format: str = "mp4") -> str:
    return f"{ARCHIVE_PREFIX}/{export_id}_v{version}.{export_format}"


def source_key(content_hash: str, extension: str = "") -> str:
    extension = extension if not extension or extension.startswith(".") else f".{extension}"
    return f"{SOURCE_PREFIX}/{content_hash[:2]}/{content_hash}{extension}"


def exists(key: str) -> bool:
    return resolve_path(key).is_file()


def size_of(key: str) -> int | None:
    try:
        return resolve_path(key).stat().st_size
    except FileNotFoundError:
        return None


def temp_output_path(suffix: str = "") -> Path:
    """Scratch location for an artifact that is not yet complete."""
    path = resolve_path(f"{TEMP_PREFIX}/{uuid4().hex}{suffix}")
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def commit_file(temp_path: Path, key: str) -> Path:
    """Atomically publish a finished scratch file under its final key."""
    target = resolve_path(key)
    target.parent.mkdir(parents=True, exist_ok=True)
    os.replace(temp_path, target)
    return target


def write_bytes(key: str, contents: bytes) -> int:
    temp_path = temp_output_path()
    try:
        temp_path.write_bytes(contents)
        commit_file(temp_path, key)
    finally:
        if temp_path.exists():
            temp_path.unlink()
    return len(contents)


def move_file(source: str, destination: str) -> Path:
    src = resolve_path(source)
    dst = resolve_path(destination)
    dst.parent.mkdir(parents=True, exist_ok=True)
    shutil.move(str(src), str(dst))
    return dst


def delete_file(key: str) -> bool:
    try:
        resolve_path(key).unlink()
        return True
    except FileNotFoundError:
        logger.warning("File %s not found under %s", key, root_path())
        return False


def discard_temp(path: Path | None) -> None:
    if path is None:
        return
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError:
        logger.exception("Error removing scratch file %s", path)


def list_keys(prefix: str) -> list[str]:
    base = resolve_path(prefix)
    if not base.is_dir():
        return []
    root = root_path()
    return sorted(
        path.relative_to(root).as_posix() for path in base.rglob("*") if path.is_file()
    )
