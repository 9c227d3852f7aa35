from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy.orm import sessionmaker

from database.base import Base, build_engine
from database import models  # noqa: F401
from database.models import ExportVersion
from models.export_models import ExportState
from operators import project_operator, render_operator
from operators.errors import TranscodingFailure
from utils import storage, transcoder as transcoder_module
from utils.time_utils import utcnow
from utils.transcoder import TranscodeResult


class FakeTranscoder:
    """Writes a small file where the engine would have written the render."""

    def __init__(self, payload: bytes = b"rendered-bytes"):
        self.payload = payload
        self.calls: list = []
        self.fail_with: str | None = None

    def render(self, manifest):
        self.calls.append(manifest)
        if self.fail_with:
            raise TranscodingFailure(self.fail_with, exit_code=1, stderr=self.fail_with)
        output = Path(manifest.output_path)
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_bytes(self.payload)
        return TranscodeResult(
            output_path=output, size_bytes=len(self.payload), duration_seconds=4.0
        )


@pytest.fixture
def storage_root(tmp_path, monkeypatch):
    root = tmp_path / "storage"
    root.mkdir()
    monkeypatch.setattr(storage, "STORAGE_ROOT", str(root))
    return root


@pytest.fixture
def session_factory(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'test.db'}")
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(
        bind=engine, autocommit=False, autoflush=False, expire_on_commit=False
    )
    yield factory
    engine.dispose()


@pytest.fixture
def db(session_factory, storage_root):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def events(monkeypatch):
    published = []

    def _collect(event):
        published.append(event)
        return True

    monkeypatch.setattr(render_operator, "publish_render_event", _collect)
    return published


@pytest.fixture
def fake_transcoder(monkeypatch, events):
    fake = FakeTranscoder()
    monkeypatch.setattr(render_operator, "RENDER_EXECUTION_MODE", "inline")
    transcoder_module.set_transcoder(fake)
    yield fake
    transcoder_module.set_transcoder(None)


@pytest.fixture
def project(db):
    created, _ = project_operator.create_project(
        db,
        "demo",
        source_bytes=b"source-media-bytes",
        source_name="clip.mp4",
        content_type="video/mp4",
    )
    return created


def add_export(
    db,
    project_id,
    version: int,
    age_days: int = 0,
    pinned: bool = False,
    status: ExportState = ExportState.ACTIVE,
    payload: bytes = b"export-bytes",
) -> ExportVersion:
    """Insert an export row with a file behind it, as a finished export job would."""
    key = storage.export_key(project_id, version)
    storage.write_bytes(key, payload)
    export = ExportVersion(
        project_id=project_id,
        version=version,
        storage_key=key,
        size_bytes=len(payload),
        resolution="1920x1080",
        format="mp4",
        status=status.value,
        pinned=pinned,
        gc_candidate=status == ExportState.GC_CANDIDATE,
        gc_marked_at=utcnow() if status == ExportState.GC_CANDIDATE else None,
        created_at=utcnow() - timedelta(days=age_days),
    )
    db.add(export)
    db.commit()
    db.refresh(export)
    return export


@pytest.fixture
def make_export(db):
    def _make(project_id, version: int, **kwargs) -> ExportVersion:
        return add_export(db, project_id, version, **kwargs)

    return _make
