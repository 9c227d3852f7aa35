import sys
import textwrap
from uuid import uuid4

import pytest

from models.render_models import RenderManifest, RenderPreset
from operators.errors import TranscodingFailure
from utils.transcoder import SubprocessTranscoder

READ_MANIFEST = """
import json
import sys
import time

args = sys.argv[1:]
with open(args[args.index("--manifest") + 1]) as fh:
    manifest = json.load(fh)
"""


def _engine(tmp_path, body: str) -> str:
    script = tmp_path / "engine.py"
    script.write_text(READ_MANIFEST + textwrap.dedent(body))
    return str(script)


def _manifest(tmp_path) -> RenderManifest:
    return RenderManifest(
        job_id=uuid4(),
        project_id=uuid4(),
        version=1,
        source_path=str(tmp_path / "source.mp4"),
        operations=[{"type": "trim", "parameters": {"end": 2}}],
        preset=RenderPreset.proxy_preview(),
        output_path=str(tmp_path / "out.mp4"),
    )


def test_success_reads_duration(tmp_path):
    entrypoint = _engine(
        tmp_path,
        """
        with open(manifest["output_path"], "wb") as fh:
            fh.write(b"video")
        print("ffmpeg chatter")
        print(json.dumps({"ok": True, "duration_seconds": 2.5}))
        """,
    )

    result = SubprocessTranscoder(entrypoint, sys.executable, 30).render(_manifest(tmp_path))

    assert result.size_bytes == 5
    assert result.duration_seconds == 2.5


def test_non_zero_exit(tmp_path):
    entrypoint = _engine(
        tmp_path,
        """
        sys.stderr.write("Unsupported operation #0: warp")
        sys.exit(2)
        """,
    )

    with pytest.raises(TranscodingFailure) as exc_info:
        SubprocessTranscoder(entrypoint, sys.executable, 30).render(_manifest(tmp_path))

    assert exc_info.value.exit_code == 2
    assert "Unsupported operation" in exc_info.value.stderr


def test_success_without_output(tmp_path):
    entrypoint = _engine(
        tmp_path,
        """
        print(json.dumps({"ok": True}))
        """,
    )

    with pytest.raises(TranscodingFailure, match="no output"):
        SubprocessTranscoder(entrypoint, sys.executable, 30).render(_manifest(tmp_path))


def test_empty_output(tmp_path):
    entrypoint = _engine(
        tmp_path,
        """
        open(manifest["output_path"], "wb").close()
        """,
    )

    with pytest.raises(TranscodingFailure, match="no output"):
        SubprocessTranscoder(entrypoint, sys.executable, 30).render(_manifest(tmp_path))


def test_timeout(tmp_path):
    entrypoint = _engine(
        tmp_path,
        """
        time.sleep(10)
        """,
    )

    with pytest.raises(TranscodingFailure, match="timed out"):
        SubprocessTranscoder(entrypoint, sys.executable, 1).render(_manifest(tmp_path))


def test_engine_cannot_be_launched(tmp_path):
    transcoder = SubprocessTranscoder(
        str(tmp_path / "engine.py"), str(tmp_path / "no-such-python"), 30
    )

    with pytest.raises(TranscodingFailure, match="Could not launch"):
        transcoder.render(_manifest(tmp_path))
