"""
Adapter for the external transcoding engine.

The engine is a separate program (render-job/entrypoint.py by default) that
reads a JSON manifest, applies the operation sequence to the source and
writes the output file. It prints one JSON line on success, for example
``{"ok": true, "duration_seconds": 12.5}``, and exits non-zero on failure.
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
import sys
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from models.render_models import RenderManifest
from operators.errors import TranscodingFailure

logger = logging.getLogger(__name__)

ROOT_DIR = Path(__file__).resolve().parents[2]

TRANSCODER_ENTRYPOINT = os.getenv(
    "TRANSCODER_ENTRYPOINT", str(ROOT_DIR / "render-job" / "entrypoint.py")
)
TRANSCODER_PYTHON = os.getenv("TRANSCODER_PYTHON", sys.executable)
RENDER_JOB_TIMEOUT_SECONDS = int(os.getenv("RENDER_JOB_TIMEOUT_SECONDS", "3600"))

_STDERR_TAIL_CHARS = 4000


@dataclass
class TranscodeResult:
    output_path: Path
    size_bytes: int
    duration_seconds: float | None = None


class Transcoder(Protocol):
    def render(self, manifest: RenderManifest) -> TranscodeResult: ...


def _parse_engine_report(stdout: str) -> dict:
    for line in reversed(stdout.strip().splitlines()):
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            return json.loads(line)
        except json.JSONDecodeError:
            continue
    return {}


class SubprocessTranscoder:
    def __init__(
        self,
        entrypoint: str = TRANSCODER_ENTRYPOINT,
        python_executable: str = TRANSCODER_PYTHON,
        timeout_seconds: int = RENDER_JOB_TIMEOUT_SECONDS,
    ):
        self.entrypoint = entrypoint
        self.python_executable = python_executable
        self.timeout_seconds = timeout_seconds

    def build_command(self, manifest_path: Path) -> list[str]:
        return [
            self.python_executable,
            self.entrypoint,
            "--manifest",
            str(manifest_path),
        ]

    def render(self, manifest: RenderManifest) -> TranscodeResult:
        output_path = Path(manifest.output_path)

        with tempfile.TemporaryDirectory(prefix="render-manifest-") as temp_dir:
            manifest_path = Path(temp_dir) / f"{manifest.job_id}.json"
            manifest_path.write_text(manifest.model_dump_json(), encoding="utf-8")

            cmd = self.build_command(manifest_path)
            logger.info(
                "transcoder_start job_id=%s version=%s ops=%s preset=%s",
                manifest.job_id,
                manifest.version,
                len(manifest.operations),
                manifest.preset.name,
            )
            try:
                result = subprocess.run(
                    cmd,
                    capture_output=True,
                    text=True,
                    timeout=self.timeout_seconds,
                )
            except subprocess.TimeoutExpired as e:
                raise TranscodingFailure(
                    f"Transcoding engine timed out after {self.timeout_seconds}s"
                ) from e
            except OSError as e:
                raise TranscodingFailure(f"Could not launch transcoding engine: {e}") from e

        stderr_tail = (result.stderr or "")[-_STDERR_TAIL_CHARS:]
        if result.returncode != 0:
            logger.error(
                "transcoder_failed job_id=%s exit_code=%s stderr=%s",
                manifest.job_id,
                result.returncode,
                stderr_tail,
            )
            raise TranscodingFailure(
                f"Transcoding engine exited with code {result.returncode}",
                exit_code=result.returncode,
                stderr=stderr_tail,
            )

        if not output_path.is_file() or output_path.stat().st_size == 0:
            raise TranscodingFailure(
                "Transcoding engine reported success but produced no output",
                exit_code=result.returncode,
                stderr=stderr_tail,
            )

        report = _parse_engine_report(result.stdout or "")
        duration = report.get("duration_seconds")
        return TranscodeResult(
            output_path=output_path,
            size_bytes=output_path.stat().st_size,
            duration_seconds=float(duration) if duration is not None else None,
        )


_default_transcoder: Transcoder | None = None


def get_transcoder() -> Transcoder:
    global _default_transcoder
    if _default_transcoder is None:
        _default_transcoder = SubprocessTranscoder()
    return _default_transcoder


def set_transcoder(transcoder: Transcoder | None) -> None:
    global _default_transcoder
    _default_transcoder = transcoder
