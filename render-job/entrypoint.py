#!/usr/bin/env python3


import argparse
import json
import logging
import os
import subprocess
import sys
from pathlib import Path

from ffmpeg_ops import UnsupportedOperation, build_ffmpeg_command


# stdout carries the result line, so logs go to stderr.
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    stream=sys.stderr,
)
logger = logging.getLogger("render-job")

FFMPEG_BIN = os.environ.get("FFMPEG_BIN", "ffmpeg")
FFPROBE_BIN = os.environ.get("FFPROBE_BIN", "ffprobe")

EXIT_RENDER_FAILED = 1
EXIT_BAD_MANIFEST = 2


class RenderError(Exception):
    pass


def parse_args():
    parser = argparse.ArgumentParser(description="Video render job")
    parser.add_argument(
        "--manifest",
        required=True,
        help="Local path to the render manifest",
    )
    return parser.parse_args()


def load_manifest(manifest_path: str) -> dict:
    path = Path(manifest_path)
    if not path.exists():
        raise ValueError(f"Manifest file not found: {manifest_path}")

    logger.info(f"Loading manifest from {manifest_path}")
    manifest = json.loads(path.read_text(encoding="utf-8"))
    for key in ("source_path", "output_path", "preset"):
        if not manifest.get(key):
            raise ValueError(f"Manifest is missing {key!r}")
    return manifest


def probe_duration(path: str) -> float | None:
    cmd = [
        FFPROBE_BIN,
        "-v",
        "error",
        "-show_entries",
        "format=duration",
        "-of",
        "json",
        path,
    ]
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, check=True)
        duration = json.loads(result.stdout).get("format", {}).get("duration")
        return float(duration) if duration is not None else None
    except (FileNotFoundError, subprocess.CalledProcessError, ValueError) as e:
        logger.warning(f"Could not probe duration of {path}: {e}")
        return None


def render(manifest: dict) -> dict:
    source_path = manifest["source_path"]
    output_path = manifest["output_path"]
    operations = manifest.get("operations") or []

    if not Path(source_path).is_file():
        raise RenderError(f"Source media not found: {source_path}")

    cmd = build_ffmpeg_command(
        source_path, operations, manifest["preset"], output_path, ffmpeg_bin=FFMPEG_BIN
    )
    logger.info(
        f"Rendering job {manifest.get('job_id')} version {manifest.get('version')} "
        f"with {len(operations)} operations"
    )
    logger.debug("ffmpeg command: %s", " ".join(cmd))

    result = subprocess.run(cmd, capture_output=True, text=True)
    if result.returncode != 0:
        raise RenderError(f"ffmpeg exited with {result.returncode}: {result.stderr.strip()}")
    if not Path(output_path).is_file():
        raise RenderError("ffmpeg did not produce an output file")

    return {"ok": True, "duration_seconds": probe_duration(output_path)}


def main():
    args = parse_args()

    try:
        manifest = load_manifest(args.manifest)
        report = render(manifest)
        print(json.dumps(report), flush=True)
        logger.info("Job completed successfully")
        sys.exit(0)

    except (ValueError, UnsupportedOperation) as e:
        logger.error(f"Invalid manifest: {e}")
        sys.exit(EXIT_BAD_MANIFEST)

    except RenderError as e:
        logger.error(f"Render failed: {e}")
        sys.exit(EXIT_RENDER_FAILED)

    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        sys.exit(EXIT_RENDER_FAILED)


if __name__ == "__main__":
    main()
