"""
Command line surface for the edit log, render jobs and garbage collector.

Every command prints a JSON document on stdout. Exit codes:

    0  ok
    1  internal error
    2  validation error
    3  not found
    4  conflict (version race lost)
    5  state error
    6  transcoding failure
"""

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from uuid import UUID

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).resolve().parents[1]
load_dotenv(ROOT_DIR / ".env")

from database.base import SessionLocal, init_db  # noqa: E402
from models.render_models import ExportFormat, RenderJobStatus, RenderJobType  # noqa: E402
from operators import (  # noqa: E402
    content_store_operator,
    edit_log_operator,
    export_operator,
    gc_operator,
    project_operator,
    render_operator,
)
from operators.errors import (  # noqa: E402
    ConflictError,
    EditorError,
    NotFoundError,
    StateError,
    TranscodingFailure,
    ValidationError,
)

logger = logging.getLogger("cli")

LOG_LEVEL = os.getenv("LOG_LEVEL", "WARNING").upper()

EXIT_OK = 0
EXIT_INTERNAL = 1
EXIT_VALIDATION = 2
EXIT_NOT_FOUND = 3
EXIT_CONFLICT = 4
EXIT_STATE = 5
EXIT_TRANSCODING = 6

EXIT_CODE_BY_ERROR: list[tuple[type[EditorError], int]] = [
    (ValidationError, EXIT_VALIDATION),
    (NotFoundError, EXIT_NOT_FOUND),
    (ConflictError, EXIT_CONFLICT),
    (StateError, EXIT_STATE),
    (TranscodingFailure, EXIT_TRANSCODING),
]


def exit_code_for(error: EditorError) -> int:
    for error_type, code in EXIT_CODE_BY_ERROR:
        if isinstance(error, error_type):
            return code
    return EXIT_INTERNAL


def _emit(payload) -> None:
    if hasattr(payload, "model_dump"):
        payload = payload.model_dump(mode="json")
    print(json.dumps(payload, indent=2, default=str))


def _load_ops(raw: str):
    if raw.startswith("@"):
        raw = Path(raw[1:]).read_text(encoding="utf-8")
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValidationError(f"--ops is not valid JSON: {e}") from e


# =============================================================================
# COMMANDS
# =============================================================================


def cmd_create_project(db, args) -> int:
    source_bytes = None
    source_name = None
    if args.source:
        source_path = Path(args.source)
        if not source_path.is_file():
            raise ValidationError(f"Source file not found: {args.source}")
        source_bytes = source_path.read_bytes()
        source_name = source_path.name

    project, duplicate = project_operator.create_project(
        db,
        args.name,
        source_bytes=source_bytes,
        source_name=source_name,
        source_asset_id=args.source_asset_id,
    )
    _emit(
        {
            "ok": True,
            "project": project_operator.project_to_response(project).model_dump(mode="json"),
            "source_duplicate": duplicate,
        }
    )
    return EXIT_OK


def cmd_append(db, args) -> int:
    ops = _load_ops(args.ops)
    version, batch_id = edit_log_operator.append(db, args.project_id, args.user, ops)
    job, _ = render_operator.enqueue_render_job(
        db, RenderJobType.PROXY, args.project_id, version
    )
    _emit(
        {
            "ok": True,
            "project_id": str(args.project_id),
            "version": version,
            "batch_id": str(batch_id),
            "proxy_job_id": str(job.job_id),
            "proxy_status": job.status,
        }
    )
    return EXIT_OK


def cmd_ops(db, args) -> int:
    current, batches = edit_log_operator.list_operations(db, args.project_id, args.version)
    _emit(
        {
            "ok": True,
            "project_id": str(args.project_id),
            "current_version": current,
            "operations": edit_log_operator.flatten_operations(batches),
        }
    )
    return EXIT_OK


def cmd_export(db, args) -> int:
    version, existing, job = render_operator.request_export(
        db,
        args.project_id,
        version=args.version,
        resolution=args.resolution,
        export_format=ExportFormat(args.format),
    )
    if existing:
        _emit(
            {
                "ok": True,
                "existing": True,
                "version": version,
                "export": export_operator.export_to_response(existing).model_dump(mode="json"),
            }
        )
        return EXIT_OK

    _emit(
        {
            "ok": job.status != RenderJobStatus.FAILED.value,
            "existing": False,
            "version": version,
            "job": render_operator.render_job_to_response(job).model_dump(mode="json"),
        }
    )
    if job.status == RenderJobStatus.FAILED.value:
        return EXIT_TRANSCODING if job.error_code == TranscodingFailure.code else EXIT_INTERNAL
    return EXIT_OK


def cmd_job(db, args) -> int:
    job = render_operator.get_render_job(db, args.job_id)
    _emit(render_operator.render_job_to_response(job))
    return EXIT_OK


def cmd_cancel(db, args) -> int:
    job = render_operator.cancel_render_job(db, args.job_id, args.reason)
    _emit(render_operator.render_job_to_response(job))
    return EXIT_OK


def cmd_pin(db, args) -> int:
    if args.export_id:
        export = export_operator.toggle_pin(db, args.export_id)
    elif args.project_id and args.version is not None:
        export = export_operator.toggle_pin_by_version(db, args.project_id, args.version)
    else:
        raise ValidationError("pin needs an export id, or --project and --version")
    _emit(export_operator.export_to_response(export))
    return EXIT_OK


def cmd_gc_calculate(db, args) -> int:
    report = gc_operator.calculate_gc_candidates(
        db, ttl_days=args.ttl_days, keep_latest_n=args.keep_latest_n
    )
    _emit(report)
    return EXIT_OK if not report.errors else EXIT_INTERNAL


def cmd_gc_candidates(db, args) -> int:
    _emit(gc_operator.list_gc_candidates(db, older_than_days=args.older_than_days))
    return EXIT_OK


def cmd_gc_archive(db, args) -> int:
    report = gc_operator.archive_exports(db, args.export_ids)
    _emit(report)
    return EXIT_OK if report.failed == 0 else EXIT_STATE


def cmd_gc_delete(db, args) -> int:
    report = gc_operator.delete_archived_exports(db, args.export_ids, confirmed=args.confirm)
    _emit(report)
    return EXIT_OK if report.failed == 0 else EXIT_STATE


def cmd_unused_assets(db, args) -> int:
    assets = content_store_operator.find_unused_assets(db)
    _emit(
        {
            "ok": True,
            "count": len(assets),
            "total_size": sum(a.size_bytes or 0 for a in assets),
            "assets": [
                {
                    "asset_id": str(a.asset_id),
                    "content_hash": a.content_hash,
                    "storage_key": a.storage_key,
                    "size_bytes": a.size_bytes,
                }
                for a in assets
            ],
        }
    )
    return EXIT_OK


def cmd_purge_assets(db, args) -> int:
    _emit(content_store_operator.purge_unused_assets(db, dry_run=args.dry_run))
    return EXIT_OK


def cmd_clear_jobs(db, args) -> int:
    cleared = render_operator.clear_finished_jobs(db, ttl_seconds=args.ttl_seconds)
    _emit({"ok": True, "cleared": cleared})
    return EXIT_OK


def cmd_recover_jobs(db, args) -> int:
    recovered = render_operator.recover_render_jobs(db)
    _emit({"ok": True, "recovered": recovered})
    return EXIT_OK


def cmd_backfill(db, args) -> int:
    result = export_operator.backfill_legacy_exports(db, dry_run=args.dry_run)
    _emit({"ok": True, **result})
    return EXIT_OK


# =============================================================================
# PARSER
# =============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hybrid-edit",
        description="Edit log, render jobs and export garbage collection",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("create-project", help="Create a project from a source file")
    p.add_argument("name")
    p.add_argument("--source", help="Path of the source media to ingest")
    p.add_argument("--source-asset-id", type=UUID, help="Reuse an existing source asset")
    p.set_defaults(func=cmd_create_project)

    p = sub.add_parser("append", help="Append a batch of edit operations")
    p.add_argument("project_id", type=UUID)
    p.add_argument("--user", required=True)
    p.add_argument(
        "--ops",
        required=True,
        help='JSON list of {"type", "parameters"} objects, or @path to a JSON file',
    )
    p.set_defaults(func=cmd_append)

    p = sub.add_parser("ops", help="Print the flattened operation list")
    p.add_argument("project_id", type=UUID)
    p.add_argument("--version", type=int)
    p.set_defaults(func=cmd_ops)

    p = sub.add_parser("export", help="Request a full-resolution export")
    p.add_argument("project_id", type=UUID)
    p.add_argument("--version", type=int)
    p.add_argument("--resolution", default="1920x1080")
    p.add_argument("--format", default="mp4", choices=[f.value for f in ExportFormat])
    p.set_defaults(func=cmd_export)

    p = sub.add_parser("job", help="Show a render job")
    p.add_argument("job_id", type=UUID)
    p.set_defaults(func=cmd_job)

    p = sub.add_parser("cancel", help="Cancel a render job that has not started")
    p.add_argument("job_id", type=UUID)
    p.add_argument("--reason")
    p.set_defaults(func=cmd_cancel)

    p = sub.add_parser("pin", help="Toggle the pin on an export")
    p.add_argument("export_id", type=UUID, nargs="?")
    p.add_argument("--project", dest="project_id", type=UUID)
    p.add_argument("--version", type=int)
    p.set_defaults(func=cmd_pin)

    p = sub.add_parser("gc-calculate", help="Mark exports eligible for collection")
    p.add_argument("--ttl-days", type=int, default=gc_operator.GC_TTL_DAYS)
    p.add_argument("--keep-latest-n", type=int, default=gc_operator.GC_KEEP_LATEST_N)
    p.set_defaults(func=cmd_gc_calculate)

    p = sub.add_parser("gc-candidates", help="List marked exports")
    p.add_argument("--older-than-days", type=int, default=0)
    p.set_defaults(func=cmd_gc_candidates)

    p = sub.add_parser("gc-archive", help="Move marked exports to the archive")
    p.add_argument("export_ids", type=UUID, nargs="+")
    p.set_defaults(func=cmd_gc_archive)

    p = sub.add_parser("gc-delete", help="Permanently delete archived exports")
    p.add_argument("export_ids", type=UUID, nargs="+")
    p.add_argument("--confirm", action="store_true", help="Required: deletion is permanent")
    p.set_defaults(func=cmd_gc_delete)

    p = sub.add_parser("unused-assets", help="List source assets with no references")
    p.set_defaults(func=cmd_unused_assets)

    p = sub.add_parser("purge-assets", help="Delete source assets with no references")
    p.add_argument("--dry-run", action="store_true")
    p.set_defaults(func=cmd_purge_assets)

    p = sub.add_parser("clear-jobs", help="Delete finished render job rows")
    p.add_argument("--ttl-seconds", type=int, default=3600)
    p.set_defaults(func=cmd_clear_jobs)

    p = sub.add_parser("recover-jobs", help="Re-dispatch interrupted render jobs")
    p.set_defaults(func=cmd_recover_jobs)

    p = sub.add_parser("backfill", help="Register legacy export files as pinned exports")
    p.add_argument("--dry-run", action="store_true")
    p.set_defaults(func=cmd_backfill)

    return parser


def main(argv: list[str] | None = None, session_factory=SessionLocal) -> int:
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        stream=sys.stderr,
    )
    args = build_parser().parse_args(argv)

    if session_factory is SessionLocal:
        init_db()

    db = session_factory()
    try:
        return args.func(db, args)
    except EditorError as e:
        db.rollback()
        _emit({"ok": False, "error": {"code": e.code, "message": str(e)}})
        return exit_code_for(e)
    except Exception as e:
        db.rollback()
        logger.exception("Command %s failed", args.command)
        _emit({"ok": False, "error": {"code": "internal_error", "message": str(e)}})
        return EXIT_INTERNAL
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
