import json
from uuid import uuid4

import pytest

import cli
from operators.errors import (
    ConflictError,
    EditorError,
    ProjectNotFoundError,
    StateError,
    TranscodingFailure,
    ValidationError,
)


@pytest.fixture
def run(session_factory, storage_root, fake_transcoder, capsys):
    def _run(*argv):
        code = cli.main(list(argv), session_factory=session_factory)
        output = capsys.readouterr().out
        return code, json.loads(output)

    return _run


@pytest.fixture
def project_id(run, tmp_path):
    source = tmp_path / "clip.mp4"
    source.write_bytes(b"source-bytes")
    code, body = run("create-project", "demo", "--source", str(source))
    assert code == cli.EXIT_OK
    return body["project"]["project_id"]


@pytest.mark.parametrize(
    "error,expected",
    [
        (ValidationError("bad"), 2),
        (ProjectNotFoundError(uuid4()), 3),
        (ConflictError(uuid4(), 5), 4),
        (StateError("busy"), 5),
        (TranscodingFailure("boom"), 6),
        (EditorError("other"), 1),
    ],
)
def test_exit_codes(error, expected):
    assert cli.exit_code_for(error) == expected


def test_append_and_list(run, project_id):
    code, body = run(
        "append", project_id, "--user", "u1", "--ops", '[{"type": "trim", "parameters": {"end": 3}}]'
    )
    assert code == 0
    assert body["version"] == 1
    assert body["proxy_status"] == "completed"

    code, body = run("ops", project_id)
    assert code == 0
    assert body["operations"] == [{"type": "trim", "parameters": {"end": 3}}]


def test_append_reads_ops_file(run, project_id, tmp_path):
    ops_file = tmp_path / "ops.json"
    ops_file.write_text(json.dumps([{"type": "grayscale", "parameters": {}}]))

    code, body = run("append", project_id, "--user", "u1", "--ops", f"@{ops_file}")

    assert code == 0
    assert body["version"] == 1


def test_invalid_ops_json(run, project_id):
    code, body = run("append", project_id, "--user", "u1", "--ops", "not json")

    assert code == cli.EXIT_VALIDATION
    assert body["error"]["code"] == "validation_error"


def test_unknown_project(run):
    code, body = run("append", str(uuid4()), "--user", "u1", "--ops", '[{"type": "trim"}]')

    assert code == cli.EXIT_NOT_FOUND
    assert body["ok"] is False


def test_export_then_existing(run, project_id):
    run("append", project_id, "--user", "u1", "--ops", '[{"type": "trim"}]')

    code, body = run("export", project_id, "--resolution", "1280x720")
    assert code == 0
    assert body["existing"] is False
    assert body["job"]["status"] == "completed"

    code, body = run("export", project_id)
    assert code == 0
    assert body["existing"] is True

    code, body = run("pin", "--project", project_id, "--version", "1")
    assert code == 0
    assert body["pinned"] is True


def test_export_engine_failure(run, project_id, fake_transcoder):
    run("append", project_id, "--user", "u1", "--ops", '[{"type": "trim"}]')
    fake_transcoder.fail_with = "encoder crashed"

    code, body = run("export", project_id)

    assert code == cli.EXIT_TRANSCODING
    assert body["job"]["error_code"] == "transcoding_failure"


def test_cancel_finished_job_is_state_error(run, project_id):
    _, appended = run("append", project_id, "--user", "u1", "--ops", '[{"type": "trim"}]')

    code, body = run("cancel", appended["proxy_job_id"])

    assert code == cli.EXIT_STATE
    assert body["error"]["code"] == "state_error"


def test_gc_delete_needs_confirm(run):
    code, body = run("gc-delete", str(uuid4()))

    assert code == cli.EXIT_VALIDATION
    assert body["error"]["code"] == "validation_error"


def test_gc_calculate_and_clear(run, project_id):
    code, body = run("gc-calculate", "--ttl-days", "30", "--keep-latest-n", "1")
    assert code == 0
    assert body["projects_processed"] == 1

    code, body = run("clear-jobs", "--ttl-seconds", "0")
    assert code == 0
    assert body["cleared"] == 0


def test_pin_needs_target(run):
    code, _ = run("pin")

    assert code == cli.EXIT_VALIDATION
