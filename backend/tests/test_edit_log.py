import gc
import threading
from uuid import uuid4

import pytest
from sqlalchemy import event

from database.models import EditOperation
from operators import edit_log_operator
from operators.errors import ConflictError, ProjectNotFoundError, ValidationError


OP_A = {"type": "trim", "parameters": {"start": 0, "end": 5}}
OP_B = {"type": "blur", "parameters": {"radius": 3}}
OP_C = {"type": "grayscale", "parameters": {}}


@pytest.fixture
def rival_writer(db):
    """Bumps current_version right before the version compare-and-swap runs."""
    engine = db.get_bind()
    state = {"cas_attempts": 0, "races_to_lose": 0}

    def before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        if statement.startswith("UPDATE projects") and "current_version" in statement:
            state["cas_attempts"] += 1
            if state["cas_attempts"] <= state["races_to_lose"]:
                cursor.connection.execute(
                    "UPDATE projects SET current_version = current_version + 1"
                )

    event.listen(engine, "before_cursor_execute", before_cursor_execute)
    yield state
    event.remove(engine, "before_cursor_execute", before_cursor_execute)


class TestAppend:
    def test_versions_and_replay_order(self, db, project):
        assert edit_log_operator.latest_version(db, project.project_id) == 0

        v1, _ = edit_log_operator.append(db, project.project_id, "u1", [OP_A])
        v2, _ = edit_log_operator.append(db, project.project_id, "u1", [OP_B, OP_C])

        assert (v1, v2) == (1, 2)
        assert edit_log_operator.latest_version(db, project.project_id) == 2
        assert edit_log_operator.build_edit_decision_list(db, project.project_id, 2) == [
            OP_A,
            OP_B,
            OP_C,
        ]
        assert edit_log_operator.build_edit_decision_list(db, project.project_id, 1) == [OP_A]

    def test_params_alias_is_normalized(self, db, project):
        edit_log_operator.append(
            db, project.project_id, "u1", [{"type": "speed", "params": {"factor": 2}}]
        )

        assert edit_log_operator.build_edit_decision_list(db, project.project_id, 1) == [
            {"type": "speed", "parameters": {"factor": 2}}
        ]

    def test_empty_ops_rejected_without_version_bump(self, db, project):
        with pytest.raises(ValidationError):
            edit_log_operator.append(db, project.project_id, "u1", [])

        assert edit_log_operator.latest_version(db, project.project_id) == 0

    @pytest.mark.parametrize(
        "ops",
        [
            [{"parameters": {}}],
            [{"type": "", "parameters": {}}],
            [{"type": "trim", "parameters": [], "extra": 1}],
            "trim",
        ],
    )
    def test_malformed_ops_rejected(self, db, project, ops):
        with pytest.raises(ValidationError):
            edit_log_operator.append(db, project.project_id, "u1", ops)

    def test_missing_user_rejected(self, db, project):
        with pytest.raises(ValidationError):
            edit_log_operator.append(db, project.project_id, " ", [OP_A])

    def test_unknown_project(self, db):
        with pytest.raises(ProjectNotFoundError):
            edit_log_operator.append(db, uuid4(), "u1", [OP_A])

    def test_concurrent_appends_get_distinct_gapless_versions(
        self, session_factory, db, project
    ):
        workers = 8
        versions: list[int] = []
        errors: list[Exception] = []
        guard = threading.Lock()
        start = threading.Barrier(workers)

        def worker(index: int):
            session = session_factory()
            try:
                start.wait()
                version, _ = edit_log_operator.append(
                    session,
                    project.project_id,
                    f"user-{index}",
                    [{"type": "trim", "parameters": {"start": index, "end": index + 1}}],
                )
                with guard:
                    versions.append(version)
            except Exception as e:  # surfaced through the assertion below
                with guard:
                    errors.append(e)
            finally:
                session.close()

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert sorted(versions) == list(range(1, workers + 1))
        stored = [
            row.version
            for row in db.query(EditOperation)
            .filter(EditOperation.project_id == project.project_id)
            .order_by(EditOperation.version)
            .all()
        ]
        assert stored == list(range(1, workers + 1))

    def test_project_lock_is_dropped_after_append(self, db, project):
        edit_log_operator.append(db, project.project_id, "u1", [OP_A])
        gc.collect()

        assert project.project_id not in edit_log_operator._project_locks

    def test_lost_race_is_retried(self, db, project, rival_writer):
        rival_writer["races_to_lose"] = 1

        version, _ = edit_log_operator.append(db, project.project_id, "u1", [OP_A])

        assert version == 1
        assert rival_writer["cas_attempts"] == 2
        assert edit_log_operator.latest_version(db, project.project_id) == 1

    def test_conflict_after_bounded_retries(self, db, project, rival_writer):
        rival_writer["races_to_lose"] = 10

        with pytest.raises(ConflictError):
            edit_log_operator.append(db, project.project_id, "u1", [OP_A], max_retries=3)

        assert rival_writer["cas_attempts"] == 3
        assert edit_log_operator.latest_version(db, project.project_id) == 0
        assert edit_log_operator.list_up_to(db, project.project_id, 10) == []


class TestListOperations:
    def test_defaults_to_current_version(self, db, project):
        edit_log_operator.append(db, project.project_id, "u1", [OP_A])
        edit_log_operator.append(db, project.project_id, "u2", [OP_B])

        current, batches = edit_log_operator.list_operations(db, project.project_id)

        assert current == 2
        assert [b.version for b in batches] == [1, 2]
        assert [b.user_id for b in batches] == ["u1", "u2"]

    def test_version_zero_is_empty(self, db, project):
        edit_log_operator.append(db, project.project_id, "u1", [OP_A])

        current, batches = edit_log_operator.list_operations(db, project.project_id, 0)

        assert current == 1
        assert batches == []

    def test_negative_version_rejected(self, db, project):
        with pytest.raises(ValidationError):
            edit_log_operator.list_operations(db, project.project_id, -1)
