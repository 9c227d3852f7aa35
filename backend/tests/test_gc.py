from uuid import uuid4

import pytest

from models.export_models import ExportState
from operators import export_operator, gc_operator
from operators.errors import StateError, ValidationError
from utils import storage


def _mark(db, project, **kwargs):
    kwargs.setdefault("ttl_days", 30)
    kwargs.setdefault("keep_latest_n", 1)
    return gc_operator.calculate_gc_candidates(db, **kwargs)


def _statuses(db, exports):
    for export in exports:
        db.refresh(export)
    return [export.status for export in exports]


class TestCalculate:
    def test_old_exports_beyond_keep_latest_are_marked(self, db, project, make_export):
        exports = [make_export(project.project_id, v, age_days=40) for v in (1, 2, 3)]

        report = _mark(db, project)

        assert _statuses(db, exports) == ["gc_candidate", "gc_candidate", "active"]
        assert report.candidates_marked == 2
        assert report.exports_kept == 1
        assert {c.version for c in report.candidates} == {1, 2}
        assert all(e.gc_marked_at is not None for e in exports[:2])

    def test_recent_exports_are_kept(self, db, project, make_export):
        old = make_export(project.project_id, 1, age_days=40)
        recent = make_export(project.project_id, 2, age_days=5)
        newest = make_export(project.project_id, 3, age_days=1)

        _mark(db, project)

        assert _statuses(db, [old, recent, newest]) == ["gc_candidate", "active", "active"]

    def test_pinned_exports_are_never_marked(self, db, project, make_export):
        pinned = make_export(project.project_id, 1, age_days=400, pinned=True)
        make_export(project.project_id, 2, age_days=40)

        report = _mark(db, project, ttl_days=0, keep_latest_n=0)

        assert _statuses(db, [pinned]) == ["active"]
        assert pinned.gc_candidate is False
        assert report.exports_pinned == 1

    def test_mark_is_idempotent(self, db, project, make_export):
        for v in (1, 2, 3):
            make_export(project.project_id, v, age_days=40)

        _mark(db, project)
        second = _mark(db, project)

        assert second.candidates_marked == 0
        assert second.candidates_already_marked == 2

    def test_negative_policy_rejected(self, db):
        with pytest.raises(ValidationError):
            gc_operator.calculate_gc_candidates(db, ttl_days=-1)

    def test_candidates_listing(self, db, project, make_export):
        for v in (1, 2, 3):
            make_export(project.project_id, v, age_days=40, payload=b"x" * 10)
        _mark(db, project)

        listing = gc_operator.list_gc_candidates(db)

        assert listing.count == 2
        assert listing.total_size == 20
        assert {c.project_name for c in listing.candidates} == {"demo"}
        assert gc_operator.list_gc_candidates(db, older_than_days=7).count == 0


class TestPin:
    def test_pin_after_mark_blocks_archive(self, db, project, make_export):
        exports = [make_export(project.project_id, v, age_days=40) for v in (1, 2, 3)]
        _mark(db, project)
        v2 = exports[1]

        pinned = export_operator.toggle_pin_by_version(db, project.project_id, 2)

        assert pinned.pinned is True
        assert pinned.gc_candidate is False
        assert pinned.gc_marked_at is None
        assert pinned.status == ExportState.ACTIVE.value

        with pytest.raises(StateError):
            gc_operator._archive_one(db, v2.export_id)

        report = gc_operator.archive_exports(db, [v2.export_id])
        assert report.archived == 0
        assert report.results[0].error_code == "state_error"
        assert storage.exists(v2.storage_key)

    def test_pin_toggles(self, db, project, make_export):
        export = make_export(project.project_id, 1)

        assert export_operator.toggle_pin(db, export.export_id).pinned is True
        assert export_operator.toggle_pin(db, export.export_id).pinned is False

    def test_deleted_export_cannot_be_pinned(self, db, project, make_export):
        export = make_export(project.project_id, 1, status=ExportState.DELETED)

        with pytest.raises(StateError):
            export_operator.set_pinned(db, export.export_id, True)


class TestArchiveAndDelete:
    def _archived(self, db, project, make_export):
        exports = [
            make_export(project.project_id, v, age_days=40, payload=b"x" * 100)
            for v in (1, 2, 3)
        ]
        _mark(db, project)
        return exports

    def test_archive_moves_bytes(self, db, project, make_export):
        exports = self._archived(db, project, make_export)
        v1 = exports[0]
        old_key = v1.storage_key

        report = gc_operator.archive_exports(db, [v1.export_id])

        db.refresh(v1)
        assert report.archived == 1
        assert v1.status == ExportState.ARCHIVED.value
        assert v1.gc_candidate is False
        assert v1.storage_key == f"archive/{v1.export_id}_v1.mp4"
        assert storage.exists(v1.storage_key)
        assert not storage.exists(old_key)

    def test_archive_reports_each_id(self, db, project, make_export):
        exports = self._archived(db, project, make_export)
        unknown = uuid4()

        report = gc_operator.archive_exports(
            db, [exports[0].export_id, unknown, exports[2].export_id]
        )

        assert report.total_requested == 3
        assert report.archived == 1
        assert report.failed == 2
        assert [r.ok for r in report.results] == [True, False, False]
        assert report.results[1].error_code == "not_found"
        assert report.results[2].error_code == "state_error"

    def test_archive_repoints_latest_export(self, db, project, make_export):
        exports = self._archived(db, project, make_export)
        v2 = exports[1]
        export_operator.update_latest_export_pointer(
            db, project.project_id, v2.version, v2.storage_key
        )

        gc_operator.archive_exports(db, [v2.export_id])

        db.refresh(project)
        assert project.latest_export_key == exports[2].storage_key
        assert project.latest_export_version == 3

    def test_repoint_skips_pinned_archive(self, db, project, make_export):
        v1 = make_export(project.project_id, 1, age_days=40)
        v2 = make_export(project.project_id, 2, age_days=40)
        _mark(db, project, keep_latest_n=0)
        gc_operator.archive_exports(db, [v1.export_id])
        export_operator.set_pinned(db, v1.export_id, True)
        export_operator.update_latest_export_pointer(db, project.project_id, 2, v2.storage_key)

        gc_operator.archive_exports(db, [v2.export_id])

        db.refresh(project)
        assert project.latest_export_key is None
        assert project.latest_export_version is None

    def test_mark_archive_delete_in_one_session(self, db, project, make_export):
        v1 = make_export(project.project_id, 1, age_days=40, payload=b"x" * 100)
        make_export(project.project_id, 2, age_days=40)

        assert _mark(db, project).candidates_marked == 1
        assert gc_operator.archive_exports(db, [v1.export_id]).archived == 1
        archived_key = export_operator.get_export(db, v1.export_id).storage_key

        report = gc_operator.delete_archived_exports(db, [v1.export_id], confirmed=True)

        assert report.deleted == 1
        assert report.results[0].storage_key == archived_key
        assert report.bytes_freed == 100
        assert not storage.exists(archived_key)

    def test_delete_requires_confirmation(self, db, project, make_export):
        exports = self._archived(db, project, make_export)
        gc_operator.archive_exports(db, [exports[0].export_id])
        db.refresh(exports[0])

        with pytest.raises(ValidationError):
            gc_operator.delete_archived_exports(db, [exports[0].export_id])

        assert storage.exists(exports[0].storage_key)
        assert _statuses(db, [exports[0]]) == ["archived"]

    def test_delete_frees_bytes(self, db, project, make_export):
        exports = self._archived(db, project, make_export)
        ids = [exports[0].export_id, exports[1].export_id]
        gc_operator.archive_exports(db, ids)

        report = gc_operator.delete_archived_exports(db, ids, confirmed=True)

        assert report.deleted == 2
        assert report.bytes_freed == 200
        for export in exports[:2]:
            db.refresh(export)
            assert export.status == ExportState.DELETED.value
            assert export.deleted_at is not None
            assert not storage.exists(export.storage_key)

    def test_delete_skips_non_archived(self, db, project, make_export):
        exports = self._archived(db, project, make_export)

        report = gc_operator.delete_archived_exports(
            db, [exports[0].export_id], confirmed=True
        )

        assert report.deleted == 0
        assert report.results[0].error_code == "state_error"
        assert storage.exists(exports[0].storage_key)

    def test_delete_restores_row_when_unlink_fails(
        self, db, project, make_export, monkeypatch
    ):
        exports = self._archived(db, project, make_export)
        gc_operator.archive_exports(db, [exports[0].export_id])

        def broken_delete(key):
            raise PermissionError(key)

        monkeypatch.setattr(storage, "delete_file", broken_delete)

        report = gc_operator.delete_archived_exports(
            db, [exports[0].export_id], confirmed=True
        )

        assert report.failed == 1
        assert report.results[0].error_code == "internal_error"
        assert _statuses(db, [exports[0]]) == ["archived"]

    def test_re_export_revives_tombstone(self, db, project, make_export):
        exports = self._archived(db, project, make_export)
        v1 = exports[0]
        gc_operator.archive_exports(db, [v1.export_id])
        gc_operator.delete_archived_exports(db, [v1.export_id], confirmed=True)

        key = storage.export_key(project.project_id, 1)
        storage.write_bytes(key, b"fresh")
        revived, created = export_operator.register_export(
            db, project.project_id, 1, storage_key=key, size_bytes=5
        )

        assert created is True
        assert revived.export_id == v1.export_id
        assert revived.status == ExportState.ACTIVE.value
        assert revived.deleted_at is None
