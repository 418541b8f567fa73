import hashlib
import threading
from datetime import datetime, timedelta, timezone

import pytest

from lafsbackup.backupdb import BackupDB, FileStat
from lafsbackup.errors import BackendUnavailable, IdentityConflict, TransientIOError
from lafsbackup.services.detector_service import (
    ChangeDetector,
    Outcome,
    compare_stat,
    stat_path,
)


class RecordingUploader:
    """Content-addressed fake backend: capability derives from the stored bytes."""

    def __init__(self, contents: dict[str, bytes] | None = None) -> None:
        self.contents = dict(contents or {})
        self.calls: list[str] = []
        self.fail: set[str] = set()
        self._lock = threading.Lock()

    def __call__(self, path: str) -> str:
        with self._lock:
            self.calls.append(path)
        if path in self.fail:
            raise BackendUnavailable("node down", path=path)
        digest = hashlib.sha256(self.contents[path]).hexdigest()[:12]
        return f"URI:CHK:{digest}"


def _db(tmp_path):
    return BackupDB(tmp_path / "backup.db").open()


def test_scenario_upload_then_reuse_then_stale(tmp_path):
    uploads = []

    def upload(path):
        uploads.append(path)
        return "CHK:aaa" if len(uploads) == 1 else "CHK:aab"

    with _db(tmp_path) as db:
        detector = ChangeDetector(db, upload)

        first = detector.process("/a/b.txt", FileStat(10, 100, 100))
        assert first.outcome is Outcome.MISS
        assert first.capability == "CHK:aaa"
        assert uploads == ["/a/b.txt"]

        second = detector.process("/a/b.txt", FileStat(10, 100, 100))
        assert second.outcome is Outcome.REUSE
        assert second.capability == "CHK:aaa"
        assert second.uploaded is False
        assert uploads == ["/a/b.txt"]

        third = detector.process("/a/b.txt", FileStat(10, 101, 100))
        assert third.outcome is Outcome.STALE
        assert uploads == ["/a/b.txt", "/a/b.txt"]
        assert third.identity != first.identity
        assert db.caps.get(first.identity) == "CHK:aaa"
        assert db.files.lookup("/a/b.txt").identity == third.identity


@pytest.mark.parametrize(
    "changed",
    [FileStat(11, 100, 100), FileStat(10, 101, 100), FileStat(10, 100, 101)],
)
def test_any_stat_difference_triggers_exactly_one_upload(tmp_path, changed):
    uploader = RecordingUploader({"/f": b"data"})
    with _db(tmp_path) as db:
        detector = ChangeDetector(db, uploader)
        detector.process("/f", FileStat(10, 100, 100))
        uploader.calls.clear()

        result = detector.process("/f", changed)

        assert result.outcome is Outcome.STALE
        assert uploader.calls == ["/f"]


def test_relaxed_policy_reuses_on_ctime_only_change(tmp_path):
    uploader = RecordingUploader({"/f": b"data"})
    with _db(tmp_path) as db:
        detector = ChangeDetector(db, uploader, ctime_policy="relaxed")
        first = detector.process("/f", FileStat(10, 100, 100))
        uploader.calls.clear()

        result = detector.process("/f", FileStat(10, 100, 105))

        assert result.outcome is Outcome.REUSE
        assert result.capability == first.capability
        assert uploader.calls == []
        assert db.files.lookup("/f").ctime == 105

        stale = detector.process("/f", FileStat(10, 102, 105))
        assert stale.outcome is Outcome.STALE


def test_compare_stat_policies():
    cached = FileStat(1, 2, 3)
    assert compare_stat(cached, FileStat(1, 2, 3)) == (True, False)
    assert compare_stat(cached, FileStat(1, 2, 4)) == (False, True)
    assert compare_stat(cached, FileStat(1, 2, 4), ctime_policy="relaxed") == (True, True)
    assert compare_stat(cached, FileStat(1, 5, 4), ctime_policy="relaxed") == (False, False)


def test_byte_identical_paths_share_capability_not_identity(tmp_path):
    uploader = RecordingUploader({"/x/one.txt": b"same", "/y/two.txt": b"same"})
    with _db(tmp_path) as db:
        detector = ChangeDetector(db, uploader)
        one = detector.process("/x/one.txt", FileStat(4, 1, 1))
        two = detector.process("/y/two.txt", FileStat(4, 2, 2))

        assert one.identity != two.identity
        first_id = db.files.lookup("/x/one.txt").identity
        second_id = db.files.lookup("/y/two.txt").identity
        assert db.caps.get(first_id) == db.caps.get(second_id)


def test_reverted_content_mints_new_identity(tmp_path):
    uploader = RecordingUploader({"/f": b"v1"})
    with _db(tmp_path) as db:
        detector = ChangeDetector(db, uploader)
        original = detector.process("/f", FileStat(2, 1, 1))
        uploader.contents["/f"] = b"v2"
        detector.process("/f", FileStat(2, 2, 2))
        uploader.contents["/f"] = b"v1"
        reverted = detector.process("/f", FileStat(2, 3, 3))

        assert reverted.capability == original.capability
        assert reverted.identity != original.identity


def test_reuse_identity_policy_keeps_identity_when_capability_matches(tmp_path):
    uploader = RecordingUploader({"/f": b"data"})
    with _db(tmp_path) as db:
        detector = ChangeDetector(db, uploader, reuse_identity=True)
        first = detector.process("/f", FileStat(4, 1, 1))

        touched = detector.process("/f", FileStat(4, 2, 2))
        assert touched.outcome is Outcome.STALE
        assert touched.identity == first.identity

        uploader.contents["/f"] = b"edited"
        edited = detector.process("/f", FileStat(6, 3, 3))
        assert edited.identity != first.identity


def test_backend_failure_leaves_prior_state_untouched(tmp_path):
    uploader = RecordingUploader({"/f": b"data"})
    with _db(tmp_path) as db:
        detector = ChangeDetector(db, uploader)
        first = detector.process("/f", FileStat(4, 1, 1))
        before = db.stats()

        uploader.fail.add("/f")
        with pytest.raises(BackendUnavailable):
            detector.process("/f", FileStat(5, 2, 2))

        record = db.files.lookup("/f")
        assert record.identity == first.identity
        assert record.stat == FileStat(4, 1, 1)
        assert db.stats() == before


def test_identity_conflict_aborts_only_that_path(tmp_path, monkeypatch):
    uploader = RecordingUploader({"/bad": b"bad", "/good": b"good"})
    with _db(tmp_path) as db:
        detector = ChangeDetector(db, uploader, reuse_identity=True)
        bad = detector.process("/bad", FileStat(3, 1, 1))
        uploader.contents["/bad"] = b"changed"

        # Simulate an identity handed out twice upstream.
        monkeypatch.setattr(detector, "_identity_for", lambda record, capability: bad.identity)
        with pytest.raises(IdentityConflict) as exc:
            detector.process("/bad", FileStat(7, 2, 2))
        assert exc.value.path == "/bad"
        assert db.files.lookup("/bad").stat == FileStat(3, 1, 1)

        monkeypatch.undo()
        good = detector.process("/good", FileStat(4, 1, 1))
        assert good.outcome is Outcome.MISS
        assert db.caps.get(good.identity) == good.capability


def test_missing_capability_row_is_treated_as_miss(tmp_path):
    uploader = RecordingUploader({"/f": b"data"})
    with _db(tmp_path) as db:
        orphan = db.caps.allocate_identity()
        db.files.store("/f", 4, 1, 1, orphan)
        detector = ChangeDetector(db, uploader)

        result = detector.process("/f", FileStat(4, 1, 1))

        assert result.outcome is Outcome.MISS
        assert uploader.calls == ["/f"]
        assert result.identity != orphan


def test_stat_failure_surfaces_transient_error(tmp_path):
    uploader = RecordingUploader()
    missing = tmp_path / "gone.txt"
    with _db(tmp_path) as db:
        identity = db.caps.allocate_identity()
        db.caps.put(identity, "URI:CHK:old")
        db.files.store(str(missing), 1, 1, 1, identity)
        detector = ChangeDetector(db, uploader)

        with pytest.raises(TransientIOError):
            detector.process(missing)

        assert db.files.lookup(str(missing)).identity == identity
        assert uploader.calls == []


def test_stat_path_reads_real_file(tmp_path):
    target = tmp_path / "a.txt"
    target.write_bytes(b"12345")
    stat = stat_path(target)
    assert stat.size == 5
    assert stat.mtime == target.stat().st_mtime_ns


def test_concurrent_workers_upload_same_path_once(tmp_path):
    uploader = RecordingUploader({"/f": b"data"})
    with _db(tmp_path) as db:
        detector = ChangeDetector(db, uploader)
        barrier = threading.Barrier(6)
        results = []

        def worker():
            barrier.wait()
            results.append(detector.process("/f", FileStat(4, 1, 1)))

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert uploader.calls == ["/f"]
        assert {result.capability for result in results} == {results[0].capability}
        assert detector._locks == {}


def test_old_uploads_are_renewed(tmp_path):
    now = datetime(2024, 6, 1, tzinfo=timezone.utc)
    uploader = RecordingUploader({"/f": b"data"})
    with _db(tmp_path) as db:
        detector = ChangeDetector(
            db,
            uploader,
            reupload_after=timedelta(days=30),
            clock=lambda: now,
        )
        first = detector.process("/f", FileStat(4, 1, 1))
        db.uploads.record(first.identity, now - timedelta(days=31))
        uploader.calls.clear()

        renewed = detector.process("/f", FileStat(4, 1, 1))

        assert renewed.outcome is Outcome.RENEWED
        assert renewed.identity == first.identity
        assert uploader.calls == ["/f"]
        assert db.uploads.last_uploaded(first.identity) == now

        fresh = detector.process("/f", FileStat(4, 1, 1))
        assert fresh.outcome is Outcome.REUSE


def test_renewal_with_different_capability_becomes_stale(tmp_path):
    now = datetime(2024, 6, 1, tzinfo=timezone.utc)
    uploader = RecordingUploader({"/f": b"data"})
    with _db(tmp_path) as db:
        detector = ChangeDetector(
            db,
            uploader,
            reupload_after=timedelta(days=1),
            clock=lambda: now,
        )
        first = detector.process("/f", FileStat(4, 1, 1))
        db.uploads.record(first.identity, now - timedelta(days=2))
        uploader.contents["/f"] = b"silently edited"

        result = detector.process("/f", FileStat(4, 1, 1))

        assert result.outcome is Outcome.STALE
        assert result.identity != first.identity
        assert db.caps.get(first.identity) == first.capability


def test_unknown_ctime_policy_rejected(tmp_path):
    with _db(tmp_path) as db:
        with pytest.raises(ValueError):
            ChangeDetector(db, RecordingUploader(), ctime_policy="sometimes")


def test_path_locks_are_released_after_use(tmp_path):
    uploader = RecordingUploader({"/a": b"one", "/b": b"two"})
    with _db(tmp_path) as db:
        detector = ChangeDetector(db, uploader)
        detector.process("/a", FileStat(3, 1, 1))
        uploader.fail.add("/b")
        with pytest.raises(BackendUnavailable):
            detector.process("/b", FileStat(3, 1, 1))

        assert detector._locks == {}
