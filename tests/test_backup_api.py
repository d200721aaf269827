import json
import threading
import time
from concurrent.futures import wait
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest

from backup import BackupRepository, StaticIdentity
from backup.api import describe_snapshots, relative_age
from backup.sync import DeviceState
from backup.types import BackupFailureKind, BackupSettings, SnapshotLocation, SyncNever, SyncSynced
from backup.verify import copy_with_digest
from core.db import SQLiteStore
from core.settings import load_settings

TOKEN = "token-abc"


class IdleProbe:
    def read(self) -> DeviceState:
        return DeviceState(unmetered=True, charging=True, battery_pct=100.0)


@pytest.fixture
def make_repo(tmp_path, seed_db, object_session):
    repos = []

    def factory(*, settings=None, identity=None, rows: int = 3, seed: bool = True, store=None):
        if seed:
            seed_db(tmp_path / "data" / "symptomlog.db", version=1, rows=rows)
        repo = BackupRepository(
            working_dir=tmp_path,
            settings=settings or {"backup": {"remote": {"base_url": "https://backup.example/api"}}},
            identity=identity,
            store=store,
            session=object_session,
            probe=IdleProbe(),
            local_manager_options={"disk_free": lambda _path: 10 * 1024 ** 3, "sleep": lambda _delay: None},
            sleep=lambda _delay: None,
        )
        repos.append(repo)
        return repo

    yield factory
    for repo in repos:
        repo.close()


def test_create_records_last_backup_and_notifies(make_repo, tmp_path):
    repo = make_repo()
    events = []
    repo.add_listener(lambda event, payload: events.append(event))

    outcome = repo.create_local_backup(label="weekly")

    assert outcome.ok
    stored = load_settings(tmp_path)["backup"]["last_local_backup_utc"]
    assert datetime.fromisoformat(stored) == outcome.snapshot.created
    assert "local_backups" in events
    assert "settings" in events
    assert [snap.name for snap in repo.list_local_backups()] == [outcome.snapshot.name]
    assert repo.storage_usage()["count"] == 1


def test_listener_can_be_removed(make_repo):
    repo = make_repo()
    events = []
    remove = repo.add_listener(lambda event, payload: events.append(event))
    remove()

    repo.toggle_local_backups(False)

    assert events == []


def test_failing_listener_does_not_break_the_operation(make_repo):
    repo = make_repo()

    def broken(event, payload):
        raise RuntimeError("listener bug")

    repo.add_listener(broken)

    assert repo.create_local_backup().ok


def test_toggles_persist_to_settings(make_repo, tmp_path):
    repo = make_repo()

    repo.toggle_local_backups(False)
    repo.toggle_cloud_sync(False)

    persisted = load_settings(tmp_path)["backup"]
    assert persisted["local_enabled"] is False
    assert persisted["cloud_sync_enabled"] is False
    observed = repo.observe_settings()
    assert not observed.local_backups_enabled
    assert not observed.cloud_sync_enabled
    assert not repo.scheduler.constraints_satisfied()


def test_sync_to_cloud_updates_status_and_counts(make_repo, object_session, tmp_path):
    repo = make_repo(identity=StaticIdentity(access_token=TOKEN, account_id="acct-1"))
    assert isinstance(repo.sync_status, SyncNever)

    outcome = repo.sync_to_cloud(label="before trip")

    assert outcome.ok
    assert isinstance(repo.sync_status, SyncSynced)
    assert load_settings(tmp_path)["backup"]["last_cloud_sync_utc"] is not None
    settings = repo.observe_settings()
    assert settings.signed_in
    assert settings.account_id == "acct-1"
    assert settings.cloud_backups_count == 1
    assert settings.local_backups_count == 1
    assert settings.total_backups_count == 2
    assert settings.is_valid()
    assert object_session.snapshot_names() == [outcome.snapshot.name]


def test_sync_without_identity_is_an_auth_failure(make_repo):
    repo = make_repo()

    outcome = repo.sync_to_cloud()

    assert not outcome.ok
    assert outcome.kind is BackupFailureKind.AUTH_FAILED
    assert repo.list_cloud_backups() == []


def test_restore_through_the_repository(make_repo):
    repo = make_repo(rows=3)
    snapshot = repo.create_local_backup().snapshot
    repo.store.connection.execute("INSERT INTO symptoms(name) VALUES ('later')")
    events = []
    repo.add_listener(lambda event, payload: events.append((event, payload)))

    outcome = repo.restore_from_backup(snapshot)

    assert outcome.ok
    assert outcome.items_restored == 3
    assert repo.store.count_rows() == 3
    assert ("restore", outcome) in events


def test_restore_cloud_snapshot_through_the_repository(make_repo):
    repo = make_repo(identity=StaticIdentity(access_token=TOKEN, account_id="acct-1"), rows=2)
    assert repo.sync_to_cloud().ok
    repo.store.connection.execute("INSERT INTO symptoms(name) VALUES ('later')")
    remote = repo.list_cloud_backups()[0]
    assert remote.location is SnapshotLocation.REMOTE

    outcome = repo.restore_from_backup(remote)

    assert outcome.ok
    assert repo.store.count_rows() == 2
    assert list((repo.working_dir / "backups" / "staging").iterdir()) == []


def test_interrupted_restore_is_recovered_at_start(make_repo, tmp_path, symptom_count):
    first = make_repo(rows=4)
    safety = first.local.create_local_backup(safety=True).snapshot
    first.store.connection.execute("DELETE FROM symptoms")
    marker = {
        "target": "symptomlog_v1_20250101_000000.snapshot",
        "safety": safety.name,
        "safety_path": str(safety.path),
        "state": "swapping",
    }
    first.restore_manager.marker_path.write_text(json.dumps(marker), encoding="utf-8")
    first.close()

    second = make_repo(seed=False)

    assert not second.restore_manager.marker_path.exists()
    assert second.store.count_rows() == 4
    assert symptom_count(second.store.path) == 4


def test_cipher_is_applied_to_uploads(make_repo, object_session):
    repo = make_repo(identity=StaticIdentity(access_token=TOKEN, account_id="acct-1"))
    repo.set_encryption_password("correct horse")

    outcome = repo.sync_to_cloud()

    assert outcome.ok
    _, meta = object_session.objects[outcome.snapshot.name]
    assert meta["encrypted"] == "1"


def test_set_identity_records_the_account(make_repo, tmp_path):
    repo = make_repo()

    repo.set_identity(StaticIdentity(access_token=TOKEN, account_id="acct-9"))

    persisted = load_settings(tmp_path)["backup"]
    assert persisted["account_id"] == "acct-9"
    assert persisted["signed_in"] is True


# ----------------------------------------------------------------------
NOW = datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "delta, expected",
    [
        (timedelta(seconds=30), "Just now"),
        (timedelta(minutes=5), "5 minutes ago"),
        (timedelta(hours=3, minutes=10), "3 hours ago"),
        (timedelta(days=2, hours=1), "2 days ago"),
    ],
)
def test_relative_age(delta, expected):
    assert relative_age(NOW - delta, NOW) == expected


def test_describe_snapshots_marks_the_latest(make_repo):
    repo = make_repo()
    older = repo.create_local_backup().snapshot
    newer = repo.create_local_backup().snapshot

    described = {item.name: item for item in describe_snapshots([older, newer], now=NOW)}

    assert described[newer.name].is_latest
    assert not described[older.name].is_latest
    assert described[newer.name].size_text.endswith(" MB")
    assert described[newer.name].location is SnapshotLocation.LOCAL


def test_backup_settings_validity():
    assert BackupSettings().is_valid()
    assert not BackupSettings(signed_in=True).is_valid()
    assert not BackupSettings(local_backups_count=-1).is_valid()


def test_cloud_sync_toggle_restarts_the_scheduler(make_repo):
    repo = make_repo()
    repo.start_scheduler()
    assert repo.scheduler.running

    repo.toggle_cloud_sync(False)
    assert not repo.scheduler.running

    repo.toggle_cloud_sync(True)
    assert repo.scheduler.running


class StoreUsage:
    """Counts how many callers are inside a store-touching section at once."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.active = 0
        self.peak = 0

    @contextmanager
    def using(self):
        with self._lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
        try:
            time.sleep(0.01)
            yield
        finally:
            with self._lock:
                self.active -= 1


class TrackedStore(SQLiteStore):
    def __init__(self, path, *, usage: StoreUsage, **kwargs) -> None:
        super().__init__(path, **kwargs)
        self.usage = usage

    def checkpoint(self):
        with self.usage.using():
            return super().checkpoint()

    @contextmanager
    def exclusive(self):
        with self.usage.using(), super().exclusive() as live_path:
            yield live_path


def test_concurrent_backup_and_restore_never_share_the_store(make_repo, tmp_path, seed_db, monkeypatch):
    usage = StoreUsage()
    store_path = tmp_path / "data" / "symptomlog.db"
    seed_db(store_path, version=1, rows=3)
    store = TrackedStore(store_path, schema_version=1, usage=usage)

    def tracked_copy(source, dest):
        with usage.using():
            return copy_with_digest(source, dest)

    monkeypatch.setattr("backup.create.copy_with_digest", tracked_copy)
    repo = make_repo(seed=False, store=store)
    snapshot = repo.create_local_backup().snapshot

    spans = []
    do_create, do_restore = repo._do_create, repo._do_restore

    def timed(label, fn):
        def run(*args):
            started = time.monotonic()
            try:
                return fn(*args)
            finally:
                spans.append((label, started, time.monotonic()))

        return run

    monkeypatch.setattr(repo, "_do_create", timed("backup", do_create))
    monkeypatch.setattr(repo, "_do_restore", timed("restore", do_restore))

    barrier = threading.Barrier(2)
    futures = {}

    def submit(label, call):
        barrier.wait()
        futures[label] = call()

    threads = [
        threading.Thread(target=submit, args=("restore", lambda: repo.submit_restore(snapshot))),
        threading.Thread(target=submit, args=("backup", lambda: repo.submit_backup(label="after"))),
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(10)

    done, _ = wait(list(futures.values()), timeout=30)
    assert len(done) == 2
    finished = [label for label, future in futures.items() if not future.cancelled()]
    assert finished
    for label in finished:
        assert futures[label].result().ok
    assert sorted(label for label, _, _ in spans) == sorted(finished)
    spans.sort(key=lambda span: span[1])
    for (_, _, first_end), (_, second_start, _) in zip(spans, spans[1:]):
        assert second_start >= first_end
    assert usage.peak == 1
    assert usage.active == 0


def test_json_export_merges_through_the_repository(make_repo):
    repo = make_repo(rows=2)
    events = []
    repo.add_listener(lambda event, payload: events.append(event))
    content = json.dumps({"version": 1, "tables": {"symptoms": [{"name": "nausea"}]}})

    preview = repo.preview_json_backup(content)
    outcome = repo.restore_from_json(content)

    assert preview.counts == {"symptoms": 1}
    assert outcome.ok
    assert outcome.items_restored == 1
    assert repo.store.count_rows() == 3
    assert "restore" in events
