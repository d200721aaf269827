import random
import threading
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import psutil
import pytest
import requests

from backup.cloud import CloudBackupStore, HttpObjectStore
from backup.errors import RemoteError
from backup.guard import ExclusionGate
from backup.naming import AUTO_SLOT_NAME, checksum_name, format_name
from backup.retention import RetentionPolicy
from backup.sync import (
    BackoffPolicy,
    CloudSyncScheduler,
    CloudSyncWorker,
    DeviceState,
    PsutilDeviceProbe,
    StaticIdentity,
    SyncConstraints,
)
from backup.types import BackupFailureKind, BackupSuccess, SyncFailed, SyncSynced, SyncSyncing

TOKEN = "token-abc"


class FixedProbe:
    def __init__(self, state: DeviceState) -> None:
        self.state = state
        self.reads = 0

    def read(self) -> DeviceState:
        self.reads += 1
        return self.state


IDLE = DeviceState(unmetered=True, charging=True, battery_pct=90.0)


@pytest.fixture
def sync_env(make_store, make_manager, backup_logger, object_session):
    def factory(**worker_options):
        store = make_store(rows=2)
        manager = make_manager(store)
        cloud = CloudBackupStore(HttpObjectStore("https://backup.example", session=object_session))
        sleeps = []
        statuses = []
        worker_options.setdefault("gate", ExclusionGate())
        worker = CloudSyncWorker(
            manager,
            cloud,
            logger=backup_logger,
            sleep=sleeps.append,
            on_status=statuses.append,
            **worker_options,
        )
        return SimpleNamespace(
            store=store,
            manager=manager,
            cloud=cloud,
            worker=worker,
            sleeps=sleeps,
            statuses=statuses,
            session=object_session,
            gate=worker_options["gate"],
            logger=backup_logger,
        )

    return factory


def test_sync_without_token_fails_with_auth(sync_env):
    env = sync_env()

    outcome = env.worker.sync_to_cloud(None)

    assert outcome.kind is BackupFailureKind.AUTH_FAILED
    assert env.session.objects == {}
    assert isinstance(env.statuses[-1], SyncFailed)


def test_sync_without_a_remote_store_fails_cleanly(sync_env):
    env = sync_env()
    env.worker.set_cloud(None)

    outcome = env.worker.sync_to_cloud(TOKEN)

    assert outcome.kind is BackupFailureKind.UPLOAD_FAILED
    with pytest.raises(RemoteError):
        env.worker.prune_remote(TOKEN)


def test_sync_uploads_a_fresh_snapshot(sync_env):
    env = sync_env()

    outcome = env.worker.sync_to_cloud(TOKEN)

    assert isinstance(outcome, BackupSuccess)
    assert env.session.snapshot_names() == [outcome.snapshot.name]
    assert len(env.manager.list_local_backups()) == 1
    assert any(isinstance(status, SyncSyncing) for status in env.statuses)
    assert isinstance(env.statuses[-1], SyncSynced)


def test_auto_slot_is_overwritten_in_place(sync_env):
    env = sync_env()

    assert env.worker.sync_to_cloud(TOKEN, True).ok
    assert env.worker.sync_to_cloud(TOKEN, True).ok

    assert env.session.snapshot_names() == [AUTO_SLOT_NAME]
    assert len(env.manager.list_local_backups()) == 2


def test_transient_failures_back_off_then_give_up(sync_env):
    env = sync_env()
    env.session.put_failures = [503, 503, 503]

    outcome = env.worker.sync_to_cloud(TOKEN)

    assert outcome.kind is BackupFailureKind.UPLOAD_FAILED
    assert env.sleeps == [30.0, 60.0]
    assert env.sleeps == sorted(env.sleeps)
    assert env.session.snapshot_names() == []


def test_transient_failure_then_success(sync_env):
    env = sync_env()
    env.session.put_failures = [429]

    outcome = env.worker.sync_to_cloud(TOKEN)

    assert outcome.ok
    assert env.sleeps == [30.0]


def test_unreachable_network_reports_network_unavailable(sync_env):
    env = sync_env()
    env.session.put_failures = [requests.ConnectionError("offline")] * 3

    outcome = env.worker.sync_to_cloud(TOKEN)

    assert outcome.kind is BackupFailureKind.NETWORK_UNAVAILABLE
    assert len(env.sleeps) == 2


def test_rejected_credentials_fail_without_retry(sync_env):
    env = sync_env()
    env.session.put_failures = [401]

    outcome = env.worker.sync_to_cloud(TOKEN)

    assert outcome.kind is BackupFailureKind.AUTH_FAILED
    assert env.sleeps == []


def test_cancelled_sync_is_an_upload_failure(sync_env):
    env = sync_env()
    cancel = threading.Event()
    cancel.set()

    outcome = env.worker.sync_to_cloud(TOKEN, cancel_event=cancel)

    assert outcome.kind is BackupFailureKind.UPLOAD_FAILED
    assert env.session.objects == {}


def test_sync_during_restore_is_a_quiet_no_op(sync_env):
    env = sync_env()

    with env.gate.exclusive():
        outcome = env.worker.sync_to_cloud(TOKEN)

    assert outcome.ok
    assert env.session.objects == {}


def _seed_remote(session, created: datetime, *, label=None) -> str:
    name = format_name(1, created, label=label)
    session.objects[name] = (b"snapshot", {"sha256": "0" * 64})
    session.objects[checksum_name(name)] = (f"{'0' * 64}  {name}\n".encode("utf-8"), {})
    return name


def test_remote_retention_keeps_thirty_and_spares_named(sync_env):
    env = sync_env()
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    unnamed = [_seed_remote(env.session, base + timedelta(hours=idx)) for idx in range(31)]
    named = [_seed_remote(env.session, base - timedelta(days=idx + 1), label="keep") for idx in range(2)]

    outcome = env.worker.sync_to_cloud(TOKEN)

    assert outcome.ok
    remaining = set(env.session.snapshot_names())
    assert set(named) <= remaining
    assert outcome.snapshot.name in remaining
    assert len(remaining - set(named)) == 30
    assert unnamed[0] not in remaining
    assert unnamed[1] not in remaining
    assert checksum_name(unnamed[0]) not in env.session.objects


def test_remote_retention_policy_is_configurable(sync_env):
    env = sync_env(remote_policy=RetentionPolicy(keep=1, exempt_named=True))
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    _seed_remote(env.session, base)

    outcome = env.worker.sync_to_cloud(TOKEN)

    assert env.session.snapshot_names() == [outcome.snapshot.name]


def test_list_cloud_backups_tolerates_failures(sync_env, monkeypatch):
    env = sync_env()
    assert env.worker.list_cloud_backups(None) == []

    def broken(*args, **kwargs):
        raise requests.ConnectionError("offline")

    monkeypatch.setattr(env.session, "request", broken)
    assert env.worker.list_cloud_backups(TOKEN) == []


# ----------------------------------------------------------------------
def _scheduler(env, probe, *, identity=None, enabled=True, **options):
    return CloudSyncScheduler(
        env.worker,
        identity or StaticIdentity(access_token=TOKEN, account_id="acct-1"),
        logger=env.logger,
        is_enabled=lambda: enabled,
        probe=probe,
        gate=env.gate,
        watch_interval_s=0.01,
        **options,
    )


def test_scheduler_skips_on_a_metered_network(sync_env):
    env = sync_env()
    scheduler = _scheduler(env, FixedProbe(DeviceState(unmetered=False, charging=True, battery_pct=90.0)))

    run = scheduler.run_scheduled()

    assert not run.ran
    assert run.ok
    assert run.reasons == ["metered_network"]
    assert env.session.calls == []
    assert env.manager.list_local_backups() == []


def test_scheduler_skips_while_restoring(sync_env):
    env = sync_env()
    scheduler = _scheduler(env, FixedProbe(IDLE))

    with env.gate.exclusive():
        run = scheduler.run_scheduled()

    assert not run.ran
    assert run.reasons == ["restore_in_progress"]
    assert env.session.calls == []


def test_scheduler_reports_every_unmet_constraint(sync_env):
    env = sync_env()
    probe = FixedProbe(DeviceState(unmetered=False, charging=False, battery_pct=5.0))
    scheduler = _scheduler(env, probe, identity=StaticIdentity(), enabled=False)

    assert scheduler.unmet_constraints() == [
        "cloud_sync_disabled",
        "not_signed_in",
        "metered_network",
        "not_charging",
        "battery_low",
    ]
    assert not scheduler.constraints_satisfied()


def test_scheduled_run_uploads_to_the_auto_slot(sync_env):
    env = sync_env()
    scheduler = _scheduler(env, FixedProbe(IDLE))

    run = scheduler.run_scheduled()

    assert run.ran
    assert run.ok
    assert env.session.snapshot_names() == [AUTO_SLOT_NAME]


def test_sync_now_ignores_device_constraints(sync_env):
    env = sync_env()
    scheduler = _scheduler(env, FixedProbe(DeviceState(unmetered=False, charging=False, battery_pct=1.0)))

    outcome = scheduler.sync_now(label="before trip")

    assert outcome.ok
    assert outcome.snapshot.label == "before-trip"


def test_next_delay_stays_inside_the_window(sync_env):
    env = sync_env()
    scheduler = _scheduler(env, FixedProbe(IDLE), interval_s=100.0, window_s=10.0, rng=random.Random(7))

    delays = [scheduler.next_delay() for _ in range(50)]

    assert all(100.0 <= delay <= 110.0 for delay in delays)


def test_scheduler_start_and_stop(sync_env):
    env = sync_env()
    scheduler = _scheduler(env, FixedProbe(IDLE), interval_s=3600.0, window_s=0.0)

    scheduler.start()
    assert scheduler.running
    scheduler.stop(timeout=5)
    assert not scheduler.running


# ----------------------------------------------------------------------
def test_backoff_policy_grows_and_caps():
    policy = BackoffPolicy(initial_s=30, factor=2, max_s=100, max_attempts=5)

    assert policy.delays() == [30, 60, 100, 100]
    assert BackoffPolicy().delays() == [30.0, 60.0]


def test_constraints_can_be_relaxed():
    constraints = SyncConstraints(require_unmetered=False, require_charging=False, min_battery_pct=0)
    state = DeviceState(unmetered=False, charging=False, battery_pct=3.0)

    assert constraints.unmet(state, cloud_enabled=True, authorized=True) == []


def test_psutil_probe_treats_cellular_only_as_metered(monkeypatch):
    up = SimpleNamespace(isup=True)
    down = SimpleNamespace(isup=False)
    monkeypatch.setattr(psutil, "net_if_stats", lambda: {"lo": up, "wwan0": up, "eth0": down})
    monkeypatch.setattr(psutil, "sensors_battery", lambda: SimpleNamespace(power_plugged=False, percent=42.0), raising=False)

    state = PsutilDeviceProbe().read()

    assert state == DeviceState(unmetered=False, charging=False, battery_pct=42.0)


def test_psutil_probe_without_battery_counts_as_charging(monkeypatch):
    monkeypatch.setattr(psutil, "net_if_stats", lambda: {"eth0": SimpleNamespace(isup=True)})
    monkeypatch.setattr(psutil, "sensors_battery", lambda: None, raising=False)

    state = PsutilDeviceProbe().read()

    assert state.unmetered
    assert state.charging
    assert state.battery_pct == 100.0
