"""Replicate local snapshots to the remote store on an idle-friendly schedule."""
from __future__ import annotations

import random
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional, Protocol, Sequence, Tuple

import psutil

from .cloud import CloudBackupStore
from .create import LocalBackupManager
from .errors import RemoteAuthError, RemoteError, RemoteTransientError, SyncCancelled
from .guard import ExclusionGate
from .logs import BackupLogger
from .naming import AUTO_SLOT_NAME
from .retention import REMOTE_KEEP, RetentionPolicy, apply_retention
from .types import (
    BackupFailure,
    BackupFailureKind,
    BackupOutcome,
    BackupSuccess,
    RetentionSummary,
    Snapshot,
    SyncFailed,
    SyncStatus,
    SyncSynced,
    SyncSyncing,
)

DEFAULT_METERED_INTERFACES: Tuple[str, ...] = ("wwan", "rmnet", "ppp", "usb")

StatusCallback = Optional[Callable[[SyncStatus], None]]


# ----------------------------------------------------------------------
class IdentityProvider(Protocol):
    account_id: Optional[str]

    def is_authenticated(self) -> bool: ...

    def get_access_token(self) -> Optional[str]: ...


@dataclass(slots=True)
class StaticIdentity:
    """Identity backed by a fixed token, used by the CLI and tests."""

    access_token: Optional[str] = None
    account_id: Optional[str] = None

    def is_authenticated(self) -> bool:
        return bool(self.access_token)

    def get_access_token(self) -> Optional[str]:
        return self.access_token


# ----------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class DeviceState:
    unmetered: bool
    charging: bool
    battery_pct: float


class DeviceProbe(Protocol):
    def read(self) -> DeviceState: ...


class PsutilDeviceProbe:
    """Read network and power state from ``psutil``.

    The network counts as unmetered when at least one interface that is up
    and not loopback does not look like a cellular or tethered link.
    Machines without a battery report themselves as charging at 100 %.
    """

    def __init__(self, metered_interfaces: Sequence[str] = DEFAULT_METERED_INTERFACES) -> None:
        self._metered = tuple(prefix.lower() for prefix in metered_interfaces)

    def _unmetered(self) -> bool:
        for name, stats in psutil.net_if_stats().items():
            lowered = name.lower()
            if not stats.isup or lowered.startswith("lo"):
                continue
            if not lowered.startswith(self._metered):
                return True
        return False

    def read(self) -> DeviceState:
        sensors = getattr(psutil, "sensors_battery", None)
        battery = sensors() if sensors is not None else None
        if battery is None:
            return DeviceState(unmetered=self._unmetered(), charging=True, battery_pct=100.0)
        return DeviceState(
            unmetered=self._unmetered(),
            charging=bool(battery.power_plugged),
            battery_pct=float(battery.percent),
        )


@dataclass(slots=True)
class SyncConstraints:
    require_unmetered: bool = True
    require_charging: bool = True
    min_battery_pct: float = 15.0

    def unmet(self, state: DeviceState, *, cloud_enabled: bool, authorized: bool) -> List[str]:
        reasons: List[str] = []
        if not cloud_enabled:
            reasons.append("cloud_sync_disabled")
        if not authorized:
            reasons.append("not_signed_in")
        if self.require_unmetered and not state.unmetered:
            reasons.append("metered_network")
        if self.require_charging and not state.charging:
            reasons.append("not_charging")
        if state.battery_pct < self.min_battery_pct:
            reasons.append("battery_low")
        return reasons


@dataclass(slots=True)
class BackoffPolicy:
    initial_s: float = 30.0
    factor: float = 2.0
    max_s: float = 3600.0
    max_attempts: int = 3

    def delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""

        return min(self.initial_s * (self.factor ** max(attempt - 1, 0)), self.max_s)

    def delays(self) -> List[float]:
        return [self.delay(attempt) for attempt in range(1, max(self.max_attempts, 1))]


# ----------------------------------------------------------------------
def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CloudSyncWorker:
    """One sync run: fresh local snapshot, upload with retry, remote pruning."""

    def __init__(
        self,
        local: LocalBackupManager,
        cloud: Optional[CloudBackupStore],
        *,
        logger: BackupLogger,
        gate: Optional[ExclusionGate] = None,
        backoff: Optional[BackoffPolicy] = None,
        remote_policy: Optional[RetentionPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = _utcnow,
        on_status: StatusCallback = None,
        create_snapshot: Optional[Callable[[Optional[str]], BackupOutcome]] = None,
    ) -> None:
        self._local = local
        self._create_snapshot = create_snapshot or (lambda label: local.create_local_backup(label=label))
        self._cloud = cloud
        self._logger = logger
        self._gate = gate or ExclusionGate()
        self._backoff = backoff or BackoffPolicy()
        self._remote_policy = remote_policy or RetentionPolicy(keep=REMOTE_KEEP, exempt_named=True)
        self._sleep = sleep
        self._clock = clock
        self._on_status = on_status

    @property
    def cloud(self) -> Optional[CloudBackupStore]:
        return self._cloud

    def set_cloud(self, cloud: Optional[CloudBackupStore]) -> None:
        self._cloud = cloud

    def _status(self, status: SyncStatus) -> None:
        if self._on_status is not None:
            self._on_status(status)

    def _fail(self, kind: BackupFailureKind, message: str, cause: Optional[BaseException] = None) -> BackupFailure:
        self._logger.event(event="sync_failed", phase="sync", ok=False, kind=kind.value, error=message)
        self._status(SyncFailed(message=message))
        return BackupFailure(kind=kind, message=message, cause=cause)

    # ------------------------------------------------------------------
    def sync_to_cloud(
        self,
        access_token: Optional[str],
        is_auto_slot: bool = False,
        *,
        label: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> BackupOutcome:
        start = time.monotonic()
        if not access_token:
            return self._fail(BackupFailureKind.AUTH_FAILED, "Not signed in to the remote store")
        cloud = self._cloud
        if cloud is None:
            return self._fail(BackupFailureKind.UPLOAD_FAILED, "Remote store is not configured")

        created = self._create_snapshot(label)
        if isinstance(created, BackupFailure):
            self._status(SyncFailed(message=created.message))
            return created
        snapshot = created.snapshot
        remote_name = AUTO_SLOT_NAME if is_auto_slot else snapshot.name

        with self._local.hold(snapshot.name), self._gate.shared() as entered:
            if not entered:
                self._logger.info("sync_skipped", reason="restore_in_progress", id=snapshot.name)
                return BackupSuccess(snapshot=snapshot, duration_ms=int((time.monotonic() - start) * 1000))
            self._status(SyncSyncing(upload_pct=0))
            result = self._upload_with_retry(cloud, snapshot, remote_name, access_token, cancel_event)
            if isinstance(result, BackupFailure):
                return result
            self.prune_remote(access_token)

        now = self._clock()
        duration_ms = int((time.monotonic() - start) * 1000)
        self._logger.event(
            event="sync_complete",
            phase="sync",
            ok=True,
            id=remote_name,
            size=result.size_bytes,
            duration_ms=duration_ms,
        )
        self._status(SyncSynced(last_utc=now))
        return BackupSuccess(snapshot=result, duration_ms=duration_ms)

    def _upload_with_retry(
        self,
        cloud: CloudBackupStore,
        snapshot: Snapshot,
        remote_name: str,
        token: str,
        cancel_event: Optional[threading.Event],
    ) -> Snapshot | BackupFailure:
        attempts = max(int(self._backoff.max_attempts), 1)
        all_unreachable = True
        last_error: Optional[RemoteTransientError] = None

        def progress(pct: int) -> None:
            self._status(SyncSyncing(upload_pct=pct))

        for attempt in range(1, attempts + 1):
            try:
                return cloud.upload(
                    snapshot,
                    token,
                    remote_name=remote_name,
                    cancel_event=cancel_event,
                    progress=progress,
                )
            except SyncCancelled as exc:
                return self._fail(BackupFailureKind.UPLOAD_FAILED, "Sync cancelled: constraints no longer met", exc)
            except RemoteAuthError as exc:
                return self._fail(BackupFailureKind.AUTH_FAILED, str(exc), exc)
            except RemoteTransientError as exc:
                last_error = exc
                all_unreachable = all_unreachable and exc.unreachable
                self._logger.warning("sync_attempt_failed", attempt=attempt, error=str(exc), unreachable=exc.unreachable)
            except RemoteError as exc:
                return self._fail(BackupFailureKind.UPLOAD_FAILED, str(exc), exc)
            if attempt < attempts:
                delay = self._backoff.delay(attempt)
                self._logger.info("sync_backoff", attempt=attempt, delay_s=delay)
                self._sleep(delay)
                if cancel_event is not None and cancel_event.is_set():
                    return self._fail(BackupFailureKind.UPLOAD_FAILED, "Sync cancelled: constraints no longer met")

        if all_unreachable:
            return self._fail(BackupFailureKind.NETWORK_UNAVAILABLE, "Network unavailable", last_error)
        return self._fail(
            BackupFailureKind.UPLOAD_FAILED,
            f"Upload failed after {attempts} attempts: {last_error}",
            last_error,
        )

    # ------------------------------------------------------------------
    def list_cloud_backups(self, access_token: Optional[str]) -> List[Snapshot]:
        if not access_token or self._cloud is None:
            return []
        try:
            return self._cloud.list_snapshots(access_token)
        except RemoteError as exc:
            self._logger.warning("cloud_list_failed", error=str(exc))
            return []

    def delete_cloud_backup(self, snapshot: Snapshot, access_token: Optional[str]) -> bool:
        if not access_token or self._cloud is None:
            return False
        try:
            removed = self._cloud.delete(snapshot, access_token)
        except RemoteError as exc:
            self._logger.error("cloud_delete_failed", id=snapshot.name, error=str(exc))
            return False
        self._logger.info("cloud_backup_deleted", id=snapshot.name, removed=removed)
        return removed

    def prune_remote(self, access_token: str) -> RetentionSummary:
        cloud = self._cloud
        if cloud is None:
            raise RemoteError("remote store is not configured")
        try:
            snapshots = [snap for snap in cloud.list_snapshots(access_token) if snap.name != AUTO_SLOT_NAME]
        except RemoteError as exc:
            self._logger.warning("remote_retention_skipped", error=str(exc))
            return RetentionSummary(removed=[], kept=[], freed_bytes=0)

        def delete(snapshot: Snapshot) -> bool:
            try:
                return cloud.delete(snapshot, access_token)
            except RemoteError as exc:
                self._logger.error("cloud_delete_failed", id=snapshot.name, error=str(exc))
                return False

        return apply_retention(
            snapshots,
            self._remote_policy,
            delete,
            logger=self._logger,
            phase="remote_retention",
        )


# ----------------------------------------------------------------------
@dataclass(slots=True)
class ScheduledRun:
    """Result of one scheduler cycle; a skipped run still counts as success."""

    ran: bool
    outcome: Optional[BackupOutcome] = None
    reasons: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.outcome is None or self.outcome.ok


class CloudSyncScheduler:
    """Recurring auto-slot sync gated on idle-friendly device constraints."""

    def __init__(
        self,
        worker: CloudSyncWorker,
        identity: IdentityProvider,
        *,
        logger: BackupLogger,
        is_enabled: Callable[[], bool],
        constraints: Optional[SyncConstraints] = None,
        probe: Optional[DeviceProbe] = None,
        gate: Optional[ExclusionGate] = None,
        interval_s: float = 24 * 3600.0,
        window_s: float = 3600.0,
        watch_interval_s: float = 5.0,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._worker = worker
        self._identity = identity
        self._logger = logger
        self._is_enabled = is_enabled
        self._constraints = constraints or SyncConstraints()
        self._probe = probe or PsutilDeviceProbe()
        self._gate = gate or ExclusionGate()
        self._interval_s = float(interval_s)
        self._window_s = max(float(window_s), 0.0)
        self._watch_interval_s = float(watch_interval_s)
        self._rng = rng or random.Random()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    def next_delay(self) -> float:
        """Seconds until the next run: the interval plus a random offset in the window."""

        return self._interval_s + self._rng.uniform(0.0, self._window_s)

    def unmet_constraints(self) -> List[str]:
        try:
            state = self._probe.read()
        except Exception as exc:
            self._logger.warning("device_probe_failed", error=str(exc))
            return ["device_state_unknown"]
        return self._constraints.unmet(
            state,
            cloud_enabled=bool(self._is_enabled()),
            authorized=self._identity.is_authenticated(),
        )

    def set_identity(self, identity: IdentityProvider) -> None:
        self._identity = identity

    def constraints_satisfied(self) -> bool:
        return not self.unmet_constraints()

    # ------------------------------------------------------------------
    def run_scheduled(self) -> ScheduledRun:
        if self._gate.restore_in_progress:
            self._logger.info("scheduled_sync_skipped", reasons=["restore_in_progress"])
            return ScheduledRun(ran=False, reasons=["restore_in_progress"])
        reasons = self.unmet_constraints()
        if reasons:
            self._logger.info("scheduled_sync_skipped", reasons=reasons)
            return ScheduledRun(ran=False, reasons=reasons)

        cancel_event = threading.Event()
        finished = threading.Event()
        watcher = threading.Thread(
            target=self._watch,
            args=(cancel_event, finished),
            name="symptomlog-sync-watch",
            daemon=True,
        )
        watcher.start()
        try:
            outcome = self._worker.sync_to_cloud(
                self._identity.get_access_token(),
                True,
                cancel_event=cancel_event,
            )
        finally:
            finished.set()
            watcher.join()
        return ScheduledRun(ran=True, outcome=outcome)

    def _watch(self, cancel_event: threading.Event, finished: threading.Event) -> None:
        while not finished.wait(self._watch_interval_s):
            reasons = self.unmet_constraints()
            if reasons:
                self._logger.warning("scheduled_sync_cancelled", reasons=reasons)
                cancel_event.set()
                return

    def sync_now(self, *, label: Optional[str] = None, is_auto_slot: bool = False) -> BackupOutcome:
        """Immediate sync that ignores the window and device constraints."""

        return self._worker.sync_to_cloud(self._identity.get_access_token(), is_auto_slot, label=label)

    # ------------------------------------------------------------------
    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="symptomlog-sync", daemon=True)
        self._thread.start()
        self._logger.info("sync_scheduler_started", interval_s=self._interval_s, window_s=self._window_s)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
        self._thread = None
        self._logger.info("sync_scheduler_stopped")

    def _loop(self) -> None:
        while not self._stop.wait(self.next_delay()):
            try:
                run = self.run_scheduled()
            except Exception as exc:
                self._logger.error("scheduled_sync_crashed", error=str(exc))
                continue
            self._logger.event(
                event="scheduled_sync",
                phase="sync",
                ok=run.ok,
                ran=run.ran,
                reasons=run.reasons,
            )


__all__ = [
    "BackoffPolicy",
    "CloudSyncScheduler",
    "CloudSyncWorker",
    "DeviceProbe",
    "DeviceState",
    "IdentityProvider",
    "PsutilDeviceProbe",
    "ScheduledRun",
    "StaticIdentity",
    "SyncConstraints",
]
