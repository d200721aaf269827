"""Retention policy enforcement for backups."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Collection, Iterable, List

from .logs import BackupLogger
from .types import RetentionSummary, Snapshot

LOCAL_KEEP = 7
REMOTE_KEEP = 30
SAFETY_KEEP = 3


@dataclass(slots=True)
class RetentionPolicy:
    keep: int = LOCAL_KEEP
    # Named remote backups are user managed and never count against the ceiling.
    exempt_named: bool = False


def order_newest_first(snapshots: Iterable[Snapshot]) -> List[Snapshot]:
    """Newest first; equal timestamps fall back to the lexical filename."""

    return sorted(snapshots, key=lambda snap: snap.sort_key(), reverse=True)


def select_for_deletion(
    snapshots: Iterable[Snapshot],
    policy: RetentionPolicy,
    *,
    held: Collection[str] = (),
) -> List[Snapshot]:
    """Return the snapshots to delete so that at most ``policy.keep`` remain.

    The most recent snapshot always survives, even when ``keep`` is zero or
    negative, and names in ``held`` are never selected.
    """

    ordered = order_newest_first(snapshots)
    if policy.exempt_named:
        ordered = [snap for snap in ordered if not snap.label]
    keep = max(int(policy.keep), 1)
    return [snap for snap in ordered[keep:] if snap.name not in held]


def apply_retention(
    snapshots: Iterable[Snapshot],
    policy: RetentionPolicy,
    delete: Callable[[Snapshot], bool],
    *,
    logger: BackupLogger,
    held: Collection[str] = (),
    phase: str = "retention",
) -> RetentionSummary:
    items = order_newest_first(snapshots)
    doomed = select_for_deletion(items, policy, held=held)

    removed: List[str] = []
    freed = 0
    for snap in doomed:
        if delete(snap):
            removed.append(snap.name)
            freed += snap.size_bytes
            logger.warning("backup_removed", id=snap.name, reason="retention", location=snap.location.value)

    kept = [snap.name for snap in items if snap.name not in removed]
    logger.event(event="retention_applied", phase=phase, ok=True, removed=len(removed), kept=len(kept))
    return RetentionSummary(removed=removed, kept=kept, freed_bytes=freed)


__all__ = [
    "LOCAL_KEEP",
    "REMOTE_KEEP",
    "SAFETY_KEEP",
    "RetentionPolicy",
    "apply_retention",
    "order_newest_first",
    "select_for_deletion",
]
