"""Serialisation primitives shared by backup, restore and sync."""
from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional, Tuple

LOGGER = logging.getLogger("symptomlog.backup.guard")

_Job = Tuple[Future, Callable[[], Any], str]


class SerialExecutor:
    """Run jobs one at a time on a single worker thread.

    At most one job runs and one waits. Submitting while a job is already
    waiting cancels the waiting ``Future`` and queues the new job instead.
    """

    def __init__(self, name: str = "symptomlog-backup") -> None:
        self._name = name
        self._cond = threading.Condition()
        self._pending: Optional[_Job] = None
        self._running: Optional[str] = None
        self._closed = False
        self._thread: Optional[threading.Thread] = None

    def submit(self, fn: Callable[[], Any], *, label: str = "job") -> Future:
        future: Future = Future()
        with self._cond:
            if self._closed:
                raise RuntimeError("executor is shut down")
            if self._pending is not None:
                superseded, _, old_label = self._pending
                superseded.cancel()
                LOGGER.info("superseded queued %s with %s", old_label, label)
            self._pending = (future, fn, label)
            self._ensure_worker()
            self._cond.notify_all()
        return future

    @property
    def busy(self) -> bool:
        with self._cond:
            return self._running is not None or self._pending is not None

    def shutdown(self, *, wait: bool = True) -> None:
        with self._cond:
            self._closed = True
            if self._pending is not None:
                self._pending[0].cancel()
                self._pending = None
            self._cond.notify_all()
            thread = self._thread
        if wait and thread is not None:
            thread.join()

    def _ensure_worker(self) -> None:
        if self._thread is None or not self._thread.is_alive():
            self._thread = threading.Thread(target=self._loop, name=self._name, daemon=True)
            self._thread.start()

    def _loop(self) -> None:
        while True:
            with self._cond:
                while self._pending is None and not self._closed:
                    self._cond.wait()
                if self._pending is None:
                    return
                future, fn, label = self._pending
                self._pending = None
                self._running = label
            try:
                if future.set_running_or_notify_cancel():
                    try:
                        result = fn()
                    except BaseException as exc:
                        LOGGER.exception("%s failed", label)
                        future.set_exception(exc)
                    else:
                        future.set_result(result)
            finally:
                with self._cond:
                    self._running = None
                    self._cond.notify_all()


class ExclusionGate:
    """Readers/writer gate: restores are exclusive, sync transfers shared."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._shared = 0
        self._exclusive = False
        self._waiting_exclusive = 0

    @property
    def restore_in_progress(self) -> bool:
        with self._cond:
            return self._exclusive or self._waiting_exclusive > 0

    @contextmanager
    def exclusive(self) -> Iterator[None]:
        with self._cond:
            self._waiting_exclusive += 1
            try:
                while self._exclusive or self._shared:
                    self._cond.wait()
            finally:
                self._waiting_exclusive -= 1
            self._exclusive = True
        try:
            yield
        finally:
            with self._cond:
                self._exclusive = False
                self._cond.notify_all()

    def try_shared(self) -> bool:
        """Enter the shared side unless a restore holds or awaits the gate."""

        with self._cond:
            if self._exclusive or self._waiting_exclusive:
                return False
            self._shared += 1
            return True

    def release_shared(self) -> None:
        with self._cond:
            if self._shared <= 0:
                raise RuntimeError("release_shared without matching try_shared")
            self._shared -= 1
            self._cond.notify_all()

    @contextmanager
    def shared(self) -> Iterator[bool]:
        """Yield ``True`` when entered, ``False`` when a restore blocks it."""

        entered = self.try_shared()
        try:
            yield entered
        finally:
            if entered:
                self.release_shared()


__all__ = ["ExclusionGate", "SerialExecutor"]
