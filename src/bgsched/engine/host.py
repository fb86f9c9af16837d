# src/bgsched/engine/host.py
"""
Collaborators that live on the host side of the scheduler core.

- Notifier: where work functions send user-visible messages
- HostBridge: what the scheduler re-arms after each wake-up
- WakeLoop: an in-process HostBridge that plays the OS job scheduler
"""
from __future__ import annotations

import threading
import time
from typing import TYPE_CHECKING, Callable, Optional, Protocol

from bgsched.logging import get_logger

if TYPE_CHECKING:
    from .scheduler import Scheduler

_LOG = get_logger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


class Notifier(Protocol):
    def notify(self, title: str, body: str, *, task_name: Optional[str] = None) -> None: ...


class LoggingNotifier:
    """Default notification surface: writes the message to the log."""

    def __init__(self) -> None:
        self._log = get_logger("bgsched.notify")

    def notify(self, title: str, body: str, *, task_name: Optional[str] = None) -> None:
        self._log.info("[%s] %s: %s", task_name or "-", title, body)


class HostBridge(Protocol):
    def request_wake(self, at_ms: int) -> None: ...


class WakeLoop:
    """
    Background thread that wakes the scheduler like a platform job service would.

    It sleeps until the earliest requested wake time (never longer than
    max_idle_ms), then calls Scheduler.on_wake with the configured budget.
    """

    def __init__(
        self,
        scheduler: "Scheduler",
        *,
        budget_ms: int,
        max_idle_ms: int = 60_000,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        if budget_ms <= 0:
            raise ValueError("budget_ms must be > 0")
        if max_idle_ms <= 0:
            raise ValueError("max_idle_ms must be > 0")

        self._scheduler = scheduler
        self._budget_ms = budget_ms
        self._max_idle_ms = max_idle_ms
        self._clock = clock

        self._lock = threading.Lock()
        self._next_wake_at: Optional[int] = None
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

        scheduler.attach_host(self)

    @property
    def next_wake_at(self) -> Optional[int]:
        with self._lock:
            return self._next_wake_at

    def request_wake(self, at_ms: int) -> None:
        with self._lock:
            if self._next_wake_at is None or at_ms < self._next_wake_at:
                self._next_wake_at = at_ms
        self._wake.set()

    def start(self) -> None:
        """
        Starts the wake loop thread. Safe to call once.
        """
        if self._thread and self._thread.is_alive():
            return

        _LOG.info("Starting wake loop: budget_ms=%d max_idle_ms=%d", self._budget_ms, self._max_idle_ms)
        self._stop.clear()
        # First wake immediately so overdue and stale work is picked up on start.
        self.request_wake(self._clock())
        self._thread = threading.Thread(target=self._run_loop, name="bgsched-wake", daemon=True)
        self._thread.start()

    def stop(self, *, timeout_s: float = 5.0) -> None:
        _LOG.info("Stopping wake loop...")
        self._stop.set()
        self._wake.set()
        if self._thread:
            self._thread.join(timeout=timeout_s)
        _LOG.info("Wake loop stopped.")

    def _run_loop(self) -> None:
        while not self._stop.is_set():
            now = self._clock()
            with self._lock:
                due = self._next_wake_at is not None and self._next_wake_at <= now
                if due:
                    self._next_wake_at = None

            if due:
                try:
                    self._scheduler.on_wake(now, self._budget_ms)
                except Exception:
                    _LOG.exception("Wake-up failed (continuing).")
                continue

            with self._lock:
                target = self._next_wake_at
            wait_ms = self._max_idle_ms if target is None else min(self._max_idle_ms, target - now)
            woke = self._wake.wait(timeout=max(0.0, wait_ms / 1000.0))
            self._wake.clear()
            if not woke and target is None and not self._stop.is_set():
                # Idle poll: nothing was requested for max_idle_ms.
                self.request_wake(self._clock())
