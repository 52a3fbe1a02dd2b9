"""
tco_scheduler/liveness/monitor.py
──────────────────────────────────
LivenessMonitor: the periodic background task of the scheduler.

What this is
─────────────
Three things in the scheduler happen because time passes, not because a
caller asked:

  1. Executor outcomes sit in the service's outbox until someone drains it.
  2. Nodes stop heartbeating. Past heartbeat_timeout_s they must be evicted
     and their jobs requeued; past suspect_after_s they stop taking new work.
  3. Executors go silent. Past report_timeout_s a placed job is failed and
     its capacity released.

tick() does all three, in that order: outcomes first, so a job that
finished just before its node went quiet completes normally instead of
being requeued.

Design
───────
- tick() is synchronous and cheap. Tests call it directly with no thread.
- start() runs tick() every interval_s on a daemon thread. The wait between
  ticks is a threading.Event, so stop() wakes the loop immediately instead
  of waiting out the interval.
- The loop never holds a service lock across ticks and never blocks
  submissions: every operation it calls takes the registry's per-node locks
  or the lifecycle lock only for the duration of one update.
- An exception in one tick is logged and the loop keeps going; a monitor
  that dies silently would stop all eviction.

Integration contract
─────────────────────
    monitor = LivenessMonitor(service)
    monitor.start()
    ...
    monitor.stop()
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from tco_scheduler.control_plane.scheduler_service import SchedulerService

logger = logging.getLogger(__name__)


class LivenessMonitor:
    """
    Drives outcome processing, node eviction and report timeouts.

    Args:
        service:    The SchedulerService to maintain.
        interval_s: Seconds between ticks. Default: service.config.monitor_interval_s.
    """

    def __init__(
        self,
        service: SchedulerService,
        interval_s: Optional[float] = None,
    ) -> None:
        self._service = service
        self.interval_s = (
            interval_s if interval_s is not None else service.config.monitor_interval_s
        )
        if self.interval_s <= 0:
            raise ValueError(f"interval_s must be > 0, got {self.interval_s}")
        self._tick_count: int = 0
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ── Public API ─────────────────────────────────────────────────────────────

    def tick(self) -> None:
        """Run one maintenance cycle: outcomes, evictions, report timeouts."""
        self._tick_count += 1

        processed = self._service.process_outcomes()
        evicted = self._service.evict_stale_nodes()
        expired = self._service.expire_overdue_jobs()

        if processed or evicted or expired:
            logger.debug(
                "Liveness tick %d: %d outcome(s), evicted=%s, expired=%s",
                self._tick_count, processed, sorted(evicted), expired,
            )

    def start(self) -> None:
        """Start the background loop. Calling start() twice is a no-op."""
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="tco-liveness-monitor", daemon=True
        )
        self._thread.start()
        logger.info("Liveness monitor started (interval %.1fs)", self.interval_s)

    def stop(self, timeout_s: Optional[float] = None) -> None:
        """Signal the loop to exit and wait for it."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout_s)
            self._thread = None
            logger.info("Liveness monitor stopped after %d tick(s)", self._tick_count)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def tick_count(self) -> int:
        """Total number of tick() calls since this monitor was created."""
        return self._tick_count

    # ── Private helpers ────────────────────────────────────────────────────────

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Liveness tick failed")
            self._stop_event.wait(self.interval_s)

    def __enter__(self) -> "LivenessMonitor":
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    def __repr__(self) -> str:
        return (
            f"LivenessMonitor(interval={self.interval_s}s, "
            f"ticks={self._tick_count}, running={self.is_running})"
        )
