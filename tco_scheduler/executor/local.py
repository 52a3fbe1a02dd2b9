"""
tco_scheduler/executor/local.py
───────────────────────────────
LocalProcessExecutor: runs each job's command as a local subprocess.

A development and test stand-in for a real node agent. It honours the
executor contract (STARTED, then COMPLETED or FAILED through the outbox)
but not the isolation one: the command runs on this machine, under this
user, without CPU or memory limits. The limits from the ExecutionRequest
are logged, not enforced.

Outcome mapping:
  exit status 0        → COMPLETED (exit_code=0, output=stdout)
  exit status != 0     → FAILED    (exit_code, output=stdout, error=stderr)
  wall clock exceeded  → FAILED    (error="timed out after Ns")
  cannot launch        → FAILED    (error=OSError text)
  no command           → FAILED    (error="no command to run")

Output is truncated to MAX_OUTPUT_CHARS from the end; the tail of a log is
where the failure usually is.
"""

from __future__ import annotations

import logging
import subprocess
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import List, Optional

from tco_scheduler.shared.models import (
    ExecutionRequest,
    ExecutorMessage,
    ExecutorOutcome,
)
from tco_scheduler.executor.base import JobExecutor, Outbox

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS: int = 4
"""Jobs run concurrently by one executor. Further jobs wait for a worker."""

DEFAULT_TIMEOUT_S: float = 3600.0
"""Wall-clock limit per job before the process is killed."""

MAX_OUTPUT_CHARS: int = 64 * 1024
"""Captured stdout / stderr kept per job."""


class LocalProcessExecutor(JobExecutor):
    """
    Subprocess executor on a bounded worker thread pool.

    Args:
        max_workers: Concurrent jobs.
        timeout_s:   Per-job wall-clock limit.
    """

    def __init__(
        self,
        max_workers: int = DEFAULT_MAX_WORKERS,
        timeout_s: float = DEFAULT_TIMEOUT_S,
    ) -> None:
        if timeout_s <= 0:
            raise ValueError(f"timeout_s must be > 0, got {timeout_s}")
        self.timeout_s = timeout_s
        self._pool = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="tco-exec"
        )
        self._futures_lock = threading.Lock()
        self._futures: List[Future] = []

    def start(self, request: ExecutionRequest, outbox: Outbox) -> None:
        """Queue request on the pool. Raises RuntimeError after shutdown()."""
        future = self._pool.submit(self._run, request, outbox)
        with self._futures_lock:
            self._futures = [f for f in self._futures if not f.done()]
            self._futures.append(future)

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)

    @property
    def in_flight(self) -> int:
        with self._futures_lock:
            return sum(1 for f in self._futures if not f.done())

    # ── Worker side ────────────────────────────────────────────────────────────

    def _run(self, request: ExecutionRequest, outbox: Outbox) -> None:
        outbox(self._message(request, ExecutorOutcome.STARTED))
        logger.info(
            "Running job %s on %s (limits cpu=%.2f mem=%.2fGB, not enforced)",
            request.job_id, request.node_id,
            request.limits.cpu_cores, request.limits.memory_gb,
        )

        if not request.command:
            outbox(self._message(
                request, ExecutorOutcome.FAILED, error="no command to run"
            ))
            return

        try:
            completed = subprocess.run(
                request.command,
                capture_output=True,
                text=True,
                timeout=self.timeout_s,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            outbox(self._message(
                request, ExecutorOutcome.FAILED,
                output=_tail(exc.stdout),
                error=f"timed out after {self.timeout_s:g}s",
            ))
            return
        except OSError as exc:
            outbox(self._message(
                request, ExecutorOutcome.FAILED,
                error=f"{exc.__class__.__name__}: {exc}",
            ))
            return

        outcome = (
            ExecutorOutcome.COMPLETED if completed.returncode == 0
            else ExecutorOutcome.FAILED
        )
        logger.info(
            "Job %s exited with status %d", request.job_id, completed.returncode
        )
        outbox(self._message(
            request, outcome,
            exit_code=completed.returncode,
            output=_tail(completed.stdout),
            error=_tail(completed.stderr) if outcome == ExecutorOutcome.FAILED else None,
        ))

    @staticmethod
    def _message(
        request: ExecutionRequest,
        outcome: ExecutorOutcome,
        exit_code: Optional[int] = None,
        output: Optional[str] = None,
        error: Optional[str] = None,
    ) -> ExecutorMessage:
        return ExecutorMessage(
            job_id=request.job_id,
            node_id=request.node_id,
            outcome=outcome,
            exit_code=exit_code,
            output=output,
            error=error,
        )

    def __repr__(self) -> str:
        return (
            f"LocalProcessExecutor(timeout={self.timeout_s:g}s, "
            f"in_flight={self.in_flight})"
        )


def _tail(text: Optional[object]) -> Optional[str]:
    if text is None:
        return None
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")
    text = str(text)
    return text[-MAX_OUTPUT_CHARS:]
