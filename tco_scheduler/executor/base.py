"""
tco_scheduler/executor/base.py
──────────────────────────────
The executor contract.

The scheduler decides where a job runs; an executor actually runs it. The
two only talk through messages:

  scheduler ──ExecutionRequest──▶ executor.start(request, outbox)
  executor  ──ExecutorMessage───▶ outbox(message)   (STARTED, then
                                                     COMPLETED or FAILED)

outbox is SchedulerService.post_outcome: it only enqueues, so an executor
may call it from any thread at any time without touching scheduler state.
start() must return promptly. Long work belongs on the executor's own
threads.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable

from tco_scheduler.shared.models import ExecutionRequest, ExecutorMessage

Outbox = Callable[[ExecutorMessage], None]


class JobExecutor(ABC):
    """Starts jobs on nodes and reports back through an outbox."""

    @abstractmethod
    def start(self, request: ExecutionRequest, outbox: Outbox) -> None:
        """
        Begin running request.

        Must not block for the job's duration. Raising here means the job
        could not even be handed off; the scheduler fails it with
        DISPATCH_ERROR and releases its capacity.
        """

    def shutdown(self, wait: bool = True) -> None:
        """Release executor resources. Default: nothing to release."""
