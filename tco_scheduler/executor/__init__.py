"""
tco_scheduler/executor — the executor collaborator contract.

Public API:
    JobExecutor          — abstract start(request, outbox)
    LocalProcessExecutor — subprocess-per-job executor for development and tests
"""

from tco_scheduler.executor.base import JobExecutor, Outbox
from tco_scheduler.executor.local import LocalProcessExecutor

__all__ = ["JobExecutor", "Outbox", "LocalProcessExecutor"]
