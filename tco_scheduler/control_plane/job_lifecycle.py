"""
tco_scheduler/control_plane/job_lifecycle.py
─────────────────────────────────────────────
JobLifecycle: the per-job state machine and the only writer of JobRecords.

States and transitions
───────────────────────
        ┌──────────────── requeue (node evicted) ───────────────┐
        ▼                                                        │
   PENDING ──mark_scheduled──▶ SCHEDULED ──mark_running──▶ RUNNING
      │                          │    │                       │
      │ mark_failed_pending      │    └──────── finish ───────┤
      ▼                          ▼                            ▼
   FAILED                 COMPLETED / FAILED          COMPLETED / FAILED

  PENDING   → SCHEDULED | FAILED
  SCHEDULED → RUNNING | COMPLETED | FAILED | PENDING
  RUNNING   → COMPLETED | FAILED | PENDING
  COMPLETED, FAILED → (terminal, nothing)

Anything else raises InvalidTransitionError and leaves the record untouched.

Who holds the assignment
─────────────────────────
A record carries its Assignment exactly while SCHEDULED or RUNNING. Every
transition out of those states (finish, requeue) hands the dropped
Assignment back to the caller, who must release its token in the registry.
The lifecycle itself never touches node capacity.

Stale reports
──────────────
mark_running() and finish() take an optional node_id. When given, the
transition only applies if the job is currently assigned to that node. A
late report from a node the job was moved away from is therefore rejected
atomically, under the same lock as the transition it would have caused.

Retention
──────────
Terminal records (COMPLETED, FAILED) are kept for status and cost queries,
but only the most recent terminal_retention of them. Older ones are dropped
oldest first and their ids answer JobNotFoundError again. Jobs that are
still PENDING, SCHEDULED or RUNNING are never dropped.

Thread safety
──────────────
One RLock guards the whole job table. Every public method copies records
out, so callers can never mutate lifecycle state by accident.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter, deque
from datetime import datetime
from typing import Callable, Deque, Dict, List, Optional

from tco_scheduler.shared.models import (
    Assignment,
    FailureReason,
    InfeasibleReason,
    JobRecord,
    JobSpec,
    JobStatus,
    utc_now,
)

logger = logging.getLogger(__name__)

DEFAULT_TERMINAL_RETENTION: int = 10_000
"""Finished job records kept before the oldest are dropped."""

_ALLOWED_TRANSITIONS: Dict[JobStatus, frozenset] = {
    JobStatus.PENDING: frozenset({JobStatus.SCHEDULED, JobStatus.FAILED}),
    JobStatus.SCHEDULED: frozenset({
        JobStatus.RUNNING, JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.PENDING,
    }),
    JobStatus.RUNNING: frozenset({
        JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.PENDING,
    }),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}

_PLACED = frozenset({JobStatus.SCHEDULED, JobStatus.RUNNING})


# ── Exceptions ─────────────────────────────────────────────────────────────────

class JobNotFoundError(KeyError):
    """Raised when a job_id was never submitted."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(job_id)

    def __str__(self) -> str:
        return f"Job {self.job_id!r} not found"


class DuplicateJobError(Exception):
    """Raised by create() when the job_id is already known."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Job {job_id!r} already exists")


class InvalidTransitionError(Exception):
    """
    Raised when a transition is not allowed from the job's current state,
    or when a node-scoped transition names a node the job is not on.

    Attributes:
        job_id:  The job.
        current: Its status at the time of the attempt.
        target:  The status the caller asked for.
    """

    def __init__(
        self,
        job_id: str,
        current: JobStatus,
        target: JobStatus,
        detail: str = "",
    ) -> None:
        self.job_id = job_id
        self.current = current
        self.target = target
        message = f"Job {job_id!r}: cannot move {current.value} → {target.value}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class JobLifecycle:
    """
    Thread-safe store of JobRecords with enforced transitions.

    Public API:
        create(job)                                   → JobRecord
        get(job_id)                                   → JobRecord
        mark_scheduled(job_id, assignment, deadline)  → JobRecord
        mark_running(job_id, node_id, deadline)       → JobRecord
        finish(job_id, status, ...)                   → Assignment
        requeue(job_id, node_id=None)                 → Assignment
        mark_failed_pending(job_id, reason, message)  → JobRecord
        discard(job_id)                               → None
        jobs_on_node(node_id)                         → List[job_id]
        overdue(now)                                  → List[job_id]
        counts()                                      → Dict[JobStatus, int]

    Args:
        clock:              Current UTC time, injectable for tests.
        terminal_retention: Finished records kept before the oldest go.
    """

    def __init__(
        self,
        clock: Callable[[], datetime] = utc_now,
        terminal_retention: int = DEFAULT_TERMINAL_RETENTION,
    ) -> None:
        if terminal_retention < 1:
            raise ValueError(f"terminal_retention must be >= 1, got {terminal_retention}")
        self._clock = clock
        self._lock = threading.RLock()
        self._records: Dict[str, JobRecord] = {}
        self._terminal: Deque[str] = deque()
        self._terminal_retention = terminal_retention

    # ── Creation + reads ───────────────────────────────────────────────────────

    def create(self, job: JobSpec) -> JobRecord:
        """Store a new PENDING record. Raises DuplicateJobError for a reused id."""
        with self._lock:
            if job.job_id in self._records:
                raise DuplicateJobError(job.job_id)
            record = JobRecord(job=job, submitted_at=job.submitted_at)
            self._records[job.job_id] = record
            return record.model_copy(deep=True)

    def get(self, job_id: str) -> JobRecord:
        with self._lock:
            return self._require(job_id).model_copy(deep=True)

    def __contains__(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._records

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    # ── Transitions ────────────────────────────────────────────────────────────

    def mark_scheduled(
        self,
        job_id: str,
        assignment: Assignment,
        report_deadline: Optional[datetime] = None,
    ) -> JobRecord:
        """PENDING → SCHEDULED, attaching the assignment."""
        with self._lock:
            record = self._require(job_id)
            self._check(record, JobStatus.SCHEDULED)
            record.status = JobStatus.SCHEDULED
            record.assignment = assignment
            record.last_assignment = assignment
            record.scheduled_at = assignment.assigned_at
            record.report_deadline = report_deadline
            record.infeasible_reason = None
            return record.model_copy(deep=True)

    def mark_running(
        self,
        job_id: str,
        node_id: Optional[str] = None,
        report_deadline: Optional[datetime] = None,
    ) -> JobRecord:
        """
        SCHEDULED → RUNNING. A repeated STARTED for a RUNNING job is rejected.

        report_deadline, when given, replaces the one set at scheduling time.
        """
        with self._lock:
            record = self._require(job_id)
            self._check(record, JobStatus.RUNNING, node_id)
            record.status = JobStatus.RUNNING
            record.started_at = self._clock()
            if report_deadline is not None:
                record.report_deadline = report_deadline
            return record.model_copy(deep=True)

    def finish(
        self,
        job_id: str,
        status: JobStatus,
        node_id: Optional[str] = None,
        failure_reason: Optional[FailureReason] = None,
        message: Optional[str] = None,
        exit_code: Optional[int] = None,
        output: Optional[str] = None,
    ) -> Assignment:
        """
        SCHEDULED/RUNNING → COMPLETED or FAILED.

        Only placed jobs can finish this way; a PENDING job that cannot be
        placed goes through mark_failed_pending() instead.

        Returns:
            The assignment the job held. The caller releases its token.
        """
        if status not in (JobStatus.COMPLETED, JobStatus.FAILED):
            raise ValueError(f"finish() needs a terminal status, got {status.value}")
        with self._lock:
            record = self._require(job_id)
            if record.status not in _PLACED:
                raise InvalidTransitionError(
                    job_id, record.status, status, "job holds no assignment"
                )
            self._check(record, status, node_id)
            assignment = record.assignment
            record.status = status
            record.assignment = None
            record.report_deadline = None
            record.ended_at = self._clock()
            record.exit_code = exit_code
            record.output = output
            if status == JobStatus.FAILED:
                record.failure_reason = failure_reason or FailureReason.EXECUTOR_FAILED
                record.failure_message = message
            self._retire(job_id)
        logger.info(
            "Job %s %s on node %s%s",
            job_id, status.value, assignment.node_id,
            f" ({record.failure_reason.value})" if status == JobStatus.FAILED else "",
        )
        return assignment

    def requeue(self, job_id: str, node_id: Optional[str] = None) -> Assignment:
        """
        SCHEDULED/RUNNING → PENDING after the job's node was evicted.

        Returns:
            The dropped assignment (its token has normally been revoked by
            the eviction already).
        """
        with self._lock:
            record = self._require(job_id)
            if record.status not in _PLACED:
                raise InvalidTransitionError(
                    job_id, record.status, JobStatus.PENDING, "job holds no assignment"
                )
            self._check(record, JobStatus.PENDING, node_id)
            assignment = record.assignment
            record.status = JobStatus.PENDING
            record.assignment = None
            record.report_deadline = None
            record.started_at = None
            record.requeue_count += 1
            count = record.requeue_count
        logger.warning(
            "Job %s requeued off node %s (requeue #%d)",
            job_id, assignment.node_id, count,
        )
        return assignment

    def mark_failed_pending(
        self,
        job_id: str,
        reason: FailureReason,
        message: str = "",
        infeasible_reason: Optional[InfeasibleReason] = None,
    ) -> JobRecord:
        """PENDING → FAILED: the job could not be (re-)placed."""
        with self._lock:
            record = self._require(job_id)
            if record.status != JobStatus.PENDING:
                raise InvalidTransitionError(
                    job_id, record.status, JobStatus.FAILED, "job is not pending"
                )
            record.status = JobStatus.FAILED
            record.failure_reason = reason
            record.failure_message = message
            record.infeasible_reason = infeasible_reason
            record.ended_at = self._clock()
            self._retire(job_id)
            return record.model_copy(deep=True)

    def discard(self, job_id: str) -> None:
        """
        Forget a PENDING job that was never placed, as if it was never created.

        Used when a submission turns out to be malformed only once pricing
        starts. Raises InvalidTransitionError for any other state.
        """
        with self._lock:
            record = self._require(job_id)
            if record.status != JobStatus.PENDING or record.requeue_count:
                raise InvalidTransitionError(
                    job_id, record.status, JobStatus.PENDING,
                    "only a fresh pending job can be discarded",
                )
            del self._records[job_id]

    # ── Queries used by the background loop ────────────────────────────────────

    def jobs_on_node(self, node_id: str) -> List[str]:
        """Ids of SCHEDULED/RUNNING jobs currently assigned to node_id, sorted."""
        with self._lock:
            return sorted(
                job_id for job_id, record in self._records.items()
                if record.status in _PLACED
                and record.assignment is not None
                and record.assignment.node_id == node_id
            )

    def overdue(self, now: datetime) -> List[str]:
        """Ids of placed jobs whose executor report deadline has passed."""
        with self._lock:
            return sorted(
                job_id for job_id, record in self._records.items()
                if record.status in _PLACED
                and record.report_deadline is not None
                and record.report_deadline < now
            )

    def counts(self) -> Dict[JobStatus, int]:
        """Number of jobs per status. Every status is present, zero included."""
        with self._lock:
            tally = Counter(record.status for record in self._records.values())
        return {status: tally.get(status, 0) for status in JobStatus}

    # ── Private helpers ────────────────────────────────────────────────────────

    def _retire(self, job_id: str) -> None:
        """Track a newly terminal record; drop the oldest past retention. Lock held."""
        self._terminal.append(job_id)
        while len(self._terminal) > self._terminal_retention:
            dropped = self._terminal.popleft()
            self._records.pop(dropped, None)
            logger.debug("Dropped finished job %s from retention", dropped)

    def _require(self, job_id: str) -> JobRecord:
        record = self._records.get(job_id)
        if record is None:
            raise JobNotFoundError(job_id)
        return record

    @staticmethod
    def _check(
        record: JobRecord, target: JobStatus, node_id: Optional[str] = None
    ) -> None:
        if target not in _ALLOWED_TRANSITIONS[record.status]:
            raise InvalidTransitionError(record.job_id, record.status, target)
        if node_id is not None:
            current = record.assignment.node_id if record.assignment else None
            if current != node_id:
                raise InvalidTransitionError(
                    record.job_id, record.status, target,
                    f"report from node {node_id!r}, job is on {current!r}",
                )

    def __repr__(self) -> str:
        return f"JobLifecycle(jobs={len(self)})"
