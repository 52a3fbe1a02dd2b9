"""
tco_scheduler/control_plane/scheduler_service.py
─────────────────────────────────────────────────
SchedulerService: the boundary of the scheduler core.

Every external caller (RPC handler, CLI, executor, background loop) goes
through this class. It owns no placement logic of its own; it sequences the
components and keeps their state consistent:

  ClusterRegistry → node capacity, reservations, liveness
  Optimizer       → which node (cheapest feasible TCO)
  JobLifecycle    → job states and assignments
  JobExecutor     → actually runs the job (optional collaborator)

Submission pipeline
────────────────────
  1. Admission control (admit_job)          → REJECTED on failure
  2. JobLifecycle.create                    → REJECTED on duplicate id
  3. Placement, up to max_placement_attempts times:
       fresh snapshot → Optimizer.place → ClusterRegistry.reserve
     A reserve() that loses a race to a concurrent submission raises
     CapacityExceededError and the pass is retried against a new snapshot.
     Attempts exhausted → Infeasible(NO_CAPACITY).
  4. Infeasible → record FAILED (reason INFEASIBLE) and return INFEASIBLE.
     Not retried; there is no waiting queue.
     A node whose prices cannot be evaluated (InvalidCostInputError) →
     the record is discarded and the job REJECTED.
  5. Success → SCHEDULED with a report deadline, then the reservation is
     checked once more: if an eviction revoked it before the job was
     recorded SCHEDULED, the job goes through node-loss recovery at once.
  6. Executor dispatch, return SCHEDULED with node, cost and latency.

submit() never blocks waiting for capacity and never raises for a business
outcome; it always returns a SubmissionResult.

Executor outcomes
──────────────────
The executor posts ExecutorMessages through post_outcome(), which only
enqueues. process_outcomes() (called by the liveness monitor, or directly)
drains the queue and applies each message via report_node_result():
  STARTED   → SCHEDULED → RUNNING
  COMPLETED → COMPLETED, capacity released
  FAILED    → FAILED (EXECUTOR_FAILED), capacity released
A report naming a node the job is no longer assigned to is ignored.

Node loss
──────────
evict_stale_nodes() asks the registry to evict nodes whose heartbeat is
older than heartbeat_timeout_s. Their reservations are revoked in the
registry. Each job that was SCHEDULED or RUNNING on them is requeued
(→ PENDING) and re-placed immediately. If it has already used its requeue
budget, or re-placement is infeasible, it ends FAILED with NODE_LOST.

Report timeout
───────────────
expire_overdue_jobs() fails (REPORT_TIMEOUT) and releases every placed job
whose executor did not report a terminal outcome in time. The deadline is
the job's estimated duration plus report_timeout_s, counted from dispatch
and counted again from STARTED.

Thread safety
──────────────
All shared state lives in the registry (per-node locks) and the lifecycle
(one RLock); both are safe for concurrent callers. The service adds a
small lock around its metrics counters and one that serialises node-loss
recovery.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections import deque
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Set

from tco_scheduler.shared.config import SchedulerConfig
from tco_scheduler.shared.models import (
    Assignment,
    ClusterStatus,
    CostBreakdown,
    ExecutionRequest,
    ExecutorMessage,
    ExecutorOutcome,
    FailureReason,
    InfeasibleReason,
    JobRecord,
    JobSpec,
    JobStatus,
    Node,
    NodeSpec,
    Resources,
    SubmissionOutcome,
    SubmissionResult,
    utc_now,
)
from tco_scheduler.control_plane.admission_controller import (
    AdmissionRejectedError,
    admit_job,
)
from tco_scheduler.control_plane.cluster_registry import (
    CapacityExceededError,
    ClusterRegistry,
    UnknownNodeError,
)
from tco_scheduler.control_plane.cost_engine import InvalidCostInputError
from tco_scheduler.control_plane.job_lifecycle import (
    DuplicateJobError,
    InvalidTransitionError,
    JobLifecycle,
    JobNotFoundError,
)
from tco_scheduler.control_plane.optimizer import Optimizer, PlacementInfeasibleError
from tco_scheduler.executor.base import JobExecutor

logger = logging.getLogger(__name__)

PLACEMENT_HISTORY: int = 1000
"""Number of recent placement durations kept for the mean / P99 metrics."""


class CostNotAvailableError(Exception):
    """Raised by get_cost() for a job that was never placed on a node."""

    def __init__(self, job_id: str, status: JobStatus) -> None:
        self.job_id = job_id
        self.status = status
        super().__init__(
            f"Job {job_id!r} has no cost yet: it was never scheduled "
            f"(status={status.value})"
        )


class SchedulerService:
    """
    Central control plane: admission, placement, lifecycle, liveness.

    Public API:
        register_node(spec)                  → node_id
        heartbeat(node_id, free_capacity)    → bool
        submit(job)                          → SubmissionResult
        get_status(job_id)                   → JobRecord
        get_cost(job_id)                     → CostBreakdown
        cluster_status()                     → ClusterStatus
        list_nodes()                         → List[Node]
        report_node_result(job_id, outcome)  → bool
        post_outcome(message)                → None   (executor outbox)
        process_outcomes()                   → int
        evict_stale_nodes(now)               → Set[node_id]
        expire_overdue_jobs(now)             → List[job_id]
        get_scheduling_metrics()             → dict

    Args:
        registry:  Node state. Default: a fresh ClusterRegistry on clock.
        optimizer: Placement policy. Default: Optimizer with the configured
                   utilisation factor.
        lifecycle: Job state. Default: a fresh JobLifecycle on clock.
        executor:  Runs scheduled jobs. None = jobs stay SCHEDULED until an
                   external caller reports through report_node_result().
        config:    Runtime knobs. Default: SchedulerConfig.from_env().
        clock:     Current UTC time, injectable for tests.
    """

    def __init__(
        self,
        registry: Optional[ClusterRegistry] = None,
        optimizer: Optional[Optimizer] = None,
        lifecycle: Optional[JobLifecycle] = None,
        executor: Optional[JobExecutor] = None,
        config: Optional[SchedulerConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config = config or SchedulerConfig.from_env()
        self._clock = clock
        self.registry = registry or ClusterRegistry(clock=clock)
        self.optimizer = optimizer or Optimizer(
            utilization_factor=self.config.utilization_factor
        )
        self.lifecycle = lifecycle or JobLifecycle(
            clock=clock, terminal_retention=self.config.terminal_job_retention
        )
        self.executor = executor
        self._recovery_lock = threading.RLock()

        self._outcomes: "queue.Queue[ExecutorMessage]" = queue.Queue()

        # ── Metrics ───────────────────────────────────────────────────────────
        self._metrics_lock = threading.Lock()
        self._placement_ms: deque = deque(maxlen=PLACEMENT_HISTORY)
        self._decisions = 0
        self._infeasible: Dict[InfeasibleReason, int] = {r: 0 for r in InfeasibleReason}
        self._rejected = 0
        self._reserve_retries = 0

        logger.info(
            "SchedulerService initialised (heartbeat_timeout=%.1fs, "
            "max_placement_attempts=%d, executor=%s)",
            self.config.heartbeat_timeout_s,
            self.config.max_placement_attempts,
            type(executor).__name__ if executor else None,
        )

    # ── Nodes ──────────────────────────────────────────────────────────────────

    def register_node(self, spec: NodeSpec) -> str:
        return self.registry.register_node(spec)

    def heartbeat(
        self, node_id: str, free_capacity: Optional[Resources] = None
    ) -> bool:
        """
        Forward a heartbeat to the registry.

        Returns False (and logs) for a node that never registered; a worker
        that heartbeats before registering is not an error for the scheduler.
        """
        try:
            self.registry.heartbeat(node_id, free_capacity)
        except UnknownNodeError:
            logger.warning("Heartbeat from unknown node %s ignored", node_id)
            return False
        return True

    def list_nodes(self) -> List[Node]:
        return self.registry.list_nodes()

    # ── Submission ─────────────────────────────────────────────────────────────

    def submit(self, job: JobSpec) -> SubmissionResult:
        """
        Validate, store and synchronously place one job.

        Returns:
            SubmissionResult with outcome SCHEDULED, INFEASIBLE or REJECTED.
        """
        started = time.perf_counter()
        try:
            admit_job(job, now=self._clock())
            self.lifecycle.create(job)
        except (AdmissionRejectedError, DuplicateJobError) as exc:
            with self._metrics_lock:
                self._rejected += 1
            logger.info("Job %s rejected: %s", job.job_id, exc)
            return SubmissionResult(
                job_id=job.job_id,
                outcome=SubmissionOutcome.REJECTED,
                message=str(exc),
            )

        try:
            assignment = self._place(job)
        except PlacementInfeasibleError as exc:
            record = self.lifecycle.mark_failed_pending(
                job.job_id, FailureReason.INFEASIBLE, str(exc),
                infeasible_reason=exc.reason,
            )
            self._record_decision(started, infeasible=exc.reason)
            return SubmissionResult(
                job_id=job.job_id,
                outcome=SubmissionOutcome.INFEASIBLE,
                status=record.status,
                infeasible_reason=exc.reason,
                message=str(exc),
            )
        except InvalidCostInputError as exc:
            self.lifecycle.discard(job.job_id)
            with self._metrics_lock:
                self._rejected += 1
            logger.warning("Job %s rejected while pricing: %s", job.job_id, exc)
            return SubmissionResult(
                job_id=job.job_id,
                outcome=SubmissionOutcome.REJECTED,
                message=str(exc),
            )

        self.lifecycle.mark_scheduled(
            job.job_id, assignment, report_deadline=self._report_deadline(job)
        )
        self._record_decision(started)

        if not self.registry.is_reserved(assignment.token):
            # Evicted between reserve() and mark_scheduled(): the eviction
            # sweep could not see this job yet.
            logger.warning(
                "Node %s evicted while job %s was being placed",
                assignment.node_id, job.job_id,
            )
            self._recover_job(job.job_id, assignment.node_id)
            return self._result_from_record(job.job_id)

        record = self._dispatch(job, assignment)
        return _scheduled_result(record.status, assignment)

    # ── Queries ────────────────────────────────────────────────────────────────

    def get_status(self, job_id: str) -> JobRecord:
        """Raises JobNotFoundError for an unknown id."""
        return self.lifecycle.get(job_id)

    def get_cost(self, job_id: str) -> CostBreakdown:
        """
        The cost breakdown the job was placed with.

        Still answered after the job finished (the last assignment is kept).
        For a re-placed job this is the cost of the most recent placement.

        Raises:
            JobNotFoundError:      unknown id.
            CostNotAvailableError: the job was never scheduled.
        """
        record = self.lifecycle.get(job_id)
        assignment = record.assignment or record.last_assignment
        if assignment is None:
            raise CostNotAvailableError(job_id, record.status)
        return assignment.cost

    def cluster_status(self) -> ClusterStatus:
        """
        running_job_count counts RUNNING jobs only; SCHEDULED jobs hold
        capacity but have not been reported started yet.
        """
        nodes = self.registry.list_nodes()
        counts = self.lifecycle.counts()
        return ClusterStatus(
            node_count=len(nodes),
            active_node_count=sum(1 for n in nodes if n.is_active),
            total_jobs=sum(counts.values()),
            running_job_count=counts[JobStatus.RUNNING],
        )

    # ── Executor outcomes ──────────────────────────────────────────────────────

    def report_node_result(
        self,
        job_id: str,
        outcome: ExecutorOutcome,
        exit_code: Optional[int] = None,
        output: Optional[str] = None,
        error: Optional[str] = None,
        node_id: Optional[str] = None,
    ) -> bool:
        """
        Apply one executor outcome.

        Returns:
            True if the job's state changed, False if the report was stale
            (wrong node, or the job already left the state it applies to).

        Raises:
            JobNotFoundError: unknown job id.
        """
        outcome = ExecutorOutcome(outcome)
        try:
            if outcome == ExecutorOutcome.STARTED:
                job = self.lifecycle.get(job_id).job
                self.lifecycle.mark_running(
                    job_id, node_id=node_id, report_deadline=self._report_deadline(job)
                )
                logger.info("Job %s running", job_id)
                return True

            if outcome == ExecutorOutcome.COMPLETED:
                assignment = self.lifecycle.finish(
                    job_id, JobStatus.COMPLETED, node_id=node_id,
                    exit_code=exit_code, output=output,
                )
            else:
                assignment = self.lifecycle.finish(
                    job_id, JobStatus.FAILED, node_id=node_id,
                    failure_reason=FailureReason.EXECUTOR_FAILED,
                    message=error, exit_code=exit_code, output=output,
                )
        except InvalidTransitionError as exc:
            logger.warning("Ignoring stale %s report: %s", outcome.value, exc)
            return False

        self._release(assignment)
        return True

    def post_outcome(self, message: ExecutorMessage) -> None:
        """Executor outbox. Thread-safe; never touches job state directly."""
        self._outcomes.put(message)

    def process_outcomes(self) -> int:
        """Drain the outbox and apply every message. Returns how many were read."""
        processed = 0
        while True:
            try:
                message = self._outcomes.get_nowait()
            except queue.Empty:
                return processed
            processed += 1
            try:
                self.report_node_result(
                    message.job_id,
                    message.outcome,
                    exit_code=message.exit_code,
                    output=message.output,
                    error=message.error,
                    node_id=message.node_id,
                )
            except JobNotFoundError:
                logger.warning(
                    "Executor reported %s for unknown job %s",
                    message.outcome.value, message.job_id,
                )

    @property
    def pending_outcomes(self) -> int:
        return self._outcomes.qsize()

    # ── Liveness + timeouts ────────────────────────────────────────────────────

    def evict_stale_nodes(self, now: Optional[datetime] = None) -> Set[str]:
        """
        Evict nodes past the heartbeat timeout and recover their jobs.

        Returns:
            The node_ids evicted by this call.
        """
        evicted = self.registry.evict_stale(
            self.config.heartbeat_timeout_s,
            now=now,
            suspect_after_s=self.config.suspect_after_s,
        )
        for node_id in sorted(evicted):
            for job_id in self.lifecycle.jobs_on_node(node_id):
                self._recover_job(job_id, node_id)
        return evicted

    def expire_overdue_jobs(self, now: Optional[datetime] = None) -> List[str]:
        """Fail and release placed jobs whose executor report is overdue."""
        now = now or self._clock()
        expired: List[str] = []
        for job_id in self.lifecycle.overdue(now):
            try:
                assignment = self.lifecycle.finish(
                    job_id, JobStatus.FAILED,
                    failure_reason=FailureReason.REPORT_TIMEOUT,
                    message=f"No executor report within the estimated duration "
                            f"plus {self.config.report_timeout_s:.0f}s",
                )
            except InvalidTransitionError:
                continue
            self._release(assignment)
            expired.append(job_id)
        if expired:
            logger.warning("Report timeout: failed %d job(s): %s", len(expired), expired)
        return expired

    # ── Metrics ────────────────────────────────────────────────────────────────

    def get_scheduling_metrics(self) -> dict:
        """
        Return current scheduling metrics.

        Metrics:
            decisions:           Placement passes that reached a verdict.
            scheduled:           Of those, how many placed the job.
            infeasible:          Infeasible verdicts, by reason.
            rejected:            Submissions refused before placement.
            reserve_retries:     Reserve races lost and retried.
            placement_p99_ms:    P99 placement latency over recent decisions.
            avg_placement_ms:    Mean placement latency.
            jobs_by_status:      Current job count per status.
        """
        with self._metrics_lock:
            latencies = list(self._placement_ms)
            infeasible = {r.value: n for r, n in self._infeasible.items()}
            decisions = self._decisions
            rejected = self._rejected
            retries = self._reserve_retries

        if latencies:
            sorted_lat = sorted(latencies)
            p99_idx = max(0, int(0.99 * len(sorted_lat)) - 1)
            p99 = sorted_lat[p99_idx]
            avg = sum(latencies) / len(latencies)
        else:
            p99 = 0.0
            avg = 0.0

        return {
            "decisions": decisions,
            "scheduled": decisions - sum(infeasible.values()),
            "infeasible": infeasible,
            "rejected": rejected,
            "reserve_retries": retries,
            "placement_p99_ms": round(p99, 3),
            "avg_placement_ms": round(avg, 3),
            "jobs_by_status": {
                status.value: n for status, n in self.lifecycle.counts().items()
            },
        }

    # ── Private helpers ────────────────────────────────────────────────────────

    def _place(self, job: JobSpec) -> Assignment:
        """
        Optimizer pass + reserve, retried on a lost reserve race.

        Raises:
            PlacementInfeasibleError: from the optimizer, or NO_CAPACITY once
                                      max_placement_attempts races were lost.
            InvalidCostInputError:    a candidate node could not be priced.
        """
        attempts = self.config.max_placement_attempts
        for attempt in range(1, attempts + 1):
            snapshot = self.registry.snapshot()
            placement = self.optimizer.place(job, snapshot)
            try:
                token = self.registry.reserve(placement.node_id, job.resources)
            except CapacityExceededError as exc:
                with self._metrics_lock:
                    self._reserve_retries += 1
                logger.warning(
                    "Reserve for job %s lost race on %s (attempt %d/%d): %s",
                    job.job_id, placement.node_id, attempt, attempts, exc.reason,
                )
                continue
            return Assignment(
                job_id=job.job_id,
                node_id=placement.node_id,
                cost=placement.cost,
                estimated_latency_ms=placement.estimated_latency_ms,
                token=token,
                assigned_at=self._clock(),
            )

        logger.warning(
            "Job %s: gave up after %d lost reserve race(s)", job.job_id, attempts
        )
        raise PlacementInfeasibleError(job.job_id, InfeasibleReason.NO_CAPACITY)

    def _dispatch(self, job: JobSpec, assignment: Assignment) -> JobRecord:
        """Hand a freshly scheduled job to the executor, if there is one."""
        if self.executor is None:
            return self.lifecycle.get(job.job_id)

        request = ExecutionRequest(
            job_id=job.job_id,
            node_id=assignment.node_id,
            job_type=job.job_type,
            limits=job.resources,
            image=job.image,
            command=job.command,
        )
        try:
            self.executor.start(request, self.post_outcome)
        except Exception as exc:
            logger.exception("Dispatch of job %s to %s failed", job.job_id, assignment.node_id)
            try:
                dropped = self.lifecycle.finish(
                    job.job_id, JobStatus.FAILED,
                    node_id=assignment.node_id,
                    failure_reason=FailureReason.DISPATCH_ERROR,
                    message=f"{exc.__class__.__name__}: {exc}",
                )
            except InvalidTransitionError:
                pass
            else:
                self._release(dropped)
        return self.lifecycle.get(job.job_id)

    def _recover_job(self, job_id: str, node_id: str) -> None:
        """
        Requeue and re-place one job whose node was evicted.

        Serialised, so a job reached both by the eviction sweep and by the
        submission that placed it is recovered once; the other caller finds
        it already moved and does nothing.
        """
        with self._recovery_lock:
            self._recover_job_locked(job_id, node_id)

    def _recover_job_locked(self, job_id: str, node_id: str) -> None:
        record = self.lifecycle.get(job_id)

        if record.requeue_count >= self.config.max_requeues:
            try:
                assignment = self.lifecycle.finish(
                    job_id, JobStatus.FAILED, node_id=node_id,
                    failure_reason=FailureReason.NODE_LOST,
                    message=f"Node {node_id} evicted; requeue budget "
                            f"({self.config.max_requeues}) exhausted",
                )
            except InvalidTransitionError:
                return
            self._release(assignment)
            return

        try:
            dropped = self.lifecycle.requeue(job_id, node_id=node_id)
        except InvalidTransitionError:
            return
        self._release(dropped)

        started = time.perf_counter()
        try:
            assignment = self._place(record.job)
        except PlacementInfeasibleError as exc:
            self._record_decision(started, infeasible=exc.reason)
            self.lifecycle.mark_failed_pending(
                job_id, FailureReason.NODE_LOST,
                f"Node {node_id} evicted; re-placement infeasible: {exc.reason.value}",
                infeasible_reason=exc.reason,
            )
            logger.warning("Job %s lost with node %s (%s)", job_id, node_id, exc.reason.value)
            return
        except InvalidCostInputError as exc:
            self.lifecycle.mark_failed_pending(
                job_id, FailureReason.NODE_LOST,
                f"Node {node_id} evicted; re-placement could not be priced: {exc}",
            )
            logger.warning("Job %s lost with node %s: %s", job_id, node_id, exc)
            return

        self.lifecycle.mark_scheduled(
            job_id, assignment, report_deadline=self._report_deadline(record.job)
        )
        self._record_decision(started)
        if not self.registry.is_reserved(assignment.token):
            logger.warning(
                "Node %s evicted while job %s was being re-placed",
                assignment.node_id, job_id,
            )
            self._recover_job_locked(job_id, assignment.node_id)
            return
        logger.info("Job %s re-placed %s → %s", job_id, node_id, assignment.node_id)
        self._dispatch(record.job, assignment)

    def _release(self, assignment: Assignment) -> None:
        if not self.registry.release(assignment.token):
            logger.debug(
                "Job %s: reservation on %s already revoked by eviction",
                assignment.job_id, assignment.node_id,
            )

    def _report_deadline(self, job: JobSpec) -> datetime:
        """Now + the job's estimated duration + the report grace period."""
        return self._clock() + timedelta(
            hours=job.estimated_duration_hours,
            seconds=self.config.report_timeout_s,
        )

    def _result_from_record(self, job_id: str) -> SubmissionResult:
        """Submission result for a job whose first placement was lost to eviction."""
        record = self.lifecycle.get(job_id)
        if record.assignment is not None:
            return _scheduled_result(record.status, record.assignment)
        return SubmissionResult(
            job_id=job_id,
            outcome=SubmissionOutcome.INFEASIBLE,
            status=record.status,
            infeasible_reason=record.infeasible_reason,
            message=record.failure_message or "",
        )

    def _record_decision(
        self, started: float, infeasible: Optional[InfeasibleReason] = None
    ) -> None:
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        with self._metrics_lock:
            self._decisions += 1
            self._placement_ms.append(elapsed_ms)
            if infeasible is not None:
                self._infeasible[infeasible] += 1

    def __repr__(self) -> str:
        return (
            f"SchedulerService(nodes={self.registry.node_count}, "
            f"jobs={len(self.lifecycle)})"
        )


def _scheduled_result(status: JobStatus, assignment: Assignment) -> SubmissionResult:
    return SubmissionResult(
        job_id=assignment.job_id,
        outcome=SubmissionOutcome.SCHEDULED,
        status=status,
        assigned_node=assignment.node_id,
        cost=assignment.cost,
        estimated_latency_ms=assignment.estimated_latency_ms,
        message=f"Job placed on {assignment.node_id} "
                f"(TCO ${assignment.cost.total_usd:.4f})",
    )
