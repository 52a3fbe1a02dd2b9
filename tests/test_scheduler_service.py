"""
tests/test_scheduler_service.py
────────────────────────────────
Integration tests for tco_scheduler/control_plane/scheduler_service.py

These drive the whole control plane (registry + optimizer + lifecycle)
through SchedulerService with a manual clock, so heartbeat ages and report
timeouts are exact and no test sleeps.

Test groups
────────────
Group 1: submission outcomes   — scheduled, infeasible, rejected
Group 2: queries               — status, cost, cluster status, nodes
Group 3: reserve races         — lost race retried, attempts exhausted,
                                 eviction between reserve and record
Group 4: executor outcomes     — started / completed / failed, stale reports
Group 5: node loss             — requeue + re-place, requeue budget, no capacity
Group 6: report timeout        — silent executor fails the job, long jobs
Group 7: dispatch              — executor hand-off and hand-off failure
Group 8: metrics + concurrency — counters, reserved ≤ capacity under load
Group 9: pricing guards        — non-finite prices, unpriceable placements
Group 10: retention            — finished records dropped oldest first
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

import pytest
from pydantic import ValidationError

from tco_scheduler.control_plane.cluster_registry import (
    CapacityExceededError,
    ClusterRegistry,
)
from tco_scheduler.control_plane.job_lifecycle import JobNotFoundError
from tco_scheduler.control_plane.optimizer import Optimizer
from tco_scheduler.control_plane.scheduler_service import (
    CostNotAvailableError,
    SchedulerService,
)
from tco_scheduler.executor.base import JobExecutor, Outbox
from tco_scheduler.shared.config import SchedulerConfig
from tco_scheduler.shared.models import (
    AssignmentToken,
    ExecutionRequest,
    ExecutorMessage,
    ExecutorOutcome,
    FailureReason,
    InfeasibleReason,
    JobSpec,
    JobStatus,
    NodeLiveness,
    NodeSpec,
    ResourceRequest,
    Resources,
    SlaConstraints,
    SubmissionOutcome,
)


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

class _Clock:
    """Manually advanced UTC clock."""

    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class _RecordingExecutor(JobExecutor):
    """Remembers every hand-off; the test posts outcomes itself."""

    def __init__(self) -> None:
        self.started: List[Tuple[ExecutionRequest, Outbox]] = []

    def start(self, request: ExecutionRequest, outbox: Outbox) -> None:
        self.started.append((request, outbox))


class _BrokenExecutor(JobExecutor):
    def start(self, request: ExecutionRequest, outbox: Outbox) -> None:
        raise RuntimeError("node agent unreachable")


class _RacingRegistry(ClusterRegistry):
    """
    A registry where a concurrent submission fills node_id just before the
    first reserve() on it lands.
    """

    def __init__(self, clock, node_id: str, steal: Resources) -> None:
        super().__init__(clock=clock)
        self._target = node_id
        self._steal = steal
        self._raced = False

    def reserve(self, node_id: str, request: Resources) -> AssignmentToken:
        if node_id == self._target and not self._raced:
            self._raced = True
            super().reserve(node_id, self._steal)
        return super().reserve(node_id, request)


class _EvictingRegistry(ClusterRegistry):
    """
    A registry where node_id goes stale and is swept by the service right
    after the first reserve() on it returns, before the job is recorded.
    """

    def __init__(self, clock: _Clock, node_id: str, survivor: Optional[str] = None) -> None:
        super().__init__(clock=clock)
        self.service: Optional[SchedulerService] = None
        self._manual_clock = clock
        self._target = node_id
        self._survivor = survivor
        self._fired = False

    def reserve(self, node_id: str, request: Resources) -> AssignmentToken:
        token = super().reserve(node_id, request)
        if node_id == self._target and not self._fired:
            self._fired = True
            self._manual_clock.advance(31)
            if self._survivor is not None:
                self.heartbeat(self._survivor)
            self.service.evict_stale_nodes()
        return token


class _AlwaysLosesRegistry(ClusterRegistry):
    def reserve(self, node_id: str, request: Resources) -> AssignmentToken:
        raise CapacityExceededError(node_id, "lost the race")


def _make_node(
    node_id: str,
    cpu: float = 8.0,
    memory: float = 32.0,
    price: float = 0.10,
) -> NodeSpec:
    return NodeSpec(
        node_id=node_id,
        capacity=Resources(cpu_cores=cpu, memory_gb=memory),
        price_per_hour=price,
    )


def _make_job(
    job_id: str = "job-01",
    cpu: float = 1.0,
    memory: float = 1.0,
    max_latency_ms: float = 500.0,
    budget_usd: Optional[float] = None,
    deadline_epoch: Optional[float] = None,
    command: Optional[List[str]] = None,
    duration_hours: float = 1.0,
) -> JobSpec:
    return JobSpec(
        job_id=job_id,
        resources=ResourceRequest(cpu_cores=cpu, memory_gb=memory),
        sla=SlaConstraints(
            max_latency_ms=max_latency_ms,
            budget_usd=budget_usd,
            deadline_epoch=deadline_epoch,
        ),
        estimated_duration_hours=duration_hours,
        command=command,
    )


def _service(clock: _Clock, **kwargs) -> SchedulerService:
    config = kwargs.pop("config", None) or SchedulerConfig()
    return SchedulerService(config=config, clock=clock, **kwargs)


@pytest.fixture
def clock() -> _Clock:
    return _Clock()


@pytest.fixture
def service(clock: _Clock) -> SchedulerService:
    svc = _service(clock)
    svc.register_node(_make_node("node-a", price=0.10))
    svc.register_node(_make_node("node-b", price=0.50))
    return svc


# ─────────────────────────────────────────────────────────────────────────────
# Group 1: submission outcomes
# ─────────────────────────────────────────────────────────────────────────────

class TestSubmit:

    def test_single_node_reference_scenario(self, clock: _Clock) -> None:
        """$0.10/hr node, 1 CPU / 1 GB job → SCHEDULED at $0.10 total."""
        svc = _service(clock)
        svc.register_node(_make_node("node-01", price=0.10))

        result = svc.submit(_make_job())

        assert result.outcome == SubmissionOutcome.SCHEDULED
        assert result.status == JobStatus.SCHEDULED
        assert result.assigned_node == "node-01"
        assert result.cost.compute_usd == pytest.approx(0.10)
        assert result.cost.data_transfer_usd == 0.0
        assert result.cost.idle_opportunity_usd == 0.0
        assert result.cost.total_usd == pytest.approx(0.10)
        assert result.estimated_latency_ms == pytest.approx(50.0)

    def test_scheduling_reserves_capacity(self, service: SchedulerService) -> None:
        service.submit(_make_job(cpu=2.0, memory=4.0))
        node = service.registry.get_node("node-a")
        assert node.reserved.cpu_cores == pytest.approx(2.0)
        assert node.reserved.memory_gb == pytest.approx(4.0)

    def test_cheapest_node_wins(self, service: SchedulerService) -> None:
        assert service.submit(_make_job()).assigned_node == "node-a"

    def test_no_capacity_is_infeasible_and_recorded(self, service: SchedulerService) -> None:
        result = service.submit(_make_job(cpu=16.0))

        assert result.outcome == SubmissionOutcome.INFEASIBLE
        assert result.infeasible_reason == InfeasibleReason.NO_CAPACITY
        assert result.assigned_node is None
        record = service.get_status("job-01")
        assert record.status == JobStatus.FAILED
        assert record.failure_reason == FailureReason.INFEASIBLE
        assert record.infeasible_reason == InfeasibleReason.NO_CAPACITY

    def test_infeasible_reserves_nothing(self, service: SchedulerService) -> None:
        service.submit(_make_job(cpu=16.0))
        for node in service.list_nodes():
            assert node.reserved.is_zero

    def test_sla_unreachable(self, service: SchedulerService) -> None:
        result = service.submit(_make_job(max_latency_ms=5.0))
        assert result.infeasible_reason == InfeasibleReason.SLA_UNREACHABLE

    def test_over_budget(self, service: SchedulerService) -> None:
        result = service.submit(_make_job(budget_usd=0.01))
        assert result.infeasible_reason == InfeasibleReason.OVER_BUDGET

    def test_past_deadline_rejected_before_any_state(
        self, service: SchedulerService, clock: _Clock
    ) -> None:
        past = (clock.now - timedelta(hours=1)).timestamp()
        result = service.submit(_make_job(deadline_epoch=past))

        assert result.outcome == SubmissionOutcome.REJECTED
        assert "deadline" in result.message
        with pytest.raises(JobNotFoundError):
            service.get_status("job-01")

    def test_duplicate_job_id_rejected(self, service: SchedulerService) -> None:
        service.submit(_make_job())
        result = service.submit(_make_job(cpu=4.0))

        assert result.outcome == SubmissionOutcome.REJECTED
        assert service.registry.get_node("node-a").reserved.cpu_cores == pytest.approx(1.0)

    def test_job_without_executor_stays_scheduled(self, service: SchedulerService) -> None:
        service.submit(_make_job())
        assert service.get_status("job-01").status == JobStatus.SCHEDULED


# ─────────────────────────────────────────────────────────────────────────────
# Group 2: queries
# ─────────────────────────────────────────────────────────────────────────────

class TestQueries:

    def test_get_status_unknown_job(self, service: SchedulerService) -> None:
        with pytest.raises(JobNotFoundError):
            service.get_status("ghost")

    def test_get_cost_matches_placement(self, service: SchedulerService) -> None:
        result = service.submit(_make_job())
        assert service.get_cost("job-01") == result.cost

    def test_get_cost_still_answers_after_completion(self, service: SchedulerService) -> None:
        result = service.submit(_make_job())
        service.report_node_result("job-01", ExecutorOutcome.COMPLETED)
        assert service.get_cost("job-01") == result.cost

    def test_get_cost_for_unplaced_job(self, service: SchedulerService) -> None:
        service.submit(_make_job(cpu=64.0))
        with pytest.raises(CostNotAvailableError):
            service.get_cost("job-01")

    def test_get_cost_unknown_job(self, service: SchedulerService) -> None:
        with pytest.raises(JobNotFoundError):
            service.get_cost("ghost")

    def test_cluster_status_counts(self, service: SchedulerService) -> None:
        service.submit(_make_job("j1"))
        service.submit(_make_job("j2"))
        service.report_node_result("j2", ExecutorOutcome.STARTED)
        service.submit(_make_job("j3"))
        service.report_node_result("j3", ExecutorOutcome.COMPLETED)
        service.submit(_make_job("j4", cpu=99.0))

        status = service.cluster_status()
        assert status.node_count == 2
        assert status.active_node_count == 2
        assert status.total_jobs == 4
        assert status.running_job_count == 1

    def test_list_nodes_sorted(self, service: SchedulerService) -> None:
        assert [n.node_id for n in service.list_nodes()] == ["node-a", "node-b"]

    def test_heartbeat_from_unknown_node(self, service: SchedulerService) -> None:
        assert service.heartbeat("ghost") is False
        assert service.heartbeat("node-a", Resources(cpu_cores=4.0, memory_gb=16.0)) is True
        assert service.registry.get_node("node-a").reported_free.cpu_cores == 4.0


# ─────────────────────────────────────────────────────────────────────────────
# Group 3: reserve races
# ─────────────────────────────────────────────────────────────────────────────

class TestReserveRaces:

    def test_lost_race_retries_against_fresh_snapshot(self, clock: _Clock) -> None:
        registry = _RacingRegistry(clock, "node-a", Resources(cpu_cores=4.0, memory_gb=1.0))
        svc = _service(clock, registry=registry)
        svc.register_node(_make_node("node-a", cpu=4.0, price=0.10))
        svc.register_node(_make_node("node-b", price=0.50))

        result = svc.submit(_make_job())

        assert result.outcome == SubmissionOutcome.SCHEDULED
        assert result.assigned_node == "node-b"
        assert svc.get_scheduling_metrics()["reserve_retries"] == 1

    def test_exhausted_attempts_are_no_capacity(self, clock: _Clock) -> None:
        svc = _service(
            clock,
            registry=_AlwaysLosesRegistry(clock=clock),
            config=SchedulerConfig(max_placement_attempts=3),
        )
        svc.register_node(_make_node("node-a"))

        result = svc.submit(_make_job())

        assert result.outcome == SubmissionOutcome.INFEASIBLE
        assert result.infeasible_reason == InfeasibleReason.NO_CAPACITY
        assert svc.get_scheduling_metrics()["reserve_retries"] == 3
        assert svc.get_status("job-01").status == JobStatus.FAILED

    def test_eviction_before_record_moves_job_to_survivor(self, clock: _Clock) -> None:
        registry = _EvictingRegistry(clock, "node-a", survivor="node-b")
        svc = _service(clock, registry=registry)
        registry.service = svc
        svc.register_node(_make_node("node-a", price=0.10))
        svc.register_node(_make_node("node-b", price=0.50))

        result = svc.submit(_make_job())

        assert result.outcome == SubmissionOutcome.SCHEDULED
        assert result.assigned_node == "node-b"
        assert result.cost.total_usd == pytest.approx(0.50)
        record = svc.get_status("job-01")
        assert record.status == JobStatus.SCHEDULED
        assert record.assignment.node_id == "node-b"
        assert record.requeue_count == 1
        assert svc.registry.get_node("node-a").liveness == NodeLiveness.EVICTED
        assert svc.registry.get_node("node-a").reserved.is_zero
        assert svc.registry.get_node("node-b").reserved.cpu_cores == pytest.approx(1.0)

    def test_eviction_before_record_without_survivor_fails_job(self, clock: _Clock) -> None:
        registry = _EvictingRegistry(clock, "node-a")
        svc = _service(clock, registry=registry)
        registry.service = svc
        svc.register_node(_make_node("node-a"))

        result = svc.submit(_make_job())

        assert result.outcome == SubmissionOutcome.INFEASIBLE
        assert result.status == JobStatus.FAILED
        assert result.infeasible_reason == InfeasibleReason.NO_CAPACITY
        record = svc.get_status("job-01")
        assert record.failure_reason == FailureReason.NODE_LOST
        assert record.assignment is None

        clock.advance(100)
        svc.evict_stale_nodes()
        assert svc.get_status("job-01").status == JobStatus.FAILED

    def test_eviction_before_record_is_not_dispatched_twice(self, clock: _Clock) -> None:
        executor = _RecordingExecutor()
        registry = _EvictingRegistry(clock, "node-a", survivor="node-b")
        svc = _service(clock, registry=registry, executor=executor)
        registry.service = svc
        svc.register_node(_make_node("node-a", price=0.10))
        svc.register_node(_make_node("node-b", price=0.50))

        svc.submit(_make_job())

        assert [r.node_id for r, _ in executor.started] == ["node-b"]


# ─────────────────────────────────────────────────────────────────────────────
# Group 4: executor outcomes
# ─────────────────────────────────────────────────────────────────────────────

class TestExecutorOutcomes:

    def test_started_then_completed_releases_capacity(self, service: SchedulerService) -> None:
        service.submit(_make_job(cpu=2.0))

        assert service.report_node_result("job-01", ExecutorOutcome.STARTED, node_id="node-a")
        assert service.get_status("job-01").status == JobStatus.RUNNING

        assert service.report_node_result(
            "job-01", ExecutorOutcome.COMPLETED, exit_code=0, output="done", node_id="node-a"
        )
        record = service.get_status("job-01")
        assert record.status == JobStatus.COMPLETED
        assert record.output == "done"
        assert service.registry.get_node("node-a").reserved.is_zero

    def test_failed_report_records_executor_failure(self, service: SchedulerService) -> None:
        service.submit(_make_job())
        service.report_node_result(
            "job-01", ExecutorOutcome.FAILED, exit_code=137, error="OOMKilled"
        )
        record = service.get_status("job-01")
        assert record.status == JobStatus.FAILED
        assert record.failure_reason == FailureReason.EXECUTOR_FAILED
        assert record.failure_message == "OOMKilled"
        assert record.exit_code == 137
        assert service.registry.get_node("node-a").reserved.is_zero

    def test_report_after_terminal_is_ignored(self, service: SchedulerService) -> None:
        service.submit(_make_job())
        service.report_node_result("job-01", ExecutorOutcome.COMPLETED)
        assert service.report_node_result("job-01", ExecutorOutcome.FAILED) is False
        assert service.get_status("job-01").status == JobStatus.COMPLETED

    def test_report_for_unknown_job_raises(self, service: SchedulerService) -> None:
        with pytest.raises(JobNotFoundError):
            service.report_node_result("ghost", ExecutorOutcome.STARTED)

    def test_outbox_messages_apply_on_process(self, service: SchedulerService) -> None:
        service.submit(_make_job())
        service.post_outcome(ExecutorMessage(
            job_id="job-01", outcome=ExecutorOutcome.STARTED, node_id="node-a"
        ))
        service.post_outcome(ExecutorMessage(
            job_id="ghost", outcome=ExecutorOutcome.COMPLETED
        ))
        assert service.pending_outcomes == 2
        assert service.get_status("job-01").status == JobStatus.SCHEDULED

        assert service.process_outcomes() == 2
        assert service.pending_outcomes == 0
        assert service.get_status("job-01").status == JobStatus.RUNNING


# ─────────────────────────────────────────────────────────────────────────────
# Group 5: node loss
# ─────────────────────────────────────────────────────────────────────────────

class TestNodeLoss:

    def test_job_moves_to_surviving_node(
        self, service: SchedulerService, clock: _Clock
    ) -> None:
        """Node A stops heartbeating; its job is requeued and placed on B."""
        service.submit(_make_job())
        service.report_node_result("job-01", ExecutorOutcome.STARTED)

        clock.advance(31)
        service.heartbeat("node-b")
        evicted = service.evict_stale_nodes()

        assert evicted == {"node-a"}
        record = service.get_status("job-01")
        assert record.status == JobStatus.SCHEDULED
        assert record.assignment.node_id == "node-b"
        assert record.requeue_count == 1
        assert service.get_cost("job-01").total_usd == pytest.approx(0.50)
        assert service.registry.get_node("node-a").reserved.is_zero
        assert service.registry.get_node("node-b").reserved.cpu_cores == pytest.approx(1.0)

    def test_late_report_from_evicted_node_is_ignored(
        self, service: SchedulerService, clock: _Clock
    ) -> None:
        service.submit(_make_job())
        clock.advance(31)
        service.heartbeat("node-b")
        service.evict_stale_nodes()

        accepted = service.report_node_result(
            "job-01", ExecutorOutcome.FAILED, error="lost", node_id="node-a"
        )

        assert accepted is False
        record = service.get_status("job-01")
        assert record.status == JobStatus.SCHEDULED
        assert record.assignment.node_id == "node-b"

    def test_requeue_budget_exhausted_fails_job(self, clock: _Clock) -> None:
        svc = _service(clock, config=SchedulerConfig(max_requeues=0))
        svc.register_node(_make_node("node-a"))
        svc.register_node(_make_node("node-b", price=0.50))
        svc.submit(_make_job())

        clock.advance(31)
        svc.heartbeat("node-b")
        svc.evict_stale_nodes()

        record = svc.get_status("job-01")
        assert record.status == JobStatus.FAILED
        assert record.failure_reason == FailureReason.NODE_LOST
        assert svc.registry.get_node("node-b").reserved.is_zero

    def test_no_surviving_node_fails_job(self, clock: _Clock) -> None:
        svc = _service(clock)
        svc.register_node(_make_node("only"))
        svc.submit(_make_job())

        clock.advance(31)
        svc.evict_stale_nodes()

        record = svc.get_status("job-01")
        assert record.status == JobStatus.FAILED
        assert record.failure_reason == FailureReason.NODE_LOST
        assert record.infeasible_reason == InfeasibleReason.NO_CAPACITY
        assert record.requeue_count == 1

    def test_second_eviction_exhausts_default_budget(self, service: SchedulerService,
                                                     clock: _Clock) -> None:
        service.submit(_make_job())
        clock.advance(31)
        service.heartbeat("node-b")
        service.evict_stale_nodes()

        clock.advance(31)
        service.heartbeat("node-a")
        service.evict_stale_nodes()

        record = service.get_status("job-01")
        assert record.status == JobStatus.FAILED
        assert record.failure_reason == FailureReason.NODE_LOST

    def test_suspected_node_takes_no_new_jobs(
        self, service: SchedulerService, clock: _Clock
    ) -> None:
        clock.advance(20)
        service.heartbeat("node-b")
        assert service.evict_stale_nodes() == set()

        assert service.submit(_make_job()).assigned_node == "node-b"


# ─────────────────────────────────────────────────────────────────────────────
# Group 6: report timeout
# ─────────────────────────────────────────────────────────────────────────────

class TestReportTimeout:

    def test_silent_executor_fails_job(self, clock: _Clock) -> None:
        """Deadline = 1h estimated duration + 60s grace."""
        svc = _service(clock, config=SchedulerConfig(report_timeout_s=60))
        svc.register_node(_make_node("node-a"))
        svc.submit(_make_job())

        clock.advance(3659)
        assert svc.expire_overdue_jobs() == []

        clock.advance(2)
        assert svc.expire_overdue_jobs() == ["job-01"]
        record = svc.get_status("job-01")
        assert record.status == JobStatus.FAILED
        assert record.failure_reason == FailureReason.REPORT_TIMEOUT
        assert svc.registry.get_node("node-a").reserved.is_zero

    def test_long_running_job_is_not_expired_early(self, clock: _Clock) -> None:
        """A 4h job still running after the default 3600s grace keeps its node."""
        svc = _service(clock)
        svc.register_node(_make_node("node-a", price=0.01))
        svc.submit(_make_job("train", cpu=2.0, duration_hours=4.0))
        svc.report_node_result("train", ExecutorOutcome.STARTED, node_id="node-a")

        clock.advance(3601)
        assert svc.expire_overdue_jobs() == []
        assert svc.get_status("train").status == JobStatus.RUNNING
        assert svc.registry.get_node("node-a").reserved.cpu_cores == pytest.approx(2.0)

        clock.advance(4 * 3600)
        assert svc.expire_overdue_jobs() == ["train"]
        assert svc.get_status("train").failure_reason == FailureReason.REPORT_TIMEOUT

    def test_started_restarts_report_window(self, clock: _Clock) -> None:
        svc = _service(clock, config=SchedulerConfig(report_timeout_s=60))
        svc.register_node(_make_node("node-a"))
        svc.submit(_make_job())
        scheduled_deadline = svc.get_status("job-01").report_deadline

        clock.advance(1800)
        svc.report_node_result("job-01", ExecutorOutcome.STARTED)

        record = svc.get_status("job-01")
        assert record.report_deadline == scheduled_deadline + timedelta(seconds=1800)
        clock.advance(1900)
        assert svc.expire_overdue_jobs() == []

    def test_finished_jobs_never_time_out(self, clock: _Clock) -> None:
        svc = _service(clock, config=SchedulerConfig(report_timeout_s=60))
        svc.register_node(_make_node("node-a"))
        svc.submit(_make_job())
        svc.report_node_result("job-01", ExecutorOutcome.COMPLETED)

        clock.advance(7200)
        assert svc.expire_overdue_jobs() == []


# ─────────────────────────────────────────────────────────────────────────────
# Group 7: dispatch
# ─────────────────────────────────────────────────────────────────────────────

class TestDispatch:

    def test_scheduled_job_is_handed_to_executor(self, clock: _Clock) -> None:
        executor = _RecordingExecutor()
        svc = _service(clock, executor=executor)
        svc.register_node(_make_node("node-a"))

        svc.submit(_make_job(command=["echo", "hi"]))

        assert len(executor.started) == 1
        request, outbox = executor.started[0]
        assert request.job_id == "job-01"
        assert request.node_id == "node-a"
        assert request.command == ["echo", "hi"]
        assert request.limits.cpu_cores == 1.0

        outbox(ExecutorMessage(job_id="job-01", node_id="node-a",
                               outcome=ExecutorOutcome.COMPLETED, exit_code=0))
        svc.process_outcomes()
        assert svc.get_status("job-01").status == JobStatus.COMPLETED

    def test_replaced_job_is_dispatched_again(self, clock: _Clock) -> None:
        executor = _RecordingExecutor()
        svc = _service(clock, executor=executor)
        svc.register_node(_make_node("node-a"))
        svc.register_node(_make_node("node-b", price=0.50))
        svc.submit(_make_job())

        clock.advance(31)
        svc.heartbeat("node-b")
        svc.evict_stale_nodes()

        assert [r.node_id for r, _ in executor.started] == ["node-a", "node-b"]

    def test_dispatch_failure_fails_job_and_releases(self, clock: _Clock) -> None:
        svc = _service(clock, executor=_BrokenExecutor())
        svc.register_node(_make_node("node-a"))

        result = svc.submit(_make_job())

        assert result.outcome == SubmissionOutcome.SCHEDULED
        assert result.status == JobStatus.FAILED
        record = svc.get_status("job-01")
        assert record.failure_reason == FailureReason.DISPATCH_ERROR
        assert "node agent unreachable" in record.failure_message
        assert svc.registry.get_node("node-a").reserved.is_zero


# ─────────────────────────────────────────────────────────────────────────────
# Group 8: metrics + concurrency
# ─────────────────────────────────────────────────────────────────────────────

class TestMetricsAndConcurrency:

    def test_metrics_count_every_outcome(self, service: SchedulerService) -> None:
        service.submit(_make_job("ok"))
        service.submit(_make_job("big", cpu=99.0))
        service.submit(_make_job("ok"))   # duplicate → rejected

        metrics = service.get_scheduling_metrics()
        assert metrics["decisions"] == 2
        assert metrics["scheduled"] == 1
        assert metrics["infeasible"]["no-capacity"] == 1
        assert metrics["infeasible"]["over-budget"] == 0
        assert metrics["rejected"] == 1
        assert metrics["placement_p99_ms"] >= 0.0
        assert metrics["avg_placement_ms"] >= 0.0
        assert metrics["jobs_by_status"]["scheduled"] == 1
        assert metrics["jobs_by_status"]["failed"] == 1

    def test_empty_metrics(self, clock: _Clock) -> None:
        metrics = _service(clock).get_scheduling_metrics()
        assert metrics["decisions"] == 0
        assert metrics["placement_p99_ms"] == 0.0

    def test_concurrent_submissions_never_overcommit(self, clock: _Clock) -> None:
        """50 one-core jobs race for a 10-core node: exactly 10 get it."""
        svc = _service(clock)
        svc.register_node(_make_node("node-01", cpu=10.0, memory=64.0))
        barrier = threading.Barrier(50)

        def submit(i: int) -> SubmissionOutcome:
            barrier.wait()
            return svc.submit(_make_job(f"job-{i:02d}", max_latency_ms=1000.0)).outcome

        with ThreadPoolExecutor(max_workers=50) as pool:
            outcomes = list(pool.map(submit, range(50)))

        assert outcomes.count(SubmissionOutcome.SCHEDULED) == 10
        assert outcomes.count(SubmissionOutcome.INFEASIBLE) == 40
        node = svc.registry.get_node("node-01")
        assert node.reserved.cpu_cores == pytest.approx(10.0)
        assert node.reserved.fits_within(node.capacity)


# ─────────────────────────────────────────────────────────────────────────────
# Group 9: pricing guards
# ─────────────────────────────────────────────────────────────────────────────

class TestPricingGuards:

    @pytest.mark.parametrize("field", [
        "price_per_hour", "transfer_price_per_gb", "opportunity_cost_per_hour",
    ])
    @pytest.mark.parametrize("value", [float("inf"), float("nan")])
    def test_non_finite_node_price_refused(self, field: str, value: float) -> None:
        fields = {
            "node_id": "node-x",
            "capacity": Resources(cpu_cores=8.0, memory_gb=32.0),
            "price_per_hour": 0.10,
            field: value,
        }
        with pytest.raises(ValidationError):
            NodeSpec(**fields)

    def test_unpriceable_placement_is_rejected_without_a_record(self, clock: _Clock) -> None:
        svc = _service(clock, optimizer=Optimizer(utilization_factor=float("nan")))
        svc.register_node(_make_node("node-a"))

        result = svc.submit(_make_job())

        assert result.outcome == SubmissionOutcome.REJECTED
        assert "utilization_factor" in result.message
        with pytest.raises(JobNotFoundError):
            svc.get_status("job-01")
        assert svc.registry.get_node("node-a").reserved.is_zero
        assert svc.get_scheduling_metrics()["rejected"] == 1

    def test_rejected_id_can_be_submitted_again(self, clock: _Clock) -> None:
        svc = _service(clock, optimizer=Optimizer(utilization_factor=float("nan")))
        svc.register_node(_make_node("node-a"))
        svc.submit(_make_job())

        svc.optimizer.utilization_factor = 1.0
        assert svc.submit(_make_job()).outcome == SubmissionOutcome.SCHEDULED

    def test_unpriceable_re_placement_fails_job(self, service: SchedulerService,
                                                clock: _Clock) -> None:
        service.submit(_make_job())
        service.optimizer.utilization_factor = float("inf")

        clock.advance(31)
        service.heartbeat("node-b")
        service.evict_stale_nodes()

        record = service.get_status("job-01")
        assert record.status == JobStatus.FAILED
        assert record.failure_reason == FailureReason.NODE_LOST
        assert "could not be priced" in record.failure_message
        assert service.registry.get_node("node-b").reserved.is_zero


# ─────────────────────────────────────────────────────────────────────────────
# Group 10: retention
# ─────────────────────────────────────────────────────────────────────────────

class TestRetention:

    def test_oldest_finished_jobs_are_dropped(self, clock: _Clock) -> None:
        svc = _service(clock, config=SchedulerConfig(terminal_job_retention=2))
        svc.register_node(_make_node("node-a"))

        svc.submit(_make_job("live"))
        for job_id in ("done-1", "done-2", "done-3"):
            svc.submit(_make_job(job_id))
            svc.report_node_result(job_id, ExecutorOutcome.COMPLETED)

        with pytest.raises(JobNotFoundError):
            svc.get_status("done-1")
        assert svc.get_status("done-2").status == JobStatus.COMPLETED
        assert svc.get_status("done-3").status == JobStatus.COMPLETED
        assert svc.get_status("live").status == JobStatus.SCHEDULED
        assert svc.cluster_status().total_jobs == 3
