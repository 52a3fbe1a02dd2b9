"""
tco_scheduler/control_plane/optimizer.py
────────────────────────────────────────
The placement layer: decides WHICH node a job goes to.

Best fit packs; this optimizer prices. For each job it picks the node that
minimises the TCO total (CostEngine) among the nodes that can actually take
the job and meet its SLA.

How place() works
──────────────────
Given a job and an immutable ClusterSnapshot:

1. Capacity filter — keep ACTIVE nodes whose free capacity
   (total − reserved) covers the request in every dimension.
   Nothing survives → Infeasible(NO_CAPACITY).

2. SLA filter — estimate latency with the LatencyModel; drop nodes above
   job.sla.max_latency_ms. If the job has a deadline, also drop nodes where
   now + latency + duration would finish after it.
   Nothing survives → Infeasible(SLA_UNREACHABLE).

3. Pricing — CostEngine.evaluate() for each survivor with:
     price_per_hour            ← node.price_per_hour
     duration_hours            ← job.estimated_duration_hours
     utilization_factor        ← configured (default 1.0)
     data_size_gb              ← job.estimated_data_gb
     transfer_price_per_gb     ← node.transfer_price_per_gb
     idle_capacity_hours       ← duration × (1 − node utilisation after placement)
     opportunity_cost_per_hour ← node.opportunity_cost_per_hour
   Nodes whose total exceeds job.sla.budget_usd are dropped.
   Nothing survives → Infeasible(OVER_BUDGET).

4. Selection — numpy argmin over the survivors' totals. Candidates are
   ordered by node_id before scoring and argmin returns the *first* minimum,
   so equal totals always resolve to the lexicographically smallest node id.

Greedy by design
─────────────────
One job, one snapshot, one decision. Existing assignments are never moved
and no job is preempted. The snapshot may be stale by the time the caller
reserves; the registry's reserve() is the final authority and the service
retries on a lost race.
"""

from __future__ import annotations

import logging
from typing import List, Optional

import numpy as np

from tco_scheduler.shared.models import (
    CandidateEvaluation,
    ClusterSnapshot,
    CostBreakdown,
    InfeasibleReason,
    JobSpec,
    Node,
    Placement,
)
from tco_scheduler.control_plane.cost_engine import (
    DEFAULT_UTILIZATION_FACTOR,
    CostEngine,
)
from tco_scheduler.control_plane.latency import LatencyModel, LoadAwareLatencyModel

logger = logging.getLogger(__name__)


class PlacementInfeasibleError(Exception):
    """
    Raised when no node can take the job.

    Attributes:
        job_id:      The job that could not be placed.
        reason:      NO_CAPACITY, SLA_UNREACHABLE or OVER_BUDGET.
        evaluations: Per-node diagnostics from the failed pass.

    Caller contract (SchedulerService):
        Report the reason to the submitter immediately. Do not retry.
    """

    def __init__(
        self,
        job_id: str,
        reason: InfeasibleReason,
        evaluations: Optional[List[CandidateEvaluation]] = None,
    ) -> None:
        self.job_id = job_id
        self.reason = reason
        self.evaluations = evaluations or []
        super().__init__(
            f"Job {job_id} could not be placed: {reason.value} "
            f"({len(self.evaluations)} node(s) evaluated)"
        )


class Optimizer:
    """
    Minimum-TCO placement for a single job against a snapshot.

    Args:
        cost_engine:        TCO evaluator. Default: a fresh CostEngine.
        latency_model:      SLA latency policy. Default: LoadAwareLatencyModel.
        utilization_factor: Compute-cost multiplier passed to the cost engine.
    """

    def __init__(
        self,
        cost_engine: Optional[CostEngine] = None,
        latency_model: Optional[LatencyModel] = None,
        utilization_factor: float = DEFAULT_UTILIZATION_FACTOR,
    ) -> None:
        self.cost_engine = cost_engine or CostEngine()
        self.latency_model = latency_model or LoadAwareLatencyModel()
        self.utilization_factor = utilization_factor

    # ── Main entrypoint ────────────────────────────────────────────────────────

    def place(self, job: JobSpec, snapshot: ClusterSnapshot) -> Placement:
        """
        Choose the minimum-cost feasible node for job.

        Returns:
            Placement(node_id, cost, estimated_latency_ms).

        Raises:
            PlacementInfeasibleError: with the reason of the last filter that
                                      eliminated every candidate.
        """
        evaluations = self.evaluate_candidates(job, snapshot)
        survivors = [e for e in evaluations if e.rejected is None]

        if not survivors:
            reason = _infeasible_reason(evaluations)
            logger.info(
                "Job %s infeasible: %s (%d node(s) evaluated)",
                job.job_id, reason.value, len(evaluations),
            )
            raise PlacementInfeasibleError(job.job_id, reason, evaluations)

        totals = np.array([e.cost.total_usd for e in survivors], dtype=np.float64)
        best = survivors[int(np.argmin(totals))]

        logger.info(
            "Job %s → node %s (TCO $%.4f, latency %.1fms, %d candidate(s))",
            job.job_id, best.node_id, best.cost.total_usd,
            best.estimated_latency_ms, len(survivors),
        )
        return Placement(
            node_id=best.node_id,
            cost=best.cost,
            estimated_latency_ms=best.estimated_latency_ms,
        )

    def evaluate_candidates(
        self, job: JobSpec, snapshot: ClusterSnapshot
    ) -> List[CandidateEvaluation]:
        """
        Run every filter on every node and report where each one stopped.

        Ordered by node_id. Survivors have rejected=None and a cost.
        """
        now_epoch = snapshot.taken_at.timestamp()
        evaluations: List[CandidateEvaluation] = []

        for node in sorted(snapshot.nodes, key=lambda n: n.node_id):
            # ── Step 1: capacity + liveness ────────────────────────────────────
            if not node.is_active or not job.resources.fits_within(node.free):
                logger.debug(
                    "Node %s rejected for %s: no capacity (liveness=%s)",
                    node.node_id, job.job_id, node.liveness.value,
                )
                evaluations.append(CandidateEvaluation(
                    node_id=node.node_id, rejected=InfeasibleReason.NO_CAPACITY,
                ))
                continue

            # ── Step 2: SLA latency + deadline ─────────────────────────────────
            latency_ms = self.latency_model.estimate_ms(job, node)
            if not _meets_sla(job, latency_ms, now_epoch):
                logger.debug(
                    "Node %s rejected for %s: latency %.1fms vs SLA %.1fms",
                    node.node_id, job.job_id, latency_ms, job.sla.max_latency_ms,
                )
                evaluations.append(CandidateEvaluation(
                    node_id=node.node_id,
                    estimated_latency_ms=latency_ms,
                    rejected=InfeasibleReason.SLA_UNREACHABLE,
                ))
                continue

            # ── Step 3: price + budget ─────────────────────────────────────────
            cost = self.price(job, node)
            over_budget = (
                job.sla.budget_usd is not None and cost.total_usd > job.sla.budget_usd
            )
            if over_budget:
                logger.debug(
                    "Node %s rejected for %s: TCO $%.4f > budget $%.4f",
                    node.node_id, job.job_id, cost.total_usd, job.sla.budget_usd,
                )
            evaluations.append(CandidateEvaluation(
                node_id=node.node_id,
                estimated_latency_ms=latency_ms,
                cost=cost,
                rejected=InfeasibleReason.OVER_BUDGET if over_budget else None,
            ))

        return evaluations

    def price(self, job: JobSpec, node: Node) -> CostBreakdown:
        """TCO for running job on node, given the node's current reservations."""
        idle_hours = job.estimated_duration_hours * (1.0 - _utilization_after(job, node))
        return self.cost_engine.evaluate(
            price_per_hour=node.price_per_hour,
            duration_hours=job.estimated_duration_hours,
            utilization_factor=self.utilization_factor,
            data_size_gb=job.estimated_data_gb,
            transfer_price_per_gb=node.transfer_price_per_gb,
            idle_capacity_hours=max(0.0, idle_hours),
            opportunity_cost_per_hour=node.opportunity_cost_per_hour,
        )

    def __repr__(self) -> str:
        return (
            f"Optimizer(latency_model={self.latency_model!r}, "
            f"utilization_factor={self.utilization_factor})"
        )


# ── Helpers ────────────────────────────────────────────────────────────────────

def _meets_sla(job: JobSpec, latency_ms: float, now_epoch: float) -> bool:
    if latency_ms > job.sla.max_latency_ms:
        return False
    if job.sla.deadline_epoch is not None:
        finish = now_epoch + latency_ms / 1000.0 + job.estimated_duration_hours * 3600.0
        if finish > job.sla.deadline_epoch:
            return False
    return True


def _utilization_after(job: JobSpec, node: Node) -> float:
    """Reservation ratio of the node's tightest dimension once job is added."""
    ratios = []
    if node.capacity.cpu_cores > 0:
        ratios.append((node.reserved.cpu_cores + job.resources.cpu_cores) / node.capacity.cpu_cores)
    if node.capacity.memory_gb > 0:
        ratios.append((node.reserved.memory_gb + job.resources.memory_gb) / node.capacity.memory_gb)
    return min(1.0, max(ratios, default=1.0))


def _infeasible_reason(evaluations: List[CandidateEvaluation]) -> InfeasibleReason:
    """The furthest filter any candidate reached decides the reported reason."""
    reached = {e.rejected for e in evaluations}
    if InfeasibleReason.OVER_BUDGET in reached:
        return InfeasibleReason.OVER_BUDGET
    if InfeasibleReason.SLA_UNREACHABLE in reached:
        return InfeasibleReason.SLA_UNREACHABLE
    return InfeasibleReason.NO_CAPACITY
