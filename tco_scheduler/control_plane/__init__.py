"""
tco_scheduler/control_plane — the scheduling brain.

Public API:

    Pricing:
        CostEngine              — TCO formula C_total = C_comp + C_data + C_idle
        InvalidCostInputError   — raised for negative / non-finite inputs

    Cluster state:
        ClusterRegistry         — thread-safe node registry (reserve / release /
                                  heartbeat / evict_stale / snapshot)
        CapacityExceededError   — reserve() would exceed capacity
        UnknownNodeError        — operation on an unregistered node

    Placement:
        LatencyModel            — pluggable SLA latency policy
        LoadAwareLatencyModel   — default: base + load + pressure penalties
        Optimizer               — minimum-TCO feasible node for one job
        PlacementInfeasibleError — no node can take the job (with reason)

    Jobs:
        AdmissionRejectedError  — raised by admission control
        admit_job()             — admission check function
        JobLifecycle            — per-job state machine
        JobNotFoundError        — unknown job id
        InvalidTransitionError  — illegal state change

    Boundary:
        SchedulerService        — submit / status / cost / cluster / liveness
        CostNotAvailableError   — get_cost() before the job was scheduled
"""

from tco_scheduler.control_plane.cost_engine import CostEngine, InvalidCostInputError
from tco_scheduler.control_plane.cluster_registry import (
    CapacityExceededError,
    ClusterRegistry,
    ReservationInvariantError,
    UnknownNodeError,
)
from tco_scheduler.control_plane.latency import LatencyModel, LoadAwareLatencyModel
from tco_scheduler.control_plane.optimizer import Optimizer, PlacementInfeasibleError
from tco_scheduler.control_plane.admission_controller import (
    AdmissionRejectedError,
    admit_job,
)
from tco_scheduler.control_plane.job_lifecycle import (
    DuplicateJobError,
    InvalidTransitionError,
    JobLifecycle,
    JobNotFoundError,
)
from tco_scheduler.control_plane.scheduler_service import (
    CostNotAvailableError,
    SchedulerService,
)

__all__ = [
    "CostEngine",
    "InvalidCostInputError",
    "ClusterRegistry",
    "CapacityExceededError",
    "ReservationInvariantError",
    "UnknownNodeError",
    "LatencyModel",
    "LoadAwareLatencyModel",
    "Optimizer",
    "PlacementInfeasibleError",
    "AdmissionRejectedError",
    "admit_job",
    "JobLifecycle",
    "DuplicateJobError",
    "InvalidTransitionError",
    "JobNotFoundError",
    "SchedulerService",
    "CostNotAvailableError",
]
