"""
tco_scheduler/shared/models.py
──────────────────────────────
The single source of truth for every data structure in the scheduler.

Design philosophy
-----------------
Every model answers one question: "What does the scheduler *need to know*
about this thing in order to price and place a job?"

Two kinds of model live here:
  • Immutable values (frozen): JobSpec, Node, ClusterSnapshot, CostBreakdown,
    Assignment. Once created they never change, so they can be handed to any
    caller or thread without copying.
  • Mutable records: JobRecord. Only JobLifecycle mutates these; everyone
    else receives deep copies.

Reading guide
-------------
Read top-to-bottom. Each model builds on the ones above it.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Timezone-aware UTC now. Every timestamp in the scheduler uses this."""
    return datetime.now(timezone.utc)


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 1: ENUMERATIONS
# ─────────────────────────────────────────────────────────────────────────────

class NodeLiveness(str, Enum):
    """
    Heartbeat-derived liveness of a node.

    ACTIVE    → Heartbeating normally. Eligible for placement.
    SUSPECTED → Heartbeat is late but not yet past the eviction timeout.
                Not eligible for new placements; existing jobs keep running.
    EVICTED   → Heartbeat age exceeded the timeout. All reservations revoked,
                its jobs requeued. A fresh heartbeat or re-registration
                brings it back to ACTIVE.
    """
    ACTIVE = "active"
    SUSPECTED = "suspected"
    EVICTED = "evicted"


class JobStatus(str, Enum):
    """
    Lifecycle states of a job.

    PENDING    → Accepted, waiting for (re-)placement.
    SCHEDULED  → Assigned to a node; capacity reserved; handed to the executor.
    RUNNING    → Executor reported the job started.
    COMPLETED  → Finished successfully; capacity released.
    FAILED     → Infeasible, lost with its node, or failed in the executor.
    """
    PENDING = "pending"
    SCHEDULED = "scheduled"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})


class JobType(str, Enum):
    """Kind of workload. Informational: carried through to the executor."""
    TRAINING = "training"
    INFERENCE = "inference"
    DATA_PROCESSING = "data-processing"


class InfeasibleReason(str, Enum):
    """
    Why the optimizer could not place a job.

    NO_CAPACITY     → No active node has enough free CPU / memory / GPU.
    SLA_UNREACHABLE → Nodes with capacity exist but none meets the latency
                      bound (or the completion deadline).
    OVER_BUDGET     → Nodes meet capacity and SLA, but every one of them costs
                      more than the job's budget ceiling.
    """
    NO_CAPACITY = "no-capacity"
    SLA_UNREACHABLE = "sla-unreachable"
    OVER_BUDGET = "over-budget"


class FailureReason(str, Enum):
    """Why a job ended in FAILED."""
    INFEASIBLE = "infeasible"
    NODE_LOST = "node-lost"
    EXECUTOR_FAILED = "executor-failed"
    REPORT_TIMEOUT = "report-timeout"
    DISPATCH_ERROR = "dispatch-error"


class ExecutorOutcome(str, Enum):
    """The bounded set of messages an executor may post back."""
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"


class SubmissionOutcome(str, Enum):
    """What submit() tells the caller. Always one of these, never 'queued'."""
    SCHEDULED = "scheduled"
    INFEASIBLE = "infeasible"
    REJECTED = "rejected"


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 2: RESOURCE MODELS
# What a job asks for and what a node provides.
# ─────────────────────────────────────────────────────────────────────────────

class Resources(BaseModel):
    """
    A point in the three-dimensional resource space (CPU, memory, GPU).

    Used for node capacity, node reservations, heartbeat-reported free
    capacity, and (via ResourceRequest) job requests. Frozen: arithmetic
    returns new instances.
    """
    model_config = ConfigDict(frozen=True)

    cpu_cores: float = Field(0.0, ge=0, description="CPU cores (fractional ok)")
    memory_gb: float = Field(0.0, ge=0, description="RAM in GB")
    gpu_count: int = Field(0, ge=0, description="Whole GPUs")

    def fits_within(self, other: "Resources") -> bool:
        """True if every dimension of self is ≤ the same dimension of other."""
        return (
            self.cpu_cores <= other.cpu_cores
            and self.memory_gb <= other.memory_gb
            and self.gpu_count <= other.gpu_count
        )

    def plus(self, other: "Resources") -> "Resources":
        return Resources(
            cpu_cores=self.cpu_cores + other.cpu_cores,
            memory_gb=self.memory_gb + other.memory_gb,
            gpu_count=self.gpu_count + other.gpu_count,
        )

    def minus(self, other: "Resources") -> "Resources":
        """
        Component-wise subtraction.

        Raises pydantic.ValidationError if any dimension would go negative;
        callers that must never underflow (the registry) rely on this.
        """
        return Resources(
            cpu_cores=_snap(self.cpu_cores - other.cpu_cores),
            memory_gb=_snap(self.memory_gb - other.memory_gb),
            gpu_count=self.gpu_count - other.gpu_count,
        )

    @property
    def is_zero(self) -> bool:
        return self.cpu_cores == 0 and self.memory_gb == 0 and self.gpu_count == 0


class ResourceRequest(Resources):
    """
    The compute resources a job requires.

    CPU and memory must be strictly positive; a job that asks for nothing
    would always fit and is almost certainly a misconfiguration.
    GPU count is optional (0 = CPU-only job).
    """
    cpu_cores: float = Field(..., gt=0, description="CPU cores required")
    memory_gb: float = Field(..., gt=0, description="RAM in GB required")
    gpu_count: int = Field(0, ge=0, description="GPUs required (0 = none)")


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 3: JOB MODELS
# What a user submits.
# ─────────────────────────────────────────────────────────────────────────────

class SlaConstraints(BaseModel):
    """
    Service-level constraints a placement must satisfy.

    Fields:
        max_latency_ms → Maximum acceptable estimated latency on the chosen
                         node. Nodes above it are discarded.
        budget_usd     → Ceiling on the TCO total for this job. None = no cap.
        deadline_epoch → Unix seconds by which the job must *finish*.
                         Placement checks now + latency + duration ≤ deadline.
    """
    model_config = ConfigDict(frozen=True)

    max_latency_ms: float = Field(..., gt=0, description="Latency bound in ms")
    budget_usd: Optional[float] = Field(None, ge=0, description="Budget ceiling in USD")
    deadline_epoch: Optional[float] = Field(None, description="Completion deadline (Unix s)")


class JobSpec(BaseModel):
    """
    The complete, immutable description of a submitted job.

    Only the job's *status* changes after submission, and that lives on
    JobRecord, not here.

    Why estimated_duration_hours and estimated_data_gb are on the job:
        They are the job-side inputs to the TCO formula. The node supplies
        prices; the job supplies quantities.
    """
    model_config = ConfigDict(frozen=True)

    job_id: str = Field(..., min_length=1, description="Unique job identifier")
    job_type: JobType = Field(JobType.TRAINING)
    resources: ResourceRequest
    sla: SlaConstraints
    estimated_duration_hours: float = Field(
        1.0, gt=0,
        description="Expected run time. Drives the compute and idle cost terms."
    )
    estimated_data_gb: float = Field(
        0.0, ge=0,
        description="Expected data moved to/from the node. Drives the transfer cost term."
    )
    image: Optional[str] = Field(None, description="Container image reference for the executor")
    command: Optional[List[str]] = Field(None, description="Command the executor runs")
    submitted_at: datetime = Field(default_factory=utc_now)


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 4: NODE MODELS
# ─────────────────────────────────────────────────────────────────────────────

class NodeSpec(BaseModel):
    """
    What a node declares about itself at registration.

    Pricing is a uniform record for every node type: on-premise boxes and
    elastic cloud instances differ only in their numbers, never in code path.
    Every price must be finite; NaN and infinity are refused at registration.

    Fields:
        price_per_hour            → Hourly rate charged for running on this node.
        on_premise                → True for owned hardware, False for cloud.
        transfer_price_per_gb     → Cost of moving one GB of job data here.
        opportunity_cost_per_hour → Value of this node's capacity when it sits
                                    idle (usually non-zero only on-premise).
        base_latency_ms           → Locality-specific baseline service latency.
                                    None = use the latency model default.
    """
    model_config = ConfigDict(frozen=True)

    node_id: str = Field(..., min_length=1)
    location: str = Field("default", description="Zone / site tag")
    capacity: Resources
    price_per_hour: float = Field(..., ge=0, allow_inf_nan=False)
    on_premise: bool = False
    transfer_price_per_gb: float = Field(0.0, ge=0, allow_inf_nan=False)
    opportunity_cost_per_hour: float = Field(0.0, ge=0, allow_inf_nan=False)
    base_latency_ms: Optional[float] = Field(None, ge=0, allow_inf_nan=False)


class Node(NodeSpec):
    """
    A point-in-time view of a registered node, as handed out by the registry.

    Frozen: the registry's internal record is never exposed; this is a copy.
    """
    reserved: Resources = Field(default_factory=Resources)
    reported_free: Optional[Resources] = Field(
        None, description="Free capacity the node reported in its last heartbeat"
    )
    last_heartbeat: datetime = Field(default_factory=utc_now)
    liveness: NodeLiveness = NodeLiveness.ACTIVE
    active_reservations: int = Field(0, ge=0)

    @property
    def free(self) -> Resources:
        """Capacity not promised to any job."""
        return self.capacity.minus(self.reserved)

    @property
    def utilization(self) -> float:
        """
        Best estimate of current load in [0, 1].

        The larger of the reservation ratio (what the scheduler promised) and
        the heartbeat-reported ratio (what the node actually sees), taken as
        the max over CPU and memory; the tightest dimension is the one that
        slows jobs down.
        """
        ratios = [
            _ratio(self.reserved.cpu_cores, self.capacity.cpu_cores),
            _ratio(self.reserved.memory_gb, self.capacity.memory_gb),
        ]
        if self.reported_free is not None:
            ratios.append(1.0 - _ratio(self.reported_free.cpu_cores, self.capacity.cpu_cores))
            ratios.append(1.0 - _ratio(self.reported_free.memory_gb, self.capacity.memory_gb))
        return min(1.0, max(0.0, max(ratios)))

    @property
    def is_active(self) -> bool:
        return self.liveness == NodeLiveness.ACTIVE


class ClusterSnapshot(BaseModel):
    """
    Immutable, consistent copy of every node at one instant.

    The optimizer scores against this, never against live registry state, so
    concurrent heartbeats and reservations cannot change the inputs mid-pass.
    """
    model_config = ConfigDict(frozen=True)

    taken_at: datetime = Field(default_factory=utc_now)
    nodes: Tuple[Node, ...] = ()

    def get(self, node_id: str) -> Optional[Node]:
        for node in self.nodes:
            if node.node_id == node_id:
                return node
        return None

    def active_nodes(self) -> List[Node]:
        return [n for n in self.nodes if n.is_active]


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 5: COST & PLACEMENT MODELS
# ─────────────────────────────────────────────────────────────────────────────

class CostBreakdown(BaseModel):
    """
    Output of the TCO formula: C_total = C_comp + C_data + C_idle.

    Never mutated after creation. Build with from_components() so that
    total_usd is always exactly the sum of the parts.
    """
    model_config = ConfigDict(frozen=True)

    compute_usd: float = Field(..., ge=0)
    data_transfer_usd: float = Field(..., ge=0)
    idle_opportunity_usd: float = Field(..., ge=0)
    total_usd: float = Field(..., ge=0)

    @classmethod
    def from_components(
        cls, compute: float, data_transfer: float, idle: float
    ) -> "CostBreakdown":
        return cls(
            compute_usd=compute,
            data_transfer_usd=data_transfer,
            idle_opportunity_usd=idle,
            total_usd=compute + data_transfer + idle,
        )


class AssignmentToken(BaseModel):
    """Proof of a successful reserve(). release() takes it back."""
    model_config = ConfigDict(frozen=True)

    token_id: str
    node_id: str
    resources: Resources


class Placement(BaseModel):
    """The optimizer's answer for one job: where, how much, how fast."""
    model_config = ConfigDict(frozen=True)

    node_id: str
    cost: CostBreakdown
    estimated_latency_ms: float = Field(..., ge=0)


class CandidateEvaluation(BaseModel):
    """
    Per-node diagnostic from one optimizer pass.

    rejected is None for nodes that survived every filter; otherwise it names
    the first filter the node failed. cost is only computed for nodes that
    got past capacity and SLA.
    """
    model_config = ConfigDict(frozen=True)

    node_id: str
    estimated_latency_ms: Optional[float] = None
    cost: Optional[CostBreakdown] = None
    rejected: Optional[InfeasibleReason] = None


class Assignment(BaseModel):
    """
    The binding of a job to a node, plus the cost and latency the decision
    was based on. Created atomically with the job's move to SCHEDULED.
    """
    model_config = ConfigDict(frozen=True)

    job_id: str
    node_id: str
    cost: CostBreakdown
    estimated_latency_ms: float
    token: AssignmentToken
    assigned_at: datetime = Field(default_factory=utc_now)


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 6: LIFECYCLE MODELS
# ─────────────────────────────────────────────────────────────────────────────

class JobRecord(BaseModel):
    """
    Tracks a job from submission to terminal state.

    Fields worth explaining:
        assignment       → Current binding. None while PENDING and after any
                           terminal transition (capacity already released).
        last_assignment  → The most recent binding, kept after release so that
                           get_cost() still answers for finished jobs.
        requeue_count    → How many times the job went back to PENDING after
                           its node was evicted.
        report_deadline  → When the executor must have reported a terminal
                           outcome. Past it, the job is failed and released.
    """
    job: JobSpec
    status: JobStatus = JobStatus.PENDING
    assignment: Optional[Assignment] = None
    last_assignment: Optional[Assignment] = None
    infeasible_reason: Optional[InfeasibleReason] = None
    failure_reason: Optional[FailureReason] = None
    failure_message: Optional[str] = None
    requeue_count: int = Field(0, ge=0)

    submitted_at: datetime = Field(default_factory=utc_now)
    scheduled_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    report_deadline: Optional[datetime] = None

    exit_code: Optional[int] = None
    output: Optional[str] = None

    @property
    def job_id(self) -> str:
        return self.job.job_id

    @property
    def assigned_node(self) -> Optional[str]:
        current = self.assignment or self.last_assignment
        return current.node_id if current else None


class SubmissionResult(BaseModel):
    """What submit() returns: a definitive outcome, never 'still queued'."""
    job_id: str
    outcome: SubmissionOutcome
    status: Optional[JobStatus] = None
    assigned_node: Optional[str] = None
    cost: Optional[CostBreakdown] = None
    estimated_latency_ms: Optional[float] = None
    infeasible_reason: Optional[InfeasibleReason] = None
    message: str = ""


class ClusterStatus(BaseModel):
    node_count: int = Field(..., ge=0)
    active_node_count: int = Field(..., ge=0)
    total_jobs: int = Field(..., ge=0)
    running_job_count: int = Field(..., ge=0)


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 7: EXECUTOR MESSAGES
# The contract with the (external) executor collaborator.
# ─────────────────────────────────────────────────────────────────────────────

class ExecutionRequest(BaseModel):
    """Everything an executor needs to start one job on one node."""
    model_config = ConfigDict(frozen=True)

    job_id: str
    node_id: str
    job_type: JobType
    limits: ResourceRequest
    image: Optional[str] = None
    command: Optional[List[str]] = None


class ExecutorMessage(BaseModel):
    """
    One outcome message from the executor.

    node_id lets the scheduler discard late reports from a node the job has
    since been moved away from (e.g. after an eviction and re-placement).
    """
    model_config = ConfigDict(frozen=True)

    job_id: str
    outcome: ExecutorOutcome
    node_id: Optional[str] = None
    exit_code: Optional[int] = None
    output: Optional[str] = None
    error: Optional[str] = None
    reported_at: datetime = Field(default_factory=utc_now)


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

# Float subtraction of previously-added amounts can leave ±1e-16 residue.
_EPSILON = 1e-9


def _snap(value: float) -> float:
    if -_EPSILON < value < _EPSILON:
        return 0.0
    return value


def _ratio(part: float, whole: float) -> float:
    if whole <= 0:
        return 0.0
    return part / whole
