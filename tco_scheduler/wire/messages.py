"""
tco_scheduler/wire/messages.py
──────────────────────────────
Request / response contracts for the scheduler's RPC surface.

Two directions share one message set:
  client → scheduler : SubmitJob, GetJobStatus, GetJobCost, ClusterStatus, ListNodes
  worker → scheduler : RegisterNode, Heartbeat, ReportResult

These are flat, transport-friendly shapes (cpu / memory_gb rather than a
nested ResourceRequest) that any transport can carry as JSON. Each request
knows how to turn itself into the core model it stands for, and each
response how to build itself from the core result, so the handler stays a
thin router.

Requests forbid unknown fields: a misspelt "max_latency" must fail loudly,
not silently fall back to a default.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from tco_scheduler.shared.models import (
    ClusterStatus,
    CostBreakdown,
    ExecutorOutcome,
    FailureReason,
    InfeasibleReason,
    JobRecord,
    JobSpec,
    JobStatus,
    JobType,
    Node,
    NodeLiveness,
    NodeSpec,
    ResourceRequest,
    Resources,
    SlaConstraints,
    SubmissionOutcome,
    SubmissionResult,
)


class _Request(BaseModel):
    model_config = ConfigDict(extra="forbid")


# ─────────────────────────────────────────────────────────────────────────────
# Shared pieces
# ─────────────────────────────────────────────────────────────────────────────

class CostEstimate(BaseModel):
    """Wire form of a CostBreakdown."""
    compute_cost_usd: float
    data_transfer_usd: float
    idle_opportunity_usd: float
    total_cost_usd: float

    @classmethod
    def from_breakdown(cls, cost: CostBreakdown) -> "CostEstimate":
        return cls(
            compute_cost_usd=cost.compute_usd,
            data_transfer_usd=cost.data_transfer_usd,
            idle_opportunity_usd=cost.idle_opportunity_usd,
            total_cost_usd=cost.total_usd,
        )


# ─────────────────────────────────────────────────────────────────────────────
# Client → scheduler
# ─────────────────────────────────────────────────────────────────────────────

class SubmitJobRequest(_Request):
    job_id: str = Field(..., min_length=1)
    job_type: JobType = JobType.TRAINING
    cpu: float = Field(..., gt=0, description="CPU cores")
    memory_gb: float = Field(..., gt=0)
    gpu_count: int = Field(0, ge=0)
    budget_usd: Optional[float] = Field(None, ge=0)
    max_latency_ms: float = Field(..., gt=0)
    estimated_duration_hours: float = Field(1.0, gt=0)
    estimated_data_gb: float = Field(0.0, ge=0)
    deadline_epoch: Optional[float] = None
    image: Optional[str] = None
    command: Optional[List[str]] = None

    def to_job_spec(self) -> JobSpec:
        return JobSpec(
            job_id=self.job_id,
            job_type=self.job_type,
            resources=ResourceRequest(
                cpu_cores=self.cpu,
                memory_gb=self.memory_gb,
                gpu_count=self.gpu_count,
            ),
            sla=SlaConstraints(
                max_latency_ms=self.max_latency_ms,
                budget_usd=self.budget_usd,
                deadline_epoch=self.deadline_epoch,
            ),
            estimated_duration_hours=self.estimated_duration_hours,
            estimated_data_gb=self.estimated_data_gb,
            image=self.image,
            command=self.command,
        )


class SubmitJobResponse(BaseModel):
    """Either assigned_node + cost_breakdown, or infeasible_reason."""
    success: bool
    job_id: str
    outcome: SubmissionOutcome
    assigned_node: Optional[str] = None
    infeasible_reason: Optional[InfeasibleReason] = None
    cost_breakdown: Optional[CostEstimate] = None
    estimated_latency_ms: Optional[float] = None
    message: str = ""

    @classmethod
    def from_result(cls, result: SubmissionResult) -> "SubmitJobResponse":
        return cls(
            success=result.outcome == SubmissionOutcome.SCHEDULED,
            job_id=result.job_id,
            outcome=result.outcome,
            assigned_node=result.assigned_node,
            infeasible_reason=result.infeasible_reason,
            cost_breakdown=(
                CostEstimate.from_breakdown(result.cost) if result.cost else None
            ),
            estimated_latency_ms=result.estimated_latency_ms,
            message=result.message,
        )


class GetJobStatusRequest(_Request):
    job_id: str = Field(..., min_length=1)


class GetJobStatusResponse(BaseModel):
    job_id: str
    status: JobStatus
    assigned_node: Optional[str] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    failure_reason: Optional[FailureReason] = None
    infeasible_reason: Optional[InfeasibleReason] = None
    exit_code: Optional[int] = None

    @classmethod
    def from_record(cls, record: JobRecord) -> "GetJobStatusResponse":
        return cls(
            job_id=record.job_id,
            status=record.status,
            assigned_node=record.assigned_node,
            started_at=record.started_at,
            ended_at=record.ended_at,
            failure_reason=record.failure_reason,
            infeasible_reason=record.infeasible_reason,
            exit_code=record.exit_code,
        )


class GetJobCostRequest(_Request):
    job_id: str = Field(..., min_length=1)


class GetJobCostResponse(BaseModel):
    job_id: str
    cost_breakdown: CostEstimate


class ClusterStatusRequest(_Request):
    pass


class ClusterStatusResponse(BaseModel):
    total_nodes: int
    active_nodes: int
    total_jobs: int
    running_jobs: int

    @classmethod
    def from_status(cls, status: ClusterStatus) -> "ClusterStatusResponse":
        return cls(
            total_nodes=status.node_count,
            active_nodes=status.active_node_count,
            total_jobs=status.total_jobs,
            running_jobs=status.running_job_count,
        )


class ListNodesRequest(_Request):
    pass


class NodeInfo(BaseModel):
    id: str
    location: str
    cpu_cores: float
    memory_gb: float
    gpu_count: int
    cost_per_hour_usd: float
    status: NodeLiveness

    @classmethod
    def from_node(cls, node: Node) -> "NodeInfo":
        return cls(
            id=node.node_id,
            location=node.location,
            cpu_cores=node.capacity.cpu_cores,
            memory_gb=node.capacity.memory_gb,
            gpu_count=node.capacity.gpu_count,
            cost_per_hour_usd=node.price_per_hour,
            status=node.liveness,
        )


class ListNodesResponse(BaseModel):
    nodes: List[NodeInfo] = Field(default_factory=list)


# ─────────────────────────────────────────────────────────────────────────────
# Worker → scheduler
# ─────────────────────────────────────────────────────────────────────────────

class RegisterNodeRequest(_Request):
    node_id: str = Field(..., min_length=1)
    location: str = "default"
    cpu_cores: float = Field(..., ge=0, allow_inf_nan=False)
    memory_gb: float = Field(..., ge=0, allow_inf_nan=False)
    gpu_count: int = Field(0, ge=0)
    price_per_hour: float = Field(..., ge=0, allow_inf_nan=False)
    on_premise: bool = False
    transfer_price_per_gb: float = Field(0.0, ge=0, allow_inf_nan=False)
    opportunity_cost_per_hour: float = Field(0.0, ge=0, allow_inf_nan=False)
    base_latency_ms: Optional[float] = Field(None, ge=0, allow_inf_nan=False)

    def to_node_spec(self) -> NodeSpec:
        return NodeSpec(
            node_id=self.node_id,
            location=self.location,
            capacity=Resources(
                cpu_cores=self.cpu_cores,
                memory_gb=self.memory_gb,
                gpu_count=self.gpu_count,
            ),
            price_per_hour=self.price_per_hour,
            on_premise=self.on_premise,
            transfer_price_per_gb=self.transfer_price_per_gb,
            opportunity_cost_per_hour=self.opportunity_cost_per_hour,
            base_latency_ms=self.base_latency_ms,
        )


class RegisterNodeResponse(BaseModel):
    success: bool
    node_id: str
    message: str = ""


class HeartbeatRequest(_Request):
    node_id: str = Field(..., min_length=1)
    free_capacity: Optional[Resources] = None


class HeartbeatResponse(BaseModel):
    received: bool


class ReportResultRequest(_Request):
    job_id: str = Field(..., min_length=1)
    outcome: ExecutorOutcome
    node_id: Optional[str] = None
    exit_code: Optional[int] = None
    output: Optional[str] = None
    error: Optional[str] = None


class ReportResultResponse(BaseModel):
    accepted: bool
