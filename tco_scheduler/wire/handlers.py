"""
tco_scheduler/wire/handlers.py
──────────────────────────────
SchedulerRpcHandler: maps RPCs onto SchedulerService, with no transport.

Any transport (gRPC servicer, HTTP route, message-queue consumer, the CLI)
can sit in front of this class. It either calls the typed methods directly
or hands dispatch() a method name and a decoded JSON payload and sends the
returned dict back.

Error mapping
──────────────
Business outcomes (Infeasible, REJECTED) are normal responses. Only
malformed or impossible requests become RpcError:

  payload fails validation          → INVALID_ARGUMENT
  unknown job id                    → NOT_FOUND
  cost asked before scheduling,
  re-registration below reservations → FAILED_PRECONDITION
  unknown method name               → UNIMPLEMENTED
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple, Type

from pydantic import BaseModel, ValidationError

from tco_scheduler.control_plane.cluster_registry import CapacityExceededError
from tco_scheduler.control_plane.job_lifecycle import JobNotFoundError
from tco_scheduler.control_plane.scheduler_service import (
    CostNotAvailableError,
    SchedulerService,
)
from tco_scheduler.wire.messages import (
    ClusterStatusRequest,
    ClusterStatusResponse,
    CostEstimate,
    GetJobCostRequest,
    GetJobCostResponse,
    GetJobStatusRequest,
    GetJobStatusResponse,
    HeartbeatRequest,
    HeartbeatResponse,
    ListNodesRequest,
    ListNodesResponse,
    NodeInfo,
    RegisterNodeRequest,
    RegisterNodeResponse,
    ReportResultRequest,
    ReportResultResponse,
    SubmitJobRequest,
    SubmitJobResponse,
)

logger = logging.getLogger(__name__)


class RpcCode(str, Enum):
    INVALID_ARGUMENT = "INVALID_ARGUMENT"
    NOT_FOUND = "NOT_FOUND"
    FAILED_PRECONDITION = "FAILED_PRECONDITION"
    UNIMPLEMENTED = "UNIMPLEMENTED"


class RpcError(Exception):
    """
    A request the scheduler cannot answer.

    Attributes:
        code:    RpcCode, for the transport to map onto its own status codes.
        message: Human-readable detail.
    """

    def __init__(self, code: RpcCode, message: str) -> None:
        self.code = RpcCode(code)
        self.message = message
        super().__init__(f"{self.code.value}: {message}")

    def to_dict(self) -> Dict[str, str]:
        return {"code": self.code.value, "message": self.message}


class SchedulerRpcHandler:
    """
    One method per RPC, plus a name-based dispatch().

    Usage:
        handler = SchedulerRpcHandler(service)
        handler.dispatch("SubmitJob", {"job_id": "j1", "cpu": 1, ...})
    """

    def __init__(self, service: SchedulerService) -> None:
        self._service = service
        self._routes: Dict[str, Tuple[Type[BaseModel], Callable[[Any], BaseModel]]] = {
            "SubmitJob": (SubmitJobRequest, self.submit_job),
            "GetJobStatus": (GetJobStatusRequest, self.get_job_status),
            "GetJobCost": (GetJobCostRequest, self.get_job_cost),
            "ClusterStatus": (ClusterStatusRequest, self.cluster_status),
            "ListNodes": (ListNodesRequest, self.list_nodes),
            "RegisterNode": (RegisterNodeRequest, self.register_node),
            "Heartbeat": (HeartbeatRequest, self.heartbeat),
            "ReportResult": (ReportResultRequest, self.report_result),
        }

    @property
    def methods(self) -> Tuple[str, ...]:
        return tuple(sorted(self._routes))

    # ── Dispatch ───────────────────────────────────────────────────────────────

    def dispatch(
        self, method: str, payload: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Validate payload for method, call it, return the response as JSON-able dict.

        Raises:
            RpcError: see the module docstring for the mapping.
        """
        route = self._routes.get(method)
        if route is None:
            logger.warning("RPC to unknown method %r", method)
            raise RpcError(RpcCode.UNIMPLEMENTED, f"Unknown method {method!r}")
        request_type, handler = route
        try:
            request = request_type.model_validate(payload or {})
        except ValidationError as exc:
            logger.info("RPC %s: malformed payload (%d error(s))", method, exc.error_count())
            raise RpcError(
                RpcCode.INVALID_ARGUMENT,
                f"{method}: {exc.error_count()} invalid field(s): {_summarise(exc)}",
            ) from exc
        response = handler(request)
        return response.model_dump(mode="json")

    # ── Client → scheduler ─────────────────────────────────────────────────────

    def submit_job(self, request: SubmitJobRequest) -> SubmitJobResponse:
        try:
            job = request.to_job_spec()
        except ValidationError as exc:
            raise RpcError(RpcCode.INVALID_ARGUMENT, _summarise(exc)) from exc
        return SubmitJobResponse.from_result(self._service.submit(job))

    def get_job_status(self, request: GetJobStatusRequest) -> GetJobStatusResponse:
        try:
            record = self._service.get_status(request.job_id)
        except JobNotFoundError as exc:
            raise RpcError(RpcCode.NOT_FOUND, str(exc)) from exc
        return GetJobStatusResponse.from_record(record)

    def get_job_cost(self, request: GetJobCostRequest) -> GetJobCostResponse:
        try:
            cost = self._service.get_cost(request.job_id)
        except JobNotFoundError as exc:
            raise RpcError(RpcCode.NOT_FOUND, str(exc)) from exc
        except CostNotAvailableError as exc:
            raise RpcError(RpcCode.FAILED_PRECONDITION, str(exc)) from exc
        return GetJobCostResponse(
            job_id=request.job_id, cost_breakdown=CostEstimate.from_breakdown(cost)
        )

    def cluster_status(self, request: ClusterStatusRequest) -> ClusterStatusResponse:
        return ClusterStatusResponse.from_status(self._service.cluster_status())

    def list_nodes(self, request: ListNodesRequest) -> ListNodesResponse:
        return ListNodesResponse(
            nodes=[NodeInfo.from_node(n) for n in self._service.list_nodes()]
        )

    # ── Worker → scheduler ─────────────────────────────────────────────────────

    def register_node(self, request: RegisterNodeRequest) -> RegisterNodeResponse:
        try:
            node_id = self._service.register_node(request.to_node_spec())
        except CapacityExceededError as exc:
            raise RpcError(RpcCode.FAILED_PRECONDITION, str(exc)) from exc
        return RegisterNodeResponse(
            success=True, node_id=node_id,
            message=f"Node {node_id} registered",
        )

    def heartbeat(self, request: HeartbeatRequest) -> HeartbeatResponse:
        return HeartbeatResponse(
            received=self._service.heartbeat(request.node_id, request.free_capacity)
        )

    def report_result(self, request: ReportResultRequest) -> ReportResultResponse:
        try:
            accepted = self._service.report_node_result(
                request.job_id,
                request.outcome,
                exit_code=request.exit_code,
                output=request.output,
                error=request.error,
                node_id=request.node_id,
            )
        except JobNotFoundError as exc:
            raise RpcError(RpcCode.NOT_FOUND, str(exc)) from exc
        return ReportResultResponse(accepted=accepted)

    def __repr__(self) -> str:
        return f"SchedulerRpcHandler(methods={len(self._routes)})"


def _summarise(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(p) for p in error.get("loc", ())) or "<root>"
        parts.append(f"{location}: {error.get('msg', 'invalid')}")
    return "; ".join(parts)
