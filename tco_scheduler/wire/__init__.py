"""
tco_scheduler/wire — RPC message contracts and a transport-agnostic handler.

Public API:
    SchedulerRpcHandler — one method per RPC + dispatch(method, payload)
    RpcError, RpcCode   — INVALID_ARGUMENT / NOT_FOUND / FAILED_PRECONDITION /
                          UNIMPLEMENTED
"""

from tco_scheduler.wire.handlers import RpcCode, RpcError, SchedulerRpcHandler

__all__ = ["SchedulerRpcHandler", "RpcError", "RpcCode"]
