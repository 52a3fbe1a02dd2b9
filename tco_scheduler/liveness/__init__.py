"""
tco_scheduler/liveness — background heartbeat-timeout and report-timeout loop.

Public API:
    LivenessMonitor  — periodic outcome draining, node eviction, job expiry
"""

from tco_scheduler.liveness.monitor import LivenessMonitor

__all__ = ["LivenessMonitor"]
