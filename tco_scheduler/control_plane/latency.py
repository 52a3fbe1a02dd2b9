"""
tco_scheduler/control_plane/latency.py
──────────────────────────────────────
Latency models: how long a job is expected to wait for service on a node.

The optimizer discards every node whose estimated latency exceeds the job's
SLA bound. The estimate is a policy, not physics, so it is pluggable: pass any
LatencyModel to Optimizer(latency_model=...).

Default model (LoadAwareLatencyModel)
───────────────────────────────────────
  latency_ms = base + LOAD_LATENCY_MS × utilization + pressure

  base        → node.base_latency_ms if the node declares one (locality:
                a far-away zone is slower), else BASE_LATENCY_MS.
  utilization → node.utilization in [0, 1]: the larger of the reservation
                ratio and the load the node reported in its last heartbeat.
  pressure    → CPU_PRESSURE_MS if fewer than PRESSURE_THRESHOLD_CPU cores
                would remain free after placing the job, plus
                MEMORY_PRESSURE_MS if fewer than PRESSURE_THRESHOLD_MEMORY_GB
                would remain. A node squeezed to its last cores schedules
                slowly even when its average load looks fine.

Examples (defaults):
  idle node, plenty left free         → 50 ms
  half-loaded node                    → 50 + 50 = 100 ms
  idle node, job takes all but 1 core → 50 + 50 = 100 ms
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from tco_scheduler.shared.models import JobSpec, Node

# ── Latency model constants ────────────────────────────────────────────────────

BASE_LATENCY_MS: float = 50.0
"""Baseline service latency for nodes that do not declare their own."""

LOAD_LATENCY_MS: float = 100.0
"""Latency added at 100% utilisation (scaled linearly with load)."""

CPU_PRESSURE_MS: float = 50.0
"""Penalty when the node would be left with almost no free CPU."""

MEMORY_PRESSURE_MS: float = 30.0
"""Penalty when the node would be left with almost no free memory."""

PRESSURE_THRESHOLD_CPU: float = 2.0
"""Free cores (after placement) below which CPU pressure applies."""

PRESSURE_THRESHOLD_MEMORY_GB: float = 2.0
"""Free GB (after placement) below which memory pressure applies."""


class LatencyModel(ABC):
    """Policy interface: estimate the latency a job would see on a node."""

    @abstractmethod
    def estimate_ms(self, job: JobSpec, node: Node) -> float:
        """Return a non-negative latency estimate in milliseconds."""


class LoadAwareLatencyModel(LatencyModel):
    """
    Base latency scaled by current load, plus resource-pressure penalties.

    All coefficients default to the module constants; override per instance
    for clusters with different characteristics.
    """

    def __init__(
        self,
        base_latency_ms: float = BASE_LATENCY_MS,
        load_latency_ms: float = LOAD_LATENCY_MS,
        cpu_pressure_ms: float = CPU_PRESSURE_MS,
        memory_pressure_ms: float = MEMORY_PRESSURE_MS,
        cpu_threshold: float = PRESSURE_THRESHOLD_CPU,
        memory_threshold_gb: float = PRESSURE_THRESHOLD_MEMORY_GB,
    ) -> None:
        self.base_latency_ms = base_latency_ms
        self.load_latency_ms = load_latency_ms
        self.cpu_pressure_ms = cpu_pressure_ms
        self.memory_pressure_ms = memory_pressure_ms
        self.cpu_threshold = cpu_threshold
        self.memory_threshold_gb = memory_threshold_gb

    def estimate_ms(self, job: JobSpec, node: Node) -> float:
        latency = self._base(node) + self.load_latency_ms * node.utilization

        free = node.free
        cpu_left = free.cpu_cores - job.resources.cpu_cores
        mem_left = free.memory_gb - job.resources.memory_gb
        if cpu_left < self.cpu_threshold:
            latency += self.cpu_pressure_ms
        if mem_left < self.memory_threshold_gb:
            latency += self.memory_pressure_ms
        return latency

    def _base(self, node: Node) -> float:
        base: Optional[float] = node.base_latency_ms
        return self.base_latency_ms if base is None else base

    def __repr__(self) -> str:
        return (
            f"LoadAwareLatencyModel(base={self.base_latency_ms}ms, "
            f"load={self.load_latency_ms}ms)"
        )
