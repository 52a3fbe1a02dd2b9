"""
tco_scheduler/control_plane/cost_engine.py
──────────────────────────────────────────
CostEngine: the Total-Cost-of-Ownership formula used to rank placements.

What this is
─────────────
Best-fit packing asks "where does this job fit tightest?". The economic
scheduler asks "where is this job cheapest to run, all costs included?".
The cost engine answers the second question for one (job, node) pair:

  C_total = C_comp + C_data + C_idle

  C_comp = price_per_hour × duration_hours × utilization_factor
  C_data = data_size_gb × transfer_price_per_gb
  C_idle = idle_capacity_hours × opportunity_cost_per_hour

All three terms are plain numbers in, plain number out. The engine knows
nothing about node types, clouds or on-premise hardware; those differences
are expressed entirely through the numbers the optimizer feeds it.

Input validation
─────────────────
Every input must be a finite, non-negative real number. A negative price or
a NaN duration would silently produce a nonsense ranking, so the engine
refuses it with InvalidCostInputError naming the offending parameter.
bool is rejected explicitly (True is an int in Python, and a True duration
is always a caller bug).

Thread safety
──────────────
Stateless. One instance can be shared by every scheduling thread.

Standalone use:
    from tco_scheduler.control_plane.cost_engine import CostEngine
    engine = CostEngine()
    cost = engine.evaluate(
        price_per_hour=0.10, duration_hours=1.0, utilization_factor=1.0,
        data_size_gb=0.0, transfer_price_per_gb=0.0,
        idle_capacity_hours=0.0, opportunity_cost_per_hour=0.0,
    )
    cost.total_usd  # 0.10
"""

from __future__ import annotations

import math
from numbers import Real

from tco_scheduler.shared.models import CostBreakdown

# ── Cost engine constants ──────────────────────────────────────────────────────

DEFAULT_UTILIZATION_FACTOR: float = 1.0
"""Fraction of the node price a job is billed for while it runs.

1.0 = the job pays the full hourly price for its whole duration. Lower values
model fractional billing on shared nodes. SchedulerConfig.utilization_factor
overrides this per deployment.
"""


class InvalidCostInputError(ValueError):
    """
    Raised when any cost input is negative, NaN, infinite or not a number.

    Attributes:
        parameter: Name of the offending input.
        value:     The value that was rejected.
    """

    def __init__(self, parameter: str, value: object) -> None:
        self.parameter = parameter
        self.value = value
        super().__init__(
            f"Invalid cost input {parameter}={value!r}: "
            f"must be a finite, non-negative number"
        )


class CostEngine:
    """
    Evaluates the TCO formula for one placement candidate.

    Usage:
        engine = CostEngine()
        breakdown = engine.evaluate(...)      # CostBreakdown
        engine.compute_cost(0.5, 2.0, 0.8)    # 0.8

    Returns CostBreakdown with total_usd == compute + data + idle exactly.
    """

    # ── Main entrypoint ────────────────────────────────────────────────────────

    def evaluate(
        self,
        price_per_hour: float,
        duration_hours: float,
        utilization_factor: float,
        data_size_gb: float,
        transfer_price_per_gb: float,
        idle_capacity_hours: float,
        opportunity_cost_per_hour: float,
    ) -> CostBreakdown:
        """
        Compute the full cost breakdown.

        Validation runs on all seven inputs before any arithmetic, so a
        rejected call has no partial result.

        Raises:
            InvalidCostInputError: for the first invalid input, in argument order.
        """
        self.validate_inputs(
            price_per_hour=price_per_hour,
            duration_hours=duration_hours,
            utilization_factor=utilization_factor,
            data_size_gb=data_size_gb,
            transfer_price_per_gb=transfer_price_per_gb,
            idle_capacity_hours=idle_capacity_hours,
            opportunity_cost_per_hour=opportunity_cost_per_hour,
        )
        compute = self.compute_cost(price_per_hour, duration_hours, utilization_factor)
        data = self.data_transfer_cost(data_size_gb, transfer_price_per_gb)
        idle = self.idle_opportunity_cost(idle_capacity_hours, opportunity_cost_per_hour)
        return CostBreakdown.from_components(compute, data, idle)

    # ── Individual terms (public for direct testing) ───────────────────────────

    @staticmethod
    def compute_cost(
        price_per_hour: float, duration_hours: float, utilization_factor: float
    ) -> float:
        """C_comp = price_per_hour × duration_hours × utilization_factor."""
        return float(price_per_hour) * float(duration_hours) * float(utilization_factor)

    @staticmethod
    def data_transfer_cost(data_size_gb: float, transfer_price_per_gb: float) -> float:
        """C_data = data_size_gb × transfer_price_per_gb."""
        return float(data_size_gb) * float(transfer_price_per_gb)

    @staticmethod
    def idle_opportunity_cost(
        idle_capacity_hours: float, opportunity_cost_per_hour: float
    ) -> float:
        """
        C_idle = idle_capacity_hours × opportunity_cost_per_hour.

        The value of capacity left sitting unused during the job. Non-zero
        mostly for on-premise hardware, which costs money whether busy or not.
        """
        return float(idle_capacity_hours) * float(opportunity_cost_per_hour)

    # ── Validation ─────────────────────────────────────────────────────────────

    @staticmethod
    def validate_inputs(**named_values: object) -> None:
        """
        Check every keyword value is a finite, non-negative real number.

        Also used by admission control to reject malformed submissions before
        any state is touched.

        Raises:
            InvalidCostInputError: for the first offending value.
        """
        for name, value in named_values.items():
            if isinstance(value, bool) or not isinstance(value, Real):
                raise InvalidCostInputError(name, value)
            as_float = float(value)
            if math.isnan(as_float) or math.isinf(as_float) or as_float < 0.0:
                raise InvalidCostInputError(name, value)

    def __repr__(self) -> str:
        return f"CostEngine(default_utilization_factor={DEFAULT_UTILIZATION_FACTOR})"
