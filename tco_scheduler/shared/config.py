"""
tco_scheduler/shared/config.py
──────────────────────────────
Runtime knobs for the scheduler service and its background loop.

Model tunables (latency coefficients, default utilisation factor) stay as
documented module-level constants next to the code that uses them. This file
only holds what an operator changes per deployment: timeouts, retry bounds,
loop cadence.

Every field can be overridden from the environment with the TCO_SCHED_ prefix:
    TCO_SCHED_HEARTBEAT_TIMEOUT_S=60 TCO_SCHED_MAX_REQUEUES=2 tco-scheduler ...
"""

from __future__ import annotations

import os
from typing import Mapping, Optional

from pydantic import BaseModel, Field, model_validator

ENV_PREFIX = "TCO_SCHED_"


class SchedulerConfig(BaseModel):
    """
    Fields:
        heartbeat_timeout_s    → Heartbeat age after which a node is evicted and
                                 its jobs requeued.
        suspect_after_s        → Heartbeat age after which a node stops receiving
                                 new placements (SUSPECTED). Must be ≤ timeout.
        report_timeout_s       → Grace beyond a job's estimated duration for the
                                 executor to report a terminal outcome. Counted
                                 from dispatch, restarted on STARTED. Past it: FAILED.
        monitor_interval_s     → Period of the background liveness loop.
        max_placement_attempts → Optimizer + reserve passes per placement before
                                 giving up with NO_CAPACITY (reserve races).
        max_requeues           → Re-placements allowed after node eviction.
        utilization_factor     → Multiplier on the compute cost term.
        terminal_job_retention → Finished job records kept for status queries.
    """
    heartbeat_timeout_s: float = Field(30.0, gt=0)
    suspect_after_s: float = Field(15.0, gt=0)
    report_timeout_s: float = Field(3600.0, gt=0)
    monitor_interval_s: float = Field(5.0, gt=0)
    max_placement_attempts: int = Field(3, ge=1)
    max_requeues: int = Field(1, ge=0)
    utilization_factor: float = Field(1.0, ge=0, allow_inf_nan=False)
    terminal_job_retention: int = Field(10_000, ge=1)

    @model_validator(mode="after")
    def _suspect_before_evict(self) -> "SchedulerConfig":
        if self.suspect_after_s > self.heartbeat_timeout_s:
            raise ValueError(
                f"suspect_after_s ({self.suspect_after_s}) must not exceed "
                f"heartbeat_timeout_s ({self.heartbeat_timeout_s})"
            )
        return self

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        **overrides: object,
    ) -> "SchedulerConfig":
        """
        Build a config from TCO_SCHED_* variables, then apply keyword overrides.

        Unset variables fall back to the field defaults. Values are passed to
        pydantic as strings and coerced/validated there.
        """
        environ = os.environ if environ is None else environ
        values = {}
        for name in cls.model_fields:
            raw = environ.get(ENV_PREFIX + name.upper())
            if raw is not None and raw != "":
                values[name] = raw
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
