"""
tco_scheduler/control_plane/admission_controller.py
────────────────────────────────────────────────────
Admission control: semantic validation before scheduling.

The admission controller is the first gate in the submission pipeline.
It runs AFTER Pydantic validation (which handles schema correctness) and
BEFORE any state change (no JobRecord exists yet, nothing is reserved).

What it checks
───────────────
  1. Cost inputs: every job-side quantity that feeds the TCO formula
     (duration, data size) and the budget must be a finite, non-negative
     number. Pydantic lets through inf; the cost engine would not. Checking
     here turns an InvalidCostInputError deep inside the optimizer into a
     clean submission rejection.

  2. Resource sanity: CPU and memory requests must be finite. Pydantic
     enforces gt=0, but float('inf') cores would fit nowhere and report a
     misleading NO_CAPACITY.

  3. Deadline feasibility: if deadline_epoch is set, it must be in the
     future. A job with a past deadline is already violated before it
     schedules, so reject fast.

What it does NOT check
───────────────────────
  • Whether specific nodes have capacity. The optimizer decides that.
  • Whether the budget is realistic. An unreachable budget is a legitimate
    OVER_BUDGET outcome, not a malformed request.
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Optional

from tco_scheduler.shared.models import JobSpec, utc_now
from tco_scheduler.control_plane.cost_engine import CostEngine, InvalidCostInputError


class AdmissionRejectedError(Exception):
    """
    Raised when a job fails admission control.

    Attributes:
        reason: Human-readable explanation of why the job was rejected.
    """

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


def admit_job(job: JobSpec, now: Optional[datetime] = None) -> None:
    """
    Run all admission checks on a JobSpec.

    Raises AdmissionRejectedError if any check fails.
    Returns None on success (caller proceeds to placement).

    Args:
        job: The validated JobSpec to check.
        now: Reference time for the deadline check. Default: utc_now().
    """
    _check_job_id(job)
    _check_cost_inputs(job)
    _check_resources(job)
    _check_deadline(job, now or utc_now())


# ── Individual checks ─────────────────────────────────────────────────────────

def _check_job_id(job: JobSpec) -> None:
    if not job.job_id.strip():
        raise AdmissionRejectedError("Job id must not be blank")


def _check_cost_inputs(job: JobSpec) -> None:
    values = {
        "estimated_duration_hours": job.estimated_duration_hours,
        "estimated_data_gb": job.estimated_data_gb,
    }
    if job.sla.budget_usd is not None:
        values["budget_usd"] = job.sla.budget_usd
    try:
        CostEngine.validate_inputs(**values)
    except InvalidCostInputError as exc:
        raise AdmissionRejectedError(
            f"Job {job.job_id!r}: {exc.parameter}={exc.value!r} is not a "
            f"finite, non-negative number"
        ) from exc


def _check_resources(job: JobSpec) -> None:
    request = job.resources
    for name, value in (("cpu_cores", request.cpu_cores), ("memory_gb", request.memory_gb)):
        if not math.isfinite(value):
            raise AdmissionRejectedError(
                f"Job {job.job_id!r} requests {name}={value!r} — must be finite"
            )
    if not math.isfinite(job.sla.max_latency_ms):
        raise AdmissionRejectedError(
            f"Job {job.job_id!r} max_latency_ms={job.sla.max_latency_ms!r} — must be finite"
        )


def _check_deadline(job: JobSpec, now: datetime) -> None:
    """
    If a deadline is set, it must be in the future.

    A job whose deadline has already passed will violate SLA the moment
    it is submitted. Reject early rather than wasting a placement pass.
    """
    deadline = job.sla.deadline_epoch
    if deadline is None:
        return
    now_epoch = now.timestamp()
    if not math.isfinite(deadline) or deadline <= now_epoch:
        raise AdmissionRejectedError(
            f"Job {job.job_id!r} deadline has already passed "
            f"(deadline={deadline:.0f}, now={now_epoch:.0f}). "
            f"Submit with a future deadline."
        )
