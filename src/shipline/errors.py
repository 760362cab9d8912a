# errors.py
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional


class ShiplineError(Exception):
    """
    Structured pipeline error with enough context for:
      - clean CLI output
      - the per-job breakdown stored on the run record
      - debugging without full tracebacks
    """

    kind = "error"

    def __init__(
        self,
        message: str,
        *,
        job: str | None = None,
        step: str | None = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.job = job
        self.step = step
        self.details = dict(details or {})

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


# ----------------------------------------------------------------------
# Load-time (fatal, no run starts)
# ----------------------------------------------------------------------

class ConfigurationError(ShiplineError):
    """Malformed pipeline definition: dangling `needs`, unknown action, bad inputs."""
    kind = "ConfigurationError"


class CycleDetected(ShiplineError):
    kind = "CycleDetected"

    def __init__(self, job_names: Iterable[str]):
        self.job_names: List[str] = list(job_names)
        super().__init__(
            "dependency cycle between jobs: " + " -> ".join(self.job_names),
            details={"cycle": self.job_names},
        )


# ----------------------------------------------------------------------
# Job-level (fail the owning job, dependents are skipped)
# ----------------------------------------------------------------------

class StepFailed(ShiplineError):
    kind = "StepFailed"

    def __init__(
        self,
        *,
        job: str,
        step: str,
        exit_status: int,
        stdout: str = "",
        stderr: str = "",
    ):
        self.exit_status = exit_status
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(
            f"step '{step}' failed (exit={exit_status})",
            job=job,
            step=step,
            details={"exit_status": exit_status},
        )


class StepTimedOut(ShiplineError):
    kind = "StepTimedOut"

    def __init__(self, *, job: str, step: str, timeout: float | None):
        self.timeout = timeout
        super().__init__(
            f"step '{step}' exceeded its timeout of {timeout}s",
            job=job,
            step=step,
            details={"timeout": timeout},
        )


class StepCancelled(ShiplineError):
    kind = "StepCancelled"


class ApprovalDenied(ShiplineError):
    kind = "ApprovalDenied"


class ApprovalTimedOut(ShiplineError):
    kind = "ApprovalTimedOut"


# ----------------------------------------------------------------------
# Release / rollout
# ----------------------------------------------------------------------

class NoOpRelease(ShiplineError):
    """The commit is already released at an equal-or-greater version."""
    kind = "NoOpRelease"


class HealthCheckFailed(ShiplineError):
    kind = "HealthCheckFailed"

    def __init__(self, probe: str, message: str = "", *, weight: int | None = None):
        self.probe = probe
        self.weight = weight
        super().__init__(
            message or f"health probe '{probe}' failed",
            details={"probe": probe, "weight": weight},
        )


class RollbackFailed(ShiplineError):
    """Reverting traffic to 0% failed; the rollout is in an unknown state."""
    kind = "RollbackFailed"


class ApprovalError(ShiplineError):
    """An approval action that cannot be applied (unknown request, closed, not an approver)."""
    kind = "ApprovalError"
