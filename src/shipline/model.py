# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional, Tuple, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class ShellStep:
    """A single shell command inside a job."""
    name: str
    run: str
    cwd: str | None = None
    timeout: float | None = None
    retries: int = 0
    secrets: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ActionStep:
    """
    A reference to a named external action plus its inputs.

    `uses` is resolved against the action registry when the pipeline is
    loaded, so an unknown name never reaches the scheduler.
    """
    name: str
    uses: str
    with_: Mapping[str, str] = field(default_factory=dict)
    timeout: float | None = None
    retries: int = 0
    secrets: Tuple[str, ...] = ()


@dataclass(frozen=True)
class CallStep:
    """An in-process step (release tagging, rollout) run by the executor."""
    name: str
    fn: Callable[..., Any]
    timeout: float | None = None
    secrets: Tuple[str, ...] = ()


Step = Union[ShellStep, ActionStep, CallStep]


# ---------------------------------------------------------------------
# Jobs / environments / pipelines
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Environment:
    """A deployment target with optional approval gating and scoped secrets."""
    name: str
    required_approvers: FrozenSet[str] = frozenset()
    secrets: Mapping[str, str] = field(default_factory=dict, repr=False)

    @property
    def protected(self) -> bool:
        return bool(self.required_approvers)


@dataclass(frozen=True)
class Job:
    """
    A CI job: steps + dependencies + deployment metadata.

    `allow_skipped` lists the prerequisites whose `Skipped` status still
    lets this job run (continue-on-failure edges).
    """
    name: str
    steps: Tuple[Step, ...]
    needs: Tuple[str, ...] = ()
    environment: str | None = None
    concurrency_group: str | None = None
    allow_skipped: Tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    timeout: float | None = None


@dataclass(frozen=True)
class PipelineDefinition:
    name: str
    jobs: Tuple[Job, ...]
    environments: Mapping[str, Environment] = field(default_factory=dict)
    max_concurrency: int | None = None
    fail_fast: bool = False
    approval_timeout: float | None = None

    def job(self, name: str) -> Job:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(name)

    @property
    def job_names(self) -> List[str]:
        return [j.name for j in self.jobs]


# ---------------------------------------------------------------------
# Results / run state
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class StepResult:
    exit_status: int
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0
    timed_out: bool = False
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_status == 0 and not self.timed_out and not self.cancelled


class JobStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    WAITING_APPROVAL = "waiting_approval"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.SKIPPED, JobStatus.CANCELLED}
)


class RunOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class JobRecord:
    name: str
    status: JobStatus = JobStatus.PENDING
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error_kind: str | None = None
    error: str | None = None
    log: str = ""
    approval_id: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "error_kind": self.error_kind,
            "error": self.error,
            "log": self.log,
            "approval_id": self.approval_id,
        }


@dataclass
class RunRecord:
    """
    One per pipeline execution.

    Created at run start and only mutated by the scheduler driving the run.
    Once `outcome` is set the record is read-only.
    """
    run_id: str
    pipeline: str
    jobs: Dict[str, JobRecord]
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    outcome: Optional[RunOutcome] = None

    def status_of(self, job_name: str) -> JobStatus:
        return self.jobs[job_name].status

    def statuses(self) -> Dict[str, JobStatus]:
        return {name: rec.status for name, rec in self.jobs.items()}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "pipeline": self.pipeline,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "outcome": self.outcome.value if self.outcome else None,
            "jobs": [rec.to_dict() for rec in self.jobs.values()],
        }


class ApprovalState(str, Enum):
    OPEN = "open"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass
class ApprovalRequest:
    request_id: str
    run_id: str
    job: str
    environment: str
    required: FrozenSet[str]
    granted: set[str] = field(default_factory=set)
    state: ApprovalState = ApprovalState.OPEN
    rejected_by: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    closed_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.state is ApprovalState.OPEN

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "run_id": self.run_id,
            "job": self.job,
            "environment": self.environment,
            "required": sorted(self.required),
            "granted": sorted(self.granted),
            "state": self.state.value,
            "rejected_by": self.rejected_by,
            "created_at": self.created_at.isoformat(),
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
        }


@dataclass(frozen=True)
class Release:
    tag: str
    commit: str
    notes: str = ""
    artifacts: Tuple[str, ...] = ()
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tag": self.tag,
            "commit": self.commit,
            "notes": self.notes,
            "artifacts": list(self.artifacts),
            "created_at": self.created_at.isoformat(),
        }
