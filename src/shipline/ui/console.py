"""Console output formatting utilities for shipline."""

from __future__ import annotations

import sys
from typing import Iterable, Optional

from ..errors import ShiplineError
from ..model import ApprovalRequest, JobRecord, JobStatus, Release, RunRecord

_TRANSITION_LABELS = {
    JobStatus.RUNNING: "JOB STARTED",
    JobStatus.WAITING_APPROVAL: "WAITING FOR APPROVAL",
    JobStatus.SUCCEEDED: "JOB SUCCEEDED",
    JobStatus.FAILED: "JOB FAILED",
    JobStatus.SKIPPED: "JOB SKIPPED",
    JobStatus.CANCELLED: "JOB CANCELLED",
}


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, stream=None):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            stream: Output stream for normal messages (defaults to stdout)
        """
        self.debug = debug
        self._stream = stream

    @property
    def out(self):
        return self._stream or sys.stdout

    def _print(self, text: str = "") -> None:
        print(text, file=self.out)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._print(f"\n{title}")
        self._print("-" * len(title))

    def print_run_started(
        self,
        repository: str,
        workflow: str,
        pipeline: str,
        job_count: int,
        run_id: str,
    ) -> None:
        """Print run start information."""
        self._print("\nRUN STARTED")
        self._print(f"Repository: {repository}")
        self._print(f"Workflow: {workflow}")
        self._print(f"Pipeline: {pipeline}")
        self._print(f"Jobs: {job_count}")
        self._print(f"Run ID: {run_id}")
        self._print()

    def job_transition(self, name: str, old: JobStatus, new: JobStatus, rec: JobRecord) -> None:
        """Scheduler listener: one line per visible job transition."""
        if new is JobStatus.RUNNING and old is JobStatus.WAITING_APPROVAL:
            self._print(f"APPROVED: {name}")
            return
        label = _TRANSITION_LABELS.get(new)
        if label is None:
            return
        self._print(f"{label}: {name}")
        if new is JobStatus.WAITING_APPROVAL and rec.approval_id:
            self._print(f"  approve with: shipline approve {rec.approval_id} --as <identity>")
        elif new is JobStatus.SKIPPED and rec.error:
            self._print(f"  reason: {rec.error}")
        elif new is JobStatus.FAILED and rec.error:
            self._print_reason(rec.error)

    def _print_reason(self, reason: str) -> None:
        if self.debug:
            self._print(f"  Error details: {reason}")
        else:
            # first line only outside debug mode
            self._print(f"  Error: {reason.splitlines()[0]}")

    def print_plan(self, levels: list[list[str]], environments: dict[str, Optional[str]]) -> None:
        """Print execution stages; jobs in one stage may run in parallel."""
        self.print_header("PLAN")
        for i, level in enumerate(levels, 1):
            self._print(f"Stage {i}:")
            for name in level:
                env = environments.get(name)
                suffix = f" (environment: {env})" if env else ""
                self._print(f"  {name}{suffix}")

    def print_results(self, record: RunRecord) -> None:
        """Print final results summary."""
        self._print("\n" + "=" * 40)
        self._print("RESULTS")
        self._print("=" * 40)
        for name, rec in record.jobs.items():
            self._print(f"  {name}: {rec.status.value.upper()}")
            if rec.error and rec.status is not JobStatus.SUCCEEDED:
                first = rec.error.splitlines()[0]
                self._print(f"    {first}")
        outcome = record.outcome.value.upper() if record.outcome else "RUNNING"
        self._print(f"\nPIPELINE: {outcome}")

    def print_job_log(self, rec: JobRecord) -> None:
        self.print_header(f"LOG: {rec.name}")
        self._print(rec.log.rstrip("\n") if rec.log else "(no output)")

    def print_runs(self, runs: Iterable[RunRecord]) -> None:
        for r in runs:
            outcome = r.outcome.value if r.outcome else "running"
            self._print(f"{r.run_id}  {r.pipeline:<20} {outcome:<10} {r.started_at:%Y-%m-%d %H:%M:%S}")

    def print_approvals(self, requests: Iterable[ApprovalRequest]) -> None:
        for req in requests:
            granted = ", ".join(sorted(req.granted)) or "-"
            required = ", ".join(sorted(req.required))
            self._print(
                f"{req.request_id}  {req.state.value:<9} run={req.run_id} job={req.job} "
                f"env={req.environment} required=[{required}] granted=[{granted}]"
            )

    def print_releases(self, releases: Iterable[Release]) -> None:
        for rel in releases:
            self._print(f"{rel.tag:<16} {rel.commit[:12]}  {rel.created_at:%Y-%m-%d %H:%M:%S}")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        elif isinstance(exc, ShiplineError):
            lines = str(exc).splitlines()
            self.print_error(exc.kind, exc.message, details=lines[1:] or None)
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
