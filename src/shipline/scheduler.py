# scheduler.py
from __future__ import annotations

import logging
import os
import threading
import time
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set

from .actions import resolve_action
from .dag import priorities, resolve_order
from .errors import (
    ApprovalDenied,
    ApprovalTimedOut,
    ConfigurationError,
    ShiplineError,
    StepCancelled,
    StepFailed,
    StepTimedOut,
)
from .executor import StepExecutor, WorkingContext
from .gate import Decision, EnvironmentGate
from .model import (
    ActionStep,
    Environment,
    Job,
    JobRecord,
    JobStatus,
    PipelineDefinition,
    RunOutcome,
    RunRecord,
    utcnow,
)
from .secret_store import Redactor, SecretStore
from .settings import APPROVAL_POLL_SECONDS, MAX_WORKERS, WORK_ROOT
from .store import Store

logger = logging.getLogger(__name__)

TransitionListener = Callable[[str, JobStatus, JobStatus, JobRecord], None]

# Allowed per-job transitions; terminal states have none
_TRANSITIONS: Dict[JobStatus, Set[JobStatus]] = {
    JobStatus.PENDING: {JobStatus.READY, JobStatus.SKIPPED, JobStatus.CANCELLED},
    JobStatus.READY: {JobStatus.RUNNING, JobStatus.CANCELLED},
    JobStatus.RUNNING: {
        JobStatus.WAITING_APPROVAL,
        JobStatus.SUCCEEDED,
        JobStatus.FAILED,
        JobStatus.CANCELLED,
    },
    JobStatus.WAITING_APPROVAL: {JobStatus.RUNNING, JobStatus.FAILED, JobStatus.CANCELLED},
}

_BLOCKING = (JobStatus.FAILED, JobStatus.CANCELLED)


@dataclass
class _Waiting:
    request_id: str
    since: float
    approved: bool = False


@dataclass
class _JobOutcome:
    log: str
    error: Optional[ShiplineError] = None


def default_workers() -> int:
    if MAX_WORKERS:
        return MAX_WORKERS
    c = os.cpu_count() or 2
    return max(1, c - 1)


def validate_pipeline(pipeline: PipelineDefinition) -> List[str]:
    """
    Load-time checks. Returns the resolved order.

    Raises ConfigurationError / CycleDetected; nothing has run yet.
    """
    order = resolve_order(pipeline.jobs)
    for job in pipeline.jobs:
        if job.environment is not None and job.environment not in pipeline.environments:
            raise ConfigurationError(
                f"Job '{job.name}' targets unknown environment '{job.environment}'",
                job=job.name,
                details={"known": sorted(pipeline.environments)},
            )
        if not job.steps:
            raise ConfigurationError(f"Job '{job.name}' has no steps", job=job.name)
        for step in job.steps:
            if isinstance(step, ActionStep):
                resolve_action(step, job=job.name)
    return order


class PipelineScheduler:
    """
    Drives one run of a pipeline through the dependency graph.

    - Ready jobs are dispatched to a bounded thread pool, highest priority
      first (most downstream dependents, then definition order).
    - Jobs sharing a concurrency group never run at the same time.
    - Jobs bound to a protected environment wait for approval without
      holding a worker.
    - A failed or cancelled prerequisite skips its dependents transitively.
    - cancel() (or fail-fast) cancels every job that has not finished.

    The scheduler thread is the only writer of the run record.
    """

    def __init__(
        self,
        pipeline: PipelineDefinition,
        *,
        executor: Optional[StepExecutor] = None,
        gate: Optional[EnvironmentGate] = None,
        store: Optional[Store] = None,
        max_workers: int | None = None,
        fail_fast: bool | None = None,
        approval_timeout: float | None = None,
        poll_interval: float = APPROVAL_POLL_SECONDS,
        work_root: str | Path = WORK_ROOT,
        run_id: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.order = validate_pipeline(pipeline)
        self.pipeline = pipeline
        self.jobs: Dict[str, Job] = {j.name: j for j in pipeline.jobs}
        self.priority = priorities(pipeline.jobs)

        self.store = store
        self.gate = gate or EnvironmentGate(store)
        self.executor = executor or StepExecutor(secrets=SecretStore(pipeline.environments))
        self.max_workers = max_workers or pipeline.max_concurrency or default_workers()
        self.fail_fast = pipeline.fail_fast if fail_fast is None else fail_fast
        self.approval_timeout = (
            approval_timeout if approval_timeout is not None else pipeline.approval_timeout
        )
        self.poll_interval = poll_interval
        self.work_root = Path(work_root)
        self.clock = clock

        self.record = RunRecord(
            run_id=run_id or uuid.uuid4().hex,
            pipeline=pipeline.name,
            jobs={name: JobRecord(name=name) for name in pipeline.job_names},
        )
        self.cancel_reason: str | None = None
        self._cancel = threading.Event()
        self._changed = threading.Condition()
        self._listeners: List[TransitionListener] = []
        self._waiting: Dict[str, _Waiting] = {}
        self._busy_groups: Set[str] = set()
        # error text and logs go through these before reaching the run record
        self._redactors: Dict[str, Redactor] = {j.name: self._job_redactor(j) for j in pipeline.jobs}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def run_id(self) -> str:
        return self.record.run_id

    def add_listener(self, listener: TransitionListener) -> None:
        self._listeners.append(listener)

    def cancel(self, reason: str = "cancelled by user") -> None:
        """Request cancellation; in-flight steps are terminated."""
        if not self._cancel.is_set():
            self.cancel_reason = reason
            logger.info("run %s: cancellation requested (%s)", self.run_id, reason)
            self._cancel.set()
        with self._changed:
            self._changed.notify_all()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def status(self, job: str) -> JobStatus:
        return self.record.jobs[job].status

    def wait_for(self, job: str, statuses, timeout: float | None = None) -> bool:
        """Block until `job` reaches one of `statuses` (used by callers driving approvals)."""
        if isinstance(statuses, JobStatus):
            statuses = {statuses}
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._changed:
            while self.record.jobs[job].status not in statuses:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._changed.wait(remaining)
            return True

    def approval_id(self, job: str) -> Optional[str]:
        return self.record.jobs[job].approval_id

    def run(self) -> RunRecord:
        """
        Execute the pipeline to completion and return the run record.

        If the loop itself is interrupted (Ctrl-C, a failing listener or
        store), the run is cancelled and finalized once in-flight steps have
        returned. The exception is then re-raised.
        """
        logger.info(
            "run %s: pipeline '%s' with %d job(s), %d worker(s)",
            self.run_id, self.pipeline.name, len(self.jobs), self.max_workers,
        )
        self._persist()

        in_flight: Dict[Future, str] = {}
        pool = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="shipline")
        try:
            self._loop(pool, in_flight)
        except BaseException as e:
            self._abort(in_flight, e)
            raise
        finally:
            pool.shutdown(wait=True)

        return self._finish()

    def _loop(self, pool: ThreadPoolExecutor, in_flight: Dict[Future, str]) -> None:
        while True:
            if self._cancel.is_set():
                self._cancel_unstarted()
            else:
                self._propagate_skips()
                self._promote_ready()
                self._poll_approvals()
                self._dispatch(pool, in_flight)

            if not in_flight and self._all_terminal():
                return

            if in_flight:
                done, _ = wait(list(in_flight), timeout=self.poll_interval, return_when=FIRST_COMPLETED)
                for fut in done:
                    self._complete(in_flight.pop(fut), fut)
            elif self._cancel.is_set():
                # nothing running; the next pass cancels what is left
                continue
            elif self._waiting or self._blocked_on_groups():
                self._cancel.wait(self.poll_interval)
            else:
                stuck = [n for n, r in self.record.jobs.items() if not r.status.terminal]
                raise RuntimeError(f"scheduler made no progress; unresolved jobs: {stuck}")

    def _abort(self, in_flight: Dict[Future, str], cause: BaseException) -> None:
        """Cancel and finalize after `run` was interrupted by `cause`."""
        if isinstance(cause, KeyboardInterrupt):
            reason = "interrupted by user"
        else:
            reason = f"scheduler error: {type(cause).__name__}: {cause}"
        logger.warning("run %s: aborting (%s)", self.run_id, reason)
        self.cancel(reason)

        try:
            # runners observe the cancel event and kill their process groups
            wait(list(in_flight))
            for fut, name in list(in_flight.items()):
                self._complete(name, fut)
            in_flight.clear()

            self._waiting.clear()
            for name, rec in self.record.jobs.items():
                if not rec.status.terminal:
                    self._transition(name, JobStatus.CANCELLED, StepCancelled(reason, job=name))
            self._finish()
        except Exception:
            # the original exception is re-raised by run()
            logger.exception("run %s: could not finalize the aborted run", self.run_id)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _transition(self, name: str, new: JobStatus, error: Optional[ShiplineError] = None) -> None:
        rec = self.record.jobs[name]
        old = rec.status
        if new not in _TRANSITIONS.get(old, set()):
            raise RuntimeError(f"illegal transition for job '{name}': {old.value} -> {new.value}")

        rec.status = new
        now = utcnow()
        if new is JobStatus.RUNNING and rec.started_at is None:
            rec.started_at = now
        if new.terminal:
            rec.finished_at = now
        if error is not None:
            rec.error_kind = error.kind
            rec.error = self._redactors[name](str(error))

        logger.debug("run %s: %s %s -> %s", self.run_id, name, old.value, new.value)
        self._persist()
        for listener in self._listeners:
            listener(name, old, new, rec)
        with self._changed:
            self._changed.notify_all()

    def _propagate_skips(self) -> None:
        # self.order is topological, so one pass reaches the fixpoint
        for name in self.order:
            rec = self.record.jobs[name]
            if rec.status is not JobStatus.PENDING:
                continue
            job = self.jobs[name]
            for need in job.needs:
                st = self.record.jobs[need].status
                if st in _BLOCKING or (st is JobStatus.SKIPPED and need not in job.allow_skipped):
                    rec.error_kind = "Skipped"
                    rec.error = f"prerequisite '{need}' {st.value}"
                    self._transition(name, JobStatus.SKIPPED)
                    break

    def _promote_ready(self) -> None:
        for name in self.order:
            if self.record.jobs[name].status is not JobStatus.PENDING:
                continue
            job = self.jobs[name]
            if all(self._satisfied(job, need) for need in job.needs):
                self._transition(name, JobStatus.READY)

    def _satisfied(self, job: Job, need: str) -> bool:
        st = self.record.jobs[need].status
        return st is JobStatus.SUCCEEDED or (st is JobStatus.SKIPPED and need in job.allow_skipped)

    def _environment(self, job: Job) -> Optional[Environment]:
        if job.environment is None:
            return None
        return self.pipeline.environments[job.environment]

    def _dispatch(self, pool: ThreadPoolExecutor, in_flight: Dict[Future, str]) -> None:
        # approved jobs first: they already waited
        candidates = [n for n, w in self._waiting.items() if w.approved]
        candidates += sorted(
            (n for n, r in self.record.jobs.items() if r.status is JobStatus.READY),
            key=self.priority.__getitem__,
        )

        for name in candidates:
            job = self.jobs[name]
            rec = self.record.jobs[name]

            if rec.status is JobStatus.READY:
                env = self._environment(job)
                if env is not None and env.protected:
                    self._transition(name, JobStatus.RUNNING)
                    if not self._enter_gate(job, env):
                        continue
                    # allowed straight away; holds no worker until submitted
                    self._waiting[name] = _Waiting(rec.approval_id, self.clock(), approved=True)

            if len(in_flight) >= self.max_workers:
                continue
            if job.concurrency_group and job.concurrency_group in self._busy_groups:
                continue

            self._waiting.pop(name, None)
            if rec.status is not JobStatus.RUNNING:
                self._transition(name, JobStatus.RUNNING)
            if job.concurrency_group:
                self._busy_groups.add(job.concurrency_group)
            in_flight[pool.submit(self._execute_job, job)] = name

    def _enter_gate(self, job: Job, env: Environment) -> bool:
        """Gate a RUNNING job. True when it may proceed right away."""
        req = self.gate.open_request(self.run_id, job, env)
        self.record.jobs[job.name].approval_id = req.request_id
        decision = self.gate.authorize(job, env, req)
        if decision is Decision.ALLOW:
            return True
        if decision is Decision.DENY:
            self._deny(job.name, req.rejected_by)
            return False
        self._waiting[job.name] = _Waiting(request_id=req.request_id, since=self.clock())
        self._transition(job.name, JobStatus.WAITING_APPROVAL)
        return False

    def _poll_approvals(self) -> None:
        for name, w in list(self._waiting.items()):
            if w.approved:
                continue
            job = self.jobs[name]
            env = self._environment(job)
            decision = self.gate.poll(w.request_id, job, env)
            if decision is Decision.ALLOW:
                logger.info("run %s: job '%s' approved", self.run_id, name)
                w.approved = True
            elif decision is Decision.DENY:
                self._waiting.pop(name)
                req = self.gate.get(w.request_id)
                self._deny(name, req.rejected_by if req else None)
            elif self.approval_timeout is not None and self.clock() - w.since > self.approval_timeout:
                self._waiting.pop(name)
                self._transition(
                    name,
                    JobStatus.FAILED,
                    ApprovalTimedOut(
                        f"no approval for environment '{job.environment}' within {self.approval_timeout}s",
                        job=name,
                        details={"request_id": w.request_id},
                    ),
                )
                self._maybe_fail_fast(name)

    def _deny(self, name: str, by: str | None) -> None:
        job = self.jobs[name]
        self._transition(
            name,
            JobStatus.FAILED,
            ApprovalDenied(
                f"deployment to '{job.environment}' rejected" + (f" by {by}" if by else ""),
                job=name,
            ),
        )
        self._maybe_fail_fast(name)

    def _complete(self, name: str, fut: Future) -> None:
        job = self.jobs[name]
        if job.concurrency_group:
            self._busy_groups.discard(job.concurrency_group)

        rec = self.record.jobs[name]
        try:
            outcome: _JobOutcome = fut.result()
        except Exception as e:
            logger.exception("run %s: job '%s' crashed", self.run_id, name)
            rec.log = ""
            err = ShiplineError(f"{type(e).__name__}: {e}", job=name)
            err.kind = type(e).__name__
            self._transition(name, JobStatus.FAILED, err)
            self._maybe_fail_fast(name)
            return

        rec.log = self._redactors[name](outcome.log)
        if outcome.error is None:
            self._transition(name, JobStatus.SUCCEEDED)
        elif isinstance(outcome.error, StepCancelled):
            self._transition(name, JobStatus.CANCELLED, outcome.error)
        else:
            self._transition(name, JobStatus.FAILED, outcome.error)
            self._maybe_fail_fast(name)

    def _maybe_fail_fast(self, name: str) -> None:
        if self.fail_fast:
            self._propagate_skips()
            self.cancel(reason=f"fail-fast: job '{name}' failed")

    def _cancel_unstarted(self) -> None:
        for name, rec in self.record.jobs.items():
            unstarted = rec.status in (JobStatus.PENDING, JobStatus.READY, JobStatus.WAITING_APPROVAL)
            if unstarted or (rec.status is JobStatus.RUNNING and name in self._waiting):
                self._waiting.pop(name, None)
                self._transition(
                    name,
                    JobStatus.CANCELLED,
                    StepCancelled(self.cancel_reason or "cancelled", job=name),
                )

    def _job_redactor(self, job: Job) -> Redactor:
        """Mask every secret any step of `job` can be handed."""
        names: Set[str] = set()
        for step in job.steps:
            names.update(step.secrets)
            if isinstance(step, ActionStep):
                names.update(resolve_action(step, job=job.name).secret_env().values())
        secrets = self.executor.secrets
        available = [n for n in sorted(names) if secrets.has(job.environment, n)]
        return Redactor(secrets.resolve(job.environment, available).values(), self.executor.mask)

    def _all_terminal(self) -> bool:
        return all(r.status.terminal for r in self.record.jobs.values())

    def _blocked_on_groups(self) -> bool:
        return any(
            r.status is JobStatus.READY and self.jobs[n].concurrency_group in self._busy_groups
            for n, r in self.record.jobs.items()
        )

    def _finish(self) -> RunRecord:
        failed = any(r.status in _BLOCKING for r in self.record.jobs.values())
        self.record.outcome = RunOutcome.FAILED if failed else RunOutcome.SUCCEEDED
        self.record.finished_at = utcnow()
        self._persist()
        logger.info("run %s: %s", self.run_id, self.record.outcome.value)
        with self._changed:
            self._changed.notify_all()
        return self.record

    def _persist(self) -> None:
        if self.store is not None:
            self.store.save_run(self.record)

    # ------------------------------------------------------------------
    # Job execution (worker threads)
    # ------------------------------------------------------------------

    def _execute_job(self, job: Job) -> _JobOutcome:
        """Run a job's steps in order inside one working context."""
        chunks: List[str] = []

        def outcome(error: Optional[ShiplineError] = None) -> _JobOutcome:
            return _JobOutcome(log="".join(chunks), error=error)

        try:
            with WorkingContext(self.work_root, env=job.env) as ctx:
                for step in job.steps:
                    if self._cancel.is_set():
                        return outcome(StepCancelled(self.cancel_reason or "cancelled", job=job.name, step=step.name))

                    timeout = step.timeout if step.timeout is not None else job.timeout
                    result = self.executor.execute(
                        step,
                        ctx,
                        timeout,
                        job=job.name,
                        environment=job.environment,
                        cancel_event=self._cancel,
                    )
                    chunks.append(f"==> {step.name}\n{result.stdout}")
                    if result.stderr:
                        chunks.append(result.stderr if result.stderr.endswith("\n") else result.stderr + "\n")

                    if result.cancelled:
                        return outcome(StepCancelled(self.cancel_reason or "cancelled", job=job.name, step=step.name))
                    if result.timed_out:
                        return outcome(StepTimedOut(job=job.name, step=step.name, timeout=timeout or self.executor.default_timeout))
                    if result.exit_status != 0:
                        return outcome(
                            StepFailed(
                                job=job.name,
                                step=step.name,
                                exit_status=result.exit_status,
                                stdout=result.stdout,
                                stderr=result.stderr,
                            )
                        )
        except ShiplineError as e:
            if e.job is None:
                e.job = job.name
            return outcome(e)

        return outcome()


def run_pipeline(
    pipeline: PipelineDefinition,
    **kwargs,
) -> RunRecord:
    """Convenience: PipelineScheduler(pipeline, **kwargs).run()"""
    return PipelineScheduler(pipeline, **kwargs).run()

