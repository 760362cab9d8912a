# executor.py
from __future__ import annotations

import io
import logging
import os
import shutil
import signal
import subprocess
import tempfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Protocol

from .actions import resolve_action
from .errors import ConfigurationError, ShiplineError
from .model import ActionStep, CallStep, ShellStep, Step, StepResult
from .secret_store import Redactor, SecretStore
from .settings import SECRET_MASK, STEP_TIMEOUT, WORK_ROOT

logger = logging.getLogger(__name__)

# Keep captured output bounded so run records stay small
OUTPUT_LIMIT = 64_000


# ----------------------------------------------------------------------
# Working context (sandbox)
# ----------------------------------------------------------------------

class WorkingContext:
    """
    A scoped, isolated working directory plus environment overlay.

    Use as a context manager; the directory is removed on every exit path
    (success, failure, timeout, cancellation, exceptions).
    """

    def __init__(
        self,
        root: str | Path | None = None,
        env: Optional[Mapping[str, str]] = None,
        *,
        inherit_env: bool = True,
        prefix: str = "shipline-",
    ):
        self.root = Path(root if root is not None else WORK_ROOT)
        self.env: Dict[str, str] = dict(env or {})
        self.inherit_env = inherit_env
        self.prefix = prefix
        self.path: Optional[Path] = None

    def __enter__(self) -> "WorkingContext":
        self.root.mkdir(parents=True, exist_ok=True)
        self.path = Path(tempfile.mkdtemp(prefix=self.prefix, dir=str(self.root))).resolve()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()

    def release(self) -> None:
        if self.path is not None:
            shutil.rmtree(self.path, ignore_errors=True)
            logger.debug("released working context %s", self.path)
            self.path = None

    @property
    def active(self) -> bool:
        return self.path is not None

    def resolve_cwd(self, cwd: str | None) -> Path:
        if self.path is None:
            raise RuntimeError("working context is not active")
        target = (self.path / (cwd or ".")).resolve()
        if target != self.path and self.path not in target.parents:
            raise ConfigurationError(f"cwd '{cwd}' escapes the working context")
        target.mkdir(parents=True, exist_ok=True)
        return target

    def step_env(self, overlay: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        env = os.environ.copy() if self.inherit_env else {"PATH": os.environ.get("PATH", "")}
        env.update(self.env)
        env["SHIPLINE_WORKSPACE"] = str(self.path)
        if overlay:
            env.update(overlay)
        return env


# ----------------------------------------------------------------------
# Compute runner contract
# ----------------------------------------------------------------------

class ComputeRunner(Protocol):
    def run_command(
        self,
        cmd: str,
        env: Mapping[str, str],
        working_dir: Path,
        timeout: float | None,
        cancel_event: Optional[threading.Event] = None,
    ) -> StepResult:
        ...


def _tail(text: str | None) -> str:
    text = text or ""
    return text[-OUTPUT_LIMIT:]


def _redact_error(error: ShiplineError, redactor: Redactor) -> None:
    """Mask secret values in an error raised by step code before it propagates."""
    error.message = redactor(error.message)
    error.args = (error.message,)
    for key, value in error.details.items():
        text = value if isinstance(value, str) else str(value)
        masked = redactor(text)
        if masked != text:
            error.details[key] = masked


class LocalRunner:
    """Runs commands as local subprocesses (one process group per command)."""

    def __init__(self, poll_interval: float = 0.05):
        self.poll_interval = poll_interval

    def run_command(
        self,
        cmd: str,
        env: Mapping[str, str],
        working_dir: Path,
        timeout: float | None,
        cancel_event: Optional[threading.Event] = None,
    ) -> StepResult:
        start = time.monotonic()
        proc = subprocess.Popen(
            cmd,
            shell=True,
            cwd=str(working_dir),
            env=dict(env),
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            start_new_session=True,
        )

        timed_out = cancelled = False
        while True:
            try:
                out, err = proc.communicate(timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                if cancel_event is not None and cancel_event.is_set():
                    cancelled = True
                elif timeout is not None and time.monotonic() - start > timeout:
                    timed_out = True
                else:
                    continue
                self._kill(proc)
                out, err = proc.communicate()
                break

        return StepResult(
            exit_status=proc.returncode if proc.returncode is not None else -1,
            stdout=out or "",
            stderr=err or "",
            duration=time.monotonic() - start,
            timed_out=timed_out,
            cancelled=cancelled,
        )

    @staticmethod
    def _kill(proc: subprocess.Popen) -> None:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            proc.kill()


# ----------------------------------------------------------------------
# In-process steps
# ----------------------------------------------------------------------

@dataclass
class StepContext:
    """What a CallStep callable receives."""
    job: str | None
    workdir: Path
    env: Dict[str, str]
    secrets: Dict[str, str] = field(repr=False, default_factory=dict)
    cancel_event: threading.Event = field(default_factory=threading.Event)
    output: io.StringIO = field(default_factory=io.StringIO)

    def log(self, message: str) -> None:
        self.output.write(message.rstrip("\n") + "\n")

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


# ----------------------------------------------------------------------
# Step executor
# ----------------------------------------------------------------------

class StepExecutor:
    """
    Runs one step inside a working context.

    Secrets named by the step are resolved from the job's environment for
    this call only and masked in the captured output.
    """

    def __init__(
        self,
        runner: Optional[ComputeRunner] = None,
        secrets: Optional[SecretStore] = None,
        *,
        default_timeout: float = STEP_TIMEOUT,
        mask: str = SECRET_MASK,
        cancel_grace: float = 10.0,
    ):
        self.runner = runner or LocalRunner()
        self.secrets = secrets or SecretStore()
        self.default_timeout = default_timeout
        self.mask = mask
        # seconds a signalled CallStep may keep running to clean up
        self.cancel_grace = cancel_grace

    def execute(
        self,
        step: Step,
        context: WorkingContext,
        timeout: float | None = None,
        *,
        job: str | None = None,
        environment: str | None = None,
        job_env: Optional[Mapping[str, str]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> StepResult:
        timeout = timeout if timeout is not None else (step.timeout or self.default_timeout)
        cancel_event = cancel_event or threading.Event()

        secret_env = self._secret_env(step, environment, job)
        redactor = Redactor(secret_env.values(), self.mask)
        overlay = dict(job_env or {})
        overlay.update(secret_env)

        if isinstance(step, CallStep):
            result = self._call(step, context, overlay, secret_env, timeout, job, cancel_event, redactor)
        else:
            cmd = self._command(step, job)
            cwd = context.resolve_cwd(step.cwd if isinstance(step, ShellStep) else None)
            env = context.step_env(overlay)
            attempts = 1 + max(0, step.retries)
            for attempt in range(1, attempts + 1):
                if cancel_event.is_set():
                    result = StepResult(exit_status=-1, cancelled=True)
                    break
                result = self.runner.run_command(cmd, env, cwd, timeout, cancel_event)
                if result.ok or result.timed_out or result.cancelled:
                    break
                if attempt < attempts:
                    logger.info(
                        "[%s] step '%s' exited %s, retrying (%d/%d)",
                        job, step.name, result.exit_status, attempt, attempts - 1,
                    )

        # secret values never leave this function unmasked; mask before
        # truncating so a secret cut in half at the boundary is still caught
        return StepResult(
            exit_status=result.exit_status,
            stdout=_tail(redactor(result.stdout)),
            stderr=_tail(redactor(result.stderr)),
            duration=result.duration,
            timed_out=result.timed_out,
            cancelled=result.cancelled,
        )

    def _secret_env(self, step: Step, environment: str | None, job: str | None) -> Dict[str, str]:
        names: Dict[str, str] = {name: name for name in step.secrets}
        if isinstance(step, ActionStep):
            names.update(resolve_action(step, job=job).secret_env())
        try:
            return {var: self.secrets.lookup(environment, secret) for var, secret in names.items()}
        except ConfigurationError as e:
            e.job, e.step = job, step.name
            raise

    @staticmethod
    def _command(step: Step, job: str | None) -> str:
        if isinstance(step, ShellStep):
            return step.run
        if isinstance(step, ActionStep):
            return resolve_action(step, job=job).command()
        raise ConfigurationError(f"unsupported step type {type(step).__name__}", job=job)

    def _call(
        self,
        step: CallStep,
        context: WorkingContext,
        overlay: Dict[str, str],
        secret_env: Dict[str, str],
        timeout: float | None,
        job: str | None,
        cancel_event: threading.Event,
        redactor: Redactor,
    ) -> StepResult:
        """
        Run a CallStep on a helper thread so timeout and cancellation are
        observed. Python threads cannot be killed: the callable is signalled
        through `ctx.cancel_event`, given `cancel_grace` seconds to wind down
        (a rollout returns traffic to 0 here), then abandoned.
        """
        ctx = StepContext(
            job=job,
            workdir=context.resolve_cwd(None),
            env=context.step_env(overlay),
            secrets=dict(secret_env),
            cancel_event=threading.Event(),
        )
        outcome: Dict[str, Any] = {}

        def target() -> None:
            try:
                outcome["value"] = step.fn(ctx)
            except Exception as e:  # handed back to the calling thread
                outcome["error"] = e

        start = time.monotonic()
        worker = threading.Thread(target=target, name=f"shipline-call-{step.name}", daemon=True)
        worker.start()

        timed_out = cancelled = False
        while worker.is_alive():
            worker.join(0.05)
            if cancel_event.is_set():
                cancelled = True
            elif timeout is not None and time.monotonic() - start > timeout:
                timed_out = True
            else:
                continue
            ctx.cancel_event.set()
            worker.join(self.cancel_grace)
            if worker.is_alive():
                logger.warning(
                    "[%s] call step '%s' still running %.1fs after cancellation; abandoning it",
                    job, step.name, self.cancel_grace,
                )
            break

        duration = time.monotonic() - start
        if timed_out or cancelled:
            return StepResult(
                exit_status=-1,
                stdout=ctx.output.getvalue(),
                duration=duration,
                timed_out=timed_out,
                cancelled=cancelled,
            )

        error = outcome.get("error")
        if isinstance(error, ShiplineError):
            if error.job is None:
                error.job = job
            if error.step is None:
                error.step = step.name
            _redact_error(error, redactor)
            raise error
        if error is not None:
            return StepResult(
                exit_status=1,
                stdout=ctx.output.getvalue(),
                stderr=f"{type(error).__name__}: {error}",
                duration=duration,
            )

        value = outcome.get("value")
        out = ctx.output.getvalue()
        if value is not None:
            out += str(value)
        return StepResult(exit_status=0, stdout=out, duration=duration)
