# src/shipline/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from .model import ActionStep, CallStep, Environment, Job, PipelineDefinition, ShellStep, Step


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    timeout: float | None = None,
    retries: int = 0,
    secrets: Iterable[str] = (),
) -> ShellStep:
    """Create a shell step."""
    return ShellStep(name=name, run=cmd, cwd=cwd, timeout=timeout, retries=retries, secrets=tuple(secrets))


def action(
    name: str,
    uses: str,
    *,
    timeout: float | None = None,
    retries: int = 0,
    secrets: Iterable[str] = (),
    **inputs: Any,
) -> ActionStep:
    """
    Reference a built-in external action.

        action("Sync site", "object-storage-sync",
               credentials="AWS_DEPLOY", target="my-bucket", path="dist/")
    """
    return ActionStep(
        name=name,
        uses=uses,
        with_={k: str(v) for k, v in inputs.items()},
        timeout=timeout,
        retries=retries,
        secrets=tuple(secrets),
    )


def call(
    name: str,
    fn: Callable[..., Any],
    *,
    timeout: float | None = None,
    secrets: Iterable[str] = (),
) -> CallStep:
    """Run `fn(ctx)` in-process as a step."""
    return CallStep(name=name, fn=fn, timeout=timeout, secrets=tuple(secrets))


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[List[str]] = None,
    environment: str | None = None,
    concurrency_group: str | None = None,
    allow_skipped: Optional[List[str]] = None,
    env: Optional[Dict[str, str]] = None,
    timeout: float | None = None,
    cwd: str | None = None,  # default cwd applied to shell steps missing cwd
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [
            replace(s, cwd=cwd) if isinstance(s, ShellStep) and s.cwd is None else s
            for s in steps_final
        ]

    return Job(
        name=name,
        steps=tuple(steps_final),
        needs=tuple(needs or ()),
        environment=environment,
        concurrency_group=concurrency_group,
        allow_skipped=tuple(allow_skipped or ()),
        env={k: str(v) for k, v in (env or {}).items()},
        timeout=timeout,
    )


def environment(
    name: str,
    *,
    approvers: Iterable[str] = (),
    secrets: Optional[Mapping[str, str]] = None,
) -> Environment:
    return Environment(name=name, required_approvers=frozenset(approvers), secrets=dict(secrets or {}))


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._environment: str | None = None
        self._group: str | None = None
        self._allow_skipped: list[str] = []
        self._timeout: float | None = None

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def continue_after_skip(self, *job_names: str):
        """Let this job run when the named prerequisites were skipped."""
        for n in job_names:
            if n not in self._needs:
                self._needs.append(n)
        self._allow_skipped.extend(job_names)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, **kwargs):
        self._steps.append(sh(name, run, cwd=cwd, **kwargs))
        return self

    def use_action(self, name: str, uses: str, **inputs):
        self._steps.append(action(name, uses, **inputs))
        return self

    def add_step(self, step: Step):
        self._steps.append(step)
        return self

    def with_env(self, **env):
        # force values to str for env compatibility
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def deploys_to(self, environment: str):
        self._environment = environment
        return self

    def in_group(self, group: str):
        self._group = group
        return self

    def with_timeout(self, seconds: float):
        self._timeout = seconds
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")

        return Job(
            name=self.name,
            steps=tuple(self._steps),
            needs=tuple(self._needs),
            environment=self._environment,
            concurrency_group=self._group,
            allow_skipped=tuple(self._allow_skipped),
            env=dict(self._env),
            timeout=self._timeout,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Minimal matrix expander.

    Example:
        matrix("py", ["3.11","3.12"]).jobs(
            lambda v: job(f"test-py{v}", sh(...))
        )
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    def jobs(self, builder: Callable[[Any], Job]) -> List[Job]:
        return [builder(v) for v in self.values]


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)


# ---------------------------------------------------------------------
# Pipeline helper (single-file story)
# ---------------------------------------------------------------------

def pipeline(
    name: str,
    *jobs: Job | List[Job],
    environments: Iterable[Environment] = (),
    max_concurrency: int | None = None,
    fail_fast: bool = False,
    approval_timeout: float | None = None,
) -> PipelineDefinition:
    """
    Pipeline definition helper. Matrix output (lists of jobs) is flattened.

        from shipline import pipeline, job, sh, environment

        def define():
            return pipeline(
                "main",
                job("lint", sh("ruff", "ruff check .")),
                job("test", sh("pytest", "pytest -q"), needs=["lint"]),
            )
    """
    flat: List[Job] = []
    for j in jobs:
        if isinstance(j, list):
            flat.extend(j)
        else:
            flat.append(j)

    return PipelineDefinition(
        name=name,
        jobs=tuple(flat),
        environments={e.name: e for e in environments},
        max_concurrency=max_concurrency,
        fail_fast=fail_fast,
        approval_timeout=approval_timeout,
    )
