# rollout.py
"""
Canary and blue-green rollout driven by traffic weights and health probes.

    INITIATED -> PARTIAL_ROLLOUT(w) -> HEALTH_CHECK -> ... -> PROMOTED
                                                   \\-> ROLLED_BACK

A failed stage or a cancelled rollout is handled here: the weight goes
back to 0 and the report says why.
Only a failed rollback escapes, as RollbackFailed.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Protocol, Tuple

from .errors import ConfigurationError, HealthCheckFailed, RollbackFailed
from .model import CallStep

logger = logging.getLogger(__name__)

DEFAULT_WEIGHTS: Tuple[int, ...] = (10, 50, 100)

CANCELLED = "rollout cancelled"


class RolloutState(str, Enum):
    INITIATED = "initiated"
    PARTIAL_ROLLOUT = "partial_rollout"
    HEALTH_CHECK = "health_check"
    PROMOTED = "promoted"
    ROLLED_BACK = "rolled_back"


class TrafficRouter(Protocol):
    def set_weight(self, target: str, weight: int) -> None: ...


@dataclass(frozen=True)
class HealthProbe:
    """A named check; `check()` returns False or raises to signal failure."""
    name: str
    check: Callable[[], bool]

    def run(self, weight: int) -> None:
        try:
            ok = self.check()
        except Exception as e:
            raise HealthCheckFailed(self.name, f"{type(e).__name__}: {e}", weight=weight) from e
        if ok is False:
            raise HealthCheckFailed(self.name, weight=weight)


@dataclass(frozen=True)
class RolloutPlan:
    target: str
    probes: Tuple[HealthProbe, ...] = ()
    weights: Tuple[int, ...] = DEFAULT_WEIGHTS
    dwell: float = 0.0
    probe_interval: float = 5.0

    def validate(self) -> None:
        if not self.weights:
            raise ConfigurationError("rollout needs at least one weight", details={"target": self.target})
        prev = 0
        for w in self.weights:
            if not 0 < w <= 100 or w <= prev:
                raise ConfigurationError(
                    "rollout weights must increase strictly within 1..100",
                    details={"target": self.target, "weights": list(self.weights)},
                )
            prev = w
        if self.weights[-1] != 100:
            raise ConfigurationError(
                "the last rollout weight must be 100",
                details={"target": self.target, "weights": list(self.weights)},
            )
        if self.dwell < 0 or self.probe_interval <= 0:
            raise ConfigurationError("dwell must be >= 0 and probe_interval > 0", details={"target": self.target})


@dataclass
class RolloutReport:
    target: str
    state: RolloutState = RolloutState.INITIATED
    weight: int = 0
    failed_probe: Optional[str] = None
    error: Optional[str] = None
    history: List[Tuple[RolloutState, int]] = field(default_factory=list)

    @property
    def promoted(self) -> bool:
        return self.state is RolloutState.PROMOTED

    def summary(self) -> str:
        if self.promoted:
            return f"{self.target}: promoted at {self.weight}%"
        if self.state is RolloutState.ROLLED_BACK:
            if self.failed_probe:
                return f"{self.target}: rolled back to {self.weight}% ({self.failed_probe} failed: {self.error})"
            return f"{self.target}: rolled back to {self.weight}% ({self.error})"
        return f"{self.target}: {self.state.value} at {self.weight}%"


class RolloutController:
    """
    Drives a rollout plan against a traffic router.

    Waits between probe rounds go through `sleep` when one is injected;
    otherwise they wait on the rollout's cancel event, so a cancelled step
    stops mid-dwell and returns traffic to 0.
    """

    def __init__(
        self,
        router: TrafficRouter,
        *,
        sleep: Optional[Callable[[float], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.router = router
        self.sleep = sleep
        self.clock = clock

    # -------------------- Strategies --------------------

    def canary(self, plan: RolloutPlan, cancel_event: Optional[threading.Event] = None) -> RolloutReport:
        """Escalate through plan.weights, health-checking every stage."""
        plan.validate()
        cancel = cancel_event or threading.Event()
        report = RolloutReport(target=plan.target)
        self._enter(report, RolloutState.INITIATED, 0)

        for weight in plan.weights:
            if cancel.is_set():
                return self._rollback(report, plan.target, CANCELLED)
            try:
                self._set_weight(report, plan.target, weight)
            except Exception as e:
                return self._rollback(report, plan.target, _router_failure(weight, e))
            self._enter(report, RolloutState.PARTIAL_ROLLOUT, weight)
            self._enter(report, RolloutState.HEALTH_CHECK, weight)
            try:
                if not self._health_check(plan, weight, cancel):
                    return self._rollback(report, plan.target, CANCELLED)
            except HealthCheckFailed as e:
                return self._rollback(report, plan.target, e.message, probe=e.probe)

        self._enter(report, RolloutState.PROMOTED, 100)
        logger.info("rollout %s promoted", plan.target)
        return report

    def blue_green(self, plan: RolloutPlan, cancel_event: Optional[threading.Event] = None) -> RolloutReport:
        """One smoke test against the idle side, then switch 0 -> 100."""
        cancel = cancel_event or threading.Event()
        report = RolloutReport(target=plan.target)
        self._enter(report, RolloutState.INITIATED, 0)
        self._enter(report, RolloutState.HEALTH_CHECK, 0)
        try:
            for probe in plan.probes:
                probe.run(0)
        except HealthCheckFailed as e:
            # traffic never moved; make sure it stays on the old side
            return self._rollback(report, plan.target, e.message, probe=e.probe)

        if cancel.is_set():
            return self._rollback(report, plan.target, CANCELLED)
        try:
            self._set_weight(report, plan.target, 100)
        except Exception as e:
            return self._rollback(report, plan.target, _router_failure(100, e))
        self._enter(report, RolloutState.PARTIAL_ROLLOUT, 100)
        self._enter(report, RolloutState.PROMOTED, 100)
        logger.info("blue-green switch for %s complete", plan.target)
        return report

    # -------------------- Internals --------------------

    def _health_check(self, plan: RolloutPlan, weight: int, cancel: threading.Event) -> bool:
        """
        Run every probe, repeating until the dwell time has passed.
        Returns False when the rollout is cancelled during the dwell.
        """
        deadline = self.clock() + plan.dwell
        while True:
            for probe in plan.probes:
                probe.run(weight)
            remaining = deadline - self.clock()
            if remaining <= 0:
                return True
            if self._pause(min(plan.probe_interval, remaining), cancel):
                return False

    def _pause(self, seconds: float, cancel: threading.Event) -> bool:
        if self.sleep is not None:
            self.sleep(seconds)
        else:
            cancel.wait(seconds)
        return cancel.is_set()

    def _set_weight(self, report: RolloutReport, target: str, weight: int) -> None:
        logger.debug("rollout %s: weight %d%%", target, weight)
        self.router.set_weight(target, weight)
        report.weight = weight

    def _rollback(
        self,
        report: RolloutReport,
        target: str,
        reason: str,
        *,
        probe: Optional[str] = None,
    ) -> RolloutReport:
        logger.warning("rollout %s: %s at %s%%, rolling back", target, reason, report.weight)
        report.failed_probe = probe
        report.error = reason
        try:
            self._set_weight(report, target, 0)
        except Exception as e:
            raise RollbackFailed(
                f"could not return traffic to 0% for {target}: {e}",
                details={"failed_probe": probe, "reason": reason, "weight": report.weight},
            ) from e
        self._enter(report, RolloutState.ROLLED_BACK, 0)
        return report

    @staticmethod
    def _enter(report: RolloutReport, state: RolloutState, weight: int) -> None:
        report.state = state
        report.history.append((state, weight))


def _router_failure(weight: int, error: Exception) -> str:
    return f"router failed setting {weight}%: {type(error).__name__}: {error}"


def rollout_step(
    controller: RolloutController,
    plan: RolloutPlan,
    *,
    strategy: str = "canary",
    name: str | None = None,
    timeout: float | None = None,
) -> CallStep:
    """
    A step running a rollout; a rollback is reported in the step output, not
    raised. Cancelling the step (fail-fast, timeout, Ctrl-C) stops the rollout
    and returns traffic to 0.
    """
    if strategy not in ("canary", "blue-green"):
        raise ConfigurationError(f"unknown rollout strategy {strategy!r}", details={"allowed": ["canary", "blue-green"]})

    def _run(ctx) -> str:
        run = controller.canary if strategy == "canary" else controller.blue_green
        report = run(plan, ctx.cancel_event)
        for state, weight in report.history:
            ctx.log(f"{state.value} {weight}%")
        return report.summary()

    return CallStep(name=name or f"{strategy} {plan.target}", fn=_run, timeout=timeout)
