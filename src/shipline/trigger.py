# trigger.py
"""
Poll-based run triggers.

`PollTrigger` snapshots source control (HEAD and the tag list) every
`interval` seconds and reports what changed since the last look:

  - new tags      -> a "tag" event carrying the new tag names
  - HEAD moved    -> a "push" event

The first snapshot is the baseline and never fires. After each event the
baseline is taken again, so tags created by the triggered run itself (a
release job) do not trigger another run.
"""
from __future__ import annotations

import logging
import subprocess
import time
from dataclasses import dataclass
from typing import Callable, FrozenSet, Optional, Tuple

from .errors import ConfigurationError
from .release import SourceControl

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SourceSnapshot:
    head: str
    tags: FrozenSet[str]


@dataclass(frozen=True)
class TriggerEvent:
    kind: str  # "push" | "tag"
    commit: str
    tags: Tuple[str, ...] = ()

    def describe(self) -> str:
        if self.kind == "tag":
            return f"tag {', '.join(self.tags)} at {self.commit[:12]}"
        return f"push to {self.commit[:12]}"


def detect_event(previous: SourceSnapshot, current: SourceSnapshot) -> Optional[TriggerEvent]:
    """Tag events win over pushes when both happened between two polls."""
    new_tags = current.tags - previous.tags
    if new_tags:
        return TriggerEvent("tag", current.head, tuple(sorted(new_tags)))
    if current.head != previous.head:
        return TriggerEvent("push", current.head)
    return None


class PollTrigger:
    """Watches a SourceControl and calls back once per detected event."""

    def __init__(
        self,
        source: SourceControl,
        *,
        interval: float = 30.0,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        if interval <= 0:
            raise ConfigurationError(f"poll interval must be positive, got {interval}")
        self.source = source
        self.interval = interval
        self.sleep = sleep or time.sleep
        self.running = True

    def snapshot(self) -> SourceSnapshot:
        return SourceSnapshot(self.source.head_commit(), frozenset(self.source.tags()))

    def stop(self) -> None:
        self.running = False

    def watch(self, on_event: Callable[[TriggerEvent], None], *, max_events: Optional[int] = None) -> int:
        """
        Poll until stopped (or `max_events` events fired).

        Returns the number of events delivered. A failed poll is logged
        and retried on the next interval; errors raised by `on_event`
        propagate.
        """
        previous = self.snapshot()
        stale = False
        fired = 0
        while self.running and (max_events is None or fired < max_events):
            self.sleep(self.interval)
            try:
                current = self.snapshot()
            except (subprocess.CalledProcessError, OSError) as e:
                logger.warning("could not read source control: %s", e)
                continue

            if stale:
                # the last run could not be baselined; its own tags are not events
                previous, stale = current, False
                continue

            event = detect_event(previous, current)
            previous = current
            if event is None:
                continue

            fired += 1
            logger.info("trigger: %s", event.describe())
            on_event(event)
            try:
                previous = self.snapshot()
            except (subprocess.CalledProcessError, OSError) as e:
                logger.warning("could not read source control after the run: %s", e)
                stale = True
        return fired
