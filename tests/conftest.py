from __future__ import annotations

import threading
import time
from typing import Dict, List, Optional

import pytest

from shipline.executor import StepExecutor
from shipline.gate import EnvironmentGate
from shipline.model import StepResult
from shipline.scheduler import PipelineScheduler
from shipline.secret_store import SecretStore
from shipline.store import Store


class FakeRunner:
    """
    ComputeRunner double. Commands map to results; "wait N" sleeps N seconds, "block" commands
    wait until released or cancelled.
    """

    def __init__(self, results: Optional[Dict[str, StepResult]] = None):
        self.results = dict(results or {})
        self.calls: List[dict] = []
        self.release = threading.Event()
        self._lock = threading.Lock()
        self.running = 0
        self.max_running = 0

    def run_command(self, cmd, env, working_dir, timeout, cancel_event=None):
        with self._lock:
            self.calls.append({"cmd": cmd, "env": dict(env), "cwd": working_dir, "timeout": timeout})
            self.running += 1
            self.max_running = max(self.max_running, self.running)
        try:
            if cmd.startswith("wait "):
                time.sleep(float(cmd.split()[1]))
            if cmd.startswith("block"):
                while not self.release.wait(0.01):
                    if cancel_event is not None and cancel_event.is_set():
                        return StepResult(exit_status=-1, cancelled=True)
            return self.results.get(cmd, StepResult(exit_status=0, stdout=f"{cmd}\n"))
        finally:
            with self._lock:
                self.running -= 1

    @property
    def commands(self) -> List[str]:
        return [c["cmd"] for c in self.calls]


class FakeSourceControl:
    def __init__(self, tags=None, head="c0ffee" * 6 + "beef", shallow=False, subjects=None):
        # tag -> commit
        self.tag_commits: Dict[str, str] = dict(tags or {})
        self.head = head
        self.shallow = shallow
        self.subjects = list(subjects or ["Fix login redirect", "Add health endpoint"])
        self.created: List[tuple] = []
        self.since: List[Optional[str]] = []

    def head_commit(self):
        return self.head

    def tags(self):
        return list(self.tag_commits)

    def tags_at(self, commit):
        return [t for t, c in self.tag_commits.items() if c == commit]

    def is_shallow(self):
        return self.shallow

    def create_tag(self, tag, commit, message):
        self.tag_commits[tag] = commit
        self.created.append((tag, commit, message))

    def log_subjects(self, since=None):
        self.since.append(since)
        return list(self.subjects)


@pytest.fixture
def store():
    s = Store("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def runner():
    r = FakeRunner()
    yield r
    r.release.set()


@pytest.fixture
def source():
    return FakeSourceControl()


@pytest.fixture
def make_scheduler(tmp_path, runner):
    """Build a scheduler wired to the fake runner with fast polling."""

    def _make(pipeline, **kwargs):
        secrets = SecretStore(pipeline.environments)
        kwargs.setdefault("executor", StepExecutor(runner, secrets))
        kwargs.setdefault("gate", EnvironmentGate(kwargs.get("store")))
        kwargs.setdefault("poll_interval", 0.01)
        kwargs.setdefault("work_root", tmp_path / "work")
        kwargs.setdefault("max_workers", 4)
        return PipelineScheduler(pipeline, **kwargs)

    return _make


@pytest.fixture
def run_in_thread():
    """Run a scheduler on a background thread; returns (thread, result dict)."""
    threads = []

    def _start(scheduler):
        result = {}

        def target():
            result["record"] = scheduler.run()

        t = threading.Thread(target=target, daemon=True)
        t.start()
        threads.append((t, scheduler))
        return t, result

    yield _start
    for t, scheduler in threads:
        if t.is_alive():
            scheduler.cancel("test teardown")
            t.join(5)
