import textwrap

import pytest
from click.testing import CliRunner

from shipline.cli import cli
from shipline.dsl import environment, job, sh
from shipline.gate import EnvironmentGate
from shipline.model import ApprovalState, Release
from shipline.store import Store
from shipline.trigger import PollTrigger


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    return tmp_path


@pytest.fixture
def db(workspace):
    return f"sqlite:///{workspace / 'shipline.db'}"


def _workflow(path, body):
    path.write_text(textwrap.dedent(body))
    return str(path)


def _invoke(db, *args):
    return CliRunner().invoke(cli, ["--db", db, *args])


def test_run_success(workspace, db):
    wf = _workflow(workspace / "shipline_workflow.py", """
        from shipline import pipeline, job, sh

        def define():
            return pipeline(
                "main",
                job("build", sh("hello", "echo built > out.txt && cat out.txt")),
                job("test", sh("check", "true"), needs=["build"]),
            )
    """)
    result = _invoke(db, "run", "--workflow", wf, "--show-logs")

    assert result.exit_code == 0, result.output
    assert "RUN STARTED" in result.output
    assert "JOB SUCCEEDED: test" in result.output
    assert "PIPELINE: SUCCEEDED" in result.output
    assert "built" in result.output

    runs = Store(db).list_runs()
    assert len(runs) == 1 and runs[0].outcome.value == "succeeded"


def test_run_failure_exits_1(workspace, db):
    wf = _workflow(workspace / "ci_workflow.py", """
        from shipline import pipeline, job, sh
        PIPELINE = pipeline(
            "main",
            job("build", sh("broken", "exit 4")),
            job("deploy", sh("ship", "true"), needs=["build"]),
        )
    """)
    result = _invoke(db, "run", "--workflow", wf)
    assert result.exit_code == 1
    assert "JOB FAILED: build" in result.output
    assert "JOB SKIPPED: deploy" in result.output


def test_run_invalid_workflow(workspace, db):
    wf = _workflow(workspace / "ci_workflow.py", """
        from shipline import pipeline, job, sh
        PIPELINE = pipeline("main", job("a", sh("x", "true"), needs=["a"]))
    """)
    result = _invoke(db, "run", "--workflow", wf)
    assert result.exit_code == 1


def test_missing_workflow(workspace, db):
    result = _invoke(db, "run")
    assert result.exit_code == 1


def test_plan(workspace, db):
    wf = _workflow(workspace / "shipline_workflow.py", """
        from shipline import pipeline, job, sh, environment
        PIPELINE = pipeline(
            "main",
            job("build", sh("b", "true")),
            job("lint", sh("l", "true")),
            job("deploy", sh("d", "true"), needs=["build", "lint"], environment="prod"),
            environments=[environment("prod", approvers=["alice"])],
        )
    """)
    result = _invoke(db, "plan", "--workflow", wf)
    assert result.exit_code == 0, result.output
    assert "Stage 1:" in result.output
    assert "deploy (environment: prod)" in result.output


def test_approve_and_list(db):
    store = Store(db)
    gate = EnvironmentGate(store)
    prod = environment("prod", approvers=["alice"])
    req = gate.open_request("r1", job("deploy", sh("d", "true"), environment="prod"), prod)

    listed = _invoke(db, "approvals", "--open")
    assert req.request_id in listed.output

    denied = _invoke(db, "approve", req.request_id, "--as", "mallory")
    assert denied.exit_code == 1

    ok = _invoke(db, "approve", req.request_id, "--as", "alice")
    assert ok.exit_code == 0, ok.output
    assert "approved" in ok.output
    assert store.get_approval(req.request_id).state is ApprovalState.APPROVED
    assert _invoke(db, "approvals", "--open").output.strip() == ""


def test_reject(db):
    store = Store(db)
    prod = environment("prod", approvers=["alice"])
    req = EnvironmentGate(store).open_request("r1", job("deploy", sh("d", "true"), environment="prod"), prod)
    result = _invoke(db, "reject", req.request_id, "--as", "alice")
    assert result.exit_code == 0
    assert store.get_approval(req.request_id).state is ApprovalState.REJECTED


def test_runs_and_releases(workspace, db):
    wf = _workflow(workspace / "shipline_workflow.py", """
        from shipline import pipeline, job, sh
        PIPELINE = pipeline("main", job("build", sh("b", "echo ok")))
    """)
    _invoke(db, "run", "--workflow", wf)
    run_id = Store(db).list_runs()[0].run_id

    assert run_id in _invoke(db, "runs").output
    shown = _invoke(db, "runs", run_id)
    assert "build: SUCCEEDED" in shown.output
    assert _invoke(db, "runs", "missing").exit_code == 1

    Store(db).add_release(Release("v0.1.0", "abcdef1234567890"))
    assert "v0.1.0" in _invoke(db, "releases").output


def test_watch_runs_on_push(workspace, db, source, monkeypatch):
    wf = _workflow(workspace / "shipline_workflow.py", """
        from shipline import pipeline, job, sh
        PIPELINE = pipeline("main", job("build", sh("b", "true")))
    """)

    def trigger(src, interval):
        return PollTrigger(src, interval=interval, sleep=lambda s: setattr(src, "head", "d00d" * 10))

    monkeypatch.setattr("shipline.cli.GitSourceControl", lambda: source)
    monkeypatch.setattr("shipline.cli.PollTrigger", trigger)

    result = _invoke(db, "watch", "--workflow", wf, "--interval", "1", "--max-runs", "1")
    assert result.exit_code == 0, result.output
    assert "TRIGGER: push to d00dd00dd00d" in result.output
    assert "PIPELINE: SUCCEEDED" in result.output
    assert len(Store(db).list_runs()) == 1
