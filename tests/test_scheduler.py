import time

import pytest

from shipline.dsl import action, call, environment, job, pipeline, sh
from shipline.errors import ConfigurationError, CycleDetected, NoOpRelease, ShiplineError
from shipline.executor import LocalRunner, StepExecutor
from shipline.model import JobStatus, RunOutcome, StepResult
from shipline.scheduler import _TRANSITIONS
from shipline.secret_store import SecretStore

S = JobStatus


def _statuses(record):
    return {name: rec.status for name, rec in record.jobs.items()}


def test_linear_pipeline_succeeds(make_scheduler, runner):
    p = pipeline(
        "main",
        job("build", sh("compile", "make build")),
        job("test", sh("unit", "make test"), needs=["build"]),
        job("deploy", sh("ship", "make deploy"), needs=["test"]),
    )
    record = make_scheduler(p).run()

    assert record.outcome is RunOutcome.SUCCEEDED
    assert set(_statuses(record).values()) == {S.SUCCEEDED}
    assert runner.commands == ["make build", "make test", "make deploy"]
    assert "==> compile" in record.jobs["build"].log


def test_steps_in_a_job_stop_at_first_failure(make_scheduler, runner):
    runner.results["make test"] = StepResult(exit_status=2, stderr="1 failed")
    p = pipeline("main", job("ci", sh("build", "make build"), sh("test", "make test"), sh("pkg", "make dist")))
    record = make_scheduler(p).run()

    assert runner.commands == ["make build", "make test"]
    rec = record.jobs["ci"]
    assert rec.status is S.FAILED
    assert rec.error_kind == "StepFailed"
    assert "step=test" in rec.error
    assert "1 failed" in rec.log


def test_failure_skips_dependents_transitively_but_not_siblings(make_scheduler, runner):
    runner.results["make build"] = StepResult(exit_status=1)
    p = pipeline(
        "main",
        job("build", sh("compile", "make build")),
        job("test", sh("unit", "make test"), needs=["build"]),
        job("deploy", sh("ship", "make deploy"), needs=["test"]),
        job("lint", sh("lint", "make lint")),
    )
    record = make_scheduler(p).run()

    assert _statuses(record) == {
        "build": S.FAILED,
        "test": S.SKIPPED,
        "deploy": S.SKIPPED,
        "lint": S.SUCCEEDED,
    }
    assert record.outcome is RunOutcome.FAILED
    assert "make test" not in runner.commands
    assert "build" in record.jobs["test"].error


def test_allow_skipped_edge_lets_job_run(make_scheduler, runner):
    runner.results["make build"] = StepResult(exit_status=1)
    p = pipeline(
        "main",
        job("build", sh("compile", "make build")),
        job("docs", sh("docs", "make docs"), needs=["build"]),
        job("notify", sh("notify", "notify.sh"), needs=["docs"], allow_skipped=["docs"]),
    )
    record = make_scheduler(p).run()

    assert record.jobs["docs"].status is S.SKIPPED
    assert record.jobs["notify"].status is S.SUCCEEDED


def test_timed_out_step_fails_job(make_scheduler, runner):
    runner.results["make slow"] = StepResult(exit_status=-1, timed_out=True)
    p = pipeline("main", job("slow", sh("slow", "make slow", timeout=1)))
    record = make_scheduler(p).run()
    assert record.jobs["slow"].status is S.FAILED
    assert record.jobs["slow"].error_kind == "StepTimedOut"


def test_concurrency_group_serializes(make_scheduler, runner):
    p = pipeline(
        "main",
        job("deploy-a", sh("a", "wait 0.1"), concurrency_group="prod"),
        job("deploy-b", sh("b", "wait 0.1"), concurrency_group="prod"),
    )
    record = make_scheduler(p, max_workers=4).run()
    assert record.outcome is RunOutcome.SUCCEEDED
    assert runner.max_running == 1


def test_independent_jobs_run_in_parallel(make_scheduler, runner):
    p = pipeline(
        "main",
        job("a", sh("a", "wait 0.2")),
        job("b", sh("b", "wait 0.2")),
    )
    make_scheduler(p, max_workers=4).run()
    assert runner.max_running == 2


def test_worker_bound(make_scheduler, runner):
    p = pipeline("main", *[job(f"j{i}", sh("w", "wait 0.05")) for i in range(4)])
    record = make_scheduler(p, max_workers=1).run()
    assert record.outcome is RunOutcome.SUCCEEDED
    assert runner.max_running == 1


def test_fail_fast_cancels_the_rest(make_scheduler, runner):
    runner.results["make lint"] = StepResult(exit_status=1)
    p = pipeline(
        "main",
        job("lint", sh("lint", "wait 0.05"), sh("lint", "make lint")),
        job("long", sh("long", "block")),
        job("after", sh("after", "make after"), needs=["long"]),
        fail_fast=True,
    )
    record = make_scheduler(p).run()

    assert record.jobs["lint"].status is S.FAILED
    assert record.jobs["long"].status is S.CANCELLED
    assert record.jobs["after"].status in (S.CANCELLED, S.SKIPPED)
    assert record.outcome is RunOutcome.FAILED
    assert "make after" not in runner.commands


def test_without_fail_fast_other_branches_finish(make_scheduler, runner):
    runner.results["make lint"] = StepResult(exit_status=1)
    p = pipeline(
        "main",
        job("lint", sh("lint", "make lint")),
        job("long", sh("long", "wait 0.1")),
        job("after", sh("after", "make after"), needs=["long"]),
    )
    record = make_scheduler(p).run()
    assert record.jobs["after"].status is S.SUCCEEDED
    assert record.outcome is RunOutcome.FAILED


def test_user_cancel(make_scheduler, runner, run_in_thread):
    p = pipeline(
        "main",
        job("build", sh("build", "block")),
        job("deploy", sh("deploy", "make deploy"), needs=["build"]),
    )
    scheduler = make_scheduler(p)
    t, result = run_in_thread(scheduler)
    assert scheduler.wait_for("build", S.RUNNING, timeout=5)

    scheduler.cancel("stop")
    t.join(5)
    record = result["record"]
    assert _statuses(record) == {"build": S.CANCELLED, "deploy": S.CANCELLED}
    assert record.outcome is RunOutcome.FAILED
    assert "stop" in record.jobs["deploy"].error


# ----------------------------------------------------------------------
# Gated environments
# ----------------------------------------------------------------------

def _gated_pipeline(**kwargs):
    return pipeline(
        "main",
        job("build", sh("build", "make build")),
        job("deploy-prod", sh("ship", "make deploy"), needs=["build"], environment="production"),
        job("smoke", sh("smoke", "make smoke"), needs=["deploy-prod"]),
        environments=[environment("production", approvers=["alice"])],
        **kwargs,
    )


def test_gated_job_waits_then_runs_after_approval(make_scheduler, runner, run_in_thread):
    scheduler = make_scheduler(_gated_pipeline())
    t, result = run_in_thread(scheduler)

    assert scheduler.wait_for("deploy-prod", S.WAITING_APPROVAL, timeout=5)
    assert scheduler.status("build") is S.SUCCEEDED
    assert scheduler.status("smoke") is S.PENDING
    assert "make deploy" not in runner.commands

    scheduler.gate.approve(scheduler.approval_id("deploy-prod"), "alice")
    t.join(5)

    record = result["record"]
    assert record.outcome is RunOutcome.SUCCEEDED
    assert record.jobs["deploy-prod"].status is S.SUCCEEDED
    assert record.jobs["smoke"].status is S.SUCCEEDED
    assert runner.commands == ["make build", "make deploy", "make smoke"]


def test_waiting_job_holds_no_worker(make_scheduler, runner, run_in_thread):
    p = pipeline(
        "main",
        job("deploy-prod", sh("ship", "make deploy"), environment="production"),
        job("lint", sh("lint", "make lint")),
        environments=[environment("production", approvers=["alice"])],
    )
    scheduler = make_scheduler(p, max_workers=1)
    t, result = run_in_thread(scheduler)

    assert scheduler.wait_for("lint", S.SUCCEEDED, timeout=5)
    assert scheduler.status("deploy-prod") is S.WAITING_APPROVAL

    scheduler.gate.approve(scheduler.approval_id("deploy-prod"), "alice")
    t.join(5)
    assert result["record"].outcome is RunOutcome.SUCCEEDED


def test_rejected_approval_fails_job_and_skips_dependents(make_scheduler, runner, run_in_thread):
    scheduler = make_scheduler(_gated_pipeline())
    t, result = run_in_thread(scheduler)
    assert scheduler.wait_for("deploy-prod", S.WAITING_APPROVAL, timeout=5)

    scheduler.gate.reject(scheduler.approval_id("deploy-prod"), "alice")
    t.join(5)

    record = result["record"]
    assert record.jobs["deploy-prod"].status is S.FAILED
    assert record.jobs["deploy-prod"].error_kind == "ApprovalDenied"
    assert record.jobs["smoke"].status is S.SKIPPED
    assert "make deploy" not in runner.commands


def test_approval_timeout(make_scheduler, runner):
    record = make_scheduler(_gated_pipeline(approval_timeout=0.05)).run()
    assert record.jobs["deploy-prod"].status is S.FAILED
    assert record.jobs["deploy-prod"].error_kind == "ApprovalTimedOut"
    assert record.jobs["smoke"].status is S.SKIPPED


def test_cancel_while_waiting_for_approval(make_scheduler, run_in_thread):
    scheduler = make_scheduler(_gated_pipeline())
    t, result = run_in_thread(scheduler)
    assert scheduler.wait_for("deploy-prod", S.WAITING_APPROVAL, timeout=5)
    scheduler.cancel()
    t.join(5)
    record = result["record"]
    assert record.jobs["deploy-prod"].status is S.CANCELLED
    assert record.jobs["smoke"].status is S.CANCELLED


def test_environment_without_approvers_is_not_gated(make_scheduler, runner):
    p = pipeline(
        "main",
        job("deploy", sh("ship", "make deploy"), environment="staging"),
        environments=[environment("staging")],
    )
    record = make_scheduler(p).run()
    assert record.jobs["deploy"].status is S.SUCCEEDED
    assert record.jobs["deploy"].approval_id is None


def test_secrets_masked_in_run_record(make_scheduler, runner, store):
    runner.results["deploy.sh"] = StepResult(exit_status=1, stdout="using tok-9f8e7d\n", stderr="tok-9f8e7d rejected")
    p = pipeline(
        "main",
        job("deploy", sh("ship", "deploy.sh", secrets=["TOKEN"]), environment="staging"),
        environments=[environment("staging", secrets={"TOKEN": "tok-9f8e7d"})],
    )
    record = make_scheduler(p, store=store).run()

    assert runner.calls[0]["env"]["TOKEN"] == "tok-9f8e7d"
    stored = store.get_run(record.run_id).jobs["deploy"]
    for text in (stored.log, stored.error, record.jobs["deploy"].log, record.jobs["deploy"].error):
        assert "tok-9f8e7d" not in text
    assert "***" in stored.log


def test_secret_in_call_step_error_masked_in_run_record(make_scheduler, store):
    def deploy(ctx):
        raise ShiplineError(f"deploy rejected token {ctx.secrets['TOKEN']}")

    p = pipeline(
        "main",
        job("deploy", call("deploy", deploy, secrets=["TOKEN"]), environment="staging"),
        environments=[environment("staging", secrets={"TOKEN": "hunter2-secret"})],
    )
    record = make_scheduler(p, store=store).run()

    rec = record.jobs["deploy"]
    stored = store.get_run(record.run_id).jobs["deploy"]
    assert rec.status is S.FAILED
    for text in (rec.error, stored.error):
        assert "hunter2-secret" not in text
        assert "deploy rejected token ***" in text


# ----------------------------------------------------------------------
# Records, transitions and validation
# ----------------------------------------------------------------------

def test_transitions_are_monotonic(make_scheduler, runner):
    runner.results["make build"] = StepResult(exit_status=1)
    p = pipeline(
        "main",
        job("build", sh("compile", "make build")),
        job("test", sh("unit", "make test"), needs=["build"]),
        job("lint", sh("lint", "make lint")),
    )
    seen = []
    scheduler = make_scheduler(p)
    scheduler.add_listener(lambda name, old, new, rec: seen.append((name, old, new)))
    record = scheduler.run()

    for name, old, new in seen:
        assert not old.terminal
        assert new in _TRANSITIONS[old]
    # every job ends with exactly one terminal transition
    terminal = [name for name, _, new in seen if new.terminal]
    assert sorted(terminal) == sorted(record.jobs)


def test_run_persisted_with_outcome(make_scheduler, store):
    p = pipeline("main", job("build", sh("compile", "make build")))
    record = make_scheduler(p, store=store).run()

    stored = store.get_run(record.run_id)
    assert stored.outcome is RunOutcome.SUCCEEDED
    assert stored.jobs["build"].status is S.SUCCEEDED
    assert store.get_job(record.run_id, "build").log == record.jobs["build"].log


def test_structured_error_from_call_step_fails_job(make_scheduler):
    def tag(ctx):
        raise NoOpRelease("commit already released as v1.2.0")

    p = pipeline("main", job("release", call("tag", tag)))
    record = make_scheduler(p).run()
    rec = record.jobs["release"]
    assert rec.status is S.FAILED
    assert rec.error_kind == "NoOpRelease"


@pytest.mark.parametrize(
    "bad, error",
    [
        (pipeline("p", job("a", sh("x", "true"), needs=["b"]), job("b", sh("x", "true"), needs=["a"])), CycleDetected),
        (pipeline("p", job("a", sh("x", "true"), needs=["ghost"])), ConfigurationError),
        (pipeline("p", job("a", sh("x", "true"), environment="prod")), ConfigurationError),
        (pipeline("p", job("a", action("x", "teleport", to="mars"))), ConfigurationError),
    ],
)
def test_invalid_pipeline_never_starts(make_scheduler, runner, bad, error):
    with pytest.raises(error):
        make_scheduler(bad)
    assert runner.calls == []


# ----------------------------------------------------------------------
# Interrupted runs
# ----------------------------------------------------------------------

def _interrupt_when_running(job_name):
    """Listener that raises KeyboardInterrupt once `job_name` starts, like Ctrl-C mid-run."""
    fired = []

    def listener(name, old, new, rec):
        if name == job_name and new is S.RUNNING and not fired:
            fired.append(name)
            raise KeyboardInterrupt

    return listener


def test_interrupted_run_is_cancelled_and_finalized(make_scheduler, runner, store):
    p = pipeline("main", job("a", sh("a", "block")), job("b", sh("b", "make b")))
    scheduler = make_scheduler(p, store=store)
    scheduler.add_listener(_interrupt_when_running("b"))

    start = time.monotonic()
    with pytest.raises(KeyboardInterrupt):
        scheduler.run()
    assert time.monotonic() - start < 5

    assert _statuses(scheduler.record) == {"a": S.CANCELLED, "b": S.CANCELLED}
    assert scheduler.record.outcome is RunOutcome.FAILED
    assert "make b" not in runner.commands

    stored = store.get_run(scheduler.run_id)
    assert stored.outcome is RunOutcome.FAILED
    assert stored.finished_at is not None
    assert "interrupted by user" in stored.jobs["b"].error


def test_interrupt_kills_running_subprocess(make_scheduler, tmp_path):
    p = pipeline("main", job("a", sh("hang", "sleep 30")), job("b", sh("b", "true")))
    scheduler = make_scheduler(p, executor=StepExecutor(LocalRunner(poll_interval=0.01), SecretStore()))
    scheduler.add_listener(_interrupt_when_running("b"))

    start = time.monotonic()
    with pytest.raises(KeyboardInterrupt):
        scheduler.run()
    assert time.monotonic() - start < 10
    assert scheduler.status("a") is S.CANCELLED
    assert scheduler.record.outcome is RunOutcome.FAILED
