# cli.py
from __future__ import annotations

import logging
import subprocess
import sys
from pathlib import Path

import click

from .dag import topo_levels
from .errors import ApprovalError, ShiplineError
from .gate import EnvironmentGate
from .git_facts.git import get_remote_url
from .loader import find_workflow_files, load_workflow
from .model import ApprovalState, RunOutcome, RunRecord
from .release import BUMPS, GitSourceControl, ReleaseController
from .scheduler import PipelineScheduler
from .settings import DATABASE_URL
from .store import Store, StoreError
from .trigger import PollTrigger, TriggerEvent
from .ui.console import Console, get_console, set_console


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and workflow_path.suffix != ".py":
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  shipline run --workflow my_workflow.py",
            )
            sys.exit(1)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=[
                "Looked for:",
                "  shipline_workflow.py",
                "  *_workflow.py",
            ],
            suggestion="Create a workflow file:\n  shipline_workflow.py\n\nOr specify a workflow explicitly:\n  shipline run --workflow my_workflow.py",
        )
        sys.exit(1)

    if len(workflow_files) > 1 and workflow_files[0].name != "shipline_workflow.py":
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion="Specify a workflow explicitly:\n  shipline run --workflow shipline_workflow.py",
        )
        sys.exit(1)

    return workflow_files[0]


def _repository_name() -> str:
    try:
        repo_url = get_remote_url("origin")
        return repo_url.rstrip("/").split("/")[-1].replace(".git", "")
    except (subprocess.CalledProcessError, FileNotFoundError):
        return Path(".").resolve().name


def _store(ctx) -> Store:
    if "store" not in ctx.obj:
        ctx.obj["store"] = Store(ctx.obj["db"])
        ctx.call_on_close(ctx.obj["store"].close)
    return ctx.obj["store"]


def _fail(exc: Exception) -> None:
    get_console().print_exception(exc)
    sys.exit(1)


def _execute(ctx, pipeline, workflow_name, workers, fail_fast, approval_timeout, show_logs) -> RunRecord:
    """Run one pipeline with console output. On Ctrl-C the scheduler cancels and finalizes the run, then re-raises."""
    console = get_console()
    scheduler = PipelineScheduler(
        pipeline,
        store=_store(ctx),
        max_workers=workers,
        fail_fast=fail_fast,
        approval_timeout=approval_timeout,
    )
    scheduler.add_listener(console.job_transition)

    console.print_run_started(
        repository=_repository_name(),
        workflow=workflow_name,
        pipeline=pipeline.name,
        job_count=len(pipeline.jobs),
        run_id=scheduler.run_id,
    )

    record = scheduler.run()
    console.print_results(record)
    if show_logs:
        for rec in record.jobs.values():
            console.print_job_log(rec)
    return record


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option(
    "--db",
    default=DATABASE_URL,
    show_default=True,
    help="Database URL for run history, approvals and releases",
)
@click.pass_context
def cli(ctx, debug, db):
    """shipline: pipeline orchestration with gated deploys and staged rollout."""
    console = Console(debug=debug)
    set_console(console)
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["db"] = db


@cli.command()
@click.option(
    "--workflow",
    default=None,
    help="Workflow file path (defaults to shipline_workflow.py if present)",
)
@click.option("--workers", default=None, type=int, help="Number of parallel workers")
@click.option(
    "--fail-fast/--no-fail-fast",
    default=None,
    help="Cancel the rest of the run after the first failure (default: the pipeline's setting)",
)
@click.option("--approval-timeout", default=None, type=float, help="Seconds a gated job may wait for approval")
@click.option("--show-logs/--no-show-logs", default=False, help="Print every job's captured output at the end")
@click.option("--release/--no-release", default=False, help="Tag a release after a successful run of the main pipeline")
@click.option("--bump", type=click.Choice(BUMPS), default="patch", show_default=True, help="Version bump for --release")
@click.pass_context
def run(ctx, workflow, workers, fail_fast, approval_timeout, show_logs, release, bump):
    """Run a shipline workflow."""
    console = get_console()
    workflow_path = discover_workflow(workflow)

    try:
        pipeline = load_workflow(workflow_path)
        store = _store(ctx)
        record = _execute(ctx, pipeline, workflow_path.name, workers, fail_fast, approval_timeout, show_logs)

        if record.outcome is not RunOutcome.SUCCEEDED:
            sys.exit(1)

        if release:
            controller = ReleaseController(GitSourceControl(), store, bump=bump)
            rel = controller.release_after_run(record)
            if rel is not None:
                console.print_info(f"\nRELEASED: {rel.tag} ({rel.commit[:12]})")

    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except ShiplineError as e:
        _fail(e)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file path")
@click.option("--interval", default=30.0, show_default=True, type=float, help="Seconds between source control polls")
@click.option("--workers", default=None, type=int, help="Number of parallel workers")
@click.option("--max-runs", default=None, type=int, help="Stop after this many triggered runs")
@click.pass_context
def watch(ctx, workflow, interval, workers, max_runs):
    """Poll git and run the workflow on every push or new tag."""
    console = get_console()
    workflow_path = discover_workflow(workflow)

    def on_event(event: TriggerEvent) -> None:
        console.print_info(f"\nTRIGGER: {event.describe()}")
        # reload so a push that edits the workflow takes effect
        try:
            pipeline = load_workflow(workflow_path)
        except ShiplineError as e:
            console.print_exception(e)
            return
        _execute(ctx, pipeline, workflow_path.name, workers, None, None, False)

    try:
        trigger = PollTrigger(GitSourceControl(), interval=interval)
        console.print_info(f"Watching for pushes and tags every {interval:g}s (Ctrl-C to stop)")
        trigger.watch(on_event, max_events=max_runs)
    except KeyboardInterrupt:
        console.print_info("\nWatcher stopped")
        sys.exit(130)
    except ShiplineError as e:
        _fail(e)
    except (subprocess.CalledProcessError, FileNotFoundError) as e:
        console.print_error("Could not read git state", str(e), suggestion="Run inside a git checkout.")
        sys.exit(1)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file path")
def plan(workflow):
    """Validate a workflow and print its execution stages."""
    workflow_path = discover_workflow(workflow)
    try:
        pipeline = load_workflow(workflow_path)
    except ShiplineError as e:
        _fail(e)
    get_console().print_plan(
        topo_levels(pipeline.jobs),
        {j.name: j.environment for j in pipeline.jobs},
    )


@cli.command()
@click.argument("request_id")
@click.option("--as", "identity", required=True, help="Approver identity")
@click.pass_context
def approve(ctx, request_id, identity):
    """Grant an approval request."""
    try:
        req = EnvironmentGate(_store(ctx)).approve(request_id, identity)
    except (ApprovalError, StoreError) as e:
        _fail(e)
    get_console().print_info(f"{request_id}: {req.state.value} ({', '.join(sorted(req.granted))})")


@cli.command()
@click.argument("request_id")
@click.option("--as", "identity", required=True, help="Approver identity")
@click.pass_context
def reject(ctx, request_id, identity):
    """Reject an approval request; the gated job fails."""
    try:
        req = EnvironmentGate(_store(ctx)).reject(request_id, identity)
    except (ApprovalError, StoreError) as e:
        _fail(e)
    get_console().print_info(f"{request_id}: {req.state.value} by {req.rejected_by}")


@cli.command()
@click.option("--open", "only_open", is_flag=True, default=False, help="Only open requests")
@click.pass_context
def approvals(ctx, only_open):
    """List approval requests."""
    state = ApprovalState.OPEN if only_open else None
    get_console().print_approvals(EnvironmentGate(_store(ctx)).list(state))


@cli.command()
@click.argument("run_id", required=False)
@click.option("--limit", default=20, show_default=True, type=int)
@click.option("--show-logs/--no-show-logs", default=False)
@click.pass_context
def runs(ctx, run_id, limit, show_logs):
    """List recent runs, or show one run's per-job breakdown."""
    console = get_console()
    store = _store(ctx)
    if run_id is None:
        console.print_runs(store.list_runs(limit))
        return

    record = store.get_run(run_id)
    if record is None:
        console.print_error("Run not found", f"No run with id {run_id}")
        sys.exit(1)
    console.print_results(record)
    if show_logs:
        for rec in record.jobs.values():
            console.print_job_log(rec)


@cli.command()
@click.pass_context
def releases(ctx):
    """List releases, oldest first."""
    get_console().print_releases(_store(ctx).list_releases())


@cli.command("next-version")
@click.option("--bump", type=click.Choice(BUMPS), default="patch", show_default=True)
@click.pass_context
def next_version_cmd(ctx, bump):
    """Print the version the next release would get."""
    try:
        version = ReleaseController(GitSourceControl(), _store(ctx), bump=bump).plan()
    except ShiplineError as e:
        _fail(e)
    except (subprocess.CalledProcessError, FileNotFoundError) as e:
        get_console().print_error(
            "Could not read git tags",
            str(e),
            suggestion="Run inside a git checkout with full history (git fetch --unshallow --tags).",
        )
        sys.exit(1)
    get_console().print_info(version.tag)


if __name__ == "__main__":
    cli()
