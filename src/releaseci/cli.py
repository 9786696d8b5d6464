# cli.py
from __future__ import annotations

import signal
import subprocess
import sys
import threading
from contextlib import contextmanager
from pathlib import Path

import click

from releaseci.cache import CacheStore
from releaseci.errors import CIError, ConfigurationError
from releaseci.git_facts.git import describe_version, head_sha, remote_url
from releaseci.model import EXIT_CODES, FailureKind, JobState, PipelineResult, PipelineRun
from releaseci.orchestrator import PipelineOrchestrator
from releaseci.settings import Settings
from releaseci.triggers import TriggerEvent, changed_paths_from_git, should_trigger
from releaseci.ui.console import Console, get_console, set_console
from releaseci.workflow import discover_workflow, load_pipeline

CONFIG_EXIT = EXIT_CODES[FailureKind.CONFIGURATION]


def _split_targets(value: str | None) -> list[str] | None:
    if not value:
        return None
    return [t.strip() for t in value.split(",") if t.strip()]


def _repo_name() -> str:
    try:
        url = remote_url("origin")
        return url.rstrip("/").split("/")[-1].replace(".git", "")
    except (subprocess.CalledProcessError, FileNotFoundError):
        return Path(".").resolve().name


def _git_default(fn, fallback: str | None = None) -> str | None:
    try:
        return fn()
    except (subprocess.CalledProcessError, FileNotFoundError):
        return fallback


def _target_branch(pipeline) -> str:
    trigger = pipeline.trigger
    if trigger is not None and trigger.branches:
        return trigger.branches[0]
    return "main"


@contextmanager
def _cancel_on_signals(cancel: threading.Event):
    """SIGINT/SIGTERM cancel the run: running jobs are terminated, unstarted jobs never start."""
    console = get_console()

    def handler(signum, frame):
        if not cancel.is_set():
            console.print_info(f"\nReceived signal {signum}, cancelling pipeline...")
        cancel.set()

    if threading.current_thread() is not threading.main_thread():
        yield
        return

    previous = {sig: signal.signal(sig, handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


def _report(result: PipelineResult) -> None:
    console = get_console()

    gate = result.gate
    if not gate.passed:
        failed = gate.stage.failed_step if gate.stage else None
        console.print_failure(
            "gate",
            gate.error or "gate failed",
            command=failed.step.run if failed else None,
            exit_code=failed.exit_code if failed else None,
            output=failed.output if failed else None,
        )

    for target, res in result.jobs.items():
        if res.state != JobState.FAILED:
            continue
        failed = res.failed_step
        console.print_failure(
            target,
            f"{res.failure_kind.value if res.failure_kind else 'failed'}: {res.error or ''}".rstrip(": "),
            command=failed.step.run if failed else None,
            exit_code=failed.exit_code if failed else None,
            output=failed.output if failed else None,
        )

    gate_state = "skipped" if gate.skipped else ("passed" if gate.passed else "failed")
    console.print_results(
        result.status.value,
        gate_state,
        {t: r.state.value for t, r in result.jobs.items()},
        sorted(result.published),
    )


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("--quiet", is_flag=True, default=False, help="Do not print per-step progress")
@click.pass_context
def cli(ctx, debug, quiet):
    """releaseci: gated, multi-platform build-and-release pipeline."""
    set_console(Console(debug=debug, quiet=quiet))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command("run-pipeline")
@click.option("--revision", default=None, help="Revision to build (defaults to HEAD)")
@click.option("--targets", default=None, help="Comma-separated targets (defaults to all declared)")
@click.option("--branch", default=None, help="Target branch of the trigger (defaults to the first branch of the trigger filter)")
@click.option("--reason", default="manual", show_default=True, help="Trigger type (opened, synchronize, ...)")
@click.option("--workflow", default=None, help="Workflow file (defaults to releaseci_workflow.py)")
@click.option("--changed-path", "changed_paths", multiple=True, help="Changed path for the trigger filter")
@click.option("--git-diff/--no-git-diff", default=False, help="Compute changed paths from git")
@click.option("--compare-ref", default="origin/main", show_default=True, help="Git ref to diff against")
@click.option("--cache-dir", default=None, help="Cache directory")
@click.option("--work-dir", default=None, help="Job workspaces directory")
@click.option("--artifact-dir", default=None, help="Artifact store directory")
@click.option("--state-dir", default=None, help="State directory (gate ledger)")
@click.option("--source-dir", default=None, help="Checkout the gate runs in")
@click.option("--workers", default=None, type=int, help="Number of parallel jobs")
@click.option("--step-timeout", default=None, type=float, help="Per-step timeout in seconds (0 disables)")
@click.option("--force-gate", is_flag=True, default=False, help="Re-run the gate even if it passed for this revision")
@click.pass_context
def run_pipeline(
    ctx, revision, targets, branch, reason, workflow, changed_paths, git_diff, compare_ref,
    cache_dir, work_dir, artifact_dir, state_dir, source_dir, workers, step_timeout, force_gate,
):
    """Run the gate, then every platform job, and publish their artifacts."""
    console = get_console()

    try:
        workflow_path = discover_workflow(workflow)
        pipeline = load_pipeline(workflow_path)

        revision = revision or _git_default(head_sha)
        if not revision:
            raise ConfigurationError("no --revision given and HEAD could not be resolved")
        # the branch of a trigger is the one being merged into, not the checked-out one
        branch = branch or _target_branch(pipeline)

        paths = list(changed_paths) or None
        if paths is None and git_diff:
            paths = changed_paths_from_git(compare_ref)

        event = TriggerEvent(revision=revision, branch=branch, reason=reason, changed_paths=paths)
        triggered, why = should_trigger(event, pipeline.trigger)
        if not triggered:
            console.print_info(f"Pipeline not triggered: {why}")
            return

        settings = Settings.from_env(
            cache_dir=cache_dir,
            work_dir=work_dir,
            artifact_dir=artifact_dir,
            state_dir=state_dir,
            source_dir=source_dir,
            max_workers=workers,
            step_timeout=step_timeout,
        )
        orchestrator = PipelineOrchestrator(pipeline, settings)
        selected = orchestrator.select(_split_targets(targets))
        run = PipelineRun(revision=revision, branch=branch, reason=reason)

        console.print_run_started(
            repository=_repo_name(),
            workflow=workflow_path.name,
            revision=revision,
            targets=[j.target for j in selected],
            version=_git_default(describe_version),
        )

        cancel = threading.Event()
        with _cancel_on_signals(cancel):
            result = orchestrator.run(run, [j.target for j in selected], cancel=cancel, force_gate=force_gate)

        _report(result)
        sys.exit(result.exit_code)

    except CIError as e:
        console.print_error("Pipeline configuration error", e.message, details=[f"{k}: {v}" for k, v in e.details.items()])
        if ctx.obj.get("debug", False):
            console.print_exception(e)
        sys.exit(CONFIG_EXIT)
    except subprocess.CalledProcessError as e:
        console.print_error("Git command failed", str(e))
        sys.exit(CONFIG_EXIT)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (defaults to releaseci_workflow.py)")
@click.option("--targets", default=None, help="Comma-separated targets (defaults to all declared)")
@click.option("--revision", default="<revision>", show_default=True, help="Revision shown in checkout steps")
def plan(workflow, targets, revision):
    """Print every job's ordered steps without running anything."""
    console = get_console()
    try:
        pipeline = load_pipeline(discover_workflow(workflow))
        jobs = PipelineOrchestrator(pipeline, Settings.from_env()).select(_split_targets(targets))
    except CIError as e:
        console.print_error("Pipeline configuration error", e.message, details=[f"{k}: {v}" for k, v in e.details.items()])
        sys.exit(CONFIG_EXIT)

    console.print_plan_job(
        pipeline.gate.name,
        [(s.kind, s.name, s.run) for s in pipeline.gate.steps],
        {"requires": ", ".join(pipeline.gate.requires) or "-"},
    )
    for job in jobs:
        console.print_plan_job(
            job.target,
            [(s.kind, s.name, s.run) for s in job.plan(revision)],
            {
                "needs": ", ".join(job.needs),
                "cache namespace": job.cache_namespace or "-",
                "artifacts": ", ".join(job.artifacts),
                "collection": job.collection,
            },
        )


@cli.group()
def cache():
    """Manage the dependency cache."""


@cache.command()
@click.option("--cache-dir", default=None, help="Cache directory")
@click.option("--keep", default=3, show_default=True, type=int, help="Entries to keep per namespace")
def prune(cache_dir, keep):
    """Keep only the newest entries of every cache namespace."""
    console = get_console()
    store = CacheStore(Settings.from_env(cache_dir=cache_dir).cache_dir, console=console)
    total = 0
    for ns in store.namespaces():
        removed = store.prune(ns, keep=keep)
        total += removed
        console.print_info(f"{ns}: removed {removed}")
    console.print_info(f"Pruned {total} cache entr{'y' if total == 1 else 'ies'}")


if __name__ == "__main__":
    cli()
