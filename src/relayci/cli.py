# cli.py
from __future__ import annotations

import json
import signal
import subprocess
import sys
import urllib.error
import urllib.request
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple
from urllib.parse import urljoin

import click

from . import git
from .artifacts import ArtifactStore, LocalDiskBackend, purge_expired
from .config import Settings, get_settings
from .dag import JobGraph
from .errors import PipelineError
from .loader import find_pipeline_file, load_pipeline
from .model import Event, Pipeline, PipelineRun, RunStatus
from .notify import LogSink, WebhookSink
from .scheduler import Scheduler
from .secrets import ChainSecretProvider, EnvSecretProvider, StaticSecretProvider
from .triggers import DISPATCH, EVENT_KINDS, PULL_REQUEST, PUSH, SCHEDULE, TriggerMatcher
from .ui.console import Console, get_console, set_console
from .utils.logging import configure_logging

EXIT_FAILURE = 1
EXIT_DEFINITION = 2
EXIT_INTERRUPTED = 130


def _pairs(values: Tuple[str, ...], option: str) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected NAME=VALUE, got {item!r}", param_hint=option)
        out[key] = value
    return out


def _load(pipeline_arg: Optional[str], settings: Settings) -> Pipeline:
    """Resolve the pipeline path (flag, then settings, then defaults) and load it."""
    console = get_console()
    try:
        if pipeline_arg:
            path = Path(pipeline_arg)
        elif settings.pipeline is not None:
            path = settings.pipeline
        else:
            path = find_pipeline_file(".")
        console.print_debug(f"loading pipeline from {path}")
        return load_pipeline(path)
    except PipelineError as e:
        console.print_error(
            "Invalid pipeline",
            str(e),
            suggestion="Check the pipeline file, or pass one explicitly:\n  relayci run --pipeline relayci.yml",
        )
        sys.exit(EXIT_DEFINITION)


def _git_or_default(fn, default: str = "") -> str:
    try:
        return fn()
    except (subprocess.CalledProcessError, FileNotFoundError):
        return default


def _git_changed_files(kind: str, base_ref: Optional[str]) -> List[str]:
    """Files a push (last commit) or pull request (since the merge base) touched."""
    try:
        if kind == PULL_REQUEST:
            target = (base_ref or "main").removeprefix("refs/heads/")
            return git.changed_files(git.merge_base(f"origin/{target}"))
        return git.changed_files("HEAD~1")
    except (subprocess.CalledProcessError, FileNotFoundError):
        return []


def _build_event(
    kind: str,
    ref: Optional[str],
    sha: Optional[str],
    base_ref: Optional[str],
    changed: Tuple[str, ...],
    tick: Optional[datetime],
    inputs: Dict[str, str],
) -> Event:
    if ref is None:
        branch = _git_or_default(git.current_branch)
        ref = f"refs/heads/{branch}" if branch else ""
    if sha is None:
        sha = _git_or_default(git.head_sha)
    if not changed and kind in (PUSH, PULL_REQUEST):
        changed = tuple(_git_changed_files(kind, base_ref))
    if kind == SCHEDULE and tick is None:
        tick = datetime.now(timezone.utc)
    return Event(
        kind=kind,
        ref=ref,
        sha=sha,
        base_ref=base_ref or "",
        changed_files=list(changed),
        tick=tick,
        inputs=inputs,
    )


def event_options(fn):
    """Options shared by every command that builds an Event."""
    options = [
        click.option("--event", "kind", type=click.Choice(EVENT_KINDS), default=DISPATCH, show_default=True,
                     help="Event kind"),
        click.option("--ref", default=None, help="Git ref (defaults to the current branch)"),
        click.option("--sha", default=None, help="Commit sha (defaults to HEAD)"),
        click.option("--base-ref", default=None, help="Pull request target ref"),
        click.option("--changed", multiple=True, help="Changed file path (repeatable; defaults to what git reports)"),
        click.option("--tick", type=click.DateTime(), default=None, help="Schedule tick (defaults to now, UTC)"),
        click.option("--input", "inputs", multiple=True, help="Dispatch input NAME=VALUE (repeatable)"),
    ]
    for option in reversed(options):
        fn = option(fn)
    return fn


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """relayci: DAG-scheduled CI/CD pipelines."""
    settings = get_settings()
    configure_logging("DEBUG" if debug else settings.log_level)
    set_console(Console(debug=debug))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["settings"] = settings


@cli.command()
@click.option("--pipeline", "pipeline_arg", default=None, help="Pipeline file (defaults to relayci.yml if present)")
@click.option("--workers", default=None, type=click.IntRange(min=1), help="Max parallel jobs")
@click.option("--fail-fast/--no-fail-fast", default=None, help="Cancel pending jobs after the first failure")
@click.option("--grace-period", default=None, type=float, help="Seconds between SIGTERM and SIGKILL on cancel")
@click.option("--secret", "secret_pairs", multiple=True, help="Secret NAME=VALUE (repeatable)")
@click.option("--isolate/--shared", default=True, show_default=True,
              help="Run every job in its own copy of the workspace, or all jobs in the workspace itself")
@event_options
@click.pass_context
def run(ctx, pipeline_arg, workers, fail_fast, grace_period, secret_pairs, isolate,
        kind, ref, sha, base_ref, changed, tick, inputs):
    """Run a pipeline locally. A local run ignores the trigger rules."""
    console = get_console()
    settings: Settings = ctx.obj["settings"]

    pipeline = _load(pipeline_arg, settings)
    event = _build_event(kind, ref, sha, base_ref, changed, tick, _pairs(inputs, "--input"))
    run_ = PipelineRun(pipeline, event)

    sinks = [LogSink()]
    if settings.webhook_url:
        sinks.append(WebhookSink(settings.webhook_url))

    scheduler = Scheduler(
        max_workers=workers or settings.max_workers,
        fail_fast=settings.fail_fast if fail_fast is None else fail_fast,
        grace_period=settings.grace_period if grace_period is None else grace_period,
        workspace=".",
        isolate_workspaces=isolate,
        copy_workspace=isolate,
        work_dir=settings.work_dir,
        artifact_backend=LocalDiskBackend(settings.artifact_dir),
        retention_days=settings.retention_days,
        secrets=ChainSecretProvider(
            StaticSecretProvider(_pairs(secret_pairs, "--secret")),
            EnvSecretProvider(settings.secret_prefix),
        ),
        sinks=sinks,
        on_job_start=lambda jr: console.print_job_start(jr.name),
        on_job_finish=console.print_job_finished,
    )

    console.print_run_started(run_.run_id, pipeline.name, event.kind, len(pipeline.jobs))

    def _interrupt(signum, frame):
        console.print_info("\nInterrupted, cancelling run...")
        run_.cancel()

    previous = signal.signal(signal.SIGINT, _interrupt)
    try:
        status = scheduler.run(run_)
    except PipelineError as e:
        console.print_error("Pipeline cannot run", str(e))
        sys.exit(EXIT_DEFINITION)
    finally:
        signal.signal(signal.SIGINT, previous)

    console.print_results({n: s.value for n, s in run_.statuses().items()}, status.value)
    if status is RunStatus.CANCELLED:
        sys.exit(EXIT_INTERRUPTED)
    if status is not RunStatus.SUCCESS:
        sys.exit(EXIT_FAILURE)


@cli.command()
@click.option("--pipeline", "pipeline_arg", default=None, help="Pipeline file")
@click.pass_context
def validate(ctx, pipeline_arg):
    """Load and check a pipeline without running anything."""
    pipeline = _load(pipeline_arg, ctx.obj["settings"])
    get_console().print_info(f"OK: pipeline '{pipeline.name}' ({len(pipeline.jobs)} jobs)")


@cli.command()
@click.option("--pipeline", "pipeline_arg", default=None, help="Pipeline file")
@click.pass_context
def plan(ctx, pipeline_arg):
    """Print the jobs grouped into dependency levels."""
    console = get_console()
    pipeline = _load(pipeline_arg, ctx.obj["settings"])
    graph = JobGraph.build(pipeline.jobs)
    console.print_plan(graph.levels())
    for job in pipeline.jobs:
        if job.condition:
            console.print_plan_job(job.name, f"if: {job.condition}")


@cli.command()
@click.option("--pipeline", "pipeline_arg", default=None, help="Pipeline file")
@click.option("--api", default=None, help="Control plane URL; when set the event is posted there instead")
@event_options
@click.pass_context
def trigger(ctx, pipeline_arg, api, kind, ref, sha, base_ref, changed, tick, inputs):
    """Check whether an event would start the pipeline."""
    console = get_console()
    event = _build_event(kind, ref, sha, base_ref, changed, tick, _pairs(inputs, "--input"))

    if api:
        _post_event(api, event)
        return

    pipeline = _load(pipeline_arg, ctx.obj["settings"])
    matcher = TriggerMatcher(pipeline.triggers)
    if matcher.matches(event):
        console.print_info(f"MATCH: {event.kind} starts '{pipeline.name}'")
        return
    console.print_info(f"NO MATCH: {event.kind} does not start '{pipeline.name}'")
    sys.exit(EXIT_FAILURE)


def _post_event(api: str, event: Event) -> None:
    console = get_console()
    url = urljoin(api.rstrip("/") + "/", "events")
    body = {
        "kind": event.kind,
        "ref": event.ref,
        "sha": event.sha,
        "base_ref": event.base_ref,
        "changed_files": event.changed_files,
        "tick": event.tick.isoformat() if event.tick else None,
        "inputs": event.inputs,
    }
    req = urllib.request.Request(
        url,
        data=json.dumps(body).encode("utf-8"),
        headers={"Content-Type": "application/json"},
        method="POST",
    )
    try:
        with urllib.request.urlopen(req) as response:
            result = json.loads(response.read().decode("utf-8") or "{}")
    except urllib.error.HTTPError as e:
        error_body = e.read().decode("utf-8") if e.fp else ""
        console.print_error("API request failed", f"HTTP {e.code} {e.reason}",
                            details=[error_body] if error_body else None)
        sys.exit(EXIT_FAILURE)
    except urllib.error.URLError as e:
        console.print_error("Network error", f"Could not connect to {api}", details=[str(e.reason)],
                            suggestion="Verify the API URL is correct and the control plane is running.")
        sys.exit(EXIT_FAILURE)

    if result.get("started"):
        console.print_info(f"Run started: {result.get('run_id')}")
    else:
        console.print_info(f"No run started: {result.get('reason', 'no match')}")


@cli.group()
def artifacts():
    """Manage stored artifacts."""


@artifacts.command("list")
@click.argument("run_id")
@click.pass_context
def artifacts_list(ctx, run_id):
    """List the artifacts of one run."""
    console = get_console()
    store = ArtifactStore(LocalDiskBackend(ctx.obj["settings"].artifact_dir), run_id)
    for artifact in store.list():
        console.print_info(f"{artifact.name}\t{artifact.size} bytes\t{len(artifact.files)} files")


@artifacts.command("purge")
@click.option("--run-id", default=None, help="Only purge artifacts of this run")
@click.pass_context
def artifacts_purge(ctx, run_id):
    """Delete artifacts past their retention."""
    console = get_console()
    removed = purge_expired(LocalDiskBackend(ctx.obj["settings"].artifact_dir), run_id=run_id)
    for artifact in removed:
        console.print_info(f"purged {artifact.run_id}/{artifact.name}")
    console.print_info(f"{len(removed)} artifact(s) purged")


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
