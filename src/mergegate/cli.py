# cli.py
from __future__ import annotations

import signal
import sys
import threading
from pathlib import Path
from typing import Optional

import click

from mergegate.cache import CacheStore
from mergegate.errors import ConfigurationError
from mergegate.loader import load_workflow
from mergegate.model import Event, EventKind, Workflow
from mergegate.orchestrator import Orchestrator
from mergegate.report import render_report, write_report
from mergegate.settings import Settings
from mergegate.ui.console import Console, get_console, set_console

EXIT_CONFIG = 2

WORKFLOW_GLOBS = ("*_workflow.yml", "*_workflow.yaml", "*_workflow.py")
DEFAULT_WORKFLOWS = ("mergegate.yml", "mergegate.yaml")


def find_workflow_files(root: Path = Path(".")) -> list[Path]:
    """
    Find all workflow files in a directory.

    Looks for mergegate.yml and *_workflow.{yml,yaml,py}; falls back to
    .github/workflows/*.yml when none of those exist.
    """
    found: set[Path] = set()
    for name in DEFAULT_WORKFLOWS:
        if (root / name).exists():
            found.add(root / name)
    for pattern in WORKFLOW_GLOBS:
        found.update(root.glob(pattern))

    if not found:
        gh = root / ".github" / "workflows"
        found.update(gh.glob("*.yml"))
        found.update(gh.glob("*.yaml"))

    return sorted(found)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument, MERGEGATE_WORKFLOW, or the cwd.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  mergegate run --workflow ci.yml",
            )
            sys.exit(EXIT_CONFIG)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=[
                "Looked for:",
                "  mergegate.yml",
                "  *_workflow.yml / *_workflow.py",
                "  .github/workflows/*.yml",
            ],
            suggestion="Specify a workflow explicitly:\n  mergegate run --workflow ci.yml",
        )
        sys.exit(EXIT_CONFIG)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion="Specify a workflow explicitly:\n  mergegate run --workflow mergegate.yml",
        )
        sys.exit(EXIT_CONFIG)

    return workflow_files[0]


def _load(ctx: click.Context, workflow_arg: Optional[str], jobs: tuple[str, ...]) -> Workflow:
    console = get_console()
    workflow_path = discover_workflow(workflow_arg or ctx.obj["settings"].workflow)
    try:
        wf = load_workflow(workflow_path)
        if jobs:
            wf = wf.select(jobs)
    except ConfigurationError as e:
        console.print_error(
            "Invalid workflow",
            f"Could not load workflow from {workflow_path}",
            details=[str(e)],
        )
        sys.exit(EXIT_CONFIG)
    console.print_debug(f"Loaded {len(wf.jobs)} job(s) from {workflow_path}")
    return wf


def _event(kind: str, branch: str, source_branch: Optional[str]) -> Event:
    return Event(kind=EventKind(kind), branch=branch, source_branch=source_branch)


def _event_options(fn):
    fn = click.option("--source-branch", default=None, help="PR head branch (ignored for matching)")(fn)
    fn = click.option("--branch", required=True, help="Pushed branch (push) or target branch (pull_request)")(fn)
    fn = click.option(
        "--event",
        "kind",
        type=click.Choice([k.value for k in EventKind]),
        default=EventKind.PUSH.value,
        show_default=True,
        help="Event kind",
    )(fn)
    fn = click.option("--job", "jobs", multiple=True, help="Restrict to these job ids (repeatable)")(fn)
    fn = click.option("--workflow", default=None, help="Workflow file (.yml/.yaml/.py)")(fn)
    return fn


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("--quiet", is_flag=True, default=False, help="Hide per-step progress lines")
@click.option("--cache-dir", default=None, help="Cache directory [env: MERGEGATE_CACHE_DIR]")
@click.option("--work-dir", default=None, help="Job workspaces directory [env: MERGEGATE_WORK_DIR]")
@click.pass_context
def cli(ctx, debug, quiet, cache_dir, work_dir):
    """mergegate: event-triggered, cache-aware CI orchestrator."""
    console = Console(debug=debug, quiet=quiet)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["settings"] = Settings.from_env(cache_dir=cache_dir, work_dir=work_dir)


@cli.command()
@_event_options
@click.option("--source-root", default=".", show_default=True, help="Source tree checked out into each job")
@click.option("--step-timeout", default=None, type=float, help="Default per-step timeout in seconds")
@click.option("--keep-workspace/--no-keep-workspace", default=None, help="Keep job workspaces after the run")
@click.option("--report", "report_path", default=None, help="Also write the run report to this file")
@click.option("--print-plan/--no-print-plan", default=True, show_default=True, help="Print selected/skipped jobs")
@click.pass_context
def run(ctx, workflow, jobs, kind, branch, source_branch, source_root, step_timeout, keep_workspace, report_path, print_plan):
    """Run the jobs an event triggers and exit with the verdict."""
    console = get_console()
    wf = _load(ctx, workflow, jobs)
    settings = Settings.from_env(
        source_root=source_root,
        cache_dir=ctx.obj["settings"].cache_dir,
        work_dir=ctx.obj["settings"].work_dir,
        step_timeout=step_timeout,
        keep_workspace=keep_workspace,
    )
    event = _event(kind, branch, source_branch)

    cancel = threading.Event()

    def _stop(signum, frame):
        console.print_info(f"\nReceived signal {signum}, cancelling running jobs...")
        cancel.set()

    previous = {s: signal.signal(s, _stop) for s in (signal.SIGINT, signal.SIGTERM)}
    try:
        orchestrator = Orchestrator(CacheStore(settings.cache_dir), settings, console)
        verdict = orchestrator.run_workflow(event, wf, cancel=cancel, print_plan=print_plan)
    finally:
        for s, handler in previous.items():
            signal.signal(s, handler)

    if not verdict.noop:
        console.print_results(verdict)
    console.print_report("\n" + render_report(verdict))
    if report_path:
        write_report(verdict, report_path)
        console.print_debug(f"Report written to {report_path}")

    sys.exit(verdict.exit_code)


@cli.command()
@_event_options
@click.pass_context
def plan(ctx, workflow, jobs, kind, branch, source_branch):
    """Show which jobs an event would trigger, without running them."""
    console = get_console()
    wf = _load(ctx, workflow, jobs)
    event = _event(kind, branch, source_branch)
    console.print_header(f"Plan for {event.describe()} ({wf.name})")
    orchestrator = Orchestrator(CacheStore(ctx.obj["settings"].cache_dir), ctx.obj["settings"], console)
    selected = orchestrator.plan(event, wf)
    if not selected:
        console.print_noop(event.describe())


@cli.group()
def cache():
    """Inspect or prune the dependency cache."""


@cache.command("list")
@click.pass_context
def cache_list(ctx):
    console = get_console()
    store = CacheStore(ctx.obj["settings"].cache_dir)
    entries = store.entries()
    if not entries:
        console.print_info("cache is empty")
        return
    for e in entries:
        manifest = store.manifest(e.key)
        job = (manifest.get("payload") or {}).get("job", "?")
        size_kb = e.path.stat().st_size / 1024
        console.print_info(f"{e.key[:12]}  {job:<20} {size_kb:>9.1f} KiB  {e.created_at.isoformat(timespec='seconds')}")


@cache.command("prune")
@click.option("--keep", default=None, type=int, help="Number of newest entries to keep [env: MERGEGATE_CACHE_KEEP]")
@click.pass_context
def cache_prune(ctx, keep):
    console = get_console()
    settings = ctx.obj["settings"]
    store = CacheStore(settings.cache_dir)
    evicted = store.prune(keep if keep is not None else settings.cache_keep)
    console.print_info(f"evicted {len(evicted)} entr{'y' if len(evicted) == 1 else 'ies'}")


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (.yml/.yaml/.py)")
@click.option("--source-root", default=".", show_default=True, help="Source tree checked out into each job")
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, type=int, show_default=True)
@click.option("--max-runs", default=4, type=int, show_default=True, help="Concurrent workflow runs")
@click.option("--keep-runs", default=100, type=int, show_default=True, help="Finished runs kept queryable")
@click.pass_context
def serve(ctx, workflow, source_root, host, port, max_runs, keep_runs):
    """Serve the webhook endpoint that turns repository events into runs."""
    import uvicorn
    from mergegate.server.app import create_app

    wf = _load(ctx, workflow, ())
    settings = Settings.from_env(
        source_root=source_root,
        cache_dir=ctx.obj["settings"].cache_dir,
        work_dir=ctx.obj["settings"].work_dir,
    )
    app = create_app(wf, settings, max_runs=max_runs, keep_runs=keep_runs)
    uvicorn.run(app, host=host, port=port)


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
