# cli.py
from __future__ import annotations

import json
import logging
import signal
import subprocess
import sys
from pathlib import Path

import click

from dagci.config import DEFAULT_WORKFLOW, RunConfig
from dagci.dag import GraphError, build_graph, topo_levels
from dagci.definition import DefinitionError, load_definition
from dagci.git_facts.git import current_branch, repo_root as git_repo_root
from dagci.model import CorrelationPolicy, Pipeline
from dagci.runner import CancelToken, run_pipeline
from dagci.trigger import PULL_REQUEST, PUSH, Decision, Event, evaluate, event_from_payload
from dagci.ui.console import Console, get_console, set_console

EXIT_STRUCTURAL = 2


def find_workflow_files() -> list[Path]:
    """
    Find all workflow files in the current directory.

    Returns:
        List of Path objects for workflow files
    """
    current_dir = Path(".")
    default_workflow = current_dir / DEFAULT_WORKFLOW

    workflow_files = []
    if default_workflow.exists():
        workflow_files.append(default_workflow)
    for pattern in ("*_workflow.py", "dagci.yml", "dagci.yaml"):
        for path in current_dir.glob(pattern):
            if path != default_workflow:
                workflow_files.append(path)
    return sorted(workflow_files)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and not workflow_path.suffix:
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  dagci run --workflow my_workflow.py",
            )
            sys.exit(1)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", f"  {DEFAULT_WORKFLOW}", "  *_workflow.py", "  dagci.yml"],
            suggestion=f"Create a workflow file:\n  {DEFAULT_WORKFLOW}\n\nOr specify a workflow explicitly:\n  dagci run --workflow my_workflow.py",
        )
        sys.exit(1)

    if len(workflow_files) > 1:
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[str(f) for f in workflow_files],
            suggestion=f"Specify a workflow explicitly:\n  dagci run --workflow {DEFAULT_WORKFLOW}",
        )
        sys.exit(1)

    return workflow_files[0]


def load_or_exit(workflow: str | None) -> Pipeline:
    console = get_console()
    path = discover_workflow(workflow)
    try:
        return load_definition(path)
    except (DefinitionError, FileNotFoundError) as e:
        console.print_error("Failed to load workflow", f"Could not load workflow from {path}", details=[str(e)])
        sys.exit(1)


def build_event(event_kind: str, branch: str | None, action: str | None, base_branch: str | None, event_file: str | None) -> Event:
    """Assemble the triggering event from CLI flags, a payload file or git."""
    if event_file:
        try:
            with open(event_file) as f:
                payload = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            get_console().print_error("Invalid event file", f"Could not read event payload from {event_file}", details=[str(e)])
            sys.exit(1)
        return event_from_payload(event_kind, payload)

    if event_kind == PUSH and branch is None:
        try:
            branch = current_branch()
        except (subprocess.CalledProcessError, FileNotFoundError):
            get_console().print_debug("could not determine the current git branch")
    return Event(kind=event_kind, branch=branch, action=action, base_branch=base_branch)


def event_options(fn):
    """Options shared by every command that evaluates an event."""
    fn = click.option("--event-file", type=click.Path(exists=True, dir_okay=False), default=None,
                      help="JSON webhook payload describing the event")(fn)
    fn = click.option("--base-branch", default=None, help="Pull request base branch")(fn)
    fn = click.option("--action", default=None, help="Pull request action (opened, synchronize, ...)")(fn)
    fn = click.option("--branch", default=None, help="Pushed branch (defaults to the current git branch)")(fn)
    fn = click.option("--event", "event_kind", type=click.Choice([PUSH, PULL_REQUEST]), default=PUSH,
                      show_default=True, help="Kind of triggering event")(fn)
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
    """dagci: matrix-aware CI pipeline runner."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    set_console(Console(debug=debug))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--workflow", default=None, help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)")
@event_options
@click.option("--workers", default=None, type=click.IntRange(min=0), envvar="DAGCI_WORKERS",
              help="Concurrent job slots (0 or unset: no limit)")
@click.option("--timeout", default=None, type=click.FloatRange(min=0, min_open=True), envvar="DAGCI_TIMEOUT",
              help="Cancel the run after this many seconds")
@click.option("--correlation", type=click.Choice([p.value for p in CorrelationPolicy]),
              default=CorrelationPolicy.BROADCAST.value, envvar="DAGCI_CORRELATION", show_default=True,
              help="How needs between matrix jobs are paired")
@click.option("--repo-root", "repo_root_opt", default=None, help="Directory steps run in (defaults to the git root)")
@click.option("--skip-unknown-actions", is_flag=True, default=False,
              help="Treat 'uses' steps without a handler as passed")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the report as JSON")
@click.option("--quiet", is_flag=True, default=False, help="Only print the final results")
@click.pass_context
def run(ctx, workflow, event_kind, branch, action, base_branch, event_file, workers, timeout,
        correlation, repo_root_opt, skip_unknown_actions, as_json, quiet):
    """Run a dagci workflow for one event."""
    console = Console(debug=ctx.obj.get("debug", False), quiet=quiet or as_json)
    set_console(console)

    if repo_root_opt is None:
        try:
            repo_root_opt = str(git_repo_root())
        except (subprocess.CalledProcessError, FileNotFoundError):
            repo_root_opt = "."

    pipeline = load_or_exit(workflow)
    event = build_event(event_kind, branch, action, base_branch, event_file)
    config = RunConfig(
        max_workers=workers,
        timeout=timeout,
        correlation=CorrelationPolicy(correlation),
        skip_unknown_actions=skip_unknown_actions,
        repo_root=repo_root_opt,
    )

    cancel = CancelToken()
    previous = signal.signal(signal.SIGTERM, lambda *_: cancel.cancel("terminated"))
    try:
        report = run_pipeline(pipeline, event, config=config, cancel=cancel, console=console)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)
    finally:
        signal.signal(signal.SIGTERM, previous)

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
    elif report.triggered and not report.structural:
        console.print_results(report)

    if report.structural:
        sys.exit(EXIT_STRUCTURAL)
    sys.exit(report.exit_code)


@cli.command()
@click.option("--workflow", default=None, help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)")
@click.option("--correlation", type=click.Choice([p.value for p in CorrelationPolicy]),
              default=CorrelationPolicy.BROADCAST.value, envvar="DAGCI_CORRELATION", show_default=True)
def plan(workflow, correlation):
    """Expand the matrix and print the stages without running anything."""
    console = get_console()
    pipeline = load_or_exit(workflow)
    try:
        graph = build_graph(pipeline.jobs, correlation=CorrelationPolicy(correlation))
    except GraphError as e:
        console.print_error("Invalid pipeline", str(e))
        sys.exit(EXIT_STRUCTURAL)

    console.print_header(f"{pipeline.name}: {len(graph)} job(s)")
    console.print_plan(topo_levels(graph))
    for tid in graph.empty_templates:
        console.print_plan_job(tid, "empty matrix, never runs")


@cli.command("check-trigger")
@click.option("--workflow", default=None, help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)")
@event_options
def check_trigger(workflow, event_kind, branch, action, base_branch, event_file):
    """Tell whether an event would start a run (exit 0 yes, 1 ignored, 2 rejected)."""
    console = get_console()
    pipeline = load_or_exit(workflow)
    decision = evaluate(build_event(event_kind, branch, action, base_branch, event_file), pipeline.triggers)
    console.print_info(f"{decision.decision.value}: {decision.reason}")
    sys.exit({Decision.ACCEPTED: 0, Decision.IGNORED: 1, Decision.REJECTED: 2}[decision.decision])


if __name__ == "__main__":
    cli()
