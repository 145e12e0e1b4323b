# cli.py
from __future__ import annotations

import json
import logging
import signal
import sys
import threading
from pathlib import Path

import click

from matrixci.errors import CIError, ConfigurationError
from matrixci.matrix import plan_pipeline
from matrixci.model import EXIT_CANCELLED, EXIT_FAILURE
from matrixci.process import CancelToken
from matrixci.runner import load_workflow, run_pipeline
from matrixci.settings import Settings
from matrixci.ui.console import Console, set_console, get_console

DEFAULT_WORKFLOW = "matrixci_workflow.py"


def find_workflow_files(root: Path = Path(".")) -> list[Path]:
    """
    Find all workflow files in a directory.

    Returns:
        List of Path objects for workflow files
    """
    workflow_files = []

    default_workflow = root / DEFAULT_WORKFLOW
    if default_workflow.exists():
        workflow_files.append(default_workflow)

    for path in root.glob("*_workflow.py"):
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
        if not workflow_path.exists() and workflow_path.suffix != ".py":
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  matrixci run --workflow my_workflow.py",
            )
            sys.exit(EXIT_FAILURE)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=[
                "Looked for:",
                f"  {DEFAULT_WORKFLOW}",
                "  *_workflow.py",
            ],
            suggestion=f"Create a workflow file:\n  {DEFAULT_WORKFLOW}\n\nOr specify a workflow explicitly:\n  matrixci run --workflow my_workflow.py",
        )
        sys.exit(EXIT_FAILURE)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion=f"Specify a workflow explicitly:\n  matrixci run --workflow {DEFAULT_WORKFLOW}",
        )
        sys.exit(EXIT_FAILURE)

    return workflow_files[0]


def _install_sigterm(cancel: CancelToken):
    """SIGTERM cancels the running jobs. Returns the handler to restore (None if not installed)."""
    if threading.current_thread() is not threading.main_thread():
        return None
    return signal.signal(signal.SIGTERM, lambda signum, frame: cancel.cancel())


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (full job output, stack traces and debug logging)",
)
@click.pass_context
def cli(ctx, debug):
    """matrixci: build-matrix CI pipeline runner."""
    console = Console(debug=debug)
    set_console(console)
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option(
    "--workflow",
    default=None,
    help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)",
)
@click.option("--workers", default=None, type=click.IntRange(min=1), help="Max concurrent jobs per stage")
@click.option("--cache-dir", default=None, help="Cache directory (env: MATRIXCI_CACHE_DIR)")
@click.option("--redis-url", default=None, help="Store the cache in redis (env: MATRIXCI_REDIS_URL)")
@click.option("--timeout", default=None, type=click.FloatRange(min=0, min_open=True), help="Default per-job timeout in seconds")
@click.option("--report", default=None, type=click.Path(dir_okay=False), help="Write a JSON verdict report to this file")
@click.pass_context
def run(ctx, workflow, workers, cache_dir, redis_url, timeout, report):
    """Run a matrixci pipeline."""
    console = get_console()

    workflow_path = discover_workflow(workflow)
    cancel = CancelToken()

    try:
        settings = Settings.from_env().override(
            cache_dir=cache_dir,
            redis_url=redis_url,
            workers=workers,
            job_timeout=timeout,
        )
        declaration = load_workflow(workflow_path)
        plan = plan_pipeline(declaration, repo_root=".")

        console.print_run_started(
            workflow=workflow_path.name,
            stage_count=len(plan.stages),
            job_count=len(plan.jobs),
        )

        previous = _install_sigterm(cancel)
        try:
            verdict = run_pipeline(
                declaration,
                repo_root=".",
                settings=settings,
                cancel=cancel,
                plan=plan,
            )
        finally:
            if previous is not None:
                signal.signal(signal.SIGTERM, previous)

        console.print_verdict(verdict)
        if report:
            Path(report).write_text(json.dumps(verdict.to_dict(), indent=2), encoding="utf-8")
            console.print_info(f"Report written to {report}")

        sys.exit(verdict.exit_code)

    except KeyboardInterrupt:
        cancel.cancel()
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_CANCELLED)
    except ConfigurationError as e:
        console.print_error("Invalid pipeline", e.message, details=[f"{k}: {v}" for k, v in e.details.items()])
        sys.exit(EXIT_FAILURE)
    except CIError as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILURE)


@cli.command()
@click.option(
    "--workflow",
    default=None,
    help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)",
)
@click.pass_context
def plan(ctx, workflow):
    """Print the expanded stages and jobs without running them."""
    console = get_console()
    workflow_path = discover_workflow(workflow)

    try:
        declaration = load_workflow(workflow_path)
        expanded = plan_pipeline(declaration, repo_root=".")
    except ConfigurationError as e:
        console.print_error("Invalid pipeline", e.message, details=[f"{k}: {v}" for k, v in e.details.items()])
        sys.exit(EXIT_FAILURE)

    console.print_plan(expanded)


if __name__ == "__main__":
    cli()
