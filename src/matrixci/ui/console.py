"""Console output formatting for matrixci runs."""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from ..matrix import PipelinePlan
    from ..model import JobResult, PipelineVerdict, StageDefinition, StageResult

# tail of a failing job's output shown without --debug
OUTPUT_TAIL = 4000


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show full job output and stack traces
        """
        self.debug = debug

    def print_header(self, title: str) -> None:
        """Print a section header."""
        print(f"\n{title}")
        print("-" * len(title))

    def print_run_started(self, workflow: str, stage_count: int, job_count: int) -> None:
        """Print run start information."""
        print("\nRUN STARTED")
        print(f"Workflow: {workflow}")
        print(f"Stages: {stage_count}")
        print(f"Jobs: {job_count}")

    def print_plan(self, plan: PipelinePlan) -> None:
        """Print the expanded stages and jobs without running anything."""
        for stage in plan.stages:
            flags = []
            if stage.fast_finish:
                flags.append("fast_finish")
            if stage.allow_failure:
                flags.append("allow_failure")
            suffix = f" [{', '.join(flags)}]" if flags else ""
            self.print_header(f"Stage {stage.position}: {stage.name}{suffix}")
            for job in stage.jobs:
                marker = " (allowed to fail)" if job.allow_failure else ""
                cache = " cache" if job.cache is not None else ""
                print(f"  {job.number:<6} {job.label}{marker}{cache}")
        if plan.after_success is not None:
            self.print_header("after_success")
            for command in plan.after_success.hooks.script:
                print(f"  $ {command}")

    def print_stage_start(self, stage: StageDefinition) -> None:
        """Print stage start message."""
        print(f"\nSTAGE STARTED: {stage.name} ({len(stage.jobs)} job(s))")

    def print_job_finished(self, result: JobResult) -> None:
        """Print one job's outcome, with its output if it failed."""
        job = result.job
        status = result.status.value.upper()
        if result.allowed_failure:
            status += " (allowed failure)"
        print(f"  [{job.number}] {job.label}: {status} ({result.duration:.1f}s)")
        if result.failed and not result.tolerated:
            self.print_job_output(result)
        elif self.debug and result.output:
            self.print_job_output(result)

    def print_job_output(self, result: JobResult) -> None:
        """Print captured output; only the tail unless in debug mode."""
        if result.exit_code is not None:
            print(f"  Exit code: {result.exit_code}")
        if result.error:
            print(f"  Error: {result.error}")
        output = result.output
        if not output:
            return
        if not self.debug and len(output) > OUTPUT_TAIL:
            output = "...\n" + output[-OUTPUT_TAIL:]
        for line in output.rstrip("\n").splitlines():
            print(f"    {line}")

    def print_stage_finished(self, stage: StageResult) -> None:
        """Print stage outcome."""
        status = stage.status.value.upper()
        if stage.tolerated:
            status += " (allowed failure)"
        print(f"STAGE {stage.stage.name}: {status}")

    def print_verdict(self, verdict: PipelineVerdict) -> None:
        """Print final results summary."""
        print("\n" + "=" * 40)
        print("RESULTS")
        print("=" * 40)
        for stage in verdict.stages:
            print(f"  {stage.stage.name}: {stage.status.value.upper()}")
            for r in stage.results:
                note = " (allowed failure)" if r.allowed_failure else ""
                print(f"    {r.job.number:<6} {r.job.label}: {r.status.value.upper()}{note}")
        if verdict.after_success is not None:
            print(f"  after_success: {verdict.after_success.status.value.upper()}")
        print(f"\nPIPELINE: {verdict.status.value.upper()}")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        print(message)


# Global console instance (initialized by the CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
