"""Console output formatting utilities for dagci."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from ..report import RunReport
    from ..trigger import RunDecision


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, only errors and the final results are printed
        """
        self.debug = debug
        self.quiet = quiet
        # jobs report progress from worker threads
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        pipeline: str,
        trigger: str,
        job_count: int,
    ) -> None:
        """Print run start information."""
        if self.quiet:
            return
        self._out(
            "\nRUN STARTED",
            f"Pipeline: {pipeline}",
            f"Trigger: {trigger}",
            f"Jobs: {job_count}",
            "",
        )

    def print_not_triggered(self, decision: "RunDecision") -> None:
        """Print why an event did not start a run."""
        if not self.quiet:
            self._out(f"NO RUN ({decision.decision.value}): {decision.reason}")

    def print_plan(self, levels: List[List[str]]) -> None:
        """Print the stages a run would go through."""
        for idx, level in enumerate(levels):
            self._out(f"=== Stage {idx + 1} ===")
            for name in level:
                self.print_plan_job(name)

    def print_plan_job(self, name: str, reason: str | None = None) -> None:
        """Print job selection plan."""
        self._out(f"  {name} ({reason})" if reason else f"  {name}")

    def print_job_start(self, name: str) -> None:
        """Print job start message."""
        if not self.quiet:
            self._out(f"JOB STARTED: {name}")

    def print_step(self, job: str, name: str) -> None:
        """Print step start message."""
        if not self.quiet:
            self._out(f"[{job}] STEP: {name}")

    def print_success(self, name: str, duration: Optional[float] = None) -> None:
        """Print success message."""
        if self.quiet:
            return
        took = f" in {duration:.1f}s" if duration is not None else ""
        self._out(f"JOB SUCCEEDED: {name}{took}")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        output: str = "",
        is_job: bool = False,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job or step name
            reason: Failure reason/error message
            exit_code: Optional exit code
            output: Captured output, shown only in debug mode
            is_job: If True, print "JOB FAILED", otherwise "STEP FAILED"
        """
        if self.quiet:
            return
        prefix = "JOB FAILED" if is_job else "STEP FAILED"
        lines = [f"{prefix}: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        # first line only unless debugging
        lines.append(f"Error: {reason if self.debug else (reason or 'Unknown error').splitlines()[0]}")
        if self.debug and output:
            lines.append(output.rstrip())
        self._out(*lines)

    def print_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped message."""
        if not self.quiet:
            self._out(f"JOB SKIPPED: {name} ({reason})")

    def print_cancelled(self, reason: str) -> None:
        self._out(f"\nRUN CANCELLED: {reason}", err=True)

    def print_results(self, report: "RunReport") -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        width = max((len(j.id) for j in report.jobs), default=0)
        for job in report.jobs:
            status = job.status.value.upper() if job.status is not None else "NOT EVALUATED"
            took = f"  {job.duration:.1f}s" if job.duration is not None else ""
            why = f"  ({job.reason})" if job.reason and job.status is not None and job.status.value != "succeeded" else ""
            lines.append(f"  {job.id.ljust(width)}  {status}{took}{why}")
        lines.append("-" * 40)
        lines.append(f"VERDICT: {report.verdict.value.upper()}")
        self._out(*lines)

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
        lines = [f"\nERROR: {title}", message]
        if details:
            lines.extend(f"  {detail}" for detail in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out(*lines, err=True)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


# Global console instance (will be initialized by CLI)
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
