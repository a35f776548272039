"""Console output formatting for the relayci CLI."""

from __future__ import annotations

import sys
import traceback
from typing import Dict, Iterable, Optional

from ..model import JobRun, JobStatus


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, stream=None):
        """
        Args:
            debug: If True, show detailed output including stack traces
            stream: Where regular output goes (stdout by default)
        """
        self.debug = debug
        self._stream = stream

    def _out(self, text: str = "") -> None:
        print(text, file=self._stream or sys.stdout)

    def _err(self, text: str = "") -> None:
        print(text, file=sys.stderr)

    def print_header(self, title: str) -> None:
        self._out(f"\n{title}")
        self._out("-" * len(title))

    def print_run_started(self, run_id: str, pipeline: str, event: str, job_count: int) -> None:
        self._out("\nRUN STARTED")
        self._out(f"Run: {run_id}")
        self._out(f"Pipeline: {pipeline}")
        self._out(f"Event: {event}")
        self._out(f"Jobs: {job_count}")
        self._out()

    def print_job_start(self, name: str) -> None:
        self._out(f"\nJOB STARTED: {name}")

    def print_job_finished(self, job_run: JobRun) -> None:
        """Print the job's log followed by its final status."""
        for line in job_run.log:
            self._out(f"  {line}")
        status = job_run.status
        if status is JobStatus.SUCCESS:
            self._out(f"STATUS: success ({job_run.name})")
        elif status is JobStatus.SKIPPED:
            self._out(f"\nJOB SKIPPED: {job_run.name} ({job_run.reason})")
        elif status is JobStatus.CANCELLED:
            self._out(f"JOB CANCELLED: {job_run.name} ({job_run.reason})")
        else:
            self.print_failure(job_run.name, job_run.reason or "failure", is_job=True)

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        is_job: bool = False,
    ) -> None:
        prefix = "JOB FAILED" if is_job else "STEP FAILED"
        self._out(f"{prefix}: {name}")
        if exit_code is not None:
            self._out(f"Exit code: {exit_code}")
        if hint:
            self._out(f"Hint: {hint}")
        # first line only unless debugging
        self._out(f"Reason: {reason if self.debug else reason.split(chr(10))[0]}")

    def print_plan(self, levels: Iterable[Iterable[str]]) -> None:
        self.print_header("PLAN")
        for i, level in enumerate(levels, start=1):
            self._out(f"  {i}. {', '.join(level)}")

    def print_plan_job(self, name: str, reason: str) -> None:
        self._out(f"  {name} ({reason})")

    def print_results(self, results: Dict[str, str], status: Optional[str] = None) -> None:
        self._out("\n" + "=" * 40)
        self._out("RESULTS")
        self._out("=" * 40)
        for job, job_status in results.items():
            self._out(f"  {job}: {job_status.upper()}")
        if status is not None:
            self._out(f"\nRUN: {status.upper()}")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """Print a structured error message to stderr."""
        self._err(f"\nERROR: {title}")
        self._err(message)
        for detail in details or []:
            self._err(f"  {detail}")
        if suggestion:
            self._err(f"\n{suggestion}")

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            traceback.print_exception(type(exc), exc, exc.__traceback__, file=sys.stderr)
        else:
            self._err(f"Error: {exc}")

    def print_info(self, message: str) -> None:
        self._out(message)

    def print_debug(self, message: str) -> None:
        if self.debug:
            self._err(f"[DEBUG] {message}")


# Global console instance (initialized by the CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    global _console
    _console = console
