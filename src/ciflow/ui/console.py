"""Console output formatting utilities for ciflow."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, Iterable, List, Optional

from ..executor import ExecutionListener
from ..model import JobInstance, JobStatus, StepResult, StepStatus

if TYPE_CHECKING:
    from ..reporter import RunReport


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug
        # worker threads report progress concurrently
        self._lock = threading.Lock()

    def _print(self, *lines: str, err: bool = False) -> None:
        with self._lock:
            for line in lines:
                print(line, file=sys.stderr if err else sys.stdout)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._print(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        repository: str,
        workflow: str,
        run_id: str,
        instance_count: int,
    ) -> None:
        """Print run start information."""
        self._print(
            "\nRUN STARTED",
            f"Repository: {repository}",
            f"Workflow: {workflow}",
            f"Run ID: {run_id}",
            f"Job instances: {instance_count}",
            "",
        )

    def print_job_start(self, name: str) -> None:
        self._print(f"\nJOB STARTED: {name}")

    def print_step(self, job: str, result: StepResult) -> None:
        """Print one finished step with its outcome."""
        line = f"[{job}] STEP: {result.name} -> {result.status.value}"
        if result.status is StepStatus.FAILED and result.continued:
            line += " (continue-on-error)"
        lines = [line]
        if result.status is StepStatus.FAILED and result.message:
            lines.extend(self._failure_lines(result.message, result.exit_code))
        self._print(*lines)

    def print_job_finished(self, name: str, status: JobStatus, reason: Optional[str] = None) -> None:
        line = f"JOB {status.value.upper()}: {name}"
        if reason and status is not JobStatus.SUCCEEDED:
            line += f" ({reason.splitlines()[0]})"
        self._print(line)

    def _failure_lines(self, message: str, exit_code: Optional[int]) -> List[str]:
        lines: List[str] = []
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if self.debug:
            lines.append(f"Error details: {message}")
        else:
            # first line only outside debug mode
            lines.append(f"Error: {message.splitlines()[0]}")
            for extra in message.splitlines()[1:]:
                if extra.startswith("hint: "):
                    lines.append(f"Hint: {extra[len('hint: '):]}")
        return lines

    def print_plan(self, stages: Iterable[Iterable[str]], instances: dict[str, List[str]]) -> None:
        """Print topological stages and each job's expanded instances."""
        self.print_header("PLAN")
        for i, stage in enumerate(stages, start=1):
            self._print(f"Stage {i}:")
            for job in stage:
                ids = instances.get(job, [job])
                if len(ids) == 1 and ids[0] == job:
                    self._print(f"  {job}")
                else:
                    self._print(f"  {job} ({len(ids)} instances)")
                    self._print(*(f"    - {inst}" for inst in ids))

    def print_not_triggered(self, workflow: str, event: str, ref: str) -> None:
        self._print(f"Workflow '{workflow}' is not triggered by {event} on {ref}; nothing to run.")

    def print_results(self, report: "RunReport") -> None:
        """Print final results summary."""
        rows = ["\n" + "=" * 40, "RESULTS", "=" * 40]
        for job in report.jobs:
            rows.append(f"  {job['id']}: {job['status'].upper()}")
        rows.append("-" * 40)
        rows.append(f"Run {report.status.value.upper()} (exit code {report.exit_code})")
        if report.duration is not None:
            rows.append(f"Duration: {report.duration:.1f}s")
        self._print(*rows)

    def print_history(self, runs: List[dict]) -> None:
        """Print one line per recorded run, newest first."""
        if not runs:
            self._print("No recorded runs.")
            return
        self.print_header("HISTORY")
        self._print(*(
            f"{r['run_id']}  {r['status'].upper():<9}  {r['workflow']}  {r['event']} {r['ref']}"
            for r in runs
        ))

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
        lines.extend(f"  {d}" for d in details or [])
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._print(*lines, err=True)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            self._print(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        self._print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._print(f"[DEBUG] {message}", err=True)


class ConsoleListener(ExecutionListener):
    """Forwards executor progress to a Console."""

    def __init__(self, console: Console):
        self.console = console

    def job_started(self, instance: JobInstance) -> None:
        self.console.print_job_start(instance.instance_id)

    def step_finished(self, instance: JobInstance, result: StepResult) -> None:
        self.console.print_step(instance.instance_id, result)

    def job_finished(self, instance: JobInstance) -> None:
        self.console.print_job_finished(instance.instance_id, instance.status, instance.reason)


# Global console instance (initialized by the CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    global _console
    _console = console
