"""Console output formatting utilities for matrixci."""

from __future__ import annotations

import sys
import threading
from typing import Any, Iterable, Optional


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, only print errors and the final results
        """
        self.debug = debug
        self.quiet = quiet
        # instances print from worker threads
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        if self.quiet and not err:
            return
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        repository: str,
        workflow: str,
        job_count: int,
        event: str = "",
        ref: str = "",
    ) -> None:
        """Print run start information."""
        lines = ["\nRUN STARTED", f"Repository: {repository}", f"Workflow: {workflow}", f"Jobs: {job_count}"]
        if event:
            lines.append(f"Trigger: {event} {ref}".rstrip())
        self._out(*lines, "")

    def print_stage(self, idx: int, names: Iterable[str]) -> None:
        self._out(f"=== Stage {idx}: {list(names)} ===")

    def print_job_start(self, name: str, instances: int = 1) -> None:
        """Print job start message."""
        suffix = f" ({instances} instances)" if instances > 1 else ""
        self._out(f"\nJOB STARTED: {name}{suffix}")

    def print_instance_start(self, instance: str) -> None:
        self._out(f"[{instance}] started")

    def print_step(self, instance: str, name: str) -> None:
        """Print step start message."""
        self._out(f"[{instance}] STEP: {name}")

    def print_step_skipped(self, instance: str, name: str, reason: str) -> None:
        self._out(f"[{instance}] STEP SKIPPED: {name} ({reason})")

    def print_step_failed(self, instance: str, failure: Any, ignored: bool = False) -> None:
        """
        Print a step failure.

        Args:
            instance: Job instance id
            failure: StepFailure describing what went wrong
            ignored: True when the step has continue_on_error set
        """
        prefix = "STEP FAILED (ignored)" if ignored else "STEP FAILED"
        lines = [f"[{instance}] {prefix}: {failure.step}"]
        if failure.exit_code is not None:
            lines.append(f"Exit code: {failure.exit_code}")
        hint = failure.details.get("hint")
        if hint:
            lines.append(f"Hint: {hint}")
        if self.debug:
            lines.append(f"Error details: {failure}")
        else:
            # first line only outside debug mode
            lines.append(f"Error: {str(failure).splitlines()[0]}")
        self._out(*lines, err=True)

    def print_job_finished(self, name: str, status: str, reason: str = "") -> None:
        tail = f" ({reason})" if reason else ""
        self._out(f"JOB {name}: {status.upper()}{tail}")

    def print_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped message."""
        self._out(f"\nJOB SKIPPED: {name}", f"STATUS: skipped ({reason})")

    def print_gate_decision(self, job: str, decision: Any) -> None:
        verdict = "eligible" if decision.eligible else "skipped"
        lines = [f"GATE {job}: {verdict}"]
        for check, ok in decision.checks:
            lines.append(f"  {'✓' if ok else '✗'} {check}")
        self._out(*lines)

    def print_plan_job(self, name: str, instances: Iterable[str], needs: Iterable[str]) -> None:
        """Print one job of the execution plan."""
        needs = list(needs)
        self._out(f"  {name}" + (f" (needs: {', '.join(needs)})" if needs else ""))
        for inst in instances:
            self._out(f"    - {inst}")

    def print_results(self, result: Any) -> None:
        """Print final results summary: every job and every instance."""
        lines = ["\n" + "=" * 40, "RESULTS", "=" * 40]
        for name, job in result.jobs.items():
            tag = " [advisory]" if job.advisory else ""
            lines.append(f"  {name}: {job.status.value.upper()}{tag}")
            if len(job.instances) > 1 or (job.instances and job.instances[0].instance.values):
                for inst in job.instances:
                    lines.append(f"    {inst.instance.id}: {inst.status.value}")
        for name, job in result.jobs.items():
            for key, value in job.outputs.items():
                lines.append(f"  output {name}.{key} = {value}")
        summaries = [s for job in result.jobs.values() for inst in job.instances for s in inst.summary]
        if summaries:
            lines.append("")
            lines.extend(summaries)
        lines.append(f"\nRUN: {'SUCCESS' if result.success else 'FAILURE'}")
        with self._lock:
            for line in lines:
                print(line)

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
        self._out(*lines, err=True)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__)
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
