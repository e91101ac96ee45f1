"""Console output formatting utilities for mergegate."""

from __future__ import annotations

import sys
import threading
from typing import Optional

from ..model import JobOutcome, RunVerdict


class Console:
    """
    Centralized console output formatting.

    Jobs run on worker threads, so every line coming from a job is prefixed
    with its name and multi-line blocks are written under a lock.
    """

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, suppress per-step progress lines
        """
        self.debug = debug
        self.quiet = quiet
        self._lock = threading.Lock()

    def _emit(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._emit("", title, "-" * len(title))

    def print_run_started(self, event: str, workflow: str, job_count: int) -> None:
        """Print run start information."""
        self._emit("", "RUN STARTED", f"Event: {event}", f"Workflow: {workflow}", f"Jobs: {job_count}", "")

    def print_noop(self, event: str) -> None:
        self._emit(f"No jobs matched {event}; nothing to run.")

    def print_plan_job(self, name: str, reason: str) -> None:
        """Print job selection plan."""
        self._emit(f"  ✓ {name} ({reason})")

    def print_plan_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped in plan."""
        self._emit(f"  ⏭ {name} (skipped: {reason})")

    def print_job_start(self, name: str) -> None:
        self._emit(f"[{name}] JOB STARTED")

    def print_step(self, job: str, name: str) -> None:
        if not self.quiet:
            self._emit(f"[{job}] ▶ {name}")

    def print_success(self, name: str) -> None:
        self._emit(f"[{name}] STATUS: success")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        is_job: bool = False,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job or step name
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
            is_job: If True, print "JOB FAILED", otherwise "STEP FAILED"
        """
        prefix = "JOB FAILED" if is_job else "STEP FAILED"
        lines = [f"{prefix}: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if hint:
            lines.append(f"Hint: {hint}")
        if self.debug:
            lines.append(f"Error details: {reason}")
        else:
            # Show first line of error for non-debug mode
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            lines.append(f"Error: {error_line}")
        self._emit(*lines)

    def print_job_aborted(self, name: str) -> None:
        self._emit(f"[{name}] STATUS: aborted (cancelled)")

    def print_cache_hit(self, job: str, key: str) -> None:
        self._emit(f"[{job}] CACHE: hit ({key[:12]}...)")

    def print_cache_miss(self, job: str, key: str) -> None:
        self._emit(f"[{job}] CACHE: miss ({key[:12]}...)")

    def print_cache_saved(self, job: str, key: str) -> None:
        short_key = key[:12] + "..." if len(key) > 12 else key
        self._emit(f"[{job}] CACHE: saved ({short_key})")

    def print_warning(self, message: str) -> None:
        self._emit(f"WARNING: {message}", err=True)

    def print_results(self, verdict: RunVerdict) -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for r in verdict.results:
            status_display = "SUCCESS" if r.outcome is JobOutcome.SUCCESS else r.outcome.value.upper()
            lines.append(f"  {r.job}: {status_display} ({r.duration:.1f}s)")
        lines.append(f"VERDICT: {'success' if verdict.success else 'failure'}")
        self._emit(*lines)

    def print_report(self, text: str) -> None:
        self._emit(text)

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
            lines.extend(f"  {d}" for d in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._emit(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._emit(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        self._emit(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._emit(f"[DEBUG] {message}", err=True)


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
