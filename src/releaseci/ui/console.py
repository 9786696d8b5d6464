"""Console output formatting utilities for releaseci."""

from __future__ import annotations

import sys
import threading
import traceback
from typing import Optional

_TAIL_LINES = 40


class Console:
    """Centralized console output formatting.

    Jobs run on worker threads, so every write goes through one lock and
    job-scoped lines carry a ``[target]`` prefix.
    """

    def __init__(self, debug: bool = False, quiet: bool = False):
        # debug: tracebacks, full failure output and plan commands
        # quiet: no per-step progress lines
        self.debug = debug
        self.quiet = quiet
        self._lock = threading.Lock()

    def _out(self, text: str = "", *, err: bool = False) -> None:
        with self._lock:
            print(text, file=sys.stderr if err else sys.stdout, flush=True)

    def print_run_started(
        self,
        repository: str,
        workflow: str,
        revision: str,
        targets: list[str],
        version: Optional[str] = None,
    ) -> None:
        """Print run start information."""
        lines = [
            "\nPIPELINE STARTED",
            f"Repository: {repository}",
            f"Workflow: {workflow}",
            f"Revision: {revision}",
        ]
        if version:
            lines.append(f"Version: {version}")
        lines.append(f"Targets: {', '.join(targets)}")
        self._out("\n".join(lines) + "\n")

    def print_gate_start(self, name: str) -> None:
        self._out(f"\nGATE STARTED: {name}")

    def print_gate_result(self, passed: bool, skipped: bool = False) -> None:
        if skipped:
            self._out("GATE: passed earlier for this revision (skipped)")
        else:
            self._out(f"GATE: {'passed' if passed else 'failed'}")

    def print_job_start(self, target: str) -> None:
        self._out(f"\nJOB STARTED: {target}")

    def print_step(self, owner: str, name: str) -> None:
        if not self.quiet:
            self._out(f"[{owner}] STEP: {name}")

    def print_step_failed(self, owner: str, name: str, exit_code: Optional[int], allowed: bool = False) -> None:
        suffix = " (continuing)" if allowed else ""
        self._out(f"[{owner}] STEP FAILED: {name} (exit={exit_code}){suffix}")

    def print_job_finished(self, target: str, state: str) -> None:
        self._out(f"[{target}] STATUS: {state}")

    def print_cache(self, target: str, message: str) -> None:
        self._out(f"[{target}] CACHE: {message}")

    def print_artifacts(self, target: str, collection: str, files: list[str]) -> None:
        self._out(f"[{target}] ARTIFACTS: {collection} ({len(files)} file(s))")
        if self.debug:
            for f in files:
                self._out(f"[{target}]   {f}")

    def print_failure(
        self,
        name: str,
        reason: str,
        command: Optional[str] = None,
        exit_code: Optional[int] = None,
        output: Optional[str] = None,
    ) -> None:
        """
        Print a failed job with its first failing step.

        Args:
            name: Job target (or "gate")
            reason: Failure kind / message
            command: The failing step's command line
            exit_code: Optional exit code
            output: Captured output of the failing step (tail is shown)
        """
        lines = [f"\nFAILED: {name} ({reason})"]
        if command:
            lines.append(f"Command: {command}")
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if output:
            out_lines = output.rstrip().splitlines()
            if not self.debug and len(out_lines) > _TAIL_LINES:
                lines.append(f"... ({len(out_lines) - _TAIL_LINES} earlier line(s) omitted)")
                out_lines = out_lines[-_TAIL_LINES:]
            lines.extend(f"  | {line}" for line in out_lines)
        self._out("\n".join(lines))

    def print_results(self, status: str, gate: str, jobs: dict[str, str], published: list[str]) -> None:
        """Print final results summary."""
        lines = ["\n" + "=" * 40, "RESULTS", "=" * 40, f"  gate: {gate.upper()}"]
        for target, state in jobs.items():
            lines.append(f"  {target}: {state.upper()}")
        if published:
            lines.append(f"Published: {', '.join(published)}")
        lines.append(f"PIPELINE: {status.upper()}")
        self._out("\n".join(lines))

    def print_plan_job(self, target: str, steps: list[tuple[str, str, str]], details: dict[str, str]) -> None:
        """Print one job of a plan: (kind, name, command) per step."""
        lines = [f"\n{target}"]
        for key, value in details.items():
            lines.append(f"  {key}: {value}")
        for i, (kind, name, cmd) in enumerate(steps, 1):
            lines.append(f"  {i:>2}. [{kind}] {name}")
            if self.debug:
                lines.append(f"        $ {cmd}")
        self._out("\n".join(lines))

    def print_error(self, title: str, message: str, details: Optional[list[str]] = None) -> None:
        """Errors that stop the run before or outside any job (stderr)."""
        lines = [f"\nERROR: {title}", message]
        lines.extend(f"  {d}" for d in details or [])
        self._out("\n".join(lines), err=True)

    def print_warning(self, message: str, owner: Optional[str] = None) -> None:
        prefix = f"[{owner}] " if owner else ""
        self._out(f"{prefix}WARNING: {message}", err=True)

    def print_exception(self, exc: Exception) -> None:
        if not self.debug:
            self._out(f"Error: {exc}", err=True)
            return
        with self._lock:
            traceback.print_exception(type(exc), exc, exc.__traceback__)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


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
