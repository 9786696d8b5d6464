# stage.py
from __future__ import annotations

import threading
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence

from .errors import CommandNotFoundError
from .model import StageResult, Step, StepResult
from .process import SHELL_NOT_FOUND, ProcessRunner
from .ui.console import Console, get_console


class StageExecutor:
    """
    Runs an ordered list of steps, stopping at the first failure.

    Used for the gate and for every job's checkout/prerequisite/build/verify
    sequence. Steps after a failing step (without continue_on_failure) are
    recorded as skipped and never executed. Every executed step keeps its
    stdout/stderr whether it passed or not.
    """

    def __init__(
        self,
        runner: ProcessRunner | None = None,
        console: Console | None = None,
        default_timeout: float | None = None,
    ):
        self.runner = runner or ProcessRunner()
        self.console = console or get_console()
        self.default_timeout = default_timeout

    def execute(
        self,
        steps: Sequence[Step],
        *,
        workdir: str | Path,
        env: Optional[Mapping[str, str]] = None,
        owner: str = "stage",
        cancel: threading.Event | None = None,
    ) -> StageResult:
        workdir = Path(workdir)
        results: List[StepResult] = []
        failed: Optional[StepResult] = None
        status = "success"

        for idx, step in enumerate(steps):
            if cancel is not None and cancel.is_set():
                status = "cancelled"
                results.extend(StepResult(step=s, skipped=True) for s in steps[idx:])
                break

            self.console.print_step(owner, step.name)
            res = self._run_step(step, workdir, env, cancel)
            results.append(res)

            if res.ok:
                continue

            if res.cancelled:
                status = "cancelled"
                results.extend(StepResult(step=s, skipped=True) for s in steps[idx + 1:])
                break

            if step.continue_on_failure and not res.not_found:
                self.console.print_step_failed(owner, step.name, res.exit_code, allowed=True)
                continue

            self.console.print_step_failed(owner, step.name, res.exit_code)
            failed = res
            status = "failed"
            results.extend(StepResult(step=s, skipped=True) for s in steps[idx + 1:])
            break

        return StageResult(status=status, steps=results, failed_step=failed)

    def _run_step(
        self,
        step: Step,
        workdir: Path,
        env: Optional[Mapping[str, str]],
        cancel: threading.Event | None,
    ) -> StepResult:
        step_env: Dict[str, str] = dict(env or {})
        step_env.update(step.env)
        cwd = workdir / step.cwd if step.cwd else workdir

        if not cwd.is_dir():
            return StepResult(
                step=step,
                exit_code=1,
                stderr=f"step cwd not found: {cwd}",
                not_found=True,
            )

        # a step timeout of 0 disables the default one
        timeout = step.timeout if step.timeout is not None else self.default_timeout
        try:
            proc = self.runner.run(
                step.run,
                env=step_env,
                workdir=cwd,
                shell=True,
                timeout=timeout or None,
                cancel=cancel,
            )
        except CommandNotFoundError as e:
            # only reachable when the shell itself is missing
            return StepResult(step=step, exit_code=SHELL_NOT_FOUND, stderr=str(e), not_found=True)

        return StepResult(
            step=step,
            exit_code=proc.exit_code,
            stdout=proc.stdout,
            stderr=proc.stderr,
            duration=proc.duration,
            not_found=proc.not_found,
            timed_out=proc.timed_out,
            cancelled=proc.cancelled,
        )
