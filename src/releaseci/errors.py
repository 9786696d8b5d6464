# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class CIError(Exception):
    """
    Structured pipeline error with enough context for:
      - clean CLI output
      - per-job failure summaries
      - debugging without full tracebacks
    """
    kind: str
    message: str
    job: str | None = None
    step: str | None = None
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class ConfigurationError(CIError):
    """Environment or declaration defect. Fatal, never retried."""

    def __init__(self, message: str, *, job: str | None = None, step: str | None = None, **details):
        super().__init__(kind="configuration", message=message, job=job, step=step, details=details)


class CommandNotFoundError(ConfigurationError):
    def __init__(self, command: str, *, hint: str | None = None):
        details = {"command": command}
        if hint:
            details["hint"] = hint
        super().__init__(f"command not found: {command}", **details)
        self.command = command


class InvalidTransition(CIError):
    def __init__(self, job: str, current: str, requested: str):
        super().__init__(
            kind="invalid_transition",
            message=f"cannot move from {current} to {requested}",
            job=job,
        )


class GateFailure(CIError):
    def __init__(self, message: str, *, step: str | None = None, **details):
        super().__init__(kind="gate", message=message, job="gate", step=step, details=details)


@dataclass
class StepExecutionFailure(CIError):
    """Nonzero exit from a build/package step. Aborts only the owning job."""
    cmd: str = ""
    exit_code: int = 1
    output: str = ""

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"


class VerificationFailure(StepExecutionFailure):
    """The built artifact failed its runtime sanity check."""


class CacheFailure(CIError):
    def __init__(self, message: str, *, job: str | None = None, **details):
        super().__init__(kind="cache", message=message, job=job, details=details)


class PublishError(CIError):
    def __init__(self, message: str, *, job: str | None = None, **details):
        super().__init__(kind="publish", message=message, job=job, details=details)
