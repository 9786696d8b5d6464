# model.py
from __future__ import annotations

import re
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from .errors import InvalidTransition
from .triggers import TriggerFilter

STEP_KINDS = ("checkout", "prerequisite", "build", "package", "verify", "run", "gate")
TARGET_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class JobState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELLED)


class PipelineStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"


class FailureKind(str, Enum):
    CONFIGURATION = "configuration"
    GATE = "gate"
    BUILD = "build"
    VERIFICATION = "verification"
    CANCELLED = "cancelled"


# Pipeline-level precedence when several jobs fail for different reasons.
FAILURE_PRECEDENCE = [
    FailureKind.CANCELLED,
    FailureKind.CONFIGURATION,
    FailureKind.GATE,
    FailureKind.BUILD,
    FailureKind.VERIFICATION,
]

EXIT_CODES = {
    None: 0,
    FailureKind.CONFIGURATION: 2,
    FailureKind.GATE: 10,
    FailureKind.BUILD: 20,
    FailureKind.VERIFICATION: 30,
    FailureKind.CANCELLED: 130,
}


# ----------------------------------------------------------------------
# Declarations
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class Step:
    """A single command (step) inside a job or the gate."""
    name: str
    run: str
    cwd: str | None = None
    kind: str = "run"
    continue_on_failure: bool = False
    timeout: float | None = None
    env: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class CheckoutSpec:
    """
    Where a job gets its source from.

    fetch_depth=0 means full history. Packaging derives version numbers from
    tag history, so anything shallower can silently produce wrong versions.
    """
    source: Optional[str] = None
    fetch_depth: int = 0
    fetch_tags: bool = True


@dataclass(frozen=True)
class CacheSpec:
    paths: List[str] = field(default_factory=list)
    inputs: List[str] = field(default_factory=list)   # lockfiles / globs hashed into the key
    namespace: Optional[str] = None
    toolchain: Dict[str, str] = field(default_factory=dict)
    extra: Dict[str, str] = field(default_factory=dict)
    enabled: bool = True
    save_on_failure: bool = True
    fallback: bool = True
    keep: int = 3


@dataclass
class PlatformBuildJob:
    """
    One build target: prerequisites + build/package/verify steps + artifact globs.

    Steps are owned by the job; they are never shared with another job.
    """
    target: str
    steps: List[Step]
    needs: List[str] = field(default_factory=lambda: ["gate"])
    prerequisites: List[Step] = field(default_factory=list)
    checkout: CheckoutSpec = field(default_factory=CheckoutSpec)
    cache: Optional[CacheSpec] = None
    artifacts: List[str] = field(default_factory=list)
    collection: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    requires: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.collection is None:
            self.collection = f"{self.target}-packages"

    @property
    def name(self) -> str:
        return self.target

    @property
    def exit_on_first_failure(self) -> bool:
        return True

    @property
    def cache_namespace(self) -> Optional[str]:
        if self.cache is None or not self.cache.enabled:
            return None
        return self.cache.namespace or self.target

    def checkout_steps(self, revision: str) -> List[Step]:
        co = self.checkout
        if not co.source:
            return []
        clone = f"git clone --no-checkout {co.source} ."
        if co.fetch_depth > 0:
            clone = f"git clone --no-checkout --depth {co.fetch_depth} {co.source} ."
        steps = [
            Step(name="Checkout source", run=clone, kind="checkout"),
            Step(name=f"Checkout {revision}", run=f"git checkout --force {revision}", kind="checkout"),
        ]
        if co.fetch_tags:
            steps.append(
                Step(
                    name="Fix tags for release",
                    run="git fetch origin +refs/tags/*:refs/tags/*",
                    kind="checkout",
                )
            )
        return steps

    def plan(self, revision: str = "<revision>") -> List[Step]:
        """The full ordered step list this job executes."""
        return [*self.checkout_steps(revision), *self.prerequisites, *self.steps]


@dataclass(frozen=True)
class GateSpec:
    steps: List[Step]
    name: str = "gate"
    requires: List[str] = field(default_factory=list)


@dataclass
class Pipeline:
    gate: GateSpec
    jobs: List[PlatformBuildJob]
    trigger: Optional[TriggerFilter] = None

    def job(self, target: str) -> PlatformBuildJob:
        for j in self.jobs:
            if j.target == target:
                return j
        raise KeyError(target)


@dataclass(frozen=True)
class PipelineRun:
    """One trigger of the pipeline. Immutable once started."""
    revision: str
    branch: str = "main"
    reason: str = "manual"
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    started_at: float = field(default_factory=time.time)


# ----------------------------------------------------------------------
# Results
# ----------------------------------------------------------------------

@dataclass
class StepResult:
    step: Step
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0
    skipped: bool = False
    not_found: bool = False
    timed_out: bool = False
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return not self.skipped and self.exit_code == 0

    @property
    def output(self) -> str:
        if self.stdout and self.stderr:
            return f"{self.stdout.rstrip()}\n{self.stderr}"
        return self.stdout or self.stderr


@dataclass
class StageResult:
    status: str  # "success" | "failed" | "cancelled"
    steps: List[StepResult] = field(default_factory=list)
    failed_step: Optional[StepResult] = None

    @property
    def ok(self) -> bool:
        return self.status == "success"

    @property
    def executed(self) -> List[StepResult]:
        return [s for s in self.steps if not s.skipped]

    @property
    def logs(self) -> Dict[str, str]:
        return {s.step.name: s.output for s in self.executed}

    @property
    def failure_kind(self) -> Optional[FailureKind]:
        if self.status == "cancelled":
            return FailureKind.CANCELLED
        if self.failed_step is None:
            return None
        if self.failed_step.not_found:
            return FailureKind.CONFIGURATION
        if self.failed_step.step.kind == "verify":
            return FailureKind.VERIFICATION
        return FailureKind.BUILD


@dataclass
class GateResult:
    passed: bool
    stage: Optional[StageResult] = None
    skipped: bool = False
    error: Optional[str] = None


@dataclass(frozen=True)
class Artifact:
    path: Path
    target: str
    collection: str

    @property
    def name(self) -> str:
        return self.path.name


@dataclass
class ArtifactCollection:
    name: str
    target: str
    artifacts: List[Artifact] = field(default_factory=list)

    @property
    def files(self) -> List[str]:
        return sorted(a.name for a in self.artifacts)


@dataclass
class JobResult:
    target: str
    state: JobState
    stage: Optional[StageResult] = None
    cache: Optional[str] = None
    collection: Optional[ArtifactCollection] = None
    failure_kind: Optional[FailureKind] = None
    error: Optional[str] = None

    @property
    def failed_step(self) -> Optional[StepResult]:
        return self.stage.failed_step if self.stage else None


@dataclass
class PipelineResult:
    run: PipelineRun
    status: PipelineStatus
    gate: GateResult
    jobs: Dict[str, JobResult] = field(default_factory=dict)
    published: Dict[str, ArtifactCollection] = field(default_factory=dict)
    failure_kind: Optional[FailureKind] = None

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.failure_kind]

    @property
    def started_jobs(self) -> List[str]:
        return [
            t for t, r in self.jobs.items()
            if r.stage is not None or r.state in (JobState.SUCCEEDED, JobState.FAILED)
        ]

    def raise_for_status(self) -> None:
        from .errors import GateFailure, StepExecutionFailure, VerificationFailure

        if self.status == PipelineStatus.SUCCESS:
            return
        if self.failure_kind == FailureKind.GATE:
            failed = self.gate.stage.failed_step if self.gate.stage else None
            raise GateFailure(
                self.gate.error or "gate stage failed",
                step=failed.step.name if failed else None,
            )
        for target, res in self.jobs.items():
            step = res.failed_step
            if res.state != JobState.FAILED or step is None:
                continue
            cls = VerificationFailure if res.failure_kind == FailureKind.VERIFICATION else StepExecutionFailure
            raise cls(
                kind=(res.failure_kind or FailureKind.BUILD).value,
                message=res.error or "step failed",
                job=target,
                step=step.step.name,
                cmd=step.step.run,
                exit_code=step.exit_code if step.exit_code is not None else 1,
                output=step.output,
            )
        raise StepExecutionFailure(
            kind=(self.failure_kind or FailureKind.BUILD).value,
            message=f"pipeline {self.status.value}",
        )


class JobRecord:
    """
    Per-job lifecycle: pending -> running -> {succeeded, failed, cancelled}.

    Terminal states are immutable; the result is recorded exactly once.
    """

    _ALLOWED = {
        JobState.PENDING: {JobState.RUNNING, JobState.CANCELLED},
        JobState.RUNNING: {JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELLED},
    }

    def __init__(self, target: str):
        self.target = target
        self._state = JobState.PENDING
        self._result: Optional[JobResult] = None
        self._lock = threading.Lock()

    @property
    def state(self) -> JobState:
        return self._state

    @property
    def result(self) -> Optional[JobResult]:
        return self._result

    def start(self) -> None:
        self._move(JobState.RUNNING)

    def finish(self, result: JobResult) -> JobResult:
        self._move(result.state)
        self._result = result
        return result

    def _move(self, new: JobState) -> None:
        with self._lock:
            if new not in self._ALLOWED.get(self._state, set()):
                raise InvalidTransition(self.target, self._state.value, new.value)
            self._state = new
