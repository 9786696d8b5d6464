# src/releaseci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional

from .errors import ConfigurationError
from .model import STEP_KINDS, TARGET_RE, CacheSpec, CheckoutSpec, GateSpec, Pipeline, PlatformBuildJob, Step
from .triggers import TriggerFilter


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    kind: str = "run",
    continue_on_failure: bool = False,
    timeout: float | None = None,
    env: Optional[Dict[str, str]] = None,
) -> Step:
    """Create a shell step."""
    if kind not in STEP_KINDS:
        raise ConfigurationError(f"unknown step kind {kind!r} for step {name!r}", step=name)
    return Step(
        name=name,
        run=cmd,
        cwd=cwd,
        kind=kind,
        continue_on_failure=continue_on_failure,
        timeout=timeout,
        env={k: str(v) for k, v in (env or {}).items()},
    )


def prerequisite(name: str, cmd: str, **kwargs) -> Step:
    """Toolchain packages, cross-linker shims, target installs. Must be idempotent."""
    return sh(name, cmd, kind="prerequisite", **kwargs)


def build_step(name: str, cmd: str, **kwargs) -> Step:
    return sh(name, cmd, kind="build", **kwargs)


def package_step(name: str, cmd: str, **kwargs) -> Step:
    return sh(name, cmd, kind="package", **kwargs)


def verify(name: str, cmd: str, **kwargs) -> Step:
    """Run the freshly built binary. A failure here fails the job like a build failure."""
    return sh(name, cmd, kind="verify", **kwargs)


def gate(*steps: Step, name: str = "gate", requires: Optional[List[str]] = None) -> GateSpec:
    if not steps:
        raise ConfigurationError("gate() must have at least one step")
    return GateSpec(steps=[replace(s, kind="gate") for s in steps], name=name, requires=requires or [])


def dependency_cache(
    *paths: str,
    inputs: Optional[List[str]] = None,
    namespace: Optional[str] = None,
    toolchain: Optional[Dict[str, str]] = None,
    extra: Optional[Dict[str, str]] = None,
    enabled: bool = True,
    save_on_failure: bool = True,
    fallback: bool = True,
    keep: int = 3,
) -> CacheSpec:
    return CacheSpec(
        paths=list(paths),
        inputs=inputs or [],
        namespace=namespace,
        toolchain=toolchain or {},
        extra=extra or {},
        enabled=enabled,
        save_on_failure=save_on_failure,
        fallback=fallback,
        keep=keep,
    )


# ---------------------------------------------------------------------
# Functional job helper
# ---------------------------------------------------------------------

def platform_job(
    target: str,
    *steps: Step,
    prerequisites: Optional[List[Step]] = None,
    artifacts: Optional[List[str]] = None,
    collection: Optional[str] = None,
    source: Optional[str] = None,
    fetch_depth: int = 0,
    fetch_tags: bool = True,
    cache: Optional[CacheSpec] = None,
    env: Optional[Dict[str, str]] = None,
    requires: Optional[List[str]] = None,
    needs: Optional[List[str]] = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> PlatformBuildJob:
    if not target:
        raise ConfigurationError("platform_job() needs a target id")
    if not TARGET_RE.match(target):
        raise ConfigurationError(f"malformed target id {target!r}", job=target)
    if not steps:
        raise ConfigurationError(f"platform_job({target!r}) must have at least one step", job=target)
    if not artifacts:
        raise ConfigurationError(f"platform_job({target!r}) must declare its artifact globs", job=target)
    if fetch_depth < 0:
        raise ConfigurationError(f"fetch_depth must be >= 0, got {fetch_depth}", job=target)

    steps_final = list(steps)
    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    prereqs = [replace(s, kind="prerequisite") for s in (prerequisites or [])]

    return PlatformBuildJob(
        target=target,
        steps=steps_final,
        needs=needs if needs is not None else ["gate"],
        prerequisites=prereqs,
        checkout=CheckoutSpec(source=source, fetch_depth=fetch_depth, fetch_tags=fetch_tags),
        cache=cache,
        artifacts=list(artifacts),
        collection=collection,
        env={k: str(v) for k, v in (env or {}).items()},
        requires=requires or [],
    )


def pipeline(gate: GateSpec, *jobs: PlatformBuildJob, trigger: Optional[TriggerFilter] = None) -> Pipeline:
    """
    Workflow definition helper. A workflow file defines

        def pipeline():
            return dsl.pipeline(gate(...), platform_job(...), platform_job(...))

    or a module-level PIPELINE constant.
    """
    jobs = [replace(j, needs=[gate.name]) if j.needs == ["gate"] else j for j in jobs]
    return Pipeline(gate=gate, jobs=jobs, trigger=trigger or TriggerFilter())


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Minimal matrix expander.

    Example:
        matrix("target", ["x86_64-unknown-linux-musl", "aarch64-unknown-linux-musl"]).jobs(
            lambda t: platform_job(f"linux-{t}", build_step(...), artifacts=[...])
        )
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    def jobs(self, builder: Callable[[Any], PlatformBuildJob]) -> List[PlatformBuildJob]:
        return [builder(v) for v in self.values]


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)
