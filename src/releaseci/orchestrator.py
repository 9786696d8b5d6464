# orchestrator.py
from __future__ import annotations

import hashlib
import json
import os
import subprocess
import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .artifacts import ArtifactStore, LocalArtifactStore
from .cache import CacheStore
from .dag import check_isolation, pipeline_graph
from .errors import ConfigurationError
from .git_facts.git import has_local_changes, head_sha, resolve_revision
from .model import (
    FAILURE_PRECEDENCE,
    ArtifactCollection,
    FailureKind,
    GateResult,
    GateSpec,
    JobRecord,
    JobResult,
    JobState,
    Pipeline,
    PipelineResult,
    PipelineRun,
    PipelineStatus,
    PlatformBuildJob,
)
from .process import ProcessRunner, check_tools
from .runner import JobRunner
from .settings import Settings
from .stage import StageExecutor
from .ui.console import Console, get_console


class GateLedger:
    """
    Remembers which (revision, gate definition) pairs already passed, so a
    retry of the same revision does not re-run the gate.

    Stored as JSON: {"<revision>": ["<gate fingerprint>", ...]}
    """

    def __init__(self, state_dir: str | Path):
        self.path = Path(state_dir).resolve() / "gates.json"
        self._lock = threading.Lock()

    @staticmethod
    def fingerprint(gate: GateSpec) -> str:
        payload = json.dumps(
            [{"name": s.name, "run": s.run, "cwd": s.cwd} for s in gate.steps],
            sort_keys=True,
        )
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    def _load(self) -> Dict[str, List[str]]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return {}
        return data if isinstance(data, dict) else {}

    def passed(self, revision: str, gate: GateSpec) -> bool:
        return self.fingerprint(gate) in self._load().get(revision, [])

    def record(self, revision: str, gate: GateSpec) -> None:
        with self._lock:
            data = self._load()
            fps = data.setdefault(revision, [])
            fp = self.fingerprint(gate)
            if fp not in fps:
                fps.append(fp)
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_name(self.path.name + ".tmp")
            tmp.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
            os.replace(tmp, self.path)


class PipelineOrchestrator:
    """
    Gate -> fan-out controller.

    - validates the job graph and job isolation before any work
    - runs the gate to completion (hard barrier); a failed gate starts no job
    - runs every selected job concurrently; a failing job never cancels siblings
    - successful jobs publish their collection regardless of sibling failures
    - success iff the gate passed and every job succeeded
    """

    def __init__(
        self,
        pipeline: Pipeline,
        settings: Settings | None = None,
        *,
        runner: ProcessRunner | None = None,
        store: ArtifactStore | None = None,
        console: Console | None = None,
    ):
        self.pipeline = pipeline
        self.settings = settings or Settings.from_env()
        self.console = console or get_console()
        self.process = runner or ProcessRunner()
        self.executor = StageExecutor(self.process, self.console, default_timeout=self.settings.step_timeout)
        self.cache = CacheStore(self.settings.cache_dir, console=self.console)
        self.store = store or LocalArtifactStore(self.settings.artifact_dir)
        self.ledger = GateLedger(self.settings.state_dir)
        self.jobs = JobRunner(
            self.settings.work_dir,
            self.cache,
            executor=self.executor,
            store=self.store,
            console=self.console,
        )

    # ------------------------------------------------------------------

    def select(self, targets: Optional[Iterable[str]] = None) -> List[PlatformBuildJob]:
        """Validate the pipeline and return the jobs to run, in declaration order."""
        pipeline_graph(self.pipeline)
        check_isolation(self.pipeline)

        if targets is None:
            return list(self.pipeline.jobs)

        wanted = [t for t in targets if t]
        known = {j.target for j in self.pipeline.jobs}
        unknown = sorted(set(wanted) - known)
        if unknown:
            raise ConfigurationError(f"unknown target(s) {unknown}; known: {sorted(known)}")
        if not wanted:
            raise ConfigurationError("no targets selected")
        return [j for j in self.pipeline.jobs if j.target in wanted]

    def run(
        self,
        run: PipelineRun,
        targets: Optional[Iterable[str]] = None,
        *,
        cancel: threading.Event | None = None,
        force_gate: bool = False,
    ) -> PipelineResult:
        cancel = cancel or threading.Event()
        selected = self.select(targets)
        records = {j.target: JobRecord(j.target) for j in selected}

        gate = self.run_gate(run, cancel=cancel, force=force_gate)
        if not gate.passed:
            # hard barrier: no job is started
            results = {
                t: rec.finish(JobResult(target=t, state=JobState.CANCELLED, error="gate did not pass"))
                for t, rec in records.items()
            }
            if cancel.is_set():
                kind = FailureKind.CANCELLED
            elif gate.stage is None or gate.stage.failure_kind == FailureKind.CONFIGURATION:
                kind = FailureKind.CONFIGURATION
            else:
                kind = FailureKind.GATE
            return self._finish(run, gate, results, kind)

        results = self._fan_out(selected, run, records, cancel)
        kinds = {r.failure_kind or FailureKind.BUILD for r in results.values() if r.state != JobState.SUCCEEDED}
        kind = next((k for k in FAILURE_PRECEDENCE if k in kinds), None)
        return self._finish(run, gate, results, kind)

    # ------------------------------------------------------------------

    def run_gate(self, run: PipelineRun, *, cancel: threading.Event | None = None, force: bool = False) -> GateResult:
        spec = self.pipeline.gate
        self.console.print_gate_start(spec.name)

        if not force and self.ledger.passed(run.revision, spec):
            self.console.print_gate_result(True, skipped=True)
            return GateResult(passed=True, skipped=True)

        source = Path(self.settings.source_dir).resolve()
        try:
            check_tools(spec.requires, job=spec.name)
            remember = self._check_source(run, source)
        except ConfigurationError as e:
            self.console.print_gate_result(False)
            return GateResult(passed=False, error=str(e))

        env = {"RELEASECI_REVISION": run.revision, "RELEASECI_BRANCH": run.branch, "RELEASECI_RUN_ID": run.run_id}
        stage = self.executor.execute(
            spec.steps,
            workdir=source,
            env=env,
            owner=spec.name,
            cancel=cancel,
        )
        self.console.print_gate_result(stage.ok)

        if stage.ok:
            if remember:
                self.ledger.record(run.revision, spec)
            return GateResult(passed=True, stage=stage)

        failed = stage.failed_step
        error = f"step '{failed.step.name}' failed (exit={failed.exit_code})" if failed else stage.status
        return GateResult(passed=False, stage=stage, error=error)

    def _check_source(self, run: PipelineRun, source: Path) -> bool:
        """
        Make sure the gate looks at the revision the jobs are going to build.

        A checkout at another commit is a configuration error. Returns whether
        a pass may be remembered in the ledger: not for a directory outside
        git, and not for a tree with uncommitted changes.
        """
        owner = self.pipeline.gate.name
        try:
            head = head_sha(source)
        except (subprocess.CalledProcessError, FileNotFoundError):
            self.console.print_warning(
                f"{source} is not a git checkout; the gate result will not be remembered", owner=owner
            )
            return False

        try:
            wanted = resolve_revision(run.revision, source)
        except subprocess.CalledProcessError:
            raise ConfigurationError(
                f"revision {run.revision} not found in the gate checkout {source}", job=owner
            ) from None
        if wanted != head:
            raise ConfigurationError(
                f"gate checkout {source} is at {head[:12]}, not at revision {run.revision}",
                job=owner,
                head=head,
                revision=wanted,
            )

        if has_local_changes(source):
            self.console.print_warning(
                f"uncommitted changes in {source}; the gate result will not be remembered", owner=owner
            )
            return False
        return True

    def _fan_out(
        self,
        selected: List[PlatformBuildJob],
        run: PipelineRun,
        records: Dict[str, JobRecord],
        cancel: threading.Event,
    ) -> Dict[str, JobResult]:
        results: Dict[str, JobResult] = {}
        max_workers = self.settings.max_workers or max(1, len(selected))

        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="releaseci-job") as pool:
            futures: Dict[Future, PlatformBuildJob] = {
                pool.submit(self.jobs.run, job, run, record=records[job.target], cancel=cancel): job
                for job in selected
            }
            for fut in as_completed(futures):
                job = futures[fut]
                try:
                    results[job.target] = fut.result()
                except Exception as e:
                    # an unexpected error inside one job fails that job only
                    self.console.print_exception(e)
                    results[job.target] = self._crashed(records[job.target], e)

        # declaration order
        return {j.target: results[j.target] for j in selected}

    @staticmethod
    def _crashed(record: JobRecord, exc: Exception) -> JobResult:
        if record.result is not None:
            return record.result
        kind = FailureKind.CONFIGURATION if isinstance(exc, ConfigurationError) else FailureKind.BUILD
        result = JobResult(target=record.target, state=JobState.FAILED, failure_kind=kind, error=str(exc))
        if record.state == JobState.PENDING:
            record.start()
        return record.finish(result)

    def _finish(
        self,
        run: PipelineRun,
        gate: GateResult,
        jobs: Dict[str, JobResult],
        kind: Optional[FailureKind],
    ) -> PipelineResult:
        if kind is None:
            status = PipelineStatus.SUCCESS
        elif kind == FailureKind.CANCELLED:
            status = PipelineStatus.CANCELLED
        else:
            status = PipelineStatus.FAILURE

        published: Dict[str, ArtifactCollection] = {
            r.collection.name: r.collection
            for r in jobs.values()
            if r.state == JobState.SUCCEEDED and r.collection is not None
        }
        return PipelineResult(
            run=run,
            status=status,
            gate=gate,
            jobs=jobs,
            published=published,
            failure_kind=kind,
        )
