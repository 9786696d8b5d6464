# runner.py
from __future__ import annotations

import os
import shutil
import threading
from pathlib import Path
from typing import Dict, Optional

from .artifacts import ArtifactCollector, ArtifactStore
from .cache import CacheHit, CacheStore
from .errors import ConfigurationError, PublishError
from .model import FailureKind, JobRecord, JobResult, JobState, PipelineRun, PlatformBuildJob, StageResult
from .process import check_tools
from .stage import StageExecutor
from .ui.console import Console, get_console


def job_env(job: PlatformBuildJob, run: PipelineRun, workspace: Path, home: Optional[Path] = None) -> Dict[str, str]:
    env: Dict[str, str] = {}
    if home is not None:
        # `~` of every step is the job's own home; installed toolchains stay shared
        env.update(
            {
                "HOME": str(home),
                "CARGO_HOME": str(home / ".cargo"),
                "RUSTUP_HOME": os.environ.get("RUSTUP_HOME", str(Path.home() / ".rustup")),
            }
        )
    env.update(job.env)
    env.update(
        {
            "RELEASECI_TARGET": job.target,
            "RELEASECI_REVISION": run.revision,
            "RELEASECI_BRANCH": run.branch,
            "RELEASECI_RUN_ID": run.run_id,
            "RELEASECI_WORKSPACE": str(workspace),
            **({"RELEASECI_HOME": str(home)} if home is not None else {}),
        }
    )
    return env


class JobRunner:
    """
    Drives one PlatformBuildJob: pending -> running -> succeeded | failed | cancelled.

    Canonical order inside a job:
      checkout (full history) -> cache restore -> prerequisites -> build/package
      -> verify -> cache save (policy) -> artifact collection -> publish
    """

    def __init__(
        self,
        work_root: str | Path,
        cache: CacheStore,
        executor: StageExecutor | None = None,
        collector: ArtifactCollector | None = None,
        store: ArtifactStore | None = None,
        console: Console | None = None,
    ):
        self.work_root = Path(work_root).resolve()
        self.cache = cache
        self.console = console or get_console()
        self.executor = executor or StageExecutor(console=self.console)
        self.collector = collector or ArtifactCollector()
        self.store = store

    def workspace_for(self, job: PlatformBuildJob, run: PipelineRun) -> Path:
        # one private directory per (run, target); jobs never share one
        return self.work_root / run.run_id / job.target

    def home_for(self, job: PlatformBuildJob, run: PipelineRun) -> Path:
        # outside the workspace, which must be empty for the clone;
        # targets never start with a dot so this cannot collide with one
        return self.work_root / run.run_id / ".home" / job.target

    def run(
        self,
        job: PlatformBuildJob,
        run: PipelineRun,
        *,
        record: Optional[JobRecord] = None,
        cancel: threading.Event | None = None,
    ) -> JobResult:
        record = record or JobRecord(job.target)
        if cancel is not None and cancel.is_set():
            return record.finish(
                JobResult(target=job.target, state=JobState.CANCELLED, failure_kind=FailureKind.CANCELLED)
            )

        record.start()
        self.console.print_job_start(job.target)

        try:
            check_tools(job.requires, job=job.target)
        except ConfigurationError as e:
            return self._finish(record, JobResult(
                target=job.target,
                state=JobState.FAILED,
                failure_kind=FailureKind.CONFIGURATION,
                error=str(e),
            ))

        ws = self.workspace_for(job, run)
        if ws.exists():
            shutil.rmtree(ws)
        ws.mkdir(parents=True)
        home = self.home_for(job, run)
        if home.exists():
            shutil.rmtree(home)
        home.mkdir(parents=True)
        self.console.print_debug(f"[{job.target}] workspace {ws}, home {home}")
        env = job_env(job, run, ws, home)

        # ---- checkout ----
        if job.checkout.source and job.checkout.fetch_depth:
            self.console.print_warning(
                f"shallow checkout (depth={job.checkout.fetch_depth}); versions derived from tags may be wrong",
                owner=job.target,
            )
        checkout = self.executor.execute(
            job.checkout_steps(run.revision), workdir=ws, env=env, owner=job.target, cancel=cancel
        )
        if not checkout.ok:
            return self._finish(record, self._failed(job, checkout))

        # ---- restore (advisory) ----
        hit: Optional[CacheHit] = None
        if job.cache_namespace is not None:
            hit = self.cache.restore(job, ws, home=home)
            self.console.print_cache(job.target, hit.reason)

        # ---- prerequisites + build/package/verify ----
        stage = self.executor.execute(
            [*job.prerequisites, *job.steps], workdir=ws, env=env, owner=job.target, cancel=cancel
        )
        stage = StageResult(
            status=stage.status,
            steps=[*checkout.steps, *stage.steps],
            failed_step=stage.failed_step,
        )

        # ---- save (cache-on-failure is a policy flag, not a code path) ----
        cache_note = hit.reason if hit else None
        if job.cache_namespace is not None and stage.status != "cancelled":
            saved = self.cache.save(job, ws, job_succeeded=stage.ok, restored=hit, home=home)
            self.console.print_cache(job.target, saved.reason)
            cache_note = f"{cache_note}; {saved.reason}" if cache_note else saved.reason

        if not stage.ok:
            result = self._failed(job, stage)
            result.cache = cache_note
            return self._finish(record, result)

        # ---- collect + publish ----
        try:
            collection = self.collector.collect(job, ws)
            if self.store is not None:
                self.store.publish(run.run_id, collection)
        except (PublishError, OSError) as e:
            return self._finish(record, JobResult(
                target=job.target,
                state=JobState.FAILED,
                stage=stage,
                cache=cache_note,
                failure_kind=FailureKind.BUILD,
                error=f"artifacts: {e}",
            ))
        self.console.print_artifacts(job.target, collection.name, collection.files)

        return self._finish(record, JobResult(
            target=job.target,
            state=JobState.SUCCEEDED,
            stage=stage,
            cache=cache_note,
            collection=collection,
        ))

    def _failed(self, job: PlatformBuildJob, stage: StageResult) -> JobResult:
        kind = stage.failure_kind or FailureKind.BUILD
        state = JobState.CANCELLED if kind == FailureKind.CANCELLED else JobState.FAILED
        failed = stage.failed_step
        error = None
        if failed is not None:
            error = f"step '{failed.step.name}' failed (exit={failed.exit_code})"
            if failed.timed_out:
                error += " after timing out"
        return JobResult(target=job.target, state=state, stage=stage, failure_kind=kind, error=error)

    def _finish(self, record: JobRecord, result: JobResult) -> JobResult:
        self.console.print_job_finished(result.target, result.state.value)
        return record.finish(result)
