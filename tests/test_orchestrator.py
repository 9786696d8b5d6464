"""End-to-end pipeline runs against real shell steps."""
import json
import threading
from dataclasses import replace
from pathlib import Path

import pytest

from releaseci import dsl
from releaseci.cache import compute_cache_key
from releaseci.dsl import build_step, dependency_cache, gate, platform_job, sh, verify
from releaseci.errors import ConfigurationError, GateFailure, StepExecutionFailure
from releaseci.model import FailureKind, JobState, PipelineRun, PipelineStatus
from releaseci.orchestrator import GateLedger, PipelineOrchestrator

from conftest import commit


def linux_job(*steps, **kwargs):
    steps = steps or (build_step("Build packages", "echo linux > chdig_amd64.deb && echo rpm > chdig.x86_64.rpm"),)
    return platform_job(
        "linux-x86_64-musl",
        *steps,
        artifacts=["*.deb", "*.rpm"],
        collection="linux-packages",
        **kwargs,
    )


def macos_job(*steps, **kwargs):
    steps = steps or (build_step("Build binary", "echo macos > chdig-macos-x86_64 && gzip -n --keep chdig-macos-x86_64"),)
    return platform_job(
        "macos-x86_64",
        *steps,
        artifacts=["chdig-macos-x86_64.gz"],
        collection="macos-packages",
        **kwargs,
    )


def spellcheck(cmd="true"):
    return gate(sh("Spell Check Repo", cmd), name="spellcheck")


def run(pipeline, settings, **kwargs):
    return PipelineOrchestrator(pipeline, settings).run(PipelineRun(revision="abc123"), **kwargs)


def test_gate_pass_and_both_jobs_succeed(settings):
    result = run(dsl.pipeline(spellcheck(), linux_job(), macos_job()), settings)

    assert result.status == PipelineStatus.SUCCESS
    assert result.exit_code == 0
    assert sorted(result.published) == ["linux-packages", "macos-packages"]
    assert result.published["linux-packages"].files == ["chdig.x86_64.rpm", "chdig_amd64.deb"]
    assert result.published["macos-packages"].files == ["chdig-macos-x86_64.gz"]

    stored = Path(settings.artifact_dir) / result.run.run_id
    assert sorted(p.name for p in stored.iterdir()) == ["linux-packages", "macos-packages"]
    manifest = json.loads((stored / "linux-packages" / "manifest.json").read_text())
    assert manifest["target"] == "linux-x86_64-musl"


def test_gate_failure_starts_no_job(settings):
    result = run(
        dsl.pipeline(spellcheck("echo 'teh: typo' >&2; exit 2"), linux_job(), macos_job()),
        settings,
    )

    assert result.status == PipelineStatus.FAILURE
    assert result.failure_kind == FailureKind.GATE
    assert result.exit_code == 10
    assert result.started_jobs == []
    assert result.published == {}
    assert all(r.state == JobState.CANCELLED for r in result.jobs.values())
    assert not Path(settings.work_dir).exists()
    assert "teh: typo" in result.gate.stage.failed_step.output

    with pytest.raises(GateFailure):
        result.raise_for_status()


def test_failing_job_does_not_affect_sibling(settings):
    broken = linux_job(
        build_step("Build packages", "echo 'linker error' >&2; exit 1"),
        build_step("Never runs", "touch never.deb"),
    )
    result = run(dsl.pipeline(spellcheck(), broken, macos_job()), settings)

    assert result.status == PipelineStatus.FAILURE
    assert result.exit_code == 20
    assert result.jobs["macos-x86_64"].state == JobState.SUCCEEDED
    assert sorted(result.published) == ["macos-packages"]

    linux = result.jobs["linux-x86_64-musl"]
    assert linux.state == JobState.FAILED
    assert linux.failure_kind == FailureKind.BUILD
    assert linux.failed_step.step.run == "echo 'linker error' >&2; exit 1"
    assert "linker error" in linux.failed_step.output
    assert linux.stage.steps[-1].skipped

    with pytest.raises(StepExecutionFailure) as exc:
        result.raise_for_status()
    assert exc.value.job == "linux-x86_64-musl"


def test_verification_failure_fails_the_pipeline(settings):
    job = macos_job(
        build_step("Build binary", "echo macos > chdig-macos-x86_64 && gzip -n --keep chdig-macos-x86_64"),
        verify("Check binary", "exit 1"),
    )
    result = run(dsl.pipeline(spellcheck(), linux_job(), job), settings)

    assert result.failure_kind == FailureKind.VERIFICATION
    assert result.exit_code == 30
    assert sorted(result.published) == ["linux-packages"]


def test_build_failure_takes_precedence_over_verification(settings):
    broken = linux_job(build_step("Build packages", "exit 1"))
    unverified = macos_job(build_step("Build", "touch chdig-macos-x86_64.gz"), verify("Check", "exit 1"))

    result = run(dsl.pipeline(spellcheck(), broken, unverified), settings)

    assert result.failure_kind == FailureKind.BUILD
    assert result.exit_code == 20


def test_jobs_run_concurrently(settings, tmp_path):
    shared = tmp_path / "shared"
    shared.mkdir()
    wait_for = (
        'touch "{shared}/{me}"; for i in $(seq 100); do [ -f "{shared}/{other}" ] && break; sleep 0.1; done; '
        '[ -f "{shared}/{other}" ]'
    )
    linux = linux_job(
        build_step("Rendezvous", wait_for.format(shared=shared, me="linux", other="macos")),
        build_step("Build packages", "touch chdig_amd64.deb"),
    )
    macos = macos_job(
        build_step("Rendezvous", wait_for.format(shared=shared, me="macos", other="linux")),
        build_step("Build binary", "touch chdig-macos-x86_64.gz"),
    )

    result = run(dsl.pipeline(spellcheck(), linux, macos), settings)

    assert result.status == PipelineStatus.SUCCESS


def test_sequential_and_concurrent_runs_produce_the_same_artifacts(settings, tmp_path):
    pipeline = dsl.pipeline(spellcheck(), linux_job(), macos_job())

    concurrent = run(pipeline, settings)
    sequential = run(pipeline, replace(settings, max_workers=1, artifact_dir=str(tmp_path / "seq-artifacts")))

    def digests(result, root):
        out = {}
        for name in result.published:
            manifest = json.loads((Path(root) / result.run.run_id / name / "manifest.json").read_text())
            out[name] = {f["name"]: f["sha256"] for f in manifest["files"]}
        return out

    assert digests(concurrent, settings.artifact_dir) == digests(sequential, tmp_path / "seq-artifacts")


def test_jobs_get_private_workspaces(settings):
    linux = linux_job(build_step("Build packages", 'touch chdig_amd64.deb && echo "$RELEASECI_TARGET" > owner'))
    macos = macos_job(build_step("Build binary", "touch chdig-macos-x86_64.gz && test ! -e owner"))

    result = run(dsl.pipeline(spellcheck(), linux, macos), settings)

    assert result.status == PipelineStatus.SUCCESS
    assert result.published["macos-packages"].files == ["chdig-macos-x86_64.gz"]


def test_gate_is_skipped_when_it_already_passed_for_revision(settings, git_source):
    counter = Path(settings.source_dir) / "gate-runs"
    pipeline = dsl.pipeline(spellcheck(f'echo run >> "{counter}"'), linux_job())
    orchestrator = PipelineOrchestrator(pipeline, settings)

    first = orchestrator.run(PipelineRun(revision=git_source))
    retry = orchestrator.run(PipelineRun(revision=git_source))
    forced = orchestrator.run(PipelineRun(revision=git_source), force_gate=True)

    assert first.status == retry.status == forced.status == PipelineStatus.SUCCESS
    assert retry.gate.skipped
    assert not forced.gate.skipped
    assert counter.read_text().split() == ["run", "run"]
    assert GateLedger(settings.state_dir).passed(git_source, pipeline.gate)


def test_gate_refuses_a_checkout_at_another_revision(settings, git_source):
    commit(settings.source_dir, "typos.toml", "[default]\n")
    marker = Path(settings.source_dir) / "gate-ran"
    pipeline = dsl.pipeline(spellcheck(f'touch "{marker}"'), linux_job(), macos_job())

    result = PipelineOrchestrator(pipeline, settings).run(PipelineRun(revision=git_source))

    assert result.failure_kind == FailureKind.CONFIGURATION
    assert result.exit_code == 2
    assert result.started_jobs == []
    assert "not at revision" in result.gate.error
    assert not marker.exists()
    assert not GateLedger(settings.state_dir).passed(git_source, pipeline.gate)


def test_gate_refuses_an_unknown_revision(settings, git_source):
    result = run(dsl.pipeline(spellcheck(), linux_job()), settings)

    assert result.exit_code == 2
    assert result.started_jobs == []
    assert "not found" in result.gate.error


def test_gate_outside_git_is_not_remembered(settings):
    counter = Path(settings.source_dir) / "gate-runs"
    pipeline = dsl.pipeline(spellcheck(f'echo run >> "{counter}"'), linux_job())
    orchestrator = PipelineOrchestrator(pipeline, settings)

    first = orchestrator.run(PipelineRun(revision="abc123"))
    retry = orchestrator.run(PipelineRun(revision="abc123"))

    assert first.status == retry.status == PipelineStatus.SUCCESS
    assert not retry.gate.skipped
    assert counter.read_text().split() == ["run", "run"]
    assert not GateLedger(settings.state_dir).passed("abc123", pipeline.gate)


def test_gate_with_uncommitted_changes_is_not_remembered(settings, git_source):
    (Path(settings.source_dir) / "README.md").write_text("edited, not committed\n")
    pipeline = dsl.pipeline(spellcheck(), linux_job())

    result = PipelineOrchestrator(pipeline, settings).run(PipelineRun(revision=git_source))

    assert result.status == PipelineStatus.SUCCESS
    assert not GateLedger(settings.state_dir).passed(git_source, pipeline.gate)


def test_gate_runs_in_the_source_checkout(settings):
    (Path(settings.source_dir) / "typos.toml").write_text("")
    result = run(dsl.pipeline(spellcheck("test -f typos.toml"), linux_job()), settings)

    assert result.gate.passed


def test_missing_gate_tool_is_a_configuration_failure(settings):
    pipeline = dsl.pipeline(
        gate(sh("Spell Check Repo", "typos"), name="spellcheck", requires=["definitely-not-a-real-tool-xyz"]),
        linux_job(),
    )

    result = run(pipeline, settings)

    assert result.failure_kind == FailureKind.CONFIGURATION
    assert result.exit_code == 2
    assert result.started_jobs == []


def test_missing_job_tool_fails_only_that_job(settings):
    result = run(
        dsl.pipeline(spellcheck(), linux_job(requires=["definitely-not-a-real-tool-xyz"]), macos_job()),
        settings,
    )

    assert result.jobs["linux-x86_64-musl"].failure_kind == FailureKind.CONFIGURATION
    assert result.jobs["macos-x86_64"].state == JobState.SUCCEEDED
    assert result.exit_code == 2


def test_missing_artifacts_fail_the_job(settings):
    job = linux_job(build_step("Build packages", "echo nothing"))

    result = run(dsl.pipeline(spellcheck(), job), settings)

    linux = result.jobs["linux-x86_64-musl"]
    assert linux.state == JobState.FAILED
    assert linux.error.startswith("artifacts:")
    assert result.published == {}


def test_corrupt_cache_does_not_change_the_outcome(settings, tmp_path):
    cache = dependency_cache("target", namespace="rust-linux", toolchain={"rustc": "1.80.0"})
    job = linux_job(
        build_step("Build packages", "mkdir -p target && echo dep > target/dep && touch chdig_amd64.deb"),
        cache=cache,
    )
    key, _ = compute_cache_key(job, tmp_path)
    corrupt = Path(settings.cache_dir) / "rust-linux" / f"{key}.tar.gz"
    corrupt.parent.mkdir(parents=True)
    corrupt.write_bytes(b"garbage")

    result = run(dsl.pipeline(spellcheck(), job), settings)

    assert result.status == PipelineStatus.SUCCESS
    assert "cache miss" in result.jobs["linux-x86_64-musl"].cache
    # replaced by a usable entry
    assert corrupt.stat().st_size > len(b"garbage")


def test_home_cache_is_restored_only_into_its_own_job(settings):
    registry = dependency_cache("~/.cargo/registry", namespace="rust-linux", toolchain={"rustc": "1.80.0"})
    fill = linux_job(
        build_step(
            "Fetch crates",
            "mkdir -p ~/.cargo/registry && touch ~/.cargo/registry/musl-only && touch chdig_amd64.deb",
        ),
        cache=registry,
    )
    first = run(dsl.pipeline(spellcheck(), fill), settings)
    assert first.status == PipelineStatus.SUCCESS

    reuse = linux_job(
        build_step("Build packages", "test -e ~/.cargo/registry/musl-only && touch chdig_amd64.deb"),
        cache=registry,
    )
    sibling = macos_job(
        build_step("Build binary", "sleep 1; test ! -e ~/.cargo/registry/musl-only && touch chdig-macos-x86_64.gz"),
    )
    second = run(dsl.pipeline(spellcheck(), reuse, sibling), settings)

    assert second.status == PipelineStatus.SUCCESS
    assert "cache hit: restored" in second.jobs["linux-x86_64-musl"].cache
    home = Path(settings.work_dir) / second.run.run_id / ".home" / "linux-x86_64-musl"
    assert (home / ".cargo" / "registry" / "musl-only").exists()


def test_cancel_before_start_runs_nothing(settings):
    cancel = threading.Event()
    cancel.set()

    result = run(dsl.pipeline(spellcheck(), linux_job(), macos_job()), settings, cancel=cancel)

    assert result.status == PipelineStatus.CANCELLED
    assert result.exit_code == 130
    assert result.started_jobs == []


def test_cancel_terminates_running_jobs(settings):
    cancel = threading.Event()
    slow = linux_job(build_step("Build packages", "sleep 30"), build_step("Never", "touch chdig_amd64.deb"))
    timer = threading.Timer(0.5, cancel.set)
    timer.start()
    try:
        result = run(dsl.pipeline(spellcheck(), slow), settings, cancel=cancel)
    finally:
        timer.cancel()

    assert result.status == PipelineStatus.CANCELLED
    assert result.jobs["linux-x86_64-musl"].state == JobState.CANCELLED
    assert result.published == {}


def test_select_subset_of_targets(settings):
    result = run(dsl.pipeline(spellcheck(), linux_job(), macos_job()), settings, targets=["macos-x86_64"])

    assert list(result.jobs) == ["macos-x86_64"]
    assert sorted(result.published) == ["macos-packages"]


def test_unknown_target_is_rejected(settings):
    orchestrator = PipelineOrchestrator(dsl.pipeline(spellcheck(), linux_job()), settings)

    with pytest.raises(ConfigurationError, match="unknown target"):
        orchestrator.select(["windows-x86_64"])


def test_shared_collection_is_rejected_before_any_work(settings):
    clash = platform_job("macos-x86_64", build_step("b", "true"), artifacts=["*.gz"], collection="linux-packages")
    orchestrator = PipelineOrchestrator(dsl.pipeline(spellcheck("touch gate-ran"), linux_job(), clash), settings)

    with pytest.raises(ConfigurationError, match="same collection"):
        orchestrator.run(PipelineRun(revision="abc123"))
    assert not (Path(settings.source_dir) / "gate-ran").exists()


def test_shared_cache_namespace_is_rejected(settings):
    shared = dependency_cache("target", namespace="rust")
    pipeline = dsl.pipeline(spellcheck(), linux_job(cache=shared), macos_job(cache=shared))

    with pytest.raises(ConfigurationError, match="share cache namespace"):
        PipelineOrchestrator(pipeline, settings).select()
