"""Tests for StageExecutor ordering and fail-fast behaviour."""
import threading

from releaseci.dsl import sh, verify
from releaseci.model import FailureKind
from releaseci.stage import StageExecutor


def test_steps_run_in_declared_order(tmp_path):
    steps = [sh(f"step-{i}", f"echo {i} >> order.txt") for i in range(5)]

    result = StageExecutor().execute(steps, workdir=tmp_path)

    assert result.ok
    assert (tmp_path / "order.txt").read_text().split() == ["0", "1", "2", "3", "4"]


def test_first_failure_skips_every_later_step(tmp_path):
    steps = [
        sh("prepare", "echo ready"),
        sh("broken", "echo boom >&2; exit 4"),
        sh("instrumented", "touch later-ran"),
        sh("also-instrumented", "touch later-ran-2"),
    ]

    result = StageExecutor().execute(steps, workdir=tmp_path)

    assert result.status == "failed"
    assert result.failed_step.step.name == "broken"
    assert result.failed_step.exit_code == 4
    assert not (tmp_path / "later-ran").exists()
    assert not (tmp_path / "later-ran-2").exists()
    assert [s.skipped for s in result.steps] == [False, False, True, True]
    assert result.failure_kind == FailureKind.BUILD


def test_continue_on_failure_keeps_going(tmp_path):
    steps = [
        sh("flaky info", "exit 1", continue_on_failure=True),
        sh("real work", "touch done"),
    ]

    result = StageExecutor().execute(steps, workdir=tmp_path)

    assert result.ok
    assert (tmp_path / "done").exists()
    assert result.steps[0].exit_code == 1


def test_logs_are_kept_for_every_executed_step(tmp_path):
    steps = [
        sh("one", "echo first"),
        sh("two", "echo second; echo warn >&2"),
        sh("three", "echo third; exit 2"),
    ]

    result = StageExecutor().execute(steps, workdir=tmp_path)

    assert result.logs["one"].strip() == "first"
    assert "second" in result.logs["two"] and "warn" in result.logs["two"]
    assert "third" in result.logs["three"]


def test_verify_step_failure_is_a_verification_failure(tmp_path):
    steps = [sh("build", "touch app"), verify("check", "exit 1")]

    result = StageExecutor().execute(steps, workdir=tmp_path)

    assert result.failure_kind == FailureKind.VERIFICATION


def test_missing_command_is_a_configuration_failure(tmp_path):
    result = StageExecutor().execute([sh("tool", "definitely-not-a-real-tool-xyz")], workdir=tmp_path)

    assert result.failed_step.not_found
    assert result.failure_kind == FailureKind.CONFIGURATION


def test_missing_command_is_not_excused_by_continue_on_failure(tmp_path):
    steps = [
        sh("tool", "definitely-not-a-real-tool-xyz", continue_on_failure=True),
        sh("after", "touch after"),
    ]

    result = StageExecutor().execute(steps, workdir=tmp_path)

    assert result.status == "failed"
    assert not (tmp_path / "after").exists()


def test_step_timeout_fails_the_stage(tmp_path):
    result = StageExecutor(default_timeout=0.3).execute(
        [sh("hang", "sleep 30"), sh("after", "touch after")], workdir=tmp_path
    )

    assert result.failed_step.timed_out
    assert not (tmp_path / "after").exists()


def test_zero_step_timeout_disables_the_default(tmp_path):
    result = StageExecutor(default_timeout=0.3).execute(
        [sh("slow", "sleep 1", timeout=0), sh("after", "touch after")], workdir=tmp_path
    )

    assert result.ok
    assert not result.steps[0].timed_out
    assert (tmp_path / "after").exists()


def test_cancelled_before_start_runs_nothing(tmp_path):
    cancel = threading.Event()
    cancel.set()

    result = StageExecutor().execute([sh("a", "touch a")], workdir=tmp_path, cancel=cancel)

    assert result.status == "cancelled"
    assert result.failure_kind == FailureKind.CANCELLED
    assert not (tmp_path / "a").exists()
