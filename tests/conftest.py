import subprocess
from pathlib import Path

import pytest

from releaseci.settings import Settings
from releaseci.ui.console import Console, set_console


def git(cwd, *args):
    return subprocess.check_output(
        ["git", "-c", "user.name=releaseci", "-c", "user.email=ci@example.com", "-c", "commit.gpgsign=false", *args],
        cwd=str(cwd),
        text=True,
    ).strip()


def commit(repo, name, content):
    (Path(repo) / name).write_text(content)
    git(repo, "add", name)
    git(repo, "commit", "-q", "-m", f"update {name}")
    return git(repo, "rev-parse", "HEAD")


@pytest.fixture(autouse=True)
def quiet_console():
    console = Console(quiet=True)
    set_console(console)
    return console


@pytest.fixture
def settings(tmp_path):
    source = tmp_path / "source"
    source.mkdir()
    return Settings(
        cache_dir=str(tmp_path / "cache"),
        work_dir=str(tmp_path / "work"),
        artifact_dir=str(tmp_path / "artifacts"),
        state_dir=str(tmp_path / "state"),
        source_dir=str(source),
        max_workers=None,
        step_timeout=30,
    )


@pytest.fixture
def git_source(settings):
    """Turn the source directory into a git checkout; returns the HEAD sha."""
    git(settings.source_dir, "init", "-q")
    return commit(settings.source_dir, "README.md", "chdig\n")
