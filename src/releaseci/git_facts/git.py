# git.py
# Thin wrapper around the Git CLI used by the pipeline front end.
# The orchestrator itself never talks to git directly: checkout happens
# inside each job's workspace as ordinary declared steps. This module only
# answers questions about the repository the CLI is invoked from
# (which revision, which branch, which paths changed).

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Run `git <args>` and return stripped stdout.

    A non-zero exit raises subprocess.CalledProcessError; a missing git
    binary raises FileNotFoundError. Callers decide which of those matter.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def head_sha(cwd: Optional[str | Path] = None) -> str:
    """Full SHA of HEAD. This is the default --revision of a run."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def resolve_revision(revision: str, cwd: Optional[str | Path] = None) -> str:
    """Full commit SHA of a revision (sha, abbreviated sha, tag or branch)."""
    return _git(["rev-parse", "--verify", "--quiet", f"{revision}^{{commit}}"], cwd=cwd)


def has_local_changes(cwd: Optional[str | Path] = None) -> bool:
    """
    True when tracked files differ from HEAD.

    Untracked files are ignored: tools run by the gate may leave reports behind.
    """
    return bool(_git(["status", "--porcelain", "--untracked-files=no"], cwd=cwd))


def remote_url(remote: str = "origin", cwd: Optional[str | Path] = None) -> str:
    return _git(["remote", "get-url", remote], cwd=cwd)


def changed_files(base: str, head: str = "HEAD", cwd: Optional[str | Path] = None) -> List[str]:
    """
    Paths (relative to the repo root) changed between two refs.

    Feeds the trigger path filter: a diff that only touches prose does not
    start a pipeline.
    """
    out = _git(["diff", "--name-only", f"{base}..{head}"], cwd=cwd)
    if not out:
        return []
    return out.splitlines()


def merge_base(with_ref: str = "origin/main", cwd: Optional[str | Path] = None) -> str:
    """Common ancestor of HEAD and `with_ref` (where the branch diverged)."""
    return _git(["merge-base", "HEAD", with_ref], cwd=cwd)


def describe_version(cwd: Optional[str | Path] = None) -> Optional[str]:
    """
    Version string derived from tag history (`git describe --tags`).

    Returns None when no tag is reachable, which is exactly what a shallow
    checkout produces: packaging would then stamp a wrong version.
    """
    try:
        return _git(["describe", "--tags"], cwd=cwd)
    except subprocess.CalledProcessError:
        return None
