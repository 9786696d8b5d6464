# triggers.py
from __future__ import annotations

from dataclasses import dataclass, field
from fnmatch import fnmatch
from typing import List, Optional, Tuple

DEFAULT_PATHS_IGNORE = ["**.md", "Documentation/**"]
DEFAULT_EVENT_TYPES = ["opened", "reopened", "synchronize", "manual"]


@dataclass(frozen=True)
class TriggerEvent:
    """A pull-request-like event: revision + target branch + changed paths."""
    revision: str
    branch: str = "main"
    reason: str = "manual"
    changed_paths: Optional[List[str]] = None  # None -> unknown


@dataclass(frozen=True)
class TriggerFilter:
    branches: List[str] = field(default_factory=lambda: ["main"])
    paths_ignore: List[str] = field(default_factory=lambda: list(DEFAULT_PATHS_IGNORE))
    types: List[str] = field(default_factory=lambda: list(DEFAULT_EVENT_TYPES))


def _matches_any(path: str, patterns: List[str]) -> bool:
    return any(fnmatch(path, p) for p in patterns)


def should_trigger(event: TriggerEvent, flt: TriggerFilter | None = None) -> Tuple[bool, str]:
    """
    Decide whether an event starts a pipeline run.

    A change that only touches documentation (every path matches paths_ignore)
    does not trigger. Unknown changed paths always trigger.
    """
    flt = flt or TriggerFilter()

    if flt.branches and not _matches_any(event.branch, flt.branches):
        return False, f"branch {event.branch!r} not in {flt.branches}"

    if flt.types and event.reason not in flt.types:
        return False, f"event type {event.reason!r} not in {flt.types}"

    if event.changed_paths is None:
        return True, "changed paths unknown"

    if not event.changed_paths:
        return False, "no changed paths"

    relevant = [p for p in event.changed_paths if not _matches_any(p, flt.paths_ignore)]
    if not relevant:
        return False, "only documentation paths changed"

    return True, f"{len(relevant)} relevant path(s) changed"


def changed_paths_from_git(compare_ref: str = "origin/main") -> List[str]:
    """Changed files between merge-base(HEAD, compare_ref) and HEAD."""
    from .git_facts.git import changed_files, merge_base

    return changed_files(merge_base(compare_ref), "HEAD")
