from __future__ import annotations

import os
from dataclasses import dataclass, replace

CACHE_DIR = os.environ.get("RELEASECI_CACHE_DIR", ".releaseci/cache")
WORK_DIR = os.environ.get("RELEASECI_WORK_DIR", ".releaseci/work")
ARTIFACT_DIR = os.environ.get("RELEASECI_ARTIFACT_DIR", ".releaseci/artifacts")
STATE_DIR = os.environ.get("RELEASECI_STATE_DIR", ".releaseci/state")
SOURCE_DIR = os.environ.get("RELEASECI_SOURCE_DIR", ".")
MAX_WORKERS = int(os.environ.get("RELEASECI_MAX_WORKERS", "0")) or None
STEP_TIMEOUT = float(os.environ.get("RELEASECI_STEP_TIMEOUT", "3600"))


@dataclass(frozen=True)
class Settings:
    cache_dir: str = CACHE_DIR
    work_dir: str = WORK_DIR
    artifact_dir: str = ARTIFACT_DIR
    state_dir: str = STATE_DIR
    source_dir: str = SOURCE_DIR
    max_workers: int | None = MAX_WORKERS
    step_timeout: float | None = STEP_TIMEOUT

    @classmethod
    def from_env(cls, **overrides) -> "Settings":
        env = os.environ
        base = cls(
            cache_dir=env.get("RELEASECI_CACHE_DIR", CACHE_DIR),
            work_dir=env.get("RELEASECI_WORK_DIR", WORK_DIR),
            artifact_dir=env.get("RELEASECI_ARTIFACT_DIR", ARTIFACT_DIR),
            state_dir=env.get("RELEASECI_STATE_DIR", STATE_DIR),
            source_dir=env.get("RELEASECI_SOURCE_DIR", SOURCE_DIR),
            max_workers=int(env.get("RELEASECI_MAX_WORKERS", "0")) or None,
            step_timeout=float(env.get("RELEASECI_STEP_TIMEOUT", str(STEP_TIMEOUT))) or None,
        )
        # None means "keep the environment/default value"
        settings = replace(base, **{k: v for k, v in overrides.items() if v is not None})
        if not settings.step_timeout:
            settings = replace(settings, step_timeout=None)
        return settings
