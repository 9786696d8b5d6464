# artifacts.py
from __future__ import annotations

import hashlib
import json
import shutil
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Protocol

from .errors import PublishError
from .model import Artifact, ArtifactCollection, PlatformBuildJob


class ArtifactCollector:
    """
    Gathers the files a job produced.

    Only the job's own globs are expanded, and only inside the job's own
    workspace, so a collection never contains another target's packages.
    """

    def collect(self, job: PlatformBuildJob, workspace: str | Path) -> ArtifactCollection:
        ws = Path(workspace).resolve()
        seen: Dict[Path, Artifact] = {}

        for pattern in job.artifacts:
            for match in sorted(ws.glob(pattern)):
                path = match.resolve()
                if not path.is_file():
                    continue
                if not path.is_relative_to(ws):
                    raise PublishError(
                        f"artifact {match} resolves outside the job workspace",
                        job=job.target,
                        pattern=pattern,
                    )
                seen.setdefault(path, Artifact(path=path, target=job.target, collection=job.collection))

        if not seen:
            raise PublishError(
                f"no files matched artifact globs {job.artifacts}",
                job=job.target,
                workspace=str(ws),
            )

        return ArtifactCollection(name=job.collection, target=job.target, artifacts=list(seen.values()))


@dataclass
class PublishReceipt:
    collection: str
    location: str
    files: List[str] = field(default_factory=list)


class ArtifactStore(Protocol):
    def publish(self, run_id: str, collection: ArtifactCollection) -> PublishReceipt:
        ...


def _sha256_file(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


class LocalArtifactStore:
    """
    Stores collections on the local filesystem:
      root/
        <run_id>/
          <collection>/
            <files...>
            manifest.json
    """

    MANIFEST = "manifest.json"

    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()
        self._lock = threading.Lock()
        self._claimed: set[tuple[str, str]] = set()

    def collection_dir(self, run_id: str, name: str) -> Path:
        return self.root / run_id / name

    def publish(self, run_id: str, collection: ArtifactCollection) -> PublishReceipt:
        with self._lock:
            claim = (run_id, collection.name)
            if claim in self._claimed or self.collection_dir(run_id, collection.name).exists():
                raise PublishError(
                    f"collection {collection.name!r} already published for run {run_id}",
                    job=collection.target,
                )
            self._claimed.add(claim)

        dest = self.collection_dir(run_id, collection.name)
        dest.mkdir(parents=True)

        files = []
        for artifact in collection.artifacts:
            if artifact.target != collection.target:
                raise PublishError(
                    f"artifact {artifact.name} belongs to {artifact.target}, not {collection.target}",
                    job=collection.target,
                )
            if artifact.name == self.MANIFEST or (dest / artifact.name).exists():
                raise PublishError(f"duplicate artifact name {artifact.name!r}", job=collection.target)
            shutil.copy2(artifact.path, dest / artifact.name)
            files.append(
                {
                    "name": artifact.name,
                    "sha256": _sha256_file(artifact.path),
                    "size": artifact.path.stat().st_size,
                }
            )

        manifest = {"collection": collection.name, "target": collection.target, "run_id": run_id, "files": files}
        (dest / self.MANIFEST).write_text(json.dumps(manifest, indent=2, sort_keys=True), encoding="utf-8")

        return PublishReceipt(collection=collection.name, location=str(dest), files=[f["name"] for f in files])

    def published(self, run_id: str) -> List[str]:
        run_dir = self.root / run_id
        if not run_dir.is_dir():
            return []
        return sorted(p.name for p in run_dir.iterdir() if (p / self.MANIFEST).exists())
