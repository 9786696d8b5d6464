# cache.py
from __future__ import annotations

import hashlib
import io
import json
import subprocess
import tarfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from .errors import CacheFailure
from .model import CacheSpec, PlatformBuildJob
from .ui.console import Console, get_console

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Dependency caching per build target:
#   cache_key = hash(
#       namespace (defaults to the target triple),
#       target triple,
#       toolchain identity (pinned versions or `<tool> --version`),
#       contents of declared inputs (lockfiles, globs),
#       optional extra salt
#   )
#
# Cache entry:
#   <root>/<namespace>/<key>.tar.gz          declared cache paths
#   <root>/<namespace>/<key>.manifest.json   what went into the key
#
# The cache is advisory. A missing, corrupt or unreadable entry only costs
# a full rebuild: restore() and save() log a warning and never raise.
# ---------------------------------------------------------------------

DEFAULT_CACHE_EXCLUDES = [
    ".git/**",
    ".releaseci/**",
    "**/__pycache__/**",
    "**/*.pyc",
    "**/.DS_Store",
]

KEY_FORMAT_VERSION = 1
_HOME_PREFIX = "home"
_WORKSPACE_PREFIX = "workspace"


@dataclass(frozen=True)
class CacheHit:
    hit: bool
    key: str
    reason: str  # human readable
    exact: bool = False
    manifest: Dict = field(default_factory=dict)


@dataclass(frozen=True)
class CacheSave:
    saved: bool
    key: str
    reason: str


def _sha256_str(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _relpath(p: Path, root: Path) -> str:
    return p.resolve().relative_to(root.resolve()).as_posix()


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _matches_any_glob(rel: str, globs: List[str]) -> bool:
    rel_path = Path(rel)
    return any(rel_path.match(g) for g in globs)


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def _resolve_globs(root: Path, patterns: List[str]) -> List[Path]:
    """
    Expand input patterns into concrete paths.
    Supports:
      - file path: "Cargo.lock"
      - dir path:  "vendor/"
      - glob:      "**/Cargo.lock"
    """
    out: List[Path] = []
    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        p = root / pat
        if p.exists():
            out.append(p)
            continue
        out.extend(m for m in sorted(root.glob(pat)) if m.exists())

    seen = set()
    uniq: List[Path] = []
    for p in out:
        rp = str(p.resolve())
        if rp not in seen:
            seen.add(rp)
            uniq.append(p)
    return uniq


def _tool_version(tool: str) -> Optional[str]:
    """Best-effort version discovery for toolchain identity."""
    for cmd in ([tool, "--version"], [tool, "-V"], [tool, "version"]):
        try:
            completed = subprocess.run(cmd, text=True, capture_output=True, check=False, timeout=30)
        except (OSError, subprocess.SubprocessError):
            continue
        text = (completed.stdout or "").strip() or (completed.stderr or "").strip()
        if completed.returncode == 0 and text:
            return " ".join(text.split())
    return None


def _hash_inputs(root: Path, inputs: List[str], *, excludes: List[str]) -> Tuple[str, Dict]:
    resolved = _resolve_globs(root, inputs)
    file_fps: List[Tuple[str, str, int]] = []

    for p in resolved:
        files = [p] if p.is_file() else list(_iter_files_under(p))
        for f in files:
            rel = _relpath(f, root)
            if _matches_any_glob(rel, excludes):
                continue
            file_fps.append((rel, _hash_file_contents(f), f.stat().st_size))

    file_fps.sort(key=lambda t: t[0])
    payload = {"files": file_fps, "patterns": sorted(inputs)}
    return _sha256_str(_json_dumps_stable(payload)), payload


def toolchain_identity(job: PlatformBuildJob) -> Dict[str, Optional[str]]:
    spec = job.cache or CacheSpec()
    if spec.toolchain:
        return dict(spec.toolchain)
    return {tool: _tool_version(tool) for tool in job.requires}


def compute_cache_key(job: PlatformBuildJob, workspace: str | Path) -> Tuple[str, Dict]:
    """
    Returns (cache_key, manifest). The target triple is always part of the
    key, so an entry built for one target can never match another.
    """
    root = Path(workspace).resolve()
    spec = job.cache or CacheSpec()
    inputs_hash, inputs_manifest = _hash_inputs(root, list(spec.inputs), excludes=DEFAULT_CACHE_EXCLUDES)

    payload = {
        "v": KEY_FORMAT_VERSION,
        "namespace": job.cache_namespace or job.target,
        "target": job.target,
        "toolchain": toolchain_identity(job),
        "inputs_hash": inputs_hash,
        "extra": dict(spec.extra),
    }
    key = _sha256_str(_json_dumps_stable(payload))
    manifest = {
        "key": key,
        "payload": payload,
        "inputs": inputs_manifest,
        "paths": list(spec.paths),
        "generated_at_unix": int(time.time()),
    }
    return key, manifest


def _arc_root(entry: str, workspace: Path, home: Path) -> Tuple[str, Path, Path]:
    """Archive prefix of an entry, its base directory and its source path."""
    if entry == "~" or entry.startswith("~/"):
        return _HOME_PREFIX, home, home / entry[2:]
    return _WORKSPACE_PREFIX, workspace, workspace / entry


def _tar_add_entry(tar: tarfile.TarFile, entry: str, workspace: Path, home: Path) -> int:
    prefix, base, src = _arc_root(entry, workspace, home)
    if not src.exists():
        return 0

    files = [src] if src.is_file() else list(_iter_files_under(src))
    added = 0
    for f in files:
        rel = _relpath(f, base)
        if _matches_any_glob(rel, DEFAULT_CACHE_EXCLUDES):
            continue
        tar.add(str(f), arcname=f"{prefix}/{rel}", recursive=False)
        added += 1
    return added


class CacheStore:
    """
    File-based cache store, one directory per namespace:
      root/
        <namespace>/
          <key>.tar.gz
          <key>.manifest.json
    """

    def __init__(self, root: str | Path, console: Console | None = None):
        self.root = Path(root).resolve()
        self.console = console or get_console()

    def _ns_dir(self, namespace: str) -> Path:
        return self.root / namespace

    def artifact_path(self, namespace: str, key: str) -> Path:
        return self._ns_dir(namespace) / f"{key}.tar.gz"

    def manifest_path(self, namespace: str, key: str) -> Path:
        return self._ns_dir(namespace) / f"{key}.manifest.json"

    def entries(self, namespace: str) -> List[Path]:
        """Tarballs in a namespace, newest first."""
        d = self._ns_dir(namespace)
        if not d.is_dir():
            return []
        return sorted(d.glob("*.tar.gz"), key=lambda p: p.stat().st_mtime, reverse=True)

    def namespaces(self) -> List[str]:
        if not self.root.is_dir():
            return []
        return sorted(p.name for p in self.root.iterdir() if p.is_dir())

    def restore(self, job: PlatformBuildJob, workspace: str | Path, *, home: str | Path | None = None) -> CacheHit:
        """
        Restore cached paths into the job workspace (and `~` paths into `home`).

        Exact key first; with fallback enabled, the newest entry of the same
        namespace built for the same target and toolchain is restored as a
        partial hit. Never raises.
        """
        namespace = job.cache_namespace
        if namespace is None:
            return CacheHit(hit=False, key="", reason="cache disabled for job")

        ws = Path(workspace).resolve()
        home_dir = Path(home).resolve() if home is not None else Path.home()
        try:
            key, manifest = compute_cache_key(job, ws)
        except Exception as e:
            self._warn(job, f"could not compute cache key, continuing without cache: {e}")
            return CacheHit(hit=False, key="", reason=f"key computation failed: {e}")

        candidates = []
        exact = self.artifact_path(namespace, key)
        if exact.exists():
            candidates.append((exact, True))
        if job.cache.fallback:
            candidates.extend(
                (p, False) for p in self.entries(namespace) if p != exact and self._compatible(p, manifest)
            )

        for art, is_exact in candidates:
            try:
                self._extract(art, ws, home_dir)
            except CacheFailure as e:
                self._warn(job, f"{e.message}, discarding")
                self._discard(art)
                continue
            except Exception as e:
                self._warn(job, f"cache entry {art.name} unusable, discarding: {e}")
                self._discard(art)
                continue
            stored = self._read_manifest(art)
            reason = "cache hit: restored" if is_exact else f"partial hit: restored {art.name[:12]}..."
            return CacheHit(hit=True, key=key, reason=reason, exact=is_exact, manifest=stored or manifest)

        return CacheHit(hit=False, key=key, reason="cache miss", manifest=manifest)

    def save(
        self,
        job: PlatformBuildJob,
        workspace: str | Path,
        *,
        job_succeeded: bool,
        restored: Optional[CacheHit] = None,
        home: str | Path | None = None,
    ) -> CacheSave:
        """
        Save the job's cache paths under its current key.

        The cache-on-failure policy is the save_on_failure flag: a failed job
        still saves when it is set, because partially built dependencies are
        reusable. Errors are logged and reported, never raised.
        """
        namespace = job.cache_namespace
        if namespace is None:
            return CacheSave(saved=False, key="", reason="cache disabled for job")

        spec = job.cache
        if not job_succeeded and not spec.save_on_failure:
            return CacheSave(saved=False, key="", reason="job failed and save_on_failure is off")
        if not spec.paths:
            return CacheSave(saved=False, key="", reason="no cache paths declared")

        ws = Path(workspace).resolve()
        home_dir = Path(home).resolve() if home is not None else Path.home()
        try:
            key, manifest = compute_cache_key(job, ws)
            if restored is not None and restored.exact and restored.key == key:
                return CacheSave(saved=False, key=key, reason="exact hit, already cached")
            self._write(namespace, key, manifest, spec.paths, ws, home_dir)
            self.prune(namespace, keep=spec.keep)
        except Exception as e:
            self._warn(job, f"cache save failed: {e}")
            return CacheSave(saved=False, key="", reason=f"save failed: {e}")

        return CacheSave(saved=True, key=key, reason=f"saved ({key[:12]}...)")

    def prune(self, namespace: str, keep: int = 3) -> int:
        """Keep only the newest N entries of a namespace. Returns how many were removed."""
        removed = 0
        for p in self.entries(namespace)[max(keep, 0):]:
            self._discard(p)
            removed += 1
        return removed

    # -----------------------------------------------------------------

    def _write(self, namespace: str, key: str, manifest: Dict, paths: List[str], ws: Path, home: Path) -> None:
        self._ns_dir(namespace).mkdir(parents=True, exist_ok=True)
        art = self.artifact_path(namespace, key)
        man = self.manifest_path(namespace, key)
        tmp = art.with_name(art.name + ".tmp")

        try:
            # build in tmp, then atomic rename
            with tarfile.open(str(tmp), mode="w:gz") as tar:
                count = 0
                for entry in paths:
                    count += _tar_add_entry(tar, entry, ws, home)
                manifest = dict(manifest, files=count)
                payload = json.dumps(manifest, sort_keys=True, indent=2).encode("utf-8")
                info = tarfile.TarInfo(name=f".releaseci_cache_manifest/{key}.manifest.json")
                info.size = len(payload)
                info.mtime = int(time.time())
                tar.addfile(info, fileobj=io.BytesIO(payload))

            tmp.replace(art)
            man.write_text(json.dumps(manifest, sort_keys=True, indent=2), encoding="utf-8")
        finally:
            tmp.unlink(missing_ok=True)

    def _extract(self, art: Path, ws: Path, home: Path) -> None:
        try:
            tar = tarfile.open(str(art), mode="r:gz")
        except (tarfile.TarError, OSError, EOFError) as e:
            raise CacheFailure(f"cannot read {art.name}: {e}", entry=str(art)) from e
        with tar:
            try:
                members = tar.getmembers()
            except (tarfile.TarError, OSError, EOFError) as e:
                raise CacheFailure(f"cannot read {art.name}: {e}", entry=str(art)) from e
            for prefix, dest in ((_WORKSPACE_PREFIX, ws), (_HOME_PREFIX, home)):
                chosen = []
                for m in members:
                    if not m.name.startswith(prefix + "/"):
                        continue
                    m = m.replace(name=m.name[len(prefix) + 1:])
                    chosen.append(m)
                if chosen:
                    dest.mkdir(parents=True, exist_ok=True)
                    tar.extractall(path=str(dest), members=chosen, filter="data")

    def _compatible(self, art: Path, manifest: Dict) -> bool:
        # a fallback entry must come from the same target and toolchain
        stored = self._read_manifest(art).get("payload", {})
        current = manifest["payload"]
        return all(stored.get(k) == current[k] for k in ("v", "target", "toolchain"))

    def _read_manifest(self, art: Path) -> Dict:
        man = art.with_name(art.name[: -len(".tar.gz")] + ".manifest.json")
        try:
            return json.loads(man.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return {}

    def _discard(self, art: Path) -> None:
        man = art.with_name(art.name[: -len(".tar.gz")] + ".manifest.json")
        art.unlink(missing_ok=True)
        man.unlink(missing_ok=True)

    def _warn(self, job: PlatformBuildJob, message: str) -> None:
        self.console.print_warning(message, owner=job.target)
