# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, Iterable, List, Set, Tuple

from .errors import ConfigurationError
from .model import TARGET_RE, Pipeline


def build_dag(nodes: Iterable[Tuple[str, Iterable[str]]]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from (name, needs) pairs.

    Requires:
      - name: str (unique)
      - needs: names of nodes that must run BEFORE this node
    """
    nodes = [(name, list(needs)) for name, needs in nodes]
    names = [n for n, _ in nodes]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ConfigurationError(f"Duplicate node names found: {dupes}")

    name_set = set(names)
    adj: Dict[str, Set[str]] = {n: set() for n in name_set}
    indeg: Dict[str, int] = {n: 0 for n in name_set}

    for name, needs in nodes:
        for dep in needs:
            if dep not in name_set:
                raise ConfigurationError(
                    f"'{name}' needs missing node '{dep}'. Known nodes: {sorted(name_set)}"
                )
            # edge dep -> name (dep must run before name)
            if name not in adj[dep]:
                adj[dep].add(name)
                indeg[name] += 1

    return adj, indeg


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert the DAG into topological levels.
    Every node of a level can run in parallel.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted(n for n, d in indeg.items() if d == 0))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level: List[str] = []
        for _ in range(len(q)):
            node = q.popleft()
            level.append(node)
            processed += 1
            for child in sorted(adj.get(node, set())):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)
        levels.append(level)

    if processed != len(indeg):
        remaining = sorted(n for n, d in indeg.items() if d > 0)
        raise ConfigurationError(f"job graph has a cycle. Stuck nodes: {remaining}")

    return levels


def pipeline_graph(pipeline: Pipeline) -> List[List[str]]:
    """
    Validate the single-barrier shape: one gate node, then N independent
    terminal job nodes that each need only the gate.

    Returns the levels: [[gate], [job, job, ...]].
    """
    gate = pipeline.gate.name
    if not pipeline.gate.steps:
        raise ConfigurationError("gate stage has no steps")

    for job in pipeline.jobs:
        if not TARGET_RE.match(job.target):
            raise ConfigurationError(f"malformed target id {job.target!r}", job=job.target)
        extra = [n for n in job.needs if n != gate]
        if extra:
            raise ConfigurationError(
                f"job '{job.target}' needs {extra}; build jobs may only depend on the gate",
                job=job.target,
            )

    nodes = [(gate, [])] + [(j.target, [gate]) for j in pipeline.jobs]
    adj, indeg = build_dag(nodes)
    levels = topo_levels(adj, indeg)

    if pipeline.jobs and len(levels) != 2:
        raise ConfigurationError(f"expected gate -> jobs, got {len(levels)} levels")
    return levels


def check_isolation(pipeline: Pipeline) -> None:
    """Concurrent jobs must not share a cache namespace or an artifact collection."""
    namespaces: Dict[str, str] = {}
    collections: Dict[str, str] = {}
    for job in pipeline.jobs:
        ns = job.cache_namespace
        if ns is not None:
            if ns in namespaces:
                raise ConfigurationError(
                    f"jobs '{namespaces[ns]}' and '{job.target}' share cache namespace '{ns}'",
                    job=job.target,
                )
            namespaces[ns] = job.target
        if job.collection in collections:
            raise ConfigurationError(
                f"jobs '{collections[job.collection]}' and '{job.target}' publish to the same collection "
                f"'{job.collection}'",
                job=job.target,
            )
        collections[job.collection] = job.target
