# dag.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Set, Tuple

from .errors import SchedulingError
from .matrix import expand
from .model import JobInstance, Playbook


@dataclass(frozen=True)
class Wave:
    """Job instances that may start concurrently."""
    index: int
    instances: Tuple[JobInstance, ...]

    @property
    def keys(self) -> List[str]:
        return [i.key for i in self.instances]


def effective_dependencies(playbook: Playbook) -> Dict[str, List[str]]:
    """
    job id -> ids it must wait for.

    Explicit `depends_on` wins. A job without explicit dependencies in stage
    N > 0 implicitly depends on every job of stage N-1, which keeps the
    sequential-stage behavior of playbooks that never declare `needs`.
    """
    deps: Dict[str, List[str]] = {}
    previous: List[str] = []
    for stage in playbook.stages:
        for job in stage.jobs:
            deps[job.id] = list(job.depends_on) if job.depends_on else list(previous)
        if stage.jobs:
            previous = [j.id for j in stage.jobs]
    return deps


def find_cycle(graph: Dict[str, List[str]]) -> Optional[List[str]]:
    """
    Three-color DFS over `node -> dependencies`.
    Returns the cycle path (first node repeated at the end) or None.
    """
    WHITE, GREY, BLACK = 0, 1, 2
    color = {n: WHITE for n in graph}
    stack: List[str] = []

    def visit(node: str) -> Optional[List[str]]:
        color[node] = GREY
        stack.append(node)
        for dep in sorted(graph.get(node, [])):
            if color.get(dep, BLACK) == GREY:
                start = stack.index(dep)
                return stack[start:] + [dep]
            if color.get(dep) == WHITE:
                found = visit(dep)
                if found:
                    return found
        stack.pop()
        color[node] = BLACK
        return None

    for node in sorted(graph):
        if color[node] == WHITE:
            found = visit(node)
            if found:
                # report in execution direction: A -> B means B waits for A
                return list(reversed(found))
    return None


def build_dag(
    instances: List[JobInstance],
    job_deps: Dict[str, List[str]],
) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build the instance-level DAG.

    A dependency on job X means a dependency on every instance of X.
    Returns (adj: dep -> dependents, indeg: key -> unmet dependency count).
    """
    keys = [i.key for i in instances]
    if len(set(keys)) != len(keys):
        dupes = sorted({k for k in keys if keys.count(k) > 1})
        raise SchedulingError(f"Duplicate job instances found: {dupes}")

    by_job: Dict[str, List[str]] = {}
    for inst in instances:
        by_job.setdefault(inst.job_id, []).append(inst.key)

    adj: Dict[str, Set[str]] = {k: set() for k in keys}
    indeg: Dict[str, int] = {k: 0 for k in keys}

    for inst in instances:
        for dep_job in job_deps.get(inst.job_id, []):
            if dep_job not in by_job:
                raise SchedulingError(
                    f"Job '{inst.job_id}' depends on unknown job '{dep_job}'",
                    ref=inst.job_id,
                )
            for dep_key in by_job[dep_job]:
                if inst.key not in adj[dep_key]:
                    adj[dep_key].add(inst.key)
                    indeg[inst.key] += 1

    return adj, indeg


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Repeated topological peeling: level 0 has no unmet dependency, level i+1
    only depends on levels 0..i.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    current = sorted(n for n, d in indeg.items() if d == 0)

    levels: List[List[str]] = []
    processed = 0

    while current:
        levels.append(current)
        processed += len(current)
        nxt: List[str] = []
        for node in current:
            for child in sorted(adj.get(node, set())):
                indeg[child] -= 1
                if indeg[child] == 0:
                    nxt.append(child)
        current = sorted(nxt)

    if processed != len(indeg):
        remaining = sorted(n for n, d in indeg.items() if d > 0)
        graph = {n: [p for p, kids in adj.items() if n in kids] for n in remaining}
        cycle = find_cycle(graph) or remaining
        raise SchedulingError("Dependency cycle detected", cycle=cycle)

    return levels


def schedule(playbook: Playbook) -> List[Wave]:
    """
    Order every job instance of the playbook into waves.

    Cycles are reported with their full path before anything runs.
    """
    job_deps = effective_dependencies(playbook)
    for job_id, deps in job_deps.items():
        for d in deps:
            if d not in job_deps:
                raise SchedulingError(
                    f"Job '{job_id}' depends on unknown job '{d}'",
                    ref=job_id,
                )

    cycle = find_cycle(job_deps)
    if cycle:
        raise SchedulingError("Dependency cycle detected", cycle=cycle)

    instances: List[JobInstance] = []
    for job in playbook.jobs:
        instances.extend(expand(job))
    by_key = {i.key: i for i in instances}

    # preserve declaration/enumeration order within a wave
    order = {i.key: n for n, i in enumerate(instances)}
    adj, indeg = build_dag(instances, job_deps)
    levels = topo_levels(adj, indeg)

    return [
        Wave(index=n, instances=tuple(by_key[k] for k in sorted(level, key=order.__getitem__)))
        for n, level in enumerate(levels)
    ]
