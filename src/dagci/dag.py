# dag.py
from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set

from .matrix import expand_all
from .model import CorrelationPolicy, JobInstance, JobStatus, JobTemplate


# ----------------------------------------------------------------------
# Errors
# ----------------------------------------------------------------------

class GraphError(ValueError):
    """A structural problem with the job graph; no job may run."""


class DuplicateJobError(GraphError):
    def __init__(self, duplicates: List[str]):
        self.duplicates = duplicates
        super().__init__(f"Duplicate job ids found: {duplicates}")


class UnknownDependencyError(GraphError):
    def __init__(self, job: str, dependency: str, known: List[str]):
        self.job = job
        self.dependency = dependency
        super().__init__(
            f"Job '{job}' needs missing job '{dependency}'. Known jobs: {sorted(known)}"
        )


class CycleError(GraphError):
    def __init__(self, cycle: List[str]):
        self.cycle = cycle
        super().__init__(f"Dependency cycle: {' -> '.join(cycle)}")


# ----------------------------------------------------------------------
# Graph
# ----------------------------------------------------------------------

@dataclass
class RunGraph:
    """
    Job instances plus their dependency edges for one run.

    `dependents` maps an instance id to the ids that need it. Status
    changes and snapshots both go through `lock`.
    """
    templates: Dict[str, JobTemplate]
    instances: Dict[str, JobInstance]
    dependents: Dict[str, Set[str]]
    empty_templates: List[str] = field(default_factory=list)
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    def __getitem__(self, instance_id: str) -> JobInstance:
        return self.instances[instance_id]

    def __iter__(self):
        return iter(self.instances.values())

    def __len__(self) -> int:
        return len(self.instances)

    def of_template(self, template_id: str) -> List[JobInstance]:
        return [i for i in self.instances.values() if i.template_id == template_id]

    def snapshot(self) -> Dict[str, JobStatus]:
        with self.lock:
            return {iid: inst.status for iid, inst in self.instances.items()}

    def unfinished(self) -> List[JobInstance]:
        with self.lock:
            return [i for i in self.instances.values() if not i.status.terminal]


def _check_unique(templates: Sequence[JobTemplate]) -> None:
    ids = [t.id for t in templates]
    if len(set(ids)) != len(ids):
        raise DuplicateJobError(sorted({i for i in ids if ids.count(i) > 1}))


def _check_needs(templates: Sequence[JobTemplate]) -> None:
    known = [t.id for t in templates]
    known_set = set(known)
    for t in templates:
        for dep in t.needs:
            if dep not in known_set:
                raise UnknownDependencyError(t.id, dep, known)


def find_cycle(templates: Sequence[JobTemplate]) -> Optional[List[str]]:
    """
    Depth-first search with an explicit recursion stack.

    Returns the first cycle found as a closed path (["a", "b", "a"]) or None.
    """
    needs = {t.id: list(dict.fromkeys(t.needs)) for t in templates}
    WHITE, GREY, BLACK = 0, 1, 2
    color = {tid: WHITE for tid in needs}

    for root in needs:
        if color[root] != WHITE:
            continue
        path: List[str] = [root]
        stack = [iter(needs[root])]
        color[root] = GREY
        while stack:
            nxt = next(stack[-1], None)
            if nxt is None:
                color[path.pop()] = BLACK
                stack.pop()
                continue
            if color[nxt] == GREY:
                return path[path.index(nxt):] + [nxt]
            if color[nxt] == WHITE:
                color[nxt] = GREY
                path.append(nxt)
                stack.append(iter(needs[nxt]))
    return None


def _upstream_for(
    inst: JobInstance,
    upstream: List[JobInstance],
    policy: CorrelationPolicy,
) -> List[JobInstance]:
    if policy is CorrelationPolicy.BROADCAST or not upstream:
        return upstream
    mine = inst.axes
    shared = set(mine) & set(upstream[0].template.matrix)
    if not shared:
        return upstream
    return [u for u in upstream if all(u.axes.get(a) == mine[a] for a in shared)]


def build_graph(
    templates: Sequence[JobTemplate],
    instances: Optional[Sequence[JobInstance]] = None,
    *,
    correlation: CorrelationPolicy = CorrelationPolicy.BROADCAST,
) -> RunGraph:
    """
    Validate template `needs` and lift them onto instances.

    Raises DuplicateJobError, UnknownDependencyError or CycleError before
    anything is built. If `instances` is None the templates are expanded here.
    """
    templates = list(templates)
    _check_unique(templates)
    _check_needs(templates)
    cycle = find_cycle(templates)
    if cycle:
        raise CycleError(cycle)

    if instances is None:
        instances, empty = expand_all(templates)
    else:
        produced = {i.template_id for i in instances}
        empty = [t.id for t in templates if t.id not in produced]

    by_id: Dict[str, JobInstance] = {}
    by_template: Dict[str, List[JobInstance]] = {t.id: [] for t in templates}
    for inst in instances:
        if inst.id in by_id:
            raise DuplicateJobError([inst.id])
        by_id[inst.id] = inst
        by_template[inst.template_id].append(inst)

    dependents: Dict[str, Set[str]] = {iid: set() for iid in by_id}
    for inst in by_id.values():
        policy = inst.template.correlation or correlation
        for dep in dict.fromkeys(inst.template.needs):
            matched = _upstream_for(inst, by_template[dep], policy)
            if not matched:
                inst.blocked_by.append(dep)
                continue
            for up in matched:
                inst.needs.append(up.id)
                dependents[up.id].add(inst.id)

    return RunGraph(
        templates={t.id: t for t in templates},
        instances=by_id,
        dependents=dependents,
        empty_templates=empty,
    )


def topo_levels(graph: RunGraph) -> List[List[str]]:
    """
    Convert the graph into topological "levels" (stages).
    Each stage can run in parallel.
    """
    indeg = {iid: len(inst.needs) for iid, inst in graph.instances.items()}
    q = deque(sorted(n for n, d in indeg.items() if d == 0))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[str] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in sorted(graph.dependents.get(node, set())):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(level)

    if processed != len(indeg):
        remaining = sorted(n for n, d in indeg.items() if d > 0)
        raise GraphError(f"DAG has a cycle (or unresolved needs). Stuck nodes: {remaining}")

    return levels
