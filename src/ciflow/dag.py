# dag.py
from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Dict, Iterable, List, Tuple

from .errors import CyclicDependency, DuplicateJob, UnknownDependency


@dataclass(frozen=True)
class JobGraph:
    """
    Job dependency graph built once at load time.

    Jobs live in an arena indexed by integer id (declaration order); edges are
    `(dependency, dependent)` index pairs. The Scheduler walks `dependents`
    and `dependencies` instead of resolving `needs` by name.
    """
    names: Tuple[str, ...]
    edges: Tuple[Tuple[int, int], ...]
    dependents: Tuple[Tuple[int, ...], ...]
    dependencies: Tuple[Tuple[int, ...], ...]

    def index(self, name: str) -> int:
        try:
            return self.names.index(name)
        except ValueError:
            raise KeyError(name) from None

    def needs_of(self, name: str) -> List[str]:
        return [self.names[i] for i in self.dependencies[self.index(name)]]

    def dependents_of(self, name: str) -> List[str]:
        return [self.names[i] for i in self.dependents[self.index(name)]]

    def levels(self) -> List[List[str]]:
        """
        Convert the DAG into topological "levels" (stages).
        Jobs in one stage have no dependency between them; ties keep
        declaration order.
        """
        indeg = [len(d) for d in self.dependencies]
        q = deque(i for i, d in enumerate(indeg) if d == 0)
        levels: List[List[str]] = []

        while q:
            level = sorted(q)
            q.clear()
            levels.append([self.names[i] for i in level])
            for node in level:
                for child in self.dependents[node]:
                    indeg[child] -= 1
                    if indeg[child] == 0:
                        q.append(child)

        return levels


def build_graph(jobs: Iterable) -> JobGraph:
    """
    Build a DAG from Job objects.

    Requires:
      - job.name: str (unique)
      - job.needs: iterable[str] (names of jobs that must run BEFORE this job)

    Raises DuplicateJob, UnknownDependency or CyclicDependency.
    """
    jobs = list(jobs)
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise DuplicateJob(dupes)

    index: Dict[str, int] = {n: i for i, n in enumerate(names)}
    dependents: List[List[int]] = [[] for _ in names]
    dependencies: List[List[int]] = [[] for _ in names]
    edges: List[Tuple[int, int]] = []

    for i, job in enumerate(jobs):
        for need in job.needs:
            if need not in index:
                raise UnknownDependency(job.name, need, sorted(names))
            d = index[need]
            # Edge need -> job (need must run before job)
            if d not in dependencies[i]:
                dependencies[i].append(d)
                dependents[d].append(i)
                edges.append((d, i))

    cycle = _find_cycle(names, dependencies)
    if cycle:
        raise CyclicDependency(cycle)

    return JobGraph(
        names=tuple(names),
        edges=tuple(edges),
        dependents=tuple(tuple(d) for d in dependents),
        dependencies=tuple(tuple(d) for d in dependencies),
    )


def _find_cycle(names: List[str], dependencies: List[List[int]]) -> List[str] | None:
    """Iterative DFS over `needs`; returns the first cycle found as a name path."""
    WHITE, GREY, BLACK = 0, 1, 2
    color = [WHITE] * len(names)

    for root in range(len(names)):
        if color[root] != WHITE:
            continue
        stack: List[Tuple[int, int]] = [(root, 0)]
        path: List[int] = [root]
        color[root] = GREY

        while stack:
            node, pos = stack[-1]
            deps = dependencies[node]
            if pos < len(deps):
                stack[-1] = (node, pos + 1)
                nxt = deps[pos]
                if color[nxt] == GREY:
                    start = path.index(nxt)
                    return [names[i] for i in path[start:]] + [names[nxt]]
                if color[nxt] == WHITE:
                    color[nxt] = GREY
                    stack.append((nxt, 0))
                    path.append(nxt)
            else:
                color[node] = BLACK
                stack.pop()
                path.pop()

    return None
