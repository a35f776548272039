# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, Iterable, List, Set

from .errors import CycleError, DuplicateJobError, UnknownDependencyError
from .model import Job

_WHITE, _GREY, _BLACK = 0, 1, 2


class JobGraph:
    """
    Dependency DAG keyed by job name.

    Edges run dependency -> dependent (a job's `needs` must finish before it).
    """

    def __init__(self, jobs: Dict[str, Job], adj: Dict[str, Set[str]]):
        self.jobs = jobs
        self._adj = adj
        self._deps: Dict[str, Set[str]] = {n: set(jobs[n].needs) for n in jobs}

    @classmethod
    def build(cls, jobs: Iterable[Job]) -> "JobGraph":
        """
        Build and validate a DAG from Job objects.

        Raises:
          DuplicateJobError: two jobs share a name
          UnknownDependencyError: `needs` names a job that does not exist
          CycleError: the dependency relation has a cycle
        """
        jobs = list(jobs)
        names = [j.name for j in jobs]
        if len(set(names)) != len(names):
            dupes = sorted({n for n in names if names.count(n) > 1})
            raise DuplicateJobError(dupes)

        by_name = {j.name: j for j in jobs}
        adj: Dict[str, Set[str]] = {n: set() for n in by_name}

        for job in jobs:
            for dep in job.needs:
                if dep not in by_name:
                    raise UnknownDependencyError(job.name, dep, sorted(by_name))
                adj[dep].add(job.name)

        graph = cls(by_name, adj)
        graph._check_acyclic()
        return graph

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _check_acyclic(self) -> None:
        # Iterative DFS with recursion-stack (grey) marking. Every node is a
        # start point, so a cycle is found wherever traversal begins.
        color = {n: _WHITE for n in self.jobs}

        for start in sorted(self.jobs):
            if color[start] != _WHITE:
                continue
            path: List[str] = [start]
            stack = [iter(sorted(self._adj[start]))]
            color[start] = _GREY

            while stack:
                child = next(stack[-1], None)
                if child is None:
                    color[path.pop()] = _BLACK
                    stack.pop()
                    continue
                if color[child] == _GREY:
                    cycle = path[path.index(child):] + [child]
                    raise CycleError(cycle)
                if color[child] == _WHITE:
                    color[child] = _GREY
                    path.append(child)
                    stack.append(iter(sorted(self._adj[child])))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def __contains__(self, name: str) -> bool:
        return name in self.jobs

    def __len__(self) -> int:
        return len(self.jobs)

    def dependencies(self, name: str) -> Set[str]:
        return set(self._deps[name])

    def dependents(self, name: str) -> Set[str]:
        return set(self._adj[name])

    def ancestors(self, name: str) -> Set[str]:
        """Every job `name` depends on, directly or through other jobs."""
        seen: Set[str] = set()
        stack = list(self._deps[name])
        while stack:
            dep = stack.pop()
            if dep in seen:
                continue
            seen.add(dep)
            stack.extend(self._deps[dep])
        return seen

    def roots(self) -> List[str]:
        return sorted(n for n, deps in self._deps.items() if not deps)

    def ready(self, finished: Iterable[str], started: Iterable[str] = ()) -> List[str]:
        """
        Names whose dependencies are all in `finished` and which are neither
        finished nor started themselves.
        """
        done = set(finished)
        taken = done | set(started)
        return sorted(
            n for n, deps in self._deps.items()
            if n not in taken and deps <= done
        )

    def levels(self) -> List[List[str]]:
        """
        Convert DAG into topological "levels" (stages).
        Each stage can run in parallel.
        """
        indeg = {n: len(deps) for n, deps in self._deps.items()}
        q = deque(sorted(n for n, d in indeg.items() if d == 0))
        levels: List[List[str]] = []

        while q:
            level: List[str] = []
            for _ in range(len(q)):
                node = q.popleft()
                level.append(node)
                for child in sorted(self._adj[node]):
                    indeg[child] -= 1
                    if indeg[child] == 0:
                        q.append(child)
            levels.append(level)

        return levels

    def topological_order(self) -> List[str]:
        return [name for level in self.levels() for name in level]
