# dag.py
from __future__ import annotations

import heapq
from collections import deque
from typing import Dict, List, Optional, Sequence, Set, Tuple

from .errors import ConfigurationError, CycleDetected
from .model import Job


def build_dag(jobs: Sequence[Job]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from Job objects.

    Requires:
      - job.name: str (unique)
      - job.needs: iterable[str] (names of jobs that must run BEFORE this job)

    Returns (adj, indeg) where adj maps a job to the jobs that need it.
    """
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ConfigurationError(f"Duplicate job names found: {dupes}")

    name_set = set(names)
    adj: Dict[str, Set[str]] = {n: set() for n in names}
    indeg: Dict[str, int] = {n: 0 for n in names}

    for job in jobs:
        for need in job.needs:
            if need not in name_set:
                raise ConfigurationError(
                    f"Job '{job.name}' needs missing job '{need}'. "
                    f"Known jobs: {sorted(name_set)}",
                    job=job.name,
                )
            # Edge need -> job.name (need must run before job)
            if job.name not in adj[need]:
                adj[need].add(job.name)
                indeg[job.name] += 1

        for edge in job.allow_skipped:
            if edge not in job.needs:
                raise ConfigurationError(
                    f"Job '{job.name}' allows skipped '{edge}' which is not in its needs",
                    job=job.name,
                )

    return adj, indeg


def find_cycle(jobs: Sequence[Job]) -> Optional[List[str]]:
    """
    Return the jobs on one dependency cycle (in dependency order), or None.

    Iterative DFS so deep pipelines do not hit the recursion limit.
    """
    needs = {j.name: list(j.needs) for j in jobs}
    WHITE, GREY, BLACK = 0, 1, 2
    color = {n: WHITE for n in needs}

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
            if nxt not in color:
                continue
            if color[nxt] == GREY:
                cycle = path[path.index(nxt):]
                # path follows `needs` edges; report prerequisites first
                return list(reversed(cycle))
            if color[nxt] == WHITE:
                color[nxt] = GREY
                path.append(nxt)
                stack.append(iter(needs[nxt]))
    return None


def descendants(adj: Dict[str, Set[str]], name: str) -> Set[str]:
    """All jobs that (transitively) depend on `name`."""
    seen: Set[str] = set()
    q = deque(adj.get(name, ()))
    while q:
        n = q.popleft()
        if n in seen:
            continue
        seen.add(n)
        q.extend(adj.get(n, ()))
    return seen


def priorities(jobs: Sequence[Job]) -> Dict[str, Tuple[int, int]]:
    """
    Sort key for ready jobs: most downstream dependents first, then
    definition order. Smaller sorts first.
    """
    adj, _ = build_dag(jobs)
    return {
        j.name: (-len(descendants(adj, j.name)), idx)
        for idx, j in enumerate(jobs)
    }


def resolve_order(jobs: Sequence[Job]) -> List[str]:
    """
    Topological order of `jobs`: every job appears after all its prerequisites.

    Raises:
      ConfigurationError: duplicate names or dangling `needs`
      CycleDetected: naming every job on one cycle
    """
    jobs = list(jobs)
    adj, indeg = build_dag(jobs)

    cycle = find_cycle(jobs)
    if cycle:
        raise CycleDetected(cycle)

    prio = priorities(jobs)
    indeg = dict(indeg)
    heap = [(prio[n], n) for n, d in indeg.items() if d == 0]
    heapq.heapify(heap)

    order: List[str] = []
    while heap:
        _, node = heapq.heappop(heap)
        order.append(node)
        for child in adj[node]:
            indeg[child] -= 1
            if indeg[child] == 0:
                heapq.heappush(heap, (prio[child], child))

    return order


def topo_levels(jobs: Sequence[Job]) -> List[List[str]]:
    """
    Convert the DAG into topological "levels" (stages).
    Each stage could run in parallel.
    """
    jobs = list(jobs)
    adj, indeg = build_dag(jobs)
    cycle = find_cycle(jobs)
    if cycle:
        raise CycleDetected(cycle)

    prio = priorities(jobs)
    indeg = dict(indeg)
    level = sorted((n for n, d in indeg.items() if d == 0), key=prio.__getitem__)
    levels: List[List[str]] = []

    while level:
        levels.append(level)
        nxt: List[str] = []
        for node in level:
            for child in adj[node]:
                indeg[child] -= 1
                if indeg[child] == 0:
                    nxt.append(child)
        level = sorted(nxt, key=prio.__getitem__)

    return levels

