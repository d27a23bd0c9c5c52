"""
Job dependency graph built from ``needs``.

This module is intentionally SYNCHRONOUS: it is pure in-memory graph work
(Kahn's algorithm, cycle search, ancestor closure) done once per run before
any job task is created.

Jobs live in an arena (a list indexed by position) and edges are stored as
index tuples, so the scheduler can keep Kahn-style readiness counters in a
plain list and decrement them as jobs finish.

Design Pattern:
    1. JobGraph(...) → validate references, reject cycles
    2. DependencyScheduler → copy ``in_degrees()`` and release dependents as
       jobs reach a terminal state
"""

from collections import deque
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

from .exceptions import CyclicDependencyError, WorkflowValidationError


@dataclass
class JobNode:
    """One job in the arena."""

    index: int
    job_id: str
    needs: tuple[int, ...]
    dependents: list[int] = field(default_factory=list)


class JobGraph:
    """Arena of jobs with index-based dependency edges."""

    def __init__(self, job_ids: Sequence[str], dependencies: Mapping[str, Sequence[str]]):
        """
        Build and validate the graph.

        Args:
            job_ids: Job ids in declaration order
            dependencies: Mapping of job id to the job ids it needs

        Raises:
            WorkflowValidationError: If a job needs an undefined job
            CyclicDependencyError: If the needs relation contains a cycle
        """
        self._index: dict[str, int] = {job_id: i for i, job_id in enumerate(job_ids)}
        if len(self._index) != len(job_ids):
            raise WorkflowValidationError(f"Duplicate job ids in {list(job_ids)}")

        errors: list[str] = []
        needs_by_job: list[tuple[int, ...]] = []
        for job_id in job_ids:
            indices = []
            for dep in dependencies.get(job_id, ()):
                if dep not in self._index:
                    errors.append(f"Job '{job_id}' needs undefined job '{dep}'")
                    continue
                indices.append(self._index[dep])
            needs_by_job.append(tuple(indices))

        if errors:
            raise WorkflowValidationError("; ".join(errors), errors)

        self.nodes: list[JobNode] = [
            JobNode(index=i, job_id=job_id, needs=needs_by_job[i])
            for i, job_id in enumerate(job_ids)
        ]
        for node in self.nodes:
            for dep in node.needs:
                self.nodes[dep].dependents.append(node.index)

        self._order = self._kahn()

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._index

    def index_of(self, job_id: str) -> int:
        """Arena index for a job id."""
        return self._index[job_id]

    def node(self, job_id: str) -> JobNode:
        """Arena node for a job id."""
        return self.nodes[self._index[job_id]]

    def needs_of(self, job_id: str) -> list[str]:
        """Direct dependencies of a job, in declaration order."""
        return [self.nodes[i].job_id for i in self.node(job_id).needs]

    def dependents_of(self, job_id: str) -> list[str]:
        """Jobs that list ``job_id`` in their needs."""
        return [self.nodes[i].job_id for i in self.node(job_id).dependents]

    def in_degrees(self) -> list[int]:
        """Fresh readiness counters (number of unfinished dependencies per job)."""
        return [len(node.needs) for node in self.nodes]

    def roots(self) -> list[str]:
        """Jobs with no dependencies."""
        return [node.job_id for node in self.nodes if not node.needs]

    def topological_sort(self) -> list[str]:
        """Job ids in a dependency-respecting order."""
        return list(self._order)

    def ancestors(self, job_id: str) -> list[str]:
        """
        Transitive dependencies of a job.

        Returns:
            Ancestor job ids in topological order
        """
        seen: set[int] = set()
        stack = list(self.node(job_id).needs)
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self.nodes[current].needs)

        return [job for job in self._order if self._index[job] in seen]

    def execution_waves(self) -> list[list[str]]:
        """
        Group jobs into waves whose members only depend on earlier waves.

        Only used for display (validation tool output); the scheduler starts
        each job as soon as its own dependencies finish.
        """
        depth: dict[int, int] = {}
        for job_id in self._order:
            node = self.node(job_id)
            depth[node.index] = 1 + max((depth[d] for d in node.needs), default=-1)

        waves: list[list[str]] = []
        for job_id in self._order:
            level = depth[self._index[job_id]]
            while len(waves) <= level:
                waves.append([])
            waves[level].append(job_id)
        return waves

    def _kahn(self) -> list[str]:
        """Kahn's algorithm; raises CyclicDependencyError naming one cycle."""
        in_degree = self.in_degrees()
        queue = deque(node.index for node in self.nodes if in_degree[node.index] == 0)
        order: list[str] = []

        while queue:
            current = queue.popleft()
            order.append(self.nodes[current].job_id)
            for dependent in self.nodes[current].dependents:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        if len(order) != len(self.nodes):
            remaining = {i for i, count in enumerate(in_degree) if count > 0}
            raise CyclicDependencyError(self._find_cycle(remaining))

        return order

    def _find_cycle(self, remaining: set[int]) -> list[str]:
        """Walk unresolved dependencies from the first stuck job until one repeats."""
        start = min(remaining)
        path: list[int] = []
        position: dict[int, int] = {}
        current = start

        while current not in position:
            position[current] = len(path)
            path.append(current)
            current = next(dep for dep in self.nodes[current].needs if dep in remaining)

        cycle = path[position[current] :]
        # Report in execution direction: dependency first
        names = [self.nodes[i].job_id for i in reversed(cycle)]
        return names + [names[0]]


def build_job_graph(jobs: Mapping[str, Sequence[str]]) -> JobGraph:
    """Build a graph from a mapping of job id to its needs (declaration order kept)."""
    return JobGraph(list(jobs.keys()), jobs)
