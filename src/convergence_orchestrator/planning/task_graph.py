"""Build-once dependency graph of tasks with deterministic traversal."""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Sequence, Set
from heapq import heapify, heappop, heappush

from convergence_orchestrator.domain.models import JSONValue, Task


class TaskGraphError(ValueError):
    """Base class for graph construction failures."""


class DuplicateIdError(TaskGraphError):
    """Raised when a task identifier is added twice."""

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Task '{task_id}' is already present in the graph.")


class UnknownDependencyError(TaskGraphError):
    """Raised at finalization when a task depends on an identifier that was never added."""

    missing: tuple[tuple[str, str], ...]

    def __init__(self, missing: Iterable[tuple[str, str]]) -> None:
        self.missing = tuple(sorted(missing))
        preview = ", ".join(f"{task} -> {dependency}" for task, dependency in self.missing[:5])
        suffix = "..." if len(self.missing) > 5 else ""
        super().__init__(f"Unknown dependencies: {preview}{suffix}")


class CycleError(TaskGraphError):
    """Raised when a cycle is detected in the task graph."""

    cycles: tuple[tuple[str, ...], ...]

    def __init__(self, cycles: Iterable[Sequence[str]]) -> None:
        normalized: tuple[tuple[str, ...], ...] = tuple(tuple(path) for path in cycles)
        self.cycles = normalized

        if not normalized:
            message = "Task graph contains at least one cycle."
        else:
            preview = ", ".join(" -> ".join(path) for path in normalized[:3])
            suffix = "..." if len(normalized) > 3 else ""
            message = f"Task graph contains cycle(s): {preview}{suffix}"
        super().__init__(message)

    @property
    def members(self) -> tuple[str, ...]:
        """Sorted identifiers of every task taking part in a reported cycle."""
        return tuple(sorted({node for path in self.cycles for node in path}))


class GraphFinalizedError(TaskGraphError):
    """Raised when mutating a graph after ``finalize()``."""


class GraphNotFinalizedError(TaskGraphError):
    """Raised when scheduling queries are issued before ``finalize()``."""


class TaskGraph:
    """Directed acyclic graph of :class:`Task` objects.

    Lifecycle: ``add_task`` any number of times, then ``finalize()`` once. After
    finalization the graph is read-only and safe to share between concurrent
    readers.
    """

    __slots__ = ("_tasks", "_children", "_parents", "_order", "_finalized")

    def __init__(self, tasks: Iterable[Task] | None = None) -> None:
        self._tasks: dict[str, Task] = {}
        self._children: dict[str, set[str]] = {}
        self._parents: dict[str, set[str]] = {}
        self._order: tuple[str, ...] = ()
        self._finalized = False

        if tasks is not None:
            for task in tasks:
                self.add_task(task)

    @classmethod
    def from_tasks(cls, tasks: Iterable[Task]) -> TaskGraph:
        """Build and finalize a graph in one step."""
        graph = cls(tasks)
        graph.finalize()
        return graph

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def __iter__(self) -> Iterator[Task]:
        for task_id in sorted(self._tasks):
            yield self._tasks[task_id]

    @property
    def is_finalized(self) -> bool:
        return self._finalized

    @property
    def task_ids(self) -> tuple[str, ...]:
        """All task IDs in deterministic order."""
        return tuple(sorted(self._tasks))

    @property
    def edges(self) -> tuple[tuple[str, str], ...]:
        """All edges as ``(dependency, dependent)`` pairs in deterministic order."""
        ordered_edges: list[tuple[str, str]] = []
        for parent in sorted(self._children):
            for child in sorted(self._children[parent]):
                ordered_edges.append((parent, child))
        return tuple(ordered_edges)

    def get(self, task_id: str) -> Task:
        try:
            return self._tasks[task_id]
        except KeyError:
            raise KeyError(f"Unknown task: {task_id}") from None

    def add_task(self, task: Task) -> None:
        """Register ``task``. Dependencies may reference tasks added later."""
        if self._finalized:
            raise GraphFinalizedError("Cannot add tasks to a finalized graph.")
        if not isinstance(task, Task):
            raise TypeError(f"expected Task, got {type(task).__name__}")
        if task.id in self._tasks:
            raise DuplicateIdError(task.id)

        self._tasks[task.id] = task

    def finalize(self) -> tuple[str, ...]:
        """Validate dependencies, reject cycles, and freeze the graph.

        Returns the topological order. Calling it again on a finalized graph is a
        no-op returning the same order.
        """
        if self._finalized:
            return self._order

        missing = [
            (task_id, dependency)
            for task_id, task in self._tasks.items()
            for dependency in task.dependencies
            if dependency not in self._tasks
        ]
        if missing:
            raise UnknownDependencyError(missing)

        children: dict[str, set[str]] = {task_id: set() for task_id in self._tasks}
        parents: dict[str, set[str]] = {task_id: set() for task_id in self._tasks}
        for task_id, task in self._tasks.items():
            for dependency in task.dependencies:
                children[dependency].add(task_id)
                parents[task_id].add(dependency)

        cycles = _detect_cycles(self._tasks, children)
        if cycles:
            raise CycleError(cycles)

        self._children = children
        self._parents = parents
        self._order = self._kahn_order()
        self._finalized = True
        return self._order

    def topological_order(self) -> tuple[str, ...]:
        """Return the deterministic topological ordering computed at finalization."""
        self._require_finalized()
        return self._order

    def ready_tasks(self, completed: Set[str]) -> tuple[Task, ...]:
        """
        Return tasks ready to run.

        A task is ready when it is not in ``completed`` and all of its dependencies
        are. Pure: no internal state changes, so it may be called repeatedly as
        ``completed`` grows.
        """
        self._require_finalized()
        completed_ids = frozenset(completed)
        ready: list[Task] = []
        for task_id in self._order:
            if task_id in completed_ids:
                continue
            if self._parents[task_id] <= completed_ids:
                ready.append(self._tasks[task_id])
        return tuple(ready)

    def parallel_groups(self) -> tuple[tuple[str, ...], ...]:
        """
        Group tasks into dependency waves.

        Every task in wave ``n`` depends only on tasks from earlier waves, so the
        members of one wave can run concurrently.
        """
        self._require_finalized()
        level: dict[str, int] = {}
        for task_id in self._order:
            parent_levels = [level[parent] for parent in self._parents[task_id]]
            level[task_id] = 1 + max(parent_levels) if parent_levels else 0

        waves: dict[int, list[str]] = {}
        for task_id, depth in level.items():
            waves.setdefault(depth, []).append(task_id)
        return tuple(tuple(sorted(waves[depth])) for depth in sorted(waves))

    def tracks(self) -> dict[str, tuple[str, ...]]:
        """Map each declared track label to its task IDs."""
        grouped: dict[str, list[str]] = {}
        for task_id in sorted(self._tasks):
            track = self._tasks[task_id].track
            if track is not None:
                grouped.setdefault(track, []).append(task_id)
        return {label: tuple(grouped[label]) for label in sorted(grouped)}

    def dependencies_of(self, task_id: str, *, transitive: bool = False) -> tuple[str, ...]:
        """Return direct or transitive dependencies for ``task_id``."""
        self._require_finalized()
        self._assert_task_exists(task_id)
        if not transitive:
            return tuple(sorted(self._parents[task_id]))
        return self._transitive_closure(task_id, upstream=True)

    def dependents_of(self, task_id: str, *, transitive: bool = False) -> tuple[str, ...]:
        """Return direct or transitive dependents for ``task_id``."""
        self._require_finalized()
        self._assert_task_exists(task_id)
        if not transitive:
            return tuple(sorted(self._children[task_id]))
        return self._transitive_closure(task_id, upstream=False)

    def critical_path(self) -> tuple[str, ...]:
        """
        Compute the longest dependency chain weighted by task priority.

        Ties resolve toward lexicographically smaller task IDs.
        """
        self._require_finalized()
        ordered = self._order
        if not ordered:
            return ()

        distances: dict[str, float] = {}
        predecessors: dict[str, str | None] = {}
        for task_id in ordered:
            distances[task_id] = self._tasks[task_id].priority
            predecessors[task_id] = None

        for parent in ordered:
            parent_distance = distances[parent]
            for child in sorted(self._children[parent]):
                candidate = parent_distance + self._tasks[child].priority
                current = distances[child]
                if candidate > current:
                    distances[child] = candidate
                    predecessors[child] = parent
                elif candidate == current:
                    existing_parent = predecessors[child]
                    if existing_parent is None or parent < existing_parent:
                        predecessors[child] = parent

        end_node = ordered[0]
        end_distance = distances[end_node]
        for task_id in ordered[1:]:
            candidate_distance = distances[task_id]
            if candidate_distance > end_distance:
                end_node = task_id
                end_distance = candidate_distance
            elif candidate_distance == end_distance and task_id < end_node:
                end_node = task_id

        path: list[str] = []
        cursor: str | None = end_node
        while cursor is not None:
            path.append(cursor)
            cursor = predecessors[cursor]
        path.reverse()
        return tuple(path)

    def to_dict(self) -> dict[str, JSONValue]:
        """Stable JSON-friendly description of tasks, edges, and derived schedule."""
        self._require_finalized()
        return {
            "tasks": [self._tasks[task_id].to_dict() for task_id in sorted(self._tasks)],
            "edges": [[parent, child] for parent, child in self.edges],
            "topological_order": list(self._order),
            "parallel_groups": [list(group) for group in self.parallel_groups()],
            "tracks": {label: list(ids) for label, ids in self.tracks().items()},
            "critical_path": list(self.critical_path()),
        }

    def _kahn_order(self) -> tuple[str, ...]:
        # Only called once cycle detection has passed, so every task is emitted.
        indegree: dict[str, int] = {task_id: len(self._parents[task_id]) for task_id in self._tasks}
        ready: list[str] = [task_id for task_id, degree in indegree.items() if degree == 0]
        heapify(ready)

        order: list[str] = []
        while ready:
            task_id = heappop(ready)
            order.append(task_id)

            for child in sorted(self._children[task_id]):
                indegree[child] -= 1
                if indegree[child] == 0:
                    heappush(ready, child)

        return tuple(order)

    def _transitive_closure(self, task_id: str, *, upstream: bool) -> tuple[str, ...]:
        adjacency = self._parents if upstream else self._children
        visited: set[str] = set()
        pending: list[str] = list(adjacency[task_id])

        while pending:
            node = pending.pop()
            if node in visited:
                continue

            visited.add(node)
            for neighbor in adjacency[node]:
                if neighbor not in visited:
                    pending.append(neighbor)

        return tuple(sorted(visited))

    def _require_finalized(self) -> None:
        if not self._finalized:
            raise GraphNotFinalizedError("Task graph must be finalized first.")

    def _assert_task_exists(self, task_id: str) -> None:
        if task_id not in self._tasks:
            raise KeyError(f"Unknown task: {task_id}")


def _detect_cycles(
    nodes: Iterable[str],
    children: dict[str, set[str]],
) -> tuple[tuple[str, ...], ...]:
    """
    Depth-first search with recursion-stack marking.

    Returns cycle paths as closed canonical paths, e.g. ``("A", "B", "C", "A")``.
    """
    state: dict[str, int] = {}
    stack: list[str] = []
    stack_index: dict[str, int] = {}
    cycles: dict[tuple[str, ...], None] = {}

    for start in sorted(nodes):
        if state.get(start, 0) != 0:
            continue

        state[start] = 1
        stack.append(start)
        stack_index[start] = len(stack) - 1
        frames: list[tuple[str, Iterator[str]]] = [(start, iter(sorted(children[start])))]

        while frames:
            node, child_iter = frames[-1]

            try:
                child = next(child_iter)
            except StopIteration:
                frames.pop()
                state[node] = 2
                stack.pop()
                del stack_index[node]
                continue

            child_state = state.get(child, 0)
            if child_state == 0:
                state[child] = 1
                stack_index[child] = len(stack)
                stack.append(child)
                frames.append((child, iter(sorted(children[child]))))
                continue

            if child_state == 1:
                start_index = stack_index[child]
                cycle = tuple(stack[start_index:] + [child])
                cycles[_canonicalize_cycle(cycle)] = None

    return tuple(sorted(cycles))


def _canonicalize_cycle(cycle: Sequence[str]) -> tuple[str, ...]:
    core = tuple(cycle[:-1])
    if len(core) == 1:
        return (core[0], core[0])

    best = core
    for offset in range(1, len(core)):
        rotated = core[offset:] + core[:offset]
        if rotated < best:
            best = rotated

    return best + (best[0],)


__all__ = [
    "CycleError",
    "DuplicateIdError",
    "GraphFinalizedError",
    "GraphNotFinalizedError",
    "TaskGraph",
    "TaskGraphError",
    "UnknownDependencyError",
]
