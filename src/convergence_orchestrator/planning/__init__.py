"""Planning layer: task dependency graphs and their derived schedules."""

from convergence_orchestrator.planning.task_graph import (
    CycleError,
    DuplicateIdError,
    GraphFinalizedError,
    GraphNotFinalizedError,
    TaskGraph,
    TaskGraphError,
    UnknownDependencyError,
)

__all__ = [
    "CycleError",
    "DuplicateIdError",
    "GraphFinalizedError",
    "GraphNotFinalizedError",
    "TaskGraph",
    "TaskGraphError",
    "UnknownDependencyError",
]
