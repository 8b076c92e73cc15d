"""Fold per-vector trace trees into per-task WCET summaries."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from .recorder import VectorFailure, VectorTrace
from .trace import TraceKind, TraceNode

LOGGER = logging.getLogger("rauk.aggregate")


class AggregationError(RuntimeError):
    """Base class for aggregation failures."""


class NoValidTracesError(AggregationError):
    """Every vector of a task failed, so it has no observed WCET."""

    def __init__(self, task_name: str) -> None:
        super().__init__(f"no valid traces for task {task_name!r}")
        self.task_name = task_name


@dataclass
class TaskWcetSummary:
    task_name: str
    observed_wcet_cycles: int
    critical_sections: Dict[str, int] = field(default_factory=dict)
    vector_count: int = 0


def _is_complete(tree: TraceNode) -> bool:
    return all(node.sealed for node in tree.walk())


def task_node(tree: TraceNode) -> TraceNode:
    """The node whose duration is the task's execution time."""
    if tree.kind is TraceKind.TASK:
        return tree
    for node in tree.walk():
        if node.kind is TraceKind.TASK:
            return node
    return tree


def aggregate_task(task_name: str, trees: Iterable[Optional[TraceNode]]) -> TaskWcetSummary:
    wcet = 0
    sections: Dict[str, int] = {}
    count = 0
    for tree in trees:
        if tree is None or not _is_complete(tree):
            continue
        count += 1
        wcet = max(wcet, task_node(tree).duration)
        for node in tree.walk():
            if node.kind is TraceKind.RESOURCE_LOCK:
                sections[node.label] = max(sections.get(node.label, 0), node.duration)
    if count == 0:
        raise NoValidTracesError(task_name)
    return TaskWcetSummary(
        task_name=task_name,
        observed_wcet_cycles=wcet,
        critical_sections=sections,
        vector_count=count,
    )


Result = Union[VectorTrace, VectorFailure]


def aggregate_measurements(
    results: Iterable[Result], task_names: Sequence[str]
) -> Tuple[Dict[str, TaskWcetSummary], Dict[str, NoValidTracesError]]:
    """Group vector results by task and summarise each task independently.

    Failed vectors contribute nothing.  A task without a single valid trace
    ends up in the second mapping instead of the first.
    """

    trees: Dict[str, List[TraceNode]] = {name: [] for name in task_names}
    for result in results:
        if not isinstance(result, VectorTrace):
            continue
        if result.task_name not in trees:
            LOGGER.warning("trace for %s names unknown task %r", result.vector, result.task_name)
            continue
        trees[result.task_name].append(result.root)

    summaries: Dict[str, TaskWcetSummary] = {}
    failures: Dict[str, NoValidTracesError] = {}
    for name, task_trees in trees.items():
        try:
            summaries[name] = aggregate_task(name, task_trees)
        except NoValidTracesError as exc:
            LOGGER.warning("%s", exc)
            failures[name] = exc
    return summaries, failures


__all__ = [
    "AggregationError",
    "NoValidTracesError",
    "TaskWcetSummary",
    "task_node",
    "aggregate_task",
    "aggregate_measurements",
]
