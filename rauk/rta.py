"""Fixed-priority response-time analysis over measured WCETs.

Scheduling model (RTIC / Stack Resource Policy):

* a larger ``priority`` number preempts a smaller one; equal priorities run
  to completion in arrival order and do not interfere with each other;
* a task is blocked at most once, by the longest critical section a
  lower-priority task holds on a resource whose priority ceiling is at
  least the task's own priority;
* the response time is the least fixed point of

      R(0)   = C + B
      R(k+1) = C + B + sum over higher-priority j of ceil(R(k) / T_j) * C_j

  All quantities are in clock cycles.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .aggregate import TaskWcetSummary
from .symbols import TaskSpec

LOGGER = logging.getLogger("rauk.rta")

STATUS_SCHEDULABLE = "schedulable"
STATUS_UNSCHEDULABLE = "unschedulable"
STATUS_DIVERGED = "diverged"
STATUS_NOT_ANALYZED = "not analyzed"


class AnalysisError(RuntimeError):
    """Base class for analysis failures of a single task."""


class Unschedulable(AnalysisError):
    def __init__(self, task: str, response_time: int, deadline: int) -> None:
        super().__init__(f"{task}: response time {response_time} exceeds deadline {deadline}")
        self.task = task
        self.response_time = response_time
        self.deadline = deadline


class AnalysisDivergence(AnalysisError):
    def __init__(self, task: str, iterations: int) -> None:
        super().__init__(f"{task}: no fixed point after {iterations} iterations")
        self.task = task
        self.iterations = iterations


@dataclass(frozen=True)
class TaskDescriptor:
    name: str
    priority: int
    period: int
    deadline: int
    wcet: int
    blocking_time: int = 0
    resources: Tuple[str, ...] = ()

    @property
    def load_factor(self) -> float:
        return self.wcet / self.period


@dataclass
class ResponseTime:
    """Outcome of the analysis of one task.

    ``value`` is the fixed point for a schedulable task and the first iterate
    past the deadline for an unschedulable one; otherwise it is ``None``.
    ``iterations`` holds every value the recurrence produced, in order.
    """

    task: str
    status: str
    value: Optional[int] = None
    wcet: Optional[int] = None
    blocking_time: Optional[int] = None
    deadline: Optional[int] = None
    load_factor: Optional[float] = None
    iterations: Tuple[int, ...] = ()
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def schedulable(self) -> bool:
        return self.status == STATUS_SCHEDULABLE

    @property
    def preemption(self) -> Optional[int]:
        if self.value is None or self.wcet is None:
            return None
        return self.value - self.wcet - (self.blocking_time or 0)


@dataclass
class SchedulabilityReport:
    results: List[ResponseTime]
    schedulable: bool
    utilization: float

    def result_for(self, name: str) -> Optional[ResponseTime]:
        for result in self.results:
            if result.task == name:
                return result
        return None


def _interference(response: int, higher_priority: Sequence[TaskDescriptor]) -> int:
    return sum(math.ceil(response / hp.period) * hp.wcet for hp in higher_priority)


def divergence_bound(task: TaskDescriptor, higher_priority: Sequence[TaskDescriptor]) -> int:
    if not higher_priority:
        return 2
    shortest = min(hp.period for hp in higher_priority)
    return len(higher_priority) * math.ceil(task.deadline / shortest) + 2


def response_time(task: TaskDescriptor, higher_priority: Sequence[TaskDescriptor]) -> ResponseTime:
    """Iterate the recurrence for ``task`` to its least fixed point.

    Raises :class:`Unschedulable` as soon as an iterate exceeds the deadline
    and :class:`AnalysisDivergence` when the iteration bound is exhausted.
    """

    base = task.wcet + task.blocking_time
    current = base
    history = [current]
    bound = divergence_bound(task, higher_priority)
    while True:
        if current > task.deadline:
            raise Unschedulable(task.name, current, task.deadline)
        if len(history) > bound:
            raise AnalysisDivergence(task.name, len(history))
        following = base + _interference(current, higher_priority)
        if following == current:
            break
        current = following
        history.append(current)
    LOGGER.debug("%s: R=%d after %d iteration(s)", task.name, current, len(history))
    return ResponseTime(
        task=task.name,
        status=STATUS_SCHEDULABLE,
        value=current,
        wcet=task.wcet,
        blocking_time=task.blocking_time,
        deadline=task.deadline,
        load_factor=task.load_factor,
        iterations=tuple(history),
    )


def _resources_of(
    task: TaskSpec | TaskDescriptor, summaries: Optional[Mapping[str, TaskWcetSummary]]
) -> Iterable[str]:
    if summaries is None:
        return getattr(task, "resources", ())
    summary = summaries.get(task.name)
    return summary.critical_sections if summary is not None else ()


def priority_ceilings(
    tasks: Iterable[TaskSpec | TaskDescriptor],
    summaries: Optional[Mapping[str, TaskWcetSummary]] = None,
) -> Dict[str, int]:
    """Resource name -> highest priority among the tasks that lock it.

    Resource usage comes from ``summaries`` when given, otherwise from each
    descriptor's ``resources``.
    """
    ceilings: Dict[str, int] = {}
    for task in tasks:
        for resource in _resources_of(task, summaries):
            ceilings[resource] = max(ceilings.get(resource, task.priority), task.priority)
    return ceilings


def blocking_time(
    task: TaskSpec | TaskDescriptor,
    tasks: Iterable[TaskSpec | TaskDescriptor],
    summaries: Mapping[str, TaskWcetSummary],
) -> int:
    """Longest critical section a lower-priority task holds on a resource
    whose ceiling is at least ``task``'s priority."""

    task_list = list(tasks)
    ceilings = priority_ceilings(task_list, summaries)
    longest = 0
    for other in task_list:
        if other.name == task.name or other.priority >= task.priority:
            continue
        summary = summaries.get(other.name)
        if summary is None:
            continue
        for resource, cycles in summary.critical_sections.items():
            if ceilings.get(resource, other.priority) >= task.priority and cycles > longest:
                longest = cycles
    return longest


def build_descriptors(
    task_specs: Sequence[TaskSpec], summaries: Mapping[str, TaskWcetSummary]
) -> List[TaskDescriptor]:
    """Scheduling descriptors for every task that has a measured WCET."""

    descriptors: List[TaskDescriptor] = []
    for spec in task_specs:
        summary = summaries.get(spec.name)
        if summary is None:
            LOGGER.info("%s has no measured WCET, not analyzed", spec.name)
            continue
        descriptors.append(
            TaskDescriptor(
                name=spec.name,
                priority=spec.priority,
                period=spec.period,
                deadline=spec.deadline,
                wcet=summary.observed_wcet_cycles,
                blocking_time=blocking_time(spec, task_specs, summaries),
                resources=tuple(sorted(summary.critical_sections)),
            )
        )
    return descriptors


def _warn_priority_ties(descriptors: Sequence[TaskDescriptor]) -> None:
    seen: Dict[int, str] = {}
    for task in descriptors:
        if task.priority in seen:
            LOGGER.warning(
                "%s and %s share priority %d; they do not preempt each other",
                seen[task.priority],
                task.name,
                task.priority,
            )
        else:
            seen[task.priority] = task.name


def analyze_task_set(
    descriptors: Sequence[TaskDescriptor], *, not_analyzed: Iterable[str] = ()
) -> SchedulabilityReport:
    """Run the analysis for every task, highest priority first.

    Failures of individual tasks are reported in their :class:`ResponseTime`;
    ``not_analyzed`` names tasks without a WCET which are listed but left out
    of the verdict.
    """

    ordered = sorted(descriptors, key=lambda task: task.priority, reverse=True)
    _warn_priority_ties(ordered)
    results: List[ResponseTime] = []
    for task in ordered:
        higher = [other for other in ordered if other.priority > task.priority]
        warnings: List[str] = []
        if task.wcet > task.period:
            warnings.append(f"wcet {task.wcet} exceeds period {task.period}")
        try:
            result = response_time(task, higher)
        except Unschedulable as exc:
            result = ResponseTime(
                task=task.name, status=STATUS_UNSCHEDULABLE, value=exc.response_time, error=str(exc)
            )
        except AnalysisDivergence as exc:
            result = ResponseTime(task=task.name, status=STATUS_DIVERGED, error=str(exc))
        result.wcet = task.wcet
        result.blocking_time = task.blocking_time
        result.deadline = task.deadline
        result.load_factor = task.load_factor
        result.warnings.extend(warnings)
        if not result.schedulable:
            LOGGER.warning("%s", result.error)
        results.append(result)

    for name in not_analyzed:
        results.append(
            ResponseTime(task=name, status=STATUS_NOT_ANALYZED, error="no valid traces")
        )

    utilization = sum(task.load_factor for task in ordered)
    schedulable = all(result.schedulable for result in results if result.status != STATUS_NOT_ANALYZED)
    return SchedulabilityReport(results=results, schedulable=schedulable, utilization=utilization)


__all__ = [
    "STATUS_SCHEDULABLE",
    "STATUS_UNSCHEDULABLE",
    "STATUS_DIVERGED",
    "STATUS_NOT_ANALYZED",
    "AnalysisError",
    "Unschedulable",
    "AnalysisDivergence",
    "TaskDescriptor",
    "ResponseTime",
    "SchedulabilityReport",
    "divergence_bound",
    "response_time",
    "priority_ceilings",
    "blocking_time",
    "build_descriptors",
    "analyze_task_set",
]
