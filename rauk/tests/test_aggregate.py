import pytest
from hypothesis import given, strategies as st

from rauk.aggregate import NoValidTracesError, aggregate_measurements, aggregate_task, task_node
from rauk.recorder import VectorFailure, VectorTrace
from rauk.trace import TraceKind, TraceNode


def _task(start, end, *children, name="t"):
    return TraceNode(TraceKind.TASK, start, name=name, end_cycle=end, children=list(children))


def _lock(name, start, end, *children):
    return TraceNode(TraceKind.RESOURCE_LOCK, start, name=name, end_cycle=end, children=list(children))


def test_wcet_and_critical_sections_across_trees():
    trees = [
        _task(0, 100, _lock("a", 10, 30), _lock("b", 40, 45)),
        _task(0, 250, _lock("a", 10, 60, _lock("b", 20, 40))),
    ]
    summary = aggregate_task("t", trees)
    assert summary.observed_wcet_cycles == 250
    assert summary.critical_sections == {"a": 50, "b": 20}
    assert summary.vector_count == 2


def test_dispatcher_root_uses_enclosed_task():
    root = TraceNode(
        TraceKind.DISPATCHER, 0, name="d", end_cycle=1000, children=[_task(100, 400)]
    )
    assert task_node(root).duration == 300
    assert aggregate_task("t", [root]).observed_wcet_cycles == 300


def test_open_and_missing_trees_are_ignored():
    open_tree = TraceNode(TraceKind.TASK, 0, name="t")
    summary = aggregate_task("t", [open_tree, None, _task(5, 15)])
    assert summary.vector_count == 1
    assert summary.observed_wcet_cycles == 10


def test_no_valid_trees():
    with pytest.raises(NoValidTracesError) as excinfo:
        aggregate_task("t", [])
    assert excinfo.value.task_name == "t"


def test_aggregate_measurements_groups_by_task():
    results = [
        VectorTrace("v1", 0, "a", _task(0, 10, name="a")),
        VectorTrace("v2", 0, "a", _task(0, 30, name="a")),
        VectorFailure("v3", "HaltTimeout", "core did not halt", task_id=1, task_name="b"),
        VectorTrace("v4", 9, "ghost", _task(0, 99, name="ghost")),
    ]
    summaries, failures = aggregate_measurements(results, ["a", "b"])
    assert set(summaries) == {"a"}
    assert summaries["a"].observed_wcet_cycles == 30
    assert set(failures) == {"b"}


@given(st.lists(st.integers(min_value=0, max_value=10_000), min_size=1, max_size=20))
def test_wcet_is_maximum_root_duration(durations):
    trees = [_task(1000, 1000 + d) for d in durations]
    summary = aggregate_task("t", trees)
    assert summary.observed_wcet_cycles == max(durations)
    assert summary.vector_count == len(durations)


@given(st.integers(min_value=0, max_value=10_000), st.integers(min_value=1, max_value=5))
def test_wcet_ties(duration, copies):
    trees = [_task(7, 7 + duration) for _ in range(copies)]
    assert aggregate_task("t", trees).observed_wcet_cycles == duration
