import logging

import pytest

from rauk.aggregate import aggregate_measurements
from rauk.probe import ProbeBusyError, ProbeSession, SessionConfig, TransportError
from rauk.probe.session import DWT_CYCCNT
from rauk.recorder import TraceRecorder, VectorSelectionError, VectorTrace, measure_vectors
from rauk.symbols import AddressRange, ObjectLocation, SymbolMap, TaskSpec
from rauk.trace import ProtocolDesyncError, TraceKind


def _recorder(target, symbols, **kwargs):
    session = ProbeSession(target, config=SessionConfig(halt_timeout=0.05, poll_interval=0.001))
    return TraceRecorder(session, symbols, halt_timeout=0.05, **kwargs)


def test_replay_builds_tree_and_writes_vector(fake_target, symbol_map, record_factory, task_one_script):
    target = fake_target([task_one_script])
    recorder = _recorder(target, symbol_map)
    record = record_factory(0, res_a=b"\x07\x00\x00\x00", offset=b"\xfe", unmapped=b"\x01")

    trace = recorder.replay(record)

    assert isinstance(trace, VectorTrace)
    assert (trace.task_id, trace.task_name, trace.vector) == (0, "task_one", "test000001.ktest")
    assert trace.root.kind is TraceKind.TASK
    assert trace.root.name == "task_one"
    assert (trace.root.start_cycle, trace.root.end_cycle) == (100, 300)
    assert trace.root.children[0].name == "res_a"
    assert [event.code for event in trace.events] == [4, 1, 3, 254, 252, 251]

    writes = dict(target.writes)
    assert writes[0x2000_0000] == b"\x00\x00\x00\x00"
    assert writes[0x2000_0004] == b"\x07"
    # sign-extended to the declared two-byte slot
    assert writes[0x2000_0008] == b"\xfe\xff"


def test_replay_skips_breakpoints_before_pre_dispatch(fake_target, symbol_map, record_factory, task_one_script):
    target = fake_target([[(0, None)], task_one_script])
    # start somewhere other than the pre-dispatch breakpoint
    target.resume()
    recorder = _recorder(target, symbol_map)
    trace = recorder.replay(record_factory(0))
    assert trace.root.duration == 200


def test_names_resolved_from_link_register(fake_target, record_factory):
    symbols = SymbolMap.build(
        [ObjectLocation("task", 0x2000_0000, 4)],
        [TaskSpec(id=3, name="task_one", priority=1, period=100, deadline=100)],
        functions=[AddressRange("task_one", 0x400, 0x500), AddressRange("helper", 0x420, 0x440)],
    )
    script = [(4, 10), (1, None, None, 0x425), (251, 20)]
    target = fake_target([script], name_buffer=None)
    trace = _recorder(target, symbols).replay(record_factory(3))
    assert trace.root.name == "helper"


def test_unknown_selector_is_rejected_before_touching_target(fake_target, symbol_map, record_factory):
    target = fake_target([])
    recorder = _recorder(target, symbol_map)
    with pytest.raises(VectorSelectionError):
        recorder.replay(record_factory(9))
    assert target.writes == []


def test_event_limit_turns_runaway_vector_into_desync(fake_target, symbol_map, record_factory):
    target = fake_target([[(4, 1)] + [(0, None)] * 10])
    recorder = _recorder(target, symbol_map, max_events=5)
    with pytest.raises(ProtocolDesyncError):
        recorder.replay(record_factory(0))


def test_timed_out_vector_is_excluded_and_others_still_count(
    fake_target, symbol_map, record_factory, task_one_script
):
    slow = [(4, 0), (1, None, "task_one"), fake_target.HANG]
    longer = [(4, 1000), (1, None, "task_one"), (251, 1500)]
    target = fake_target([task_one_script, slow, longer])
    recorder = _recorder(target, symbol_map)
    records = [
        record_factory(0, "test000001.ktest"),
        record_factory(0, "test000002.ktest"),
        record_factory(0, "test000003.ktest"),
    ]

    run = measure_vectors(recorder, records)

    assert [trace.vector for trace in run.traces] == ["test000001.ktest", "test000003.ktest"]
    assert len(run.failures) == 1
    failure = run.failures[0]
    assert (failure.vector, failure.error_type, failure.task_name) == ("test000002.ktest", "HaltTimeout", "task_one")
    assert target.resets == 1

    summaries, excluded = aggregate_measurements(run.traces, ["task_one", "task_two"])
    assert summaries["task_one"].observed_wcet_cycles == 500
    assert summaries["task_one"].vector_count == 2
    assert "task_two" in excluded


def test_desync_vector_is_recorded_and_run_continues(fake_target, symbol_map, record_factory, task_one_script):
    broken = [(4, 0), (252, 10)]
    target = fake_target([broken, task_one_script])
    recorder = _recorder(target, symbol_map)
    run = measure_vectors(recorder, [record_factory(0, "a.ktest"), record_factory(0, "b.ktest")])
    assert [trace.vector for trace in run.traces] == ["b.ktest"]
    assert run.failures[0].error_type == "ProtocolDesyncError"
    assert target.resets == 0


def test_unknown_task_vectors_are_skipped(fake_target, symbol_map, record_factory):
    target = fake_target([])
    recorder = _recorder(target, symbol_map)
    run = measure_vectors(recorder, [record_factory(42, "test000001.ktest")])
    assert run.traces == []
    assert run.failures[0].status == "skipped"


def test_busy_session_propagates(fake_target, symbol_map, record_factory, task_one_script):
    target = fake_target([task_one_script])
    recorder = _recorder(target, symbol_map)
    with recorder.session.claim():
        with pytest.raises(ProbeBusyError):
            measure_vectors(recorder, [record_factory(0)])


def test_unmapped_selector_is_rejected(fake_target, record_factory):
    symbols = SymbolMap.build(
        [ObjectLocation("res_a", 0x2000_0004, 1)],
        [
            TaskSpec(id=0, name="task_one", priority=1, period=1000, deadline=1000),
            TaskSpec(id=1, name="task_two", priority=2, period=500, deadline=500),
        ],
    )
    target = fake_target([[(4, 0), (251, 10)]])
    recorder = _recorder(target, symbols)
    with pytest.raises(VectorSelectionError, match="no address"):
        recorder.replay(record_factory(1))

    run = measure_vectors(recorder, [record_factory(1)])
    assert run.traces == []
    assert run.failures[0].status == "skipped"
    assert target.writes == []


def test_unmapped_objects_are_logged_as_warnings(fake_target, symbol_map, record_factory, task_one_script, caplog):
    target = fake_target([task_one_script])
    recorder = _recorder(target, symbol_map)
    with caplog.at_level(logging.WARNING, logger="rauk.recorder"):
        recorder.replay(record_factory(0, unmapped=b"\x01"))
    assert any("'unmapped'" in record.getMessage() for record in caplog.records)


class _DropsCycleRead:
    """Mixin failing the n-th read of the cycle counter with a transport error."""

    fail_on_read = 5
    reset_fails = False

    def read_memory(self, address, length):
        if address == DWT_CYCCNT:
            self.cycle_reads = getattr(self, "cycle_reads", 0) + 1
            if self.cycle_reads == self.fail_on_read:
                raise TransportError("rpc timeout: 'read_memory'")
        return super().read_memory(address, length)

    def reset_halt(self):
        if self.reset_fails:
            raise TransportError("connection closed")
        super().reset_halt()


def test_transport_error_is_recorded_and_run_continues(fake_target, symbol_map, record_factory, task_one_script):
    class FlakyTarget(_DropsCycleRead, fake_target):
        pass

    longer = [(4, 1000), (1, None, "task_one"), (251, 1500)]
    target = FlakyTarget([task_one_script, task_one_script, longer])
    recorder = _recorder(target, symbol_map)
    records = [record_factory(0, f"test00000{n}.ktest") for n in (1, 2, 3)]

    run = measure_vectors(recorder, records)

    assert [trace.vector for trace in run.traces] == ["test000001.ktest", "test000003.ktest"]
    failure = run.failures[0]
    assert (failure.vector, failure.error_type, failure.task_name) == ("test000002.ktest", "TransportError", "task_one")
    assert target.resets == 1


def test_failed_reset_stops_the_run_and_keeps_earlier_traces(
    fake_target, symbol_map, record_factory, task_one_script
):
    class DeadTarget(_DropsCycleRead, fake_target):
        reset_fails = True

    target = DeadTarget([task_one_script, task_one_script, task_one_script])
    recorder = _recorder(target, symbol_map)
    records = [record_factory(0, f"test00000{n}.ktest") for n in (1, 2, 3)]

    run = measure_vectors(recorder, records)

    assert [trace.vector for trace in run.traces] == ["test000001.ktest"]
    assert [failure.vector for failure in run.failures] == ["test000002.ktest"]
