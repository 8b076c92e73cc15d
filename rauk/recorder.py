"""Replay test vectors on hardware and record their trace trees.

One :class:`TraceRecorder` drives one :class:`~rauk.probe.ProbeSession`.
For every vector it waits for the replay harness to reach the pre-dispatch
breakpoint, writes the vector's values into target memory, lets the firmware
run, and feeds every breakpoint it stops on into a :class:`TraceReducer`
until the selected task's outermost scope has closed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from .breakpoints import BreakpointCode, BreakpointKind, classify
from .ktest import KTestRecord
from .probe.session import CYCLE_COUNTER, ProbeBusyError, ProbeError, ProbeSession
from .probe.transport import TransportError
from .symbols import SymbolMap, TaskSpec
from .trace import UNKNOWN_NAME, BreakpointEvent, ProtocolDesyncError, TraceError, TraceNode, TraceReducer

LOGGER = logging.getLogger("rauk.recorder")

DEFAULT_MAX_EVENTS = 10_000


class VectorSelectionError(ValueError):
    """The vector does not select a task this firmware knows about."""


@dataclass
class VectorTrace:
    vector: str
    task_id: int
    task_name: str
    root: TraceNode
    events: List[BreakpointEvent] = field(default_factory=list)


@dataclass
class VectorFailure:
    vector: str
    error_type: str
    message: str
    task_id: Optional[int] = None
    task_name: Optional[str] = None
    status: str = "failed"

    @classmethod
    def from_exception(
        cls,
        vector: str,
        exc: BaseException,
        task: Optional[TaskSpec] = None,
        *,
        status: str = "failed",
    ) -> "VectorFailure":
        return cls(
            vector=vector,
            error_type=type(exc).__name__,
            message=str(exc),
            task_id=task.id if task else None,
            task_name=task.name if task else None,
            status=status,
        )


@dataclass
class MeasurementRun:
    traces: List[VectorTrace] = field(default_factory=list)
    failures: List[VectorFailure] = field(default_factory=list)


class TraceRecorder:
    def __init__(
        self,
        session: ProbeSession,
        symbols: SymbolMap,
        *,
        halt_timeout: Optional[float] = None,
        max_events: int = DEFAULT_MAX_EVENTS,
    ) -> None:
        self.session = session
        self.symbols = symbols
        self.halt_timeout = halt_timeout
        self.max_events = max_events

    # ------------------------------------------------------------------
    # Vector inspection (no hardware access)
    # ------------------------------------------------------------------
    def select_task(self, record: KTestRecord) -> TaskSpec:
        selector = record.get(self.symbols.task_selector)
        if selector is None:
            raise VectorSelectionError(
                f"{record.name}: no task selector object {self.symbols.task_selector!r}"
            )
        location = self.symbols.location(selector.name)
        if location is None:
            raise VectorSelectionError(
                f"{record.name}: task selector {selector.name!r} has no address in the symbol map"
            )
        task_id = location.decode(selector.data)
        task = self.symbols.task_by_id(task_id)
        if task is None:
            raise VectorSelectionError(f"{record.name}: selector value {task_id} names no task")
        return task

    # ------------------------------------------------------------------
    # Replay
    # ------------------------------------------------------------------
    def replay(self, record: KTestRecord) -> VectorTrace:
        """Run one vector on the target and return its trace tree."""

        task = self.select_task(record)
        with self.session.claim():
            self._run_to_pre_dispatch()
            self._write_objects(record)
            self.session.reset_cycle_counter()
            LOGGER.info("replaying %s (task %s)", record.name, task.name)
            reducer = TraceReducer()
            events: List[BreakpointEvent] = []
            while not reducer.done:
                if len(events) >= self.max_events:
                    raise ProtocolDesyncError(
                        f"no complete trace after {self.max_events} breakpoints"
                    )
                code = self.session.run_until_breakpoint(self.halt_timeout)
                event = self._observe(code)
                events.append(event)
                reducer.feed(event)
            root = reducer.finish()
        return VectorTrace(
            vector=record.name,
            task_id=task.id,
            task_name=task.name,
            root=root,
            events=events,
        )

    def _observe(self, code: int) -> BreakpointEvent:
        kind = classify(code)
        if kind.is_entry or kind.is_exit:
            cycle = self.session.read_register(CYCLE_COUNTER)
            LOGGER.debug("%s at cycle %d", kind.value, cycle)
            return BreakpointEvent(code=code, cycle=cycle)
        if kind is BreakpointKind.NAME_MARKER:
            name = self.resolve_name()
            LOGGER.debug("name marker -> %s", name)
            return BreakpointEvent(code=code, name=name)
        return BreakpointEvent(code=code)

    def _run_to_pre_dispatch(self) -> None:
        if not self.session.is_halted():
            self.session.wait_halted(self.halt_timeout)
        for _ in range(self.max_events):
            code = self.session.current_breakpoint_id()
            if code == BreakpointCode.PRE_DISPATCH:
                return
            LOGGER.debug("skipping bkpt %s on the way to pre-dispatch", code)
            self.session.run_until_breakpoint(self.halt_timeout)
        raise ProtocolDesyncError(f"pre-dispatch breakpoint not reached in {self.max_events} stops")

    def _write_objects(self, record: KTestRecord) -> None:
        for obj in record.objects:
            location = self.symbols.location(obj.name)
            if location is None:
                LOGGER.warning("%s: no address for object %r, not written", record.name, obj.name)
                continue
            self.session.write_memory(location.address, location.encode(obj.data))

    def resolve_name(self) -> str:
        """Name of the scope just entered, per the symbol map's strategy."""
        if self.symbols.name_buffer is not None:
            address, size = self.symbols.name_buffer
            raw = self.session.read_memory(address, size)
            text = raw.split(b"\x00", 1)[0].decode("utf-8", errors="replace").strip()
            return text or UNKNOWN_NAME
        if self.symbols.functions:
            lr = self.session.read_register("lr") & ~1
            entry = self.symbols.function_at(lr)
            if entry is not None:
                return entry.name
        return UNKNOWN_NAME


def measure_vectors(recorder: TraceRecorder, records: Iterable[KTestRecord]) -> MeasurementRun:
    """Replay ``records`` one after another.

    Per-vector problems become :class:`VectorFailure` entries; the run goes on
    with the next vector.  After a probe or transport failure the target is
    reset before anything else touches it.  If the reset fails too, the run
    stops and the vectors measured so far are returned.
    """

    run = MeasurementRun()
    for record in records:
        try:
            task: Optional[TaskSpec] = recorder.select_task(record)
        except VectorSelectionError as exc:
            LOGGER.info("skipping %s: %s", record.name, exc)
            run.failures.append(VectorFailure.from_exception(record.name, exc, status="skipped"))
            continue
        try:
            trace = recorder.replay(record)
        except ProbeBusyError:
            raise
        except (ProbeError, TransportError) as exc:
            LOGGER.warning("%s: %s; resetting target", record.name, exc)
            run.failures.append(VectorFailure.from_exception(record.name, exc, task))
            try:
                recorder.session.reset()
            except (ProbeError, TransportError) as reset_exc:
                LOGGER.error("target reset failed, stopping the run: %s", reset_exc)
                break
            continue
        except TraceError as exc:
            LOGGER.warning("%s: trace discarded: %s", record.name, exc)
            run.failures.append(VectorFailure.from_exception(record.name, exc, task))
            continue
        run.traces.append(trace)
    LOGGER.info(
        "measured %d vector(s), %d skipped or failed", len(run.traces), len(run.failures)
    )
    return run


__all__ = [
    "DEFAULT_MAX_EVENTS",
    "VectorSelectionError",
    "VectorTrace",
    "VectorFailure",
    "MeasurementRun",
    "TraceRecorder",
    "measure_vectors",
]
