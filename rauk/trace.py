"""Trace trees and the reducer that builds them from breakpoint events.

The reducer is a small state machine over the breakpoint alphabet with one
explicit stack of open nodes.  It is pure: the recorder feeds it the events
it observes on hardware, tests feed it hand-written event lists, and both get
the same tree (or the same error) back.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Iterator, List, Optional, Union

from .breakpoints import MATCHING_ENTRY, BreakpointKind, classify

CYCLE_MODULUS = 1 << 32
UNKNOWN_NAME = "<unknown>"


class TraceError(RuntimeError):
    """Base class for per-vector trace reconstruction failures."""


class ProtocolDesyncError(TraceError):
    """The breakpoint stream does not nest the way the firmware promises."""


class TimingOverflowError(TraceError):
    """A node spans more than one wraparound of the 32-bit cycle counter."""


class TraceKind(Enum):
    TASK = "Task"
    DISPATCHER = "Dispatcher"
    RESOURCE_LOCK = "ResourceLock"


_ENTRY_TRACE_KIND = {
    BreakpointKind.ENTRY_TASK: TraceKind.TASK,
    BreakpointKind.ENTRY_DISPATCHER: TraceKind.DISPATCHER,
    BreakpointKind.ENTRY_LOCK: TraceKind.RESOURCE_LOCK,
}


def cycle_delta(start: int, end: int) -> int:
    """Cycles from ``start`` to ``end`` allowing one counter wraparound."""
    return (int(end) - int(start)) % CYCLE_MODULUS


@dataclass
class TraceNode:
    """One measured interval (task, dispatcher or critical section)."""

    kind: TraceKind
    start_cycle: int
    name: Optional[str] = None
    end_cycle: Optional[int] = None
    children: List["TraceNode"] = field(default_factory=list)

    @property
    def sealed(self) -> bool:
        return self.end_cycle is not None

    @property
    def label(self) -> str:
        return self.name if self.name is not None else UNKNOWN_NAME

    @property
    def duration(self) -> int:
        if self.end_cycle is None:
            raise ValueError(f"trace node {self.label!r} is still open")
        return cycle_delta(self.start_cycle, self.end_cycle)

    def walk(self) -> Iterator["TraceNode"]:
        """Pre-order traversal including ``self``."""
        yield self
        for child in self.children:
            yield from child.walk()

    def shape(self) -> tuple:
        """Nesting and names only; cycle values vary between replays."""
        return (self.kind.value, self.label, tuple(child.shape() for child in self.children))


@dataclass(frozen=True)
class BreakpointEvent:
    """One observed breakpoint: raw immediate, cycle sample, resolved name."""

    code: int
    cycle: Optional[int] = None
    name: Optional[str] = None

    @property
    def kind(self) -> BreakpointKind:
        return classify(self.code)


@dataclass
class _OpenScope:
    node: TraceNode
    entry: BreakpointKind
    start_ext: int


class TraceReducer:
    """Incrementally rebuild one rooted trace tree."""

    def __init__(self) -> None:
        self._stack: List[_OpenScope] = []
        self._root: Optional[TraceNode] = None
        self._last_raw: Optional[int] = None
        self._ext = 0
        self._events = 0

    @property
    def done(self) -> bool:
        return self._root is not None

    @property
    def depth(self) -> int:
        return len(self._stack)

    @property
    def root(self) -> Optional[TraceNode]:
        return self._root

    def _unwrap(self, raw: Optional[int]) -> int:
        if raw is None:
            raise ProtocolDesyncError(f"scope breakpoint without a cycle sample (event {self._events})")
        raw = int(raw) & (CYCLE_MODULUS - 1)
        if self._last_raw is not None:
            self._ext += cycle_delta(self._last_raw, raw)
        self._last_raw = raw
        return self._ext

    def feed(self, event: BreakpointEvent) -> Optional[TraceNode]:
        """Consume one event; returns the root once its exit has been seen."""

        self._events += 1
        kind = event.kind
        if self._root is not None:
            raise ProtocolDesyncError(f"{kind.value} (imm {event.code}) after the trace was complete")
        if kind is BreakpointKind.IGNORED:
            return None
        if kind is BreakpointKind.INVALID:
            raise ProtocolDesyncError(f"unexpected breakpoint immediate {event.code}")
        if kind is BreakpointKind.PRE_DISPATCH:
            raise ProtocolDesyncError(
                f"reached pre-dispatch breakpoint with {len(self._stack)} scope(s) still open"
            )

        if kind is BreakpointKind.NAME_MARKER:
            if not self._stack:
                raise ProtocolDesyncError("name marker outside of any scope")
            self._stack[-1].node.name = event.name if event.name is not None else UNKNOWN_NAME
            return None

        if kind.is_entry:
            start_ext = self._unwrap(event.cycle)
            node = TraceNode(kind=_ENTRY_TRACE_KIND[kind], start_cycle=int(event.cycle) & (CYCLE_MODULUS - 1))
            self._stack.append(_OpenScope(node=node, entry=kind, start_ext=start_ext))
            return None

        # exits
        if not self._stack:
            raise ProtocolDesyncError(f"{kind.value} with no open scope")
        top = self._stack[-1]
        expected = MATCHING_ENTRY[kind]
        if top.entry is not expected:
            raise ProtocolDesyncError(
                f"{kind.value} closes {top.entry.value} scope {top.node.label!r}"
            )
        end_ext = self._unwrap(event.cycle)
        if end_ext - top.start_ext >= CYCLE_MODULUS:
            raise TimingOverflowError(
                f"{top.node.kind.value} {top.node.label!r} spans {end_ext - top.start_ext} cycles, "
                "more than one counter wraparound"
            )
        top.node.end_cycle = int(event.cycle) & (CYCLE_MODULUS - 1)
        self._stack.pop()
        if self._stack:
            self._stack[-1].node.children.append(top.node)
            return None
        self._root = top.node
        return self._root

    def finish(self) -> TraceNode:
        if self._root is None:
            if self._stack:
                raise ProtocolDesyncError(
                    f"event stream ended with {len(self._stack)} open scope(s), innermost "
                    f"{self._stack[-1].node.label!r}"
                )
            raise ProtocolDesyncError("event stream contained no scopes")
        return self._root


EventLike = Union[BreakpointEvent, tuple]


def _as_event(item: EventLike) -> BreakpointEvent:
    if isinstance(item, BreakpointEvent):
        return item
    code, *rest = item
    cycle = rest[0] if len(rest) > 0 else None
    name = rest[1] if len(rest) > 1 else None
    return BreakpointEvent(code=int(code), cycle=cycle, name=name)


def reduce_events(events: Iterable[EventLike]) -> TraceNode:
    """Build the tree for one vector from ``(code, cycle, name)`` events."""

    reducer = TraceReducer()
    for item in events:
        reducer.feed(_as_event(item))
    return reducer.finish()


__all__ = [
    "CYCLE_MODULUS",
    "UNKNOWN_NAME",
    "TraceError",
    "ProtocolDesyncError",
    "TimingOverflowError",
    "TraceKind",
    "TraceNode",
    "BreakpointEvent",
    "TraceReducer",
    "cycle_delta",
    "reduce_events",
]
