"""Breakpoint immediates emitted by the instrumented replay firmware.

Every scope in the replay image is bracketed by ``bkpt #imm`` instructions.
Entry and exit immediates of the same scope add up to 255, the name markers
follow an entry so the debugger can look up what was entered, and 255 itself
marks the point just before the next task is selected.
"""

from __future__ import annotations

from enum import Enum, IntEnum
from typing import Dict, Optional


class BreakpointCode(IntEnum):
    DEFAULT = 0
    TASK_NAME = 1
    ENTRY_DISPATCHER = 2
    ENTRY_LOCK = 3
    ENTRY_TASK = 4
    INSIDE_LOCK_CLOSURE = 5
    EXIT_TASK = 251
    EXIT_LOCK = 252
    EXIT_DISPATCHER = 253
    LOCK_NAME = 254
    PRE_DISPATCH = 255


class BreakpointKind(Enum):
    ENTRY_TASK = "EntryTask"
    EXIT_TASK = "ExitTask"
    ENTRY_DISPATCHER = "EntryDispatcher"
    EXIT_DISPATCHER = "ExitDispatcher"
    ENTRY_LOCK = "EntryLock"
    EXIT_LOCK = "ExitLock"
    NAME_MARKER = "NameMarker"
    PRE_DISPATCH = "PreDispatch"
    IGNORED = "Ignored"
    INVALID = "Invalid"

    @property
    def is_entry(self) -> bool:
        return self in _ENTRY_KINDS

    @property
    def is_exit(self) -> bool:
        return self in _EXIT_KINDS


_ENTRY_KINDS = frozenset(
    {BreakpointKind.ENTRY_TASK, BreakpointKind.ENTRY_DISPATCHER, BreakpointKind.ENTRY_LOCK}
)
_EXIT_KINDS = frozenset(
    {BreakpointKind.EXIT_TASK, BreakpointKind.EXIT_DISPATCHER, BreakpointKind.EXIT_LOCK}
)

_CODE_KINDS: Dict[int, BreakpointKind] = {
    BreakpointCode.DEFAULT: BreakpointKind.IGNORED,
    BreakpointCode.TASK_NAME: BreakpointKind.NAME_MARKER,
    BreakpointCode.ENTRY_DISPATCHER: BreakpointKind.ENTRY_DISPATCHER,
    BreakpointCode.ENTRY_LOCK: BreakpointKind.ENTRY_LOCK,
    BreakpointCode.ENTRY_TASK: BreakpointKind.ENTRY_TASK,
    BreakpointCode.INSIDE_LOCK_CLOSURE: BreakpointKind.IGNORED,
    BreakpointCode.EXIT_TASK: BreakpointKind.EXIT_TASK,
    BreakpointCode.EXIT_LOCK: BreakpointKind.EXIT_LOCK,
    BreakpointCode.EXIT_DISPATCHER: BreakpointKind.EXIT_DISPATCHER,
    BreakpointCode.LOCK_NAME: BreakpointKind.NAME_MARKER,
    BreakpointCode.PRE_DISPATCH: BreakpointKind.PRE_DISPATCH,
}

# exit kind -> the entry kind it closes
MATCHING_ENTRY: Dict[BreakpointKind, BreakpointKind] = {
    BreakpointKind.EXIT_TASK: BreakpointKind.ENTRY_TASK,
    BreakpointKind.EXIT_DISPATCHER: BreakpointKind.ENTRY_DISPATCHER,
    BreakpointKind.EXIT_LOCK: BreakpointKind.ENTRY_LOCK,
}


def classify(code: Optional[int]) -> BreakpointKind:
    """Map a raw ``bkpt`` immediate onto the recorder's alphabet."""
    if code is None:
        return BreakpointKind.INVALID
    return _CODE_KINDS.get(int(code), BreakpointKind.INVALID)


def code_for(kind: BreakpointKind) -> int:
    """Inverse of :func:`classify` for the scope and marker kinds.

    ``NAME_MARKER`` maps to the task-name immediate.
    """
    for code, mapped in _CODE_KINDS.items():
        if mapped is kind:
            return int(code)
    raise ValueError(f"no breakpoint immediate for {kind.value}")


__all__ = [
    "BreakpointCode",
    "BreakpointKind",
    "MATCHING_ENTRY",
    "classify",
    "code_for",
]
