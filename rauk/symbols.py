"""Debug-symbol map for the replay firmware.

The firmware build step exports where each symbolic object lives in target
memory, which selector value dispatches which task, and the scheduling
metadata of every task.  The map is loaded once and never mutated; the
recorder and the analyzer both hold a reference to the same instance.

JSON layout::

    {
      "task_selector": "task",
      "objects": {"task": {"address": "0x20000000", "size": 4, "signed": false}, ...},
      "tasks": [{"id": 0, "name": "EXTI1", "priority": 1, "period": 100, "deadline": 100}],
      "name_buffer": {"address": "0x20000100", "size": 32},
      "functions": [{"name": "EXTI1", "low": "0x08000400", "high": "0x08000460"}]
    }
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

DEFAULT_TASK_SELECTOR = "task"


class SymbolMapError(ValueError):
    """Raised when a symbol map document is malformed."""


def _coerce_int(value: Any, field: str) -> int:
    if isinstance(value, bool):
        raise SymbolMapError(f"{field} must be an integer, got boolean")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text, 0)
        except ValueError as exc:
            raise SymbolMapError(f"{field} must be integer-compatible (got {value!r})") from exc
    raise SymbolMapError(f"{field} must be integer-compatible (got {value!r})")


@dataclass(frozen=True)
class ObjectLocation:
    """Where a symbolic object is stored and how its bytes are interpreted."""

    name: str
    address: int
    size: int
    signed: bool = False

    def encode(self, data: bytes) -> bytes:
        """Fit ``data`` (as produced by the symbolic engine) to this slot.

        Payloads are little-endian integers; wider values are truncated,
        narrower ones are zero- or sign-extended depending on ``signed``.
        """
        if len(data) == self.size:
            return bytes(data)
        if len(data) > self.size:
            return bytes(data[: self.size])
        fill = b"\x00"
        if self.signed and data and data[-1] & 0x80:
            fill = b"\xff"
        return bytes(data) + fill * (self.size - len(data))

    def decode(self, data: bytes) -> int:
        return int.from_bytes(self.encode(data), "little", signed=self.signed)


@dataclass(frozen=True)
class TaskSpec:
    """Scheduling metadata of one task as exported by the build."""

    id: int
    name: str
    priority: int
    period: int
    deadline: int


@dataclass(frozen=True)
class AddressRange:
    name: str
    low: int
    high: int

    def contains(self, address: int) -> bool:
        return self.low <= address < self.high

    @property
    def span(self) -> int:
        return self.high - self.low


@dataclass(frozen=True)
class SymbolMap:
    objects: Mapping[str, ObjectLocation]
    tasks: Tuple[TaskSpec, ...]
    task_selector: str = DEFAULT_TASK_SELECTOR
    name_buffer: Optional[Tuple[int, int]] = None
    functions: Tuple[AddressRange, ...] = ()

    @classmethod
    def build(
        cls,
        objects: Iterable[ObjectLocation],
        tasks: Iterable[TaskSpec],
        *,
        task_selector: str = DEFAULT_TASK_SELECTOR,
        name_buffer: Optional[Tuple[int, int]] = None,
        functions: Iterable[AddressRange] = (),
    ) -> "SymbolMap":
        object_table: Dict[str, ObjectLocation] = {}
        for location in objects:
            if location.name in object_table:
                raise SymbolMapError(f"duplicate object {location.name!r}")
            object_table[location.name] = location
        task_list = tuple(tasks)
        seen_ids: Dict[int, str] = {}
        for task in task_list:
            if task.id in seen_ids:
                raise SymbolMapError(f"task id {task.id} used by {seen_ids[task.id]!r} and {task.name!r}")
            seen_ids[task.id] = task.name
            if task.period <= 0:
                raise SymbolMapError(f"task {task.name!r} must have a positive period")
        return cls(
            objects=MappingProxyType(object_table),
            tasks=task_list,
            task_selector=task_selector,
            name_buffer=name_buffer,
            functions=tuple(functions),
        )

    def location(self, name: str) -> Optional[ObjectLocation]:
        return self.objects.get(name)

    def task_by_id(self, task_id: int) -> Optional[TaskSpec]:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def task_by_name(self, name: str) -> Optional[TaskSpec]:
        for task in self.tasks:
            if task.name == name:
                return task
        return None

    def function_at(self, address: int) -> Optional[AddressRange]:
        """Innermost (shortest) function range containing ``address``."""
        candidates = [entry for entry in self.functions if entry.contains(address)]
        if not candidates:
            return None
        return min(candidates, key=lambda entry: entry.span)


def _parse_objects(block: Any) -> List[ObjectLocation]:
    if block is None:
        return []
    if isinstance(block, Mapping):
        items = []
        for name, value in block.items():
            if not isinstance(value, Mapping):
                raise SymbolMapError(f"objects.{name} must be an object")
            items.append(dict(value, name=name))
    elif isinstance(block, list):
        items = list(block)
    else:
        raise SymbolMapError("objects must be an object or a list")
    locations: List[ObjectLocation] = []
    for entry in items:
        if not isinstance(entry, Mapping):
            raise SymbolMapError("object entries must be objects")
        name = entry.get("name")
        if not isinstance(name, str) or not name:
            raise SymbolMapError("object entry missing name")
        size = _coerce_int(entry.get("size", 4), f"objects.{name}.size")
        if size <= 0:
            raise SymbolMapError(f"objects.{name}.size must be positive")
        locations.append(
            ObjectLocation(
                name=name,
                address=_coerce_int(entry.get("address"), f"objects.{name}.address") & 0xFFFFFFFF,
                size=size,
                signed=bool(entry.get("signed", False)),
            )
        )
    return locations


def _parse_tasks(block: Any) -> List[TaskSpec]:
    if not isinstance(block, list):
        raise SymbolMapError("tasks must be a list")
    tasks: List[TaskSpec] = []
    for idx, entry in enumerate(block):
        if not isinstance(entry, Mapping):
            raise SymbolMapError(f"tasks[{idx}] must be an object")
        name = entry.get("name")
        if not isinstance(name, str) or not name:
            raise SymbolMapError(f"tasks[{idx}] missing name")
        period = _coerce_int(entry.get("period", entry.get("inter_arrival")), f"tasks.{name}.period")
        deadline_raw = entry.get("deadline")
        deadline = period if deadline_raw is None else _coerce_int(deadline_raw, f"tasks.{name}.deadline")
        tasks.append(
            TaskSpec(
                id=_coerce_int(entry.get("id", idx), f"tasks.{name}.id"),
                name=name,
                priority=_coerce_int(entry.get("priority"), f"tasks.{name}.priority"),
                period=period,
                deadline=deadline,
            )
        )
    return tasks


def _parse_functions(block: Any) -> List[AddressRange]:
    if block is None:
        return []
    if not isinstance(block, list):
        raise SymbolMapError("functions must be a list")
    ranges: List[AddressRange] = []
    for idx, entry in enumerate(block):
        if not isinstance(entry, Mapping) or not isinstance(entry.get("name"), str):
            raise SymbolMapError(f"functions[{idx}] must be an object with a name")
        low = _coerce_int(entry.get("low"), f"functions[{idx}].low")
        high = _coerce_int(entry.get("high"), f"functions[{idx}].high")
        if high <= low:
            raise SymbolMapError(f"functions[{idx}] has an empty range")
        ranges.append(AddressRange(name=entry["name"], low=low, high=high))
    return ranges


def symbol_map_from_dict(data: Mapping[str, Any]) -> SymbolMap:
    if not isinstance(data, Mapping):
        raise SymbolMapError("symbol map must be a JSON object")
    name_buffer: Optional[Tuple[int, int]] = None
    buffer_block = data.get("name_buffer")
    if buffer_block is not None:
        if not isinstance(buffer_block, Mapping):
            raise SymbolMapError("name_buffer must be an object")
        name_buffer = (
            _coerce_int(buffer_block.get("address"), "name_buffer.address") & 0xFFFFFFFF,
            _coerce_int(buffer_block.get("size", 32), "name_buffer.size"),
        )
    return SymbolMap.build(
        _parse_objects(data.get("objects")),
        _parse_tasks(data.get("tasks") or []),
        task_selector=str(data.get("task_selector") or DEFAULT_TASK_SELECTOR),
        name_buffer=name_buffer,
        functions=_parse_functions(data.get("functions")),
    )


def load_symbol_map(path: Union[str, os.PathLike]) -> SymbolMap:
    file_path = Path(path)
    try:
        data = json.loads(file_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise SymbolMapError(f"{file_path}: invalid JSON ({exc})") from exc
    return symbol_map_from_dict(data)


__all__ = [
    "DEFAULT_TASK_SELECTOR",
    "SymbolMapError",
    "ObjectLocation",
    "TaskSpec",
    "AddressRange",
    "SymbolMap",
    "symbol_map_from_dict",
    "load_symbol_map",
]
