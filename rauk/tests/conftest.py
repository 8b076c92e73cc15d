"""
Pytest configuration and fixtures for rauk tests.

``FakeTarget`` stands in for a probe driver.  It replays one breakpoint
script per vector: the target starts halted on the pre-dispatch breakpoint,
every ``resume`` advances to the next scripted stop, and once a script is
used up the next ``resume`` lands on the pre-dispatch breakpoint again with
the following script armed.
"""

import struct
from pathlib import Path
from typing import Dict, List, Sequence

import pytest

from rauk.ktest import KTestObject, KTestRecord
from rauk.probe.session import DWT_CYCCNT
from rauk.symbols import AddressRange, ObjectLocation, SymbolMap, TaskSpec

HANG = "hang"
CODE_BASE = 0x0800_0000
PRE_DISPATCH_PC = 0x0800_0F00
RESET_PC = 0x0800_0004
IDLE_PC = 0x0800_2000
NAME_BUFFER = (0x2000_0100, 32)


class FakeTarget:
    HANG = HANG

    def __init__(self, scripts: Sequence[Sequence], *, name_buffer=NAME_BUFFER) -> None:
        self.scripts = [list(script) for script in scripts]
        self.name_buffer = name_buffer
        self.memory: Dict[int, int] = {}
        self.registers: Dict[str, int] = {"pc": PRE_DISPATCH_PC, "lr": 0}
        self.halted = True
        self.script_index = 0
        self.position = 0
        self.resets = 0
        self.closed = False
        self.writes: List[tuple] = []
        self._reset_pending = False
        self._next_stop = 0
        self._poke(PRE_DISPATCH_PC, bytes([255, 0xBE]))

    # memory helpers
    def _poke(self, address: int, data: bytes) -> None:
        for offset, byte in enumerate(data):
            self.memory[address + offset] = byte

    def _stop_at(self, code: int) -> None:
        pc = CODE_BASE + 4 * self._next_stop
        self._next_stop += 1
        self._poke(pc, bytes([code, 0xBE]))
        self.registers["pc"] = pc
        self.halted = True

    def _at_pre_dispatch(self) -> None:
        self.registers["pc"] = PRE_DISPATCH_PC
        self.halted = True

    @property
    def current_script(self) -> List:
        if self.script_index < len(self.scripts):
            return self.scripts[self.script_index]
        return []

    # ProbeDriver
    def halt(self) -> None:
        if not self.halted:
            self.registers["pc"] = IDLE_PC
            self.halted = True

    def resume(self) -> None:
        if self._reset_pending:
            self._reset_pending = False
            self._at_pre_dispatch()
            return
        script = self.current_script
        if self.position >= len(script):
            self.script_index += 1
            self.position = 0
            self._at_pre_dispatch()
            return
        step = script[self.position]
        self.position += 1
        if step == HANG:
            self.halted = False
            return
        code, cycle, *rest = step
        if cycle is not None:
            self._poke(DWT_CYCCNT, int(cycle).to_bytes(4, "little"))
        if rest and rest[0] is not None and self.name_buffer is not None:
            address, size = self.name_buffer
            raw = rest[0].encode("utf-8")[: size - 1]
            self._poke(address, raw + b"\x00" * (size - len(raw)))
        if len(rest) > 1:
            self.registers["lr"] = rest[1]
        self._stop_at(code)

    def step(self) -> None:
        self.registers["pc"] += 2

    def reset_halt(self) -> None:
        self.resets += 1
        self.script_index += 1
        self.position = 0
        self.registers["pc"] = RESET_PC
        self.halted = True
        self._reset_pending = True

    def is_halted(self) -> bool:
        return self.halted

    def read_memory(self, address: int, length: int) -> bytes:
        return bytes(self.memory.get(address + offset, 0) for offset in range(length))

    def write_memory(self, address: int, data: bytes) -> None:
        self.writes.append((address, bytes(data)))
        self._poke(address, data)

    def read_core_register(self, name: str) -> int:
        return self.registers.get(name, 0)

    def write_core_register(self, name: str, value: int) -> None:
        self.registers[name] = value

    def close(self) -> None:
        self.closed = True


def build_ktest(
    objects: Sequence[tuple],
    *,
    magic: bytes = b"KTEST",
    version: int = 3,
    args: Sequence[bytes] = (),
    fmt: str = "<",
) -> bytes:
    u32 = struct.Struct(fmt + "I")
    out = bytearray(magic)
    out += u32.pack(version)
    out += u32.pack(len(args))
    for arg in args:
        out += u32.pack(len(arg)) + arg
    if version >= 2:
        out += u32.pack(0) + u32.pack(0)
    out += u32.pack(len(objects))
    for name, data in objects:
        encoded = name.encode("utf-8")
        out += u32.pack(len(encoded)) + encoded
        out += u32.pack(len(data)) + data
    return bytes(out)


def make_record(task_id: int, name: str = "test000001.ktest", **values: bytes) -> KTestRecord:
    objects = [KTestObject("task", task_id.to_bytes(4, "little", signed=True))]
    objects.extend(KTestObject(key, value) for key, value in values.items())
    return KTestRecord(objects=tuple(objects), path=Path(name))


@pytest.fixture
def fake_target():
    return FakeTarget


@pytest.fixture
def ktest_bytes():
    return build_ktest


@pytest.fixture
def record_factory():
    return make_record


@pytest.fixture
def symbol_map() -> SymbolMap:
    return SymbolMap.build(
        [
            ObjectLocation("task", 0x2000_0000, 4),
            ObjectLocation("res_a", 0x2000_0004, 1),
            ObjectLocation("offset", 0x2000_0008, 2, signed=True),
        ],
        [
            TaskSpec(id=0, name="task_one", priority=1, period=1000, deadline=1000),
            TaskSpec(id=1, name="task_two", priority=2, period=500, deadline=500),
        ],
        name_buffer=NAME_BUFFER,
        functions=[
            AddressRange("task_one", 0x0800_0400, 0x0800_0500),
            AddressRange("helper", 0x0800_0420, 0x0800_0440),
        ],
    )


@pytest.fixture
def task_one_script() -> List[tuple]:
    # EntryTask, name, EntryLock, name, ExitLock, ExitTask
    return [
        (4, 100),
        (1, None, "task_one"),
        (3, 120),
        (254, None, "res_a"),
        (252, 150),
        (251, 300),
    ]
