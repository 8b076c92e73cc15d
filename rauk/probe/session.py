"""Probe session: breakpoint-driven run control on top of a probe driver."""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional

from .transport import ProbeDriver, TransportError

logger = logging.getLogger(__name__)

# Cortex-M debug/trace registers
DEMCR = 0xE000EDFC
DEMCR_TRCENA = 1 << 24
DWT_CTRL = 0xE0001000
DWT_CTRL_CYCCNTENA = 1
DWT_CYCCNT = 0xE0001004

THUMB_BKPT_OPCODE = 0xBE
THUMB_INSN_SIZE = 2
CYCLE_COUNTER = "cyccnt"


class ProbeError(RuntimeError):
    """Raised when the target is not in the state the protocol expects."""


class HaltTimeout(ProbeError):
    """The core did not stop on a breakpoint within the configured timeout."""


class ProbeBusyError(ProbeError):
    """Another recorder already owns this probe connection."""


@dataclass
class SessionConfig:
    halt_timeout: float = 10.0
    poll_interval: float = 0.01


def _u32(data: bytes) -> int:
    return int.from_bytes(data[:4], "little")


class ProbeSession:
    """Sequencing logic shared by every measurement on one target."""

    def __init__(self, driver: ProbeDriver, *, config: Optional[SessionConfig] = None) -> None:
        self.driver = driver
        self.config = config or SessionConfig()
        self._claim_lock = threading.Lock()

    @contextmanager
    def claim(self) -> Iterator["ProbeSession"]:
        """Hold exclusive use of the connection for the duration of a replay."""
        if not self._claim_lock.acquire(blocking=False):
            raise ProbeBusyError("probe session is already in use")
        try:
            yield self
        finally:
            self._claim_lock.release()

    # ------------------------------------------------------------------
    # Run control
    # ------------------------------------------------------------------
    def halt(self) -> None:
        self.driver.halt()

    def is_halted(self) -> bool:
        return self.driver.is_halted()

    def resume(self) -> None:
        """Continue execution, stepping off a ``bkpt`` under PC first."""
        if self.driver.is_halted() and self.current_breakpoint_id() is not None:
            pc = self.driver.read_core_register("pc")
            self.driver.write_core_register("pc", pc + THUMB_INSN_SIZE)
        self.driver.resume()

    def run_until_breakpoint(self, timeout: Optional[float] = None) -> int:
        """Resume and wait for the next ``bkpt``; returns its immediate."""
        self.resume()
        self.wait_halted(timeout)
        code = self.current_breakpoint_id()
        if code is None:
            pc = self.driver.read_core_register("pc")
            raise ProbeError(f"core halted at 0x{pc:08x}, but not on a breakpoint")
        logger.debug("halted on bkpt #%d", code)
        return code

    def wait_halted(self, timeout: Optional[float] = None) -> None:
        limit = self.config.halt_timeout if timeout is None else timeout
        deadline = time.monotonic() + limit
        while not self.driver.is_halted():
            if time.monotonic() >= deadline:
                try:
                    self.driver.halt()
                except TransportError:
                    logger.debug("halt after timeout failed", exc_info=True)
                raise HaltTimeout(f"core did not halt within {limit:.1f}s")
            time.sleep(self.config.poll_interval)

    def reset(self) -> None:
        """Bring the target back to a known state after a failed vector."""
        logger.info("resetting target")
        self.driver.halt()
        self.driver.reset_halt()
        self.enable_cycle_counter()
        self.driver.resume()

    # ------------------------------------------------------------------
    # Memory and registers
    # ------------------------------------------------------------------
    def read_memory(self, address: int, length: int) -> bytes:
        return self.driver.read_memory(address, length)

    def write_memory(self, address: int, data: bytes) -> None:
        self.driver.write_memory(address, bytes(data))

    def read_register(self, name: str) -> int:
        if name.lower() == CYCLE_COUNTER:
            return _u32(self.driver.read_memory(DWT_CYCCNT, 4))
        return self.driver.read_core_register(name) & 0xFFFFFFFF

    def current_breakpoint_id(self) -> Optional[int]:
        """Immediate of the Thumb ``bkpt`` at PC, ``None`` if PC is elsewhere."""
        pc = self.driver.read_core_register("pc")
        insn = self.driver.read_memory(pc, THUMB_INSN_SIZE)
        if len(insn) < THUMB_INSN_SIZE or insn[1] != THUMB_BKPT_OPCODE:
            return None
        return insn[0]

    # ------------------------------------------------------------------
    # Cycle counter
    # ------------------------------------------------------------------
    def enable_cycle_counter(self) -> None:
        demcr = _u32(self.driver.read_memory(DEMCR, 4))
        self.driver.write_memory(DEMCR, (demcr | DEMCR_TRCENA).to_bytes(4, "little"))
        ctrl = _u32(self.driver.read_memory(DWT_CTRL, 4))
        self.driver.write_memory(DWT_CTRL, (ctrl | DWT_CTRL_CYCCNTENA).to_bytes(4, "little"))

    def reset_cycle_counter(self) -> None:
        self.driver.write_memory(DWT_CYCCNT, (0).to_bytes(4, "little"))

    def close(self) -> None:
        self.driver.close()
