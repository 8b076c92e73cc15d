"""
Transport layer for rauk.probe.

Responsibilities:
    * Manage the TCL-RPC connection to an OpenOCD server (commands and replies
      are terminated by ``0x1a``).
    * Provide typed helpers for the handful of target operations the
      measurement needs (halt/resume/step, memory, core registers).
    * Surface connection state changes to callers.  A connection dropped
      under a running command is reported as ``disconnected``; an explicit
      ``close()`` ends in ``closed`` and fires no callbacks.

Anything that satisfies :class:`ProbeDriver` can stand in for OpenOCD; the
tests use an in-memory fake.
"""

from __future__ import annotations

import re
import socket
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Protocol

RPC_TERMINATOR = b"\x1a"
_HEX_RE = re.compile(r"0x[0-9a-fA-F]+")


class TransportError(RuntimeError):
    """Raised when the transport cannot complete an operation."""


class ProbeDriver(Protocol):
    """Low-level target capability the probe session is built on."""

    def halt(self) -> None: ...

    def resume(self) -> None: ...

    def step(self) -> None: ...

    def reset_halt(self) -> None: ...

    def is_halted(self) -> bool: ...

    def read_memory(self, address: int, length: int) -> bytes: ...

    def write_memory(self, address: int, data: bytes) -> None: ...

    def read_core_register(self, name: str) -> int: ...

    def write_core_register(self, name: str, value: int) -> None: ...

    def close(self) -> None: ...


@dataclass
class TransportConfig:
    host: str = "127.0.0.1"
    port: int = 6666
    connect_timeout: float = 2.0
    read_timeout: float = 5.0
    reconnect_backoff: float = 0.5
    max_backoff: float = 5.0
    max_retries: int = 5


@dataclass
class OpenOCDTransport:
    """Synchronous OpenOCD TCL-RPC client."""

    config: TransportConfig = field(default_factory=TransportConfig)

    _sock: Optional[socket.socket] = field(init=False, default=None)
    _lock: threading.Lock = field(init=False, default_factory=threading.Lock)
    _connect_lock: threading.Lock = field(init=False, default_factory=threading.Lock)
    _state_lock: threading.Lock = field(init=False, default_factory=threading.Lock)
    _state: str = field(init=False, default="disconnected")
    _shutdown: bool = field(init=False, default=False)
    _on_connect: list[Callable[[str], None]] = field(init=False, default_factory=list)
    _on_disconnect: list[Callable[[str], None]] = field(init=False, default_factory=list)

    #
    # Connection lifecycle helpers
    #
    @property
    def state(self) -> str:
        with self._state_lock:
            return self._state

    def register_on_connect(self, callback: Callable[[str], None]) -> None:
        self._on_connect.append(callback)

    def register_on_disconnect(self, callback: Callable[[str], None]) -> None:
        self._on_disconnect.append(callback)

    def connect(self, *, retry: bool = True) -> None:
        """Open the TCP connection to OpenOCD's RPC port."""
        with self._connect_lock:
            if self._sock:
                return
            if self._shutdown:
                raise TransportError("transport closed")
            self._set_state("connecting")
            try:
                sock = self._connect_with_backoff(retry=retry)
            except TransportError:
                self._set_state("disconnected")
                raise
            self._sock = sock
            self._set_state("connected")

    def close(self) -> None:
        self._shutdown = True
        self._handle_disconnect(state="closed")

    def command(self, line: str, timeout: Optional[float] = None) -> str:
        """Run one TCL command and return its textual result."""
        if self._shutdown:
            raise TransportError("transport closed")
        self._ensure_connected()
        with self._lock:
            sock = self._sock
            if sock is None:
                raise TransportError("connection closed")
            try:
                sock.settimeout(timeout or self.config.read_timeout)
                sock.sendall(line.encode("utf-8") + RPC_TERMINATOR)
                reply = self._read_reply(sock)
            except socket.timeout as exc:
                self._handle_disconnect(exc)
                raise TransportError(f"rpc timeout: {line!r}") from exc
            except OSError as exc:
                self._handle_disconnect(exc)
                raise TransportError(f"rpc failed: {exc}") from exc
        return reply

    #
    # ProbeDriver operations
    #
    def halt(self) -> None:
        self.command("halt")

    def resume(self) -> None:
        self.command("resume")

    def step(self) -> None:
        self.command("step")

    def reset_halt(self) -> None:
        self.command("reset halt")

    def is_halted(self) -> bool:
        state = self.command("[target current] curstate").strip()
        return state == "halted"

    def read_memory(self, address: int, length: int) -> bytes:
        if length <= 0:
            return b""
        reply = self.command(f"read_memory 0x{address:08x} 8 {int(length)}")
        values = [int(token, 16) for token in _HEX_RE.findall(reply)]
        if len(values) != length:
            raise TransportError(
                f"read_memory 0x{address:08x}: expected {length} bytes, got {len(values)} ({reply.strip()!r})"
            )
        return bytes(value & 0xFF for value in values)

    def write_memory(self, address: int, data: bytes) -> None:
        if not data:
            return
        values = " ".join(f"0x{byte:02x}" for byte in data)
        reply = self.command(f"write_memory 0x{address:08x} 8 {{{values}}}")
        if reply.strip():
            raise TransportError(f"write_memory 0x{address:08x} failed: {reply.strip()}")

    def read_core_register(self, name: str) -> int:
        reply = self.command(f"reg {name}")
        match = _HEX_RE.search(reply.split(":", 1)[-1])
        if not match:
            raise TransportError(f"reg {name}: unexpected reply {reply.strip()!r}")
        return int(match.group(0), 16) & 0xFFFFFFFF

    def write_core_register(self, name: str, value: int) -> None:
        self.command(f"reg {name} 0x{value & 0xFFFFFFFF:08x}")

    #
    # Internal helpers
    #
    def _ensure_connected(self) -> None:
        if self._sock:
            return
        self.connect()

    def _read_reply(self, sock: socket.socket) -> str:
        chunks: List[bytes] = []
        while True:
            chunk = sock.recv(4096)
            if not chunk:
                raise OSError("connection closed by OpenOCD")
            if RPC_TERMINATOR in chunk:
                head, _, _tail = chunk.partition(RPC_TERMINATOR)
                chunks.append(head)
                break
            chunks.append(chunk)
        return b"".join(chunks).decode("utf-8", errors="replace")

    def _connect_with_backoff(self, *, retry: bool) -> socket.socket:
        attempt = 0
        backoff = self.config.reconnect_backoff
        last_error: Optional[OSError] = None
        while not self._shutdown:
            attempt += 1
            try:
                sock = socket.create_connection(
                    (self.config.host, self.config.port),
                    timeout=self.config.connect_timeout,
                )
                sock.settimeout(self.config.read_timeout)
                return sock
            except OSError as exc:
                last_error = exc
                if not retry:
                    break
                if self.config.max_retries > 0 and attempt >= self.config.max_retries:
                    break
                time.sleep(backoff)
                backoff = min(backoff * 2, self.config.max_backoff)
        if last_error is None:
            raise TransportError("connect failed: transport closed")
        raise TransportError(f"connect failed: {last_error}") from last_error

    def _handle_disconnect(self, exc: Optional[BaseException] = None, *, state: str = "disconnected") -> None:
        sock = self._sock
        if sock:
            try:
                sock.close()
            except OSError:
                pass
        self._sock = None
        self._set_state(state)

    def _set_state(self, new_state: str) -> None:
        with self._state_lock:
            if self._state == new_state:
                return
            self._state = new_state
        callbacks: list[Callable[[str], None]]
        if new_state == "connected":
            callbacks = list(self._on_connect)
        elif new_state == "disconnected":
            callbacks = list(self._on_disconnect)
        else:
            callbacks = []
        for callback in callbacks:
            callback(new_state)
