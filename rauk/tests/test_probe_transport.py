import socket
import threading
import time
from typing import Dict, List

import pytest

from rauk.probe import OpenOCDTransport, TransportConfig, TransportError

TERMINATOR = b"\x1a"


class DummyOpenOCDServer:
    """Answers the handful of TCL-RPC commands the transport issues."""

    def __init__(self) -> None:
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._sock.bind(("127.0.0.1", 0))
        self.port = self._sock.getsockname()[1]
        self._sock.listen(5)
        self._stop = threading.Event()
        self.commands: List[str] = []
        self.memory: Dict[int, int] = {0x2000_0000: 0x11, 0x2000_0001: 0x22}
        self.registers: Dict[str, int] = {"pc": 0x0800_0100}
        self.state = "halted"
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                conn, _ = self._sock.accept()
            except OSError:
                break
            conn.settimeout(1.0)
            thread = threading.Thread(target=self._handle_client, args=(conn,), daemon=True)
            thread.start()

    def _handle_client(self, conn: socket.socket) -> None:
        buffer = b""
        with conn:
            while not self._stop.is_set():
                try:
                    chunk = conn.recv(4096)
                except socket.timeout:
                    continue
                except OSError:
                    break
                if not chunk:
                    break
                buffer += chunk
                while TERMINATOR in buffer:
                    line, buffer = buffer.split(TERMINATOR, 1)
                    command = line.decode("utf-8")
                    self.commands.append(command)
                    if command == "force_close":
                        return
                    reply = self._handle_command(command)
                    try:
                        conn.sendall(reply.encode("utf-8") + TERMINATOR)
                    except OSError:
                        return

    def _handle_command(self, command: str) -> str:
        parts = command.replace("{", " ").replace("}", " ").split()
        if command == "[target current] curstate":
            return self.state
        if parts[0] in ("halt", "step"):
            self.state = "halted"
            return ""
        if parts[0] == "resume":
            self.state = "running"
            return ""
        if parts[0] == "read_memory":
            address, count = int(parts[1], 16), int(parts[3])
            return " ".join(f"0x{self.memory.get(address + i, 0):02x}" for i in range(count))
        if parts[0] == "write_memory":
            address = int(parts[1], 16)
            for offset, token in enumerate(parts[3:]):
                self.memory[address + offset] = int(token, 16)
            return ""
        if parts[0] == "reg":
            name = parts[1]
            if name not in self.registers:
                return f"Unknown register {name}"
            if len(parts) > 2:
                self.registers[name] = int(parts[2], 16)
                return ""
            return f"{name} (/32): 0x{self.registers.get(name, 0):08x}"
        return f"invalid command name \"{parts[0]}\""

    def stop(self) -> None:
        self._stop.set()
        try:
            dummy = socket.create_connection(("127.0.0.1", self.port), timeout=0.2)
            dummy.close()
        except OSError:
            pass
        self._sock.close()
        self._thread.join(timeout=0.5)


def test_memory_round_trip():
    server = DummyOpenOCDServer()
    try:
        transport = OpenOCDTransport(TransportConfig(port=server.port))
        assert transport.read_memory(0x2000_0000, 2) == b"\x11\x22"
        transport.write_memory(0x2000_0004, b"\x01\xff")
        assert transport.read_memory(0x2000_0004, 2) == b"\x01\xff"
        assert server.commands[1] == "write_memory 0x20000004 8 {0x01 0xff}"
        assert transport.read_memory(0x2000_0000, 0) == b""
        transport.close()
    finally:
        server.stop()


def test_run_control_and_registers():
    server = DummyOpenOCDServer()
    try:
        transport = OpenOCDTransport(TransportConfig(port=server.port))
        assert transport.is_halted()
        transport.resume()
        assert not transport.is_halted()
        transport.halt()
        assert transport.is_halted()
        assert transport.read_core_register("pc") == 0x0800_0100
        transport.write_core_register("pc", 0x0800_0102)
        assert transport.read_core_register("pc") == 0x0800_0102
        transport.reset_halt()
        assert "reset halt" in server.commands
        transport.close()
    finally:
        server.stop()


def test_unexpected_register_reply_raises():
    server = DummyOpenOCDServer()
    try:
        transport = OpenOCDTransport(TransportConfig(port=server.port))
        assert transport.command("bogus").startswith("invalid command name")
        with pytest.raises(TransportError):
            transport.read_core_register("xpsr")
        transport.close()
    finally:
        server.stop()


def test_short_memory_reply_raises():
    server = DummyOpenOCDServer()
    try:
        transport = OpenOCDTransport(TransportConfig(port=server.port))
        server.memory = {}
        original = server._handle_command
        server._handle_command = lambda command: "0x00" if command.startswith("read_memory") else original(command)
        with pytest.raises(TransportError):
            transport.read_memory(0x2000_0000, 4)
        transport.close()
    finally:
        server.stop()


def test_reconnects_after_drop_and_reports_state():
    server = DummyOpenOCDServer()
    try:
        transitions = []
        transport = OpenOCDTransport(TransportConfig(port=server.port))
        transport.register_on_connect(lambda state: transitions.append(state))
        transport.register_on_disconnect(lambda state: transitions.append(f"{state}:down"))
        transport.halt()
        with pytest.raises(TransportError):
            transport.command("force_close", timeout=0.5)
        assert transport.state == "disconnected"
        time.sleep(0.05)
        assert transport.is_halted()
        assert transport.state == "connected"
        transport.close()
        assert transport.state == "closed"
        assert transitions == ["connected", "disconnected:down", "connected"]
    finally:
        server.stop()


def test_connect_failure_raises_transport_error():
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    transport = OpenOCDTransport(
        TransportConfig(port=port, connect_timeout=0.1, reconnect_backoff=0.01, max_retries=2)
    )
    with pytest.raises(TransportError):
        transport.connect()
    assert transport.state == "disconnected"


def test_closed_transport_rejects_commands():
    transport = OpenOCDTransport(TransportConfig(port=1))
    transport.close()
    with pytest.raises(TransportError):
        transport.halt()
