from __future__ import annotations

import threading
import time
from typing import List, Optional, Tuple

import pytest

from elrs_tx.core.errors import NotConnectedError, TransportError


class FakeSerial:
    """Stand-in for ``serial.Serial`` as built by :class:`SerialPort`."""

    def __init__(self, response: bytes = b"", **kwargs):
        self.kwargs = kwargs
        self._buffer = bytearray(response)
        self.written = bytearray()
        self.timeout = kwargs.get("timeout", 0.05)
        self.write_timeout = kwargs.get("write_timeout")
        self.dtr = True
        self.rts = True
        self.dtr_at_open: Optional[bool] = None
        self.rts_at_open: Optional[bool] = None
        self.port = kwargs.get("port")
        self.is_open = False
        self.short_write = False

    def open(self) -> None:
        self.dtr_at_open = self.dtr
        self.rts_at_open = self.rts
        self.is_open = True

    def reset_input_buffer(self) -> None:
        pass

    def reset_output_buffer(self) -> None:
        pass

    def read(self, size: int) -> bytes:
        if not self._buffer:
            time.sleep(0.001)
            return b""
        chunk = self._buffer[:size]
        del self._buffer[:size]
        return bytes(chunk)

    def write(self, data: bytes) -> int:
        if self.short_write:
            return len(data) - 1
        self.written.extend(data)
        return len(data)

    def flush(self) -> None:
        pass

    def close(self) -> None:
        self.is_open = False


class FakePort:
    """In-memory port with the :class:`SerialPort` interface used by the façade."""

    def __init__(self, name: str = "/dev/ttyACM0", *, fail_open: bool = False):
        self.name = name
        self.fail_open = fail_open
        self.fail_writes = False
        self._open = False
        self._lock = threading.Lock()
        self._inbound = bytearray()
        self.writes: List[Tuple[float, bytes]] = []

    @property
    def is_open(self) -> bool:
        return self._open

    def open(self) -> "FakePort":
        if self.fail_open:
            raise TransportError(f"cannot open {self.name}: no such device")
        self._open = True
        return self

    def close(self) -> None:
        self._open = False

    def feed(self, data: bytes) -> None:
        with self._lock:
            self._inbound.extend(data)

    def write(self, data: bytes) -> int:
        if not self._open:
            raise NotConnectedError(f"{self.name} is not open")
        if self.fail_writes:
            raise TransportError(f"write to {self.name} failed: I/O error")
        with self._lock:
            self.writes.append((time.perf_counter(), bytes(data)))
        return len(data)

    def read(self, size: int = 4096, timeout: float = 0.05) -> bytes:
        if not self._open:
            raise NotConnectedError(f"{self.name} is not open")
        with self._lock:
            chunk = bytes(self._inbound[:size])
            del self._inbound[:size]
        if not chunk:
            time.sleep(timeout)
        return chunk

    def frames(self, first_byte: int) -> List[bytes]:
        with self._lock:
            return [data for _, data in self.writes if data[:1] == bytes([first_byte])]


class FakeClock:
    def __init__(self, now: float = 100.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def wait_for(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


@pytest.fixture
def fake_port() -> FakePort:
    return FakePort()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()
