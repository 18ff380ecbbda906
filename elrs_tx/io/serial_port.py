"""Scoped access to the CDC serial endpoint of an ELRS transmitter module."""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Optional

import serial

from elrs_tx.core.errors import NotConnectedError, TransportError

log = logging.getLogger(__name__)

CRSF_BAUDRATE = 420_000
BUFFER_SIZE = 4096
MAX_READ_TIMEOUT = 0.05


class SerialPort:
    """One CDC endpoint at 420 kbaud, 8-N-1, no flow control, DTR/RTS low.

    Use it as a context manager (or pair :meth:`open` with :meth:`close`) so
    the port is released on every exit path. Writes are serialised by an
    internal lock held for a single ``write`` call; reads are expected from a
    single reader thread.
    """

    def __init__(
        self,
        name: str,
        *,
        baudrate: int = CRSF_BAUDRATE,
        write_timeout: float = 0.05,
        buffer_size: int = BUFFER_SIZE,
        serial_factory: Callable[..., Any] = serial.Serial,
    ) -> None:
        self.name = name
        self.baudrate = baudrate
        self.write_timeout = write_timeout
        self.buffer_size = buffer_size
        self._factory = serial_factory
        self._serial: Optional[Any] = None
        self._write_lock = threading.Lock()
        self._read_timeout: Optional[float] = None

    @property
    def is_open(self) -> bool:
        handle = self._serial
        return handle is not None and bool(getattr(handle, "is_open", True))

    def open(self) -> "SerialPort":
        if self.is_open:
            return self
        try:
            handle = self._factory(
                port=None,
                baudrate=self.baudrate,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                xonxoff=False,
                rtscts=False,
                dsrdtr=False,
                timeout=MAX_READ_TIMEOUT,
                write_timeout=self.write_timeout,
            )
            # Line states set before open() are applied on open.
            handle.dtr = False
            handle.rts = False
            handle.port = self.name
            handle.open()
        except (serial.SerialException, OSError, ValueError) as exc:
            raise TransportError(f"cannot open {self.name}: {exc}") from exc
        try:
            if hasattr(handle, "set_buffer_size"):  # Windows only
                handle.set_buffer_size(rx_size=self.buffer_size, tx_size=self.buffer_size)
            handle.reset_input_buffer()
            handle.reset_output_buffer()
        except (serial.SerialException, OSError) as exc:
            handle.close()
            raise TransportError(f"cannot configure {self.name}: {exc}") from exc
        self._serial = handle
        self._read_timeout = MAX_READ_TIMEOUT
        log.info("opened %s at %s baud", self.name, self.baudrate)
        return self

    def close(self) -> None:
        with self._write_lock:
            handle, self._serial = self._serial, None
        if handle is None:
            return
        try:
            handle.close()
        except (serial.SerialException, OSError):  # pragma: no cover - OS dependent
            log.debug("error while closing %s", self.name, exc_info=True)
        log.info("closed %s", self.name)

    def __enter__(self) -> "SerialPort":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def write(self, data: bytes) -> int:
        """Write *data* in one call; short writes raise :class:`TransportError`."""

        with self._write_lock:
            handle = self._serial
            if handle is None:
                raise NotConnectedError(f"{self.name} is not open")
            try:
                written = handle.write(data)
            except (serial.SerialException, OSError) as exc:
                raise TransportError(f"write to {self.name} failed: {exc}") from exc
        if written is None:
            written = len(data)
        if written != len(data):
            raise TransportError(f"short write to {self.name}: {written}/{len(data)} bytes")
        return written

    def read(self, size: int = BUFFER_SIZE, timeout: float = MAX_READ_TIMEOUT) -> bytes:
        """Read up to *size* bytes; an empty result means the timeout expired."""

        handle = self._serial
        if handle is None:
            raise NotConnectedError(f"{self.name} is not open")
        timeout = min(max(timeout, 0.0), MAX_READ_TIMEOUT)
        try:
            if timeout != self._read_timeout:
                handle.timeout = timeout
                self._read_timeout = timeout
            return bytes(handle.read(size))
        except (serial.SerialException, OSError) as exc:
            raise TransportError(f"read from {self.name} failed: {exc}") from exc
