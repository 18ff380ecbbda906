"""Error taxonomy shared by the wire layer and the transmitter façade."""

from __future__ import annotations

from dataclasses import dataclass


class ElrsError(Exception):
    """Base class for ELRS host errors."""


class TransportError(ElrsError):
    """Raised when the serial endpoint fails a read or write."""


class NotConnectedError(TransportError):
    """Raised when an operation needs an open port and there is none."""


class FrameError(ElrsError):
    """Malformed frame on the wire.

    Deframers never raise this; they drop the frame, count it in
    :class:`FrameStats` and resynchronise.
    """


class ProtocolError(ElrsError):
    """Raised when a known function id carries a payload of the wrong size."""


@dataclass
class FrameStats:
    """Counters kept by a deframer for observability."""

    frames: int = 0
    crc_errors: int = 0
    oversize: int = 0
    ignored: int = 0

    @property
    def dropped(self) -> int:
        return self.crc_errors + self.oversize

    def reset(self) -> None:
        self.frames = 0
        self.crc_errors = 0
        self.oversize = 0
        self.ignored = 0
