"""MSP v1 framing: outbound request builder and inbound reply deframer."""

from __future__ import annotations

import binascii
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from .commands import ElrsDevice, ElrsField, ElrsStatus, MSPCommand
from .errors import FrameStats

log = logging.getLogger(__name__)

MSP_V1_START = b"$M"
DIR_TO_FC = ord("<")
DIR_FROM_FC = ord(">")

# Length semantics allow 255; replies larger than this are treated as noise.
MSP_MAX_PAYLOAD = 128


@dataclass(frozen=True)
class MSPFrame:
    """Representation of a raw MSP v1 frame."""

    command: int
    payload: bytes
    direction: int = DIR_TO_FC

    @property
    def from_device(self) -> bool:
        return self.direction == DIR_FROM_FC

    @property
    def checksum(self) -> int:
        return xor_checksum(len(self.payload), self.command, self.payload)

    def to_bytes(self) -> bytes:
        return (
            MSP_V1_START
            + bytes([self.direction, len(self.payload), self.command])
            + self.payload
            + bytes([self.checksum])
        )


def xor_checksum(size: int, command: int, payload: Iterable[int]) -> int:
    checksum = size ^ command
    for byte in payload:
        checksum ^= byte
    return checksum & 0xFF


def build_frame(command: int, payload: bytes = b"") -> MSPFrame:
    """Construct an outbound :class:`MSPFrame` for *command* and *payload*."""

    if not 0 <= command <= 0xFF:
        raise ValueError("command must fit in uint8")
    if len(payload) > 0xFF:
        raise ValueError("payload cannot exceed 255 bytes in MSP v1")
    return MSPFrame(command=command, payload=bytes(payload))


def encode(command: int, payload: bytes = b"") -> bytes:
    """Return the ``$M<`` wire bytes for *command* and *payload*."""

    return build_frame(command, payload).to_bytes()


def _elrs_push(field: int, status: int) -> bytes:
    return encode(
        MSPCommand.MSP_ELRS_LINK_STATS,
        bytes([ElrsDevice.TX_MODULE, ElrsDevice.HANDSET, field, status]),
    )


def bind_request() -> bytes:
    return _elrs_push(ElrsField.BIND, ElrsStatus.EXECUTE)


def link_stats_request() -> bytes:
    return _elrs_push(ElrsField.BIND, ElrsStatus.REQUEST)


def device_discovery_request() -> bytes:
    return encode(
        MSPCommand.MSP_ELRS_DEVICE_DISCOVERY,
        bytes([0x00, ElrsDevice.RADIO_TRANSMITTER]),
    )


def power_request(increase: bool) -> bytes:
    return encode(MSPCommand.MSP_ELRS_POWER_CONTROL, bytes([0x01 if increase else 0x00]))


def model_select_request(model_id: int) -> bytes:
    if not 0 <= model_id <= 0xFF:
        raise ValueError("model id must fit in uint8")
    return encode(MSPCommand.MSP_ELRS_MODEL_SELECT, bytes([model_id]))


class MSPDeframer:
    """Stateful byte-at-a-time parser for MSP v1 frames.

    Frames in both directions are parsed so the stream stays in sync, but only
    replies (``$M>``) are returned. Checksum failures and oversized lengths
    reset the parser silently and are only counted in :attr:`stats`.
    """

    IDLE = 0
    EXPECT_M = 1
    EXPECT_DIR = 2
    EXPECT_LEN = 3
    EXPECT_FUNC = 4
    READ_PAYLOAD = 5
    EXPECT_CHECKSUM = 6

    def __init__(self, max_payload: int = MSP_MAX_PAYLOAD) -> None:
        self.max_payload = max_payload
        self.stats = FrameStats()
        self._payload = bytearray()
        self._state = self.IDLE
        self._direction = 0
        self._length = 0
        self._command = 0
        self._checksum = 0

    @property
    def state(self) -> int:
        return self._state

    def reset(self) -> None:
        self._state = self.IDLE
        self._direction = 0
        self._length = 0
        self._command = 0
        self._checksum = 0
        self._payload.clear()

    def feed(self, data: Iterable[int]) -> List[MSPFrame]:
        frames: List[MSPFrame] = []
        for byte in data:
            frame = self.feed_byte(byte)
            if frame is not None:
                frames.append(frame)
        return frames

    def feed_byte(self, byte: int) -> Optional[MSPFrame]:
        state = self._state
        if state == self.IDLE:
            if byte == 0x24:  # '$'
                self._state = self.EXPECT_M
        elif state == self.EXPECT_M:
            if byte == 0x4D:  # 'M'
                self._state = self.EXPECT_DIR
            elif byte != 0x24:
                self.reset()
        elif state == self.EXPECT_DIR:
            if byte in (DIR_FROM_FC, DIR_TO_FC):
                self._direction = byte
                self._state = self.EXPECT_LEN
            elif byte == 0x24:
                self._state = self.EXPECT_M
            else:
                self.reset()
        elif state == self.EXPECT_LEN:
            if byte > self.max_payload:
                self.stats.oversize += 1
                self.reset()
            else:
                self._length = byte
                self._checksum = byte
                self._payload.clear()
                self._state = self.EXPECT_FUNC
        elif state == self.EXPECT_FUNC:
            self._command = byte
            self._checksum ^= byte
            self._state = self.READ_PAYLOAD if self._length else self.EXPECT_CHECKSUM
        elif state == self.READ_PAYLOAD:
            self._payload.append(byte)
            self._checksum ^= byte
            if len(self._payload) >= self._length:
                self._state = self.EXPECT_CHECKSUM
        else:
            return self._finish(byte)
        return None

    def _finish(self, checksum: int) -> Optional[MSPFrame]:
        frame: Optional[MSPFrame] = None
        if checksum != self._checksum:
            self.stats.crc_errors += 1
            log.debug(
                "MSP checksum mismatch for cmd %s: expected %02x, got %02x",
                self._command,
                self._checksum,
                checksum,
            )
        elif self._direction != DIR_FROM_FC:
            self.stats.ignored += 1
        else:
            self.stats.frames += 1
            frame = MSPFrame(self._command, bytes(self._payload), DIR_FROM_FC)
        self.reset()
        return frame


def hexlify(data: bytes) -> str:
    """Return a lowercase hexadecimal representation of *data*."""

    return binascii.hexlify(data).decode("ascii")
