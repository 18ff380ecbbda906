"""CRSF channel packing, CRC-8/DVB-S2 and the inbound CRSF deframer."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

from .errors import FrameStats

log = logging.getLogger(__name__)

CRSF_ADDRESS_BROADCAST = 0x00
CRSF_ADDRESS_FLIGHT_CONTROLLER = 0xC8
CRSF_ADDRESS_RADIO_TRANSMITTER = 0xEA
CRSF_ADDRESS_RECEIVER = 0xEC
CRSF_ADDRESS_TRANSMITTER_MODULE = 0xEE
CRSF_ADDRESS_ELRS_LUA = 0xEF

CRSF_FRAMETYPE_LINK_STATISTICS = 0x14
CRSF_FRAMETYPE_RC_CHANNELS_PACKED = 0x16

CRSF_CHANNEL_COUNT = 16
CRSF_CHANNEL_BITS = 11
CRSF_CHANNEL_MASK = (1 << CRSF_CHANNEL_BITS) - 1
CRSF_CHANNEL_VALUE_MIN = 172
CRSF_CHANNEL_VALUE_MID = 992
CRSF_CHANNEL_VALUE_MAX = 1811

CRSF_CHANNELS_PAYLOAD_SIZE = 22
# length byte covers type + payload + crc
CRSF_RC_FRAME_LENGTH = CRSF_CHANNELS_PAYLOAD_SIZE + 2
CRSF_RC_FRAME_SIZE = CRSF_RC_FRAME_LENGTH + 2
CRSF_MAX_FRAME_SIZE = 64

# Bytes that may start an inbound frame.
CRSF_SYNC_ADDRESSES = frozenset(
    {
        CRSF_ADDRESS_FLIGHT_CONTROLLER,
        CRSF_ADDRESS_RADIO_TRANSMITTER,
        CRSF_ADDRESS_RECEIVER,
        CRSF_ADDRESS_TRANSMITTER_MODULE,
        CRSF_ADDRESS_ELRS_LUA,
    }
)

CRC8_DVB_S2_POLY = 0xD5


def _make_crc8_table(poly: int) -> List[int]:
    table: List[int] = []
    for value in range(256):
        crc = value
        for _ in range(8):
            if crc & 0x80:
                crc = ((crc << 1) ^ poly) & 0xFF
            else:
                crc = (crc << 1) & 0xFF
        table.append(crc)
    return table


_CRC8_TABLE = _make_crc8_table(CRC8_DVB_S2_POLY)


def crc8_dvb_s2(data: Iterable[int], crc: int = 0) -> int:
    """Return the CRC-8/DVB-S2 of *data* (poly 0xD5, init 0, no reflection)."""

    table = _CRC8_TABLE
    for byte in data:
        crc = table[crc ^ byte]
    return crc


def _span(normalized: float) -> int:
    if math.isnan(normalized):
        normalized = 0.5
    normalized = min(max(normalized, 0.0), 1.0)
    span = CRSF_CHANNEL_VALUE_MAX - CRSF_CHANNEL_VALUE_MIN
    return int(CRSF_CHANNEL_VALUE_MIN + normalized * span + 0.5)


def map_stick(value: float) -> int:
    """Map a stick deflection in [-1, +1] to CRSF units, clamping outliers."""

    return _span((value + 1.0) / 2.0)


def map_throttle(value: float) -> int:
    """Map a throttle position in [0, 1] to CRSF units, clamping outliers."""

    return _span(value)


def map_bool(value: bool) -> int:
    return CRSF_CHANNEL_VALUE_MAX if value else CRSF_CHANNEL_VALUE_MIN


def _check_channel_count(channels: Sequence[int]) -> None:
    if len(channels) != CRSF_CHANNEL_COUNT:
        raise ValueError(f"expected {CRSF_CHANNEL_COUNT} channels, got {len(channels)}")


def pack_channels(channels: Sequence[int]) -> bytes:
    """Pack 16 channels into the 22 byte CRSF payload.

    The low 11 bits of each channel are concatenated LSB first, which is the
    little-endian encoding of one 176 bit integer.
    """

    _check_channel_count(channels)
    value = 0
    for index, channel in enumerate(channels):
        value |= (int(channel) & CRSF_CHANNEL_MASK) << (index * CRSF_CHANNEL_BITS)
    return value.to_bytes(CRSF_CHANNELS_PAYLOAD_SIZE, "little")


def unpack_channels(payload: bytes) -> List[int]:
    if len(payload) < CRSF_CHANNELS_PAYLOAD_SIZE:
        raise ValueError("RC channels payload must be 22 bytes")
    value = int.from_bytes(payload[:CRSF_CHANNELS_PAYLOAD_SIZE], "little")
    return [
        (value >> (index * CRSF_CHANNEL_BITS)) & CRSF_CHANNEL_MASK
        for index in range(CRSF_CHANNEL_COUNT)
    ]


def build_rc_channels_frame_into(frame: bytearray, channels: Sequence[int]) -> bytearray:
    """Write a complete RC channels frame into the 26 byte buffer *frame*.

    The outbound RC frame CRC covers ``[length, type, payload]`` (bytes 1..24).
    Inbound frames, and :func:`build_frame`, use a CRC over ``[type, payload]``
    only, so this frame is not accepted by :class:`CrsfDeframer`.
    """

    if len(frame) != CRSF_RC_FRAME_SIZE:
        raise ValueError(f"frame buffer must be {CRSF_RC_FRAME_SIZE} bytes")
    frame[0] = CRSF_ADDRESS_FLIGHT_CONTROLLER
    frame[1] = CRSF_RC_FRAME_LENGTH
    frame[2] = CRSF_FRAMETYPE_RC_CHANNELS_PACKED
    frame[3:25] = pack_channels(channels)
    frame[25] = crc8_dvb_s2(frame[1:25])
    return frame


def build_rc_channels_frame(channels: Sequence[int]) -> bytes:
    return bytes(build_rc_channels_frame_into(bytearray(CRSF_RC_FRAME_SIZE), channels))


def build_frame(address: int, frame_type: int, payload: bytes = b"") -> bytes:
    """Build an arbitrary CRSF frame with a trailing CRC over type + payload."""

    length = len(payload) + 2
    if length + 2 > CRSF_MAX_FRAME_SIZE:
        raise ValueError("CRSF frame cannot exceed 64 bytes")
    body = bytes([frame_type]) + bytes(payload)
    return bytes([address & 0xFF, length]) + body + bytes([crc8_dvb_s2(body)])


@dataclass(frozen=True)
class CrsfFrame:
    """A validated inbound CRSF frame."""

    address: int
    frame_type: int
    payload: bytes


class CrsfDeframer:
    """Byte-at-a-time CRSF parser: ``WAIT_ADDR -> WAIT_LEN -> READ_BODY``.

    There is no timeout. When a candidate frame declares an impossible length
    or fails its CRC, the bytes after its address are scanned again, so a false
    header in noise (or in interleaved MSP traffic) cannot swallow the start of
    the next real frame.
    """

    WAIT_ADDR = 0
    WAIT_LEN = 1
    READ_BODY = 2

    def __init__(self, sync_addresses: Optional[Iterable[int]] = None) -> None:
        self._sync = frozenset(sync_addresses) if sync_addresses is not None else CRSF_SYNC_ADDRESSES
        self.stats = FrameStats()
        self._body = bytearray()
        self._state = self.WAIT_ADDR
        self._address = 0
        self._length = 0

    @property
    def state(self) -> int:
        return self._state

    def reset(self) -> None:
        self._state = self.WAIT_ADDR
        self._address = 0
        self._length = 0
        self._body.clear()

    def feed(self, data: Iterable[int]) -> List[CrsfFrame]:
        """Consume *data* and return every frame completed by it, in order."""

        frames: List[CrsfFrame] = []
        for byte in data:
            self._push(byte, frames)
        return frames

    def _rescan(self, pending: bytes, frames: List[CrsfFrame]) -> None:
        self.reset()
        for byte in pending:
            self._push(byte, frames)

    def _push(self, byte: int, frames: List[CrsfFrame]) -> None:
        state = self._state
        if state == self.WAIT_ADDR:
            if byte in self._sync:
                self._address = byte
                self._state = self.WAIT_LEN
            return

        if state == self.WAIT_LEN:
            if 2 <= byte <= CRSF_MAX_FRAME_SIZE - 2:
                self._length = byte
                self._body.clear()
                self._state = self.READ_BODY
            else:
                if byte >= 2:
                    self.stats.oversize += 1
                # The rejected length byte may itself open the next frame.
                self._rescan(bytes([byte]), frames)
            return

        body = self._body
        body.append(byte)
        if len(body) < self._length:
            return

        # body layout: [type][payload...][crc]
        expected = crc8_dvb_s2(body[:-1])
        if expected == body[-1]:
            frames.append(CrsfFrame(self._address, body[0], bytes(body[1:-1])))
            self.stats.frames += 1
            self.reset()
            return
        self.stats.crc_errors += 1
        log.debug("CRSF crc mismatch: expected %02x, got %02x", expected, body[-1])
        self._rescan(bytes([self._length]) + bytes(body), frames)
