"""Payload parsers and the dispatcher that turns inbound frames into state."""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from .commands import MSPCommand
from .crsf import CrsfFrame
from .errors import ProtocolError
from .msp import MSPFrame
from .state import RadioState

log = logging.getLogger(__name__)

LEGACY_LINK_STATS_SIZE = 10
COMPACT_LINK_STATS_SIZE = 4
BATTERY_PAYLOAD_SIZE = 6


@dataclass
class LinkStats:
    rssi1: int = 0
    rssi2: int = 0
    link_quality: int = 0
    snr: int = 0
    tx_power: int = 0
    valid: bool = False


@dataclass
class BatteryInfo:
    voltage_mv: int = 0
    current_ma: int = 0
    capacity_mah: int = 0
    valid: bool = False


@dataclass
class TelemetryCounters:
    link_stats: int = 0
    battery: int = 0
    spectrum: int = 0
    crsf: int = 0
    protocol_errors: int = 0
    unhandled: int = 0


def _i8(value: int) -> int:
    return value - 256 if value > 127 else value


def parse_link_stats(payload: bytes) -> Tuple[LinkStats, List[int]]:
    """Decode a link statistics reply.

    Payloads of 10 bytes or more use the legacy layout (two RSSI values,
    spectrum bins from offset 10); 4 to 9 bytes use the compact layout with a
    single RSSI and bins from offset 4. Returns the stats and the trailing
    spectrum bins, which may be empty.
    """

    if len(payload) >= LEGACY_LINK_STATS_SIZE:
        stats = LinkStats(
            rssi1=_i8(payload[0]),
            rssi2=_i8(payload[1]),
            link_quality=payload[2],
            snr=_i8(payload[3]),
            tx_power=payload[4],
            valid=True,
        )
        offset = LEGACY_LINK_STATS_SIZE
    elif len(payload) >= COMPACT_LINK_STATS_SIZE:
        rssi = _i8(payload[0])
        stats = LinkStats(
            rssi1=rssi,
            rssi2=rssi,
            link_quality=payload[1],
            snr=_i8(payload[2]),
            tx_power=payload[3],
            valid=True,
        )
        offset = COMPACT_LINK_STATS_SIZE
    else:
        raise ProtocolError(f"link stats payload too short: {len(payload)} bytes")
    return stats, list(payload[offset:])


def parse_battery(payload: bytes) -> BatteryInfo:
    if len(payload) < BATTERY_PAYLOAD_SIZE:
        raise ProtocolError(f"battery payload too short: {len(payload)} bytes")
    voltage, current, capacity = struct.unpack_from(">HHH", payload)
    return BatteryInfo(voltage_mv=voltage, current_ma=current, capacity_mah=capacity, valid=True)


LinkStatsCallback = Callable[[LinkStats], None]
BatteryCallback = Callable[[BatteryInfo], None]
SpectrumCallback = Callable[[List[int]], None]


@dataclass
class _Latest:
    link_stats: LinkStats = field(default_factory=LinkStats)
    battery: BatteryInfo = field(default_factory=BatteryInfo)
    spectrum: List[int] = field(default_factory=list)


class TelemetryHandler:
    """Route decoded frames to typed handlers and publish them to state.

    Runs on the reader thread; callbacks execute synchronously there and must
    not block.
    """

    def __init__(self, state: RadioState) -> None:
        self._state = state
        self._latest = _Latest()
        self.counters = TelemetryCounters()
        self.link_stats_callback: Optional[LinkStatsCallback] = None
        self.battery_callback: Optional[BatteryCallback] = None
        self.spectrum_callback: Optional[SpectrumCallback] = None

    @property
    def latest_link_stats(self) -> LinkStats:
        return LinkStats(**vars(self._latest.link_stats))

    @property
    def latest_battery(self) -> BatteryInfo:
        return BatteryInfo(**vars(self._latest.battery))

    @property
    def latest_spectrum(self) -> List[int]:
        return list(self._latest.spectrum)

    def dispatch(self, frame: object) -> None:
        if isinstance(frame, MSPFrame):
            self.dispatch_msp(frame)
        elif isinstance(frame, CrsfFrame):
            self.dispatch_crsf(frame)
        else:
            raise TypeError(f"unsupported frame type: {type(frame).__name__}")

    def dispatch_msp(self, frame: MSPFrame) -> None:
        # 0x2D outbound is the ELRS parameter push; only replies carry stats.
        if not frame.from_device:
            return
        try:
            if frame.command == MSPCommand.MSP_ELRS_LINK_STATS:
                self._on_link_stats(frame.payload)
            elif frame.command == MSPCommand.MSP_ELRS_BATTERY:
                self._on_battery(frame.payload)
            else:
                self.counters.unhandled += 1
        except ProtocolError as exc:
            self.counters.protocol_errors += 1
            log.debug("dropping MSP %s frame: %s", frame.command, exc)

    def dispatch_crsf(self, frame: CrsfFrame) -> None:
        # Primary telemetry arrives over MSP; CRSF frames are only counted.
        self.counters.crsf += 1

    def _on_link_stats(self, payload: bytes) -> None:
        stats, spectrum = parse_link_stats(payload)
        self._latest.link_stats = stats
        self.counters.link_stats += 1
        self._state.update_link_stats(
            rssi1=stats.rssi1,
            rssi2=stats.rssi2,
            link_quality=stats.link_quality,
            snr=stats.snr,
            tx_power=stats.tx_power,
        )
        if spectrum:
            self._latest.spectrum = spectrum
            self.counters.spectrum += 1
            self._state.update_spectrum_data(spectrum)
        if self.link_stats_callback is not None:
            self.link_stats_callback(LinkStats(**vars(stats)))
        if spectrum and self.spectrum_callback is not None:
            self.spectrum_callback(list(spectrum))

    def _on_battery(self, payload: bytes) -> None:
        battery = parse_battery(payload)
        self._latest.battery = battery
        self.counters.battery += 1
        self._state.update_battery(
            battery.voltage_mv / 1000.0,
            battery.current_ma / 1000.0,
            capacity_mah=battery.capacity_mah,
        )
        if self.battery_callback is not None:
            self.battery_callback(BatteryInfo(**vars(battery)))
