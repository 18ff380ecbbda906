"""Control inputs, the 250 Hz CRSF transmit loop and the MSP poll scheduler."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Protocol

from . import msp
from .crsf import (
    CRSF_CHANNEL_COUNT,
    CRSF_CHANNEL_VALUE_MID,
    CRSF_RC_FRAME_SIZE,
    build_rc_channels_frame_into,
    map_bool,
    map_stick,
    map_throttle,
)
from .errors import TransportError

log = logging.getLogger(__name__)

TX_RATE_HZ = 250.0
# Roughly 200 ms of failed writes at 250 Hz.
ERROR_LOG_INTERVAL = 50


@dataclass
class ControlInputs:
    roll: float = 0.0
    pitch: float = 0.0
    yaw: float = 0.0
    throttle: float = 0.0
    armed: bool = False
    mode1: bool = False
    mode2: bool = False


def fill_channels(channels: List[int], inputs: ControlInputs) -> List[int]:
    """Write the AETR + AUX mapping of *inputs* into *channels* in place.

    Channel 5 (AUX1) carries the arm switch; channels 8-16 sit at centre.
    """

    channels[0] = map_stick(inputs.roll)
    channels[1] = map_stick(inputs.pitch)
    channels[2] = map_throttle(inputs.throttle)
    channels[3] = map_stick(inputs.yaw)
    channels[4] = map_bool(inputs.armed)
    channels[5] = map_bool(inputs.mode1)
    channels[6] = map_bool(inputs.mode2)
    for index in range(7, CRSF_CHANNEL_COUNT):
        channels[index] = CRSF_CHANNEL_VALUE_MID
    return channels


def inputs_to_channels(inputs: ControlInputs) -> List[int]:
    return fill_channels([CRSF_CHANNEL_VALUE_MID] * CRSF_CHANNEL_COUNT, inputs)


class FrameSink(Protocol):
    def write(self, data: bytes) -> int: ...


class TxScheduler:
    """Periodic CRSF channel writer.

    Each tick snapshots the control inputs, packs them into a reused 26 byte
    frame and writes it. Ticks are scheduled from the previous tick's
    intended start on the monotonic clock, so jitter does not accumulate.
    Write failures are counted and the loop carries on.
    """

    def __init__(
        self,
        sink: FrameSink,
        snapshot: Callable[[], ControlInputs],
        *,
        rate_hz: float = TX_RATE_HZ,
        clock: Callable[[], float] = time.perf_counter,
        on_error: Optional[Callable[[TransportError], None]] = None,
        on_recover: Optional[Callable[[], None]] = None,
    ) -> None:
        if rate_hz <= 0:
            raise ValueError("rate_hz must be positive")
        self._sink = sink
        self._snapshot = snapshot
        self.period = 1.0 / rate_hz
        self._clock = clock
        self._on_error = on_error
        self._on_recover = on_recover
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self.frames_sent = 0
        self.error_count = 0
        self.overruns = 0
        self._failing = False

    @property
    def running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    def start(self) -> None:
        with self._lock:
            if self.running:
                return
            self._stop.clear()
            self._failing = False
            self._thread = threading.Thread(target=self._run, name="crsf-tx", daemon=True)
            self._thread.start()
        log.info("CRSF transmit loop started at %.0f Hz", 1.0 / self.period)

    def stop(self, timeout: float = 1.0) -> None:
        with self._lock:
            thread, self._thread = self._thread, None
            self._stop.set()
        if thread is None:
            return
        thread.join(timeout=timeout)
        if thread.is_alive():  # pragma: no cover - blocked in the OS write
            log.warning("CRSF transmit loop did not stop within %.2fs", timeout)
        else:
            log.info("CRSF transmit loop stopped after %d frames", self.frames_sent)

    def _run(self) -> None:
        frame = bytearray(CRSF_RC_FRAME_SIZE)
        channels = [CRSF_CHANNEL_VALUE_MID] * CRSF_CHANNEL_COUNT
        period = self.period
        clock = self._clock
        next_tick = clock()
        while not self._stop.is_set():
            fill_channels(channels, self._snapshot())
            build_rc_channels_frame_into(frame, channels)
            self._write(frame)

            next_tick += period
            delay = next_tick - clock()
            if delay < -period:
                # More than a full period late: realign instead of bursting.
                self.overruns += 1
                next_tick = clock()
            elif delay > 0:
                self._stop.wait(delay)

    def _write(self, frame: bytearray) -> None:
        try:
            self._sink.write(frame)
        except TransportError as exc:
            self.error_count += 1
            if not self._failing:
                self._failing = True
                if self._on_error is not None:
                    self._on_error(exc)
            if self.error_count == 1 or self.error_count % ERROR_LOG_INTERVAL == 0:
                log.warning("failed to send CRSF frame (count: %d): %s", self.error_count, exc)
            return
        self.frames_sent += 1
        if self._failing:
            self._failing = False
            log.info("CRSF writes recovered after %d errors", self.error_count)
            if self._on_recover is not None:
                self._on_recover()


@dataclass
class PollRate:
    name: str
    hz: float


@dataclass
class PollScheduler:
    """Decide which periodic MSP requests are due, by name."""

    rates: List[PollRate]
    last_run: Dict[str, float] = field(default_factory=dict)

    def due(self, now: float | None = None) -> List[str]:
        if now is None:
            now = time.monotonic()
        due_names: List[str] = []
        for rate in self.rates:
            period = 1.0 / rate.hz if rate.hz > 0 else 0
            last = self.last_run.get(rate.name)
            if last is None or period == 0 or now - last >= period:
                due_names.append(rate.name)
                self.last_run[rate.name] = now
        return due_names


POLL_REQUESTS: Dict[str, Callable[[], bytes]] = {
    "link_stats": msp.link_stats_request,
    "device_discovery": msp.device_discovery_request,
}


def build_poll_scheduler(rates: Dict[str, float] | None = None) -> PollScheduler:
    """Build a scheduler from ``{"link_stats": hz, ...}``; rates <= 0 are skipped."""

    rates = rates or {}
    poll_rates: List[PollRate] = []
    for name, hz in rates.items():
        if name not in POLL_REQUESTS:
            raise ValueError(f"unknown poll request '{name}'")
        if float(hz) <= 0:
            continue
        poll_rates.append(PollRate(name=name, hz=float(hz)))
    return PollScheduler(rates=poll_rates)
