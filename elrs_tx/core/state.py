"""Shared observable store for connection status, telemetry and spectrum."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Deque, List, Optional

log = logging.getLogger(__name__)

MAX_HISTORY_SIZE = 200
MAX_SPECTRUM_SIZE = 256


class ConnectionStatus(Enum):
    DISCONNECTED = "Disconnected"
    CONNECTING = "Connecting..."
    CONNECTED = "Connected"
    ERROR = "Error"
    TIMEOUT = "Timeout"


class RadioMode(Enum):
    NORMAL = "Normal"
    BINDING = "Binding"
    TESTING = "Testing"
    UPDATING = "Updating"
    CONFIGURATION = "Configuration"


@dataclass
class LiveTelemetry:
    rssi1: int = -120
    rssi2: int = -120
    link_quality: int = 0
    snr: int = 0
    tx_power: int = 0
    packets_received: int = 0
    packets_transmitted: int = 0
    packets_lost: int = 0
    voltage: float = 0.0
    current: float = 0.0
    capacity_mah: int = 0
    temperature: int = 0
    last_update: float = 0.0
    is_valid: bool = False


@dataclass
class DeviceConfiguration:
    port: str = ""
    product_name: str = ""
    manufacturer: str = ""
    serial_number: str = ""
    firmware_version: str = ""
    hardware_version: str = ""
    vid: int = 0
    pid: int = 0
    frequency: str = "2.4 GHz"
    protocol: str = "ExpressLRS"
    baud_rate: int = 420_000
    is_verified: bool = False


StateChangeCallback = Callable[[], None]


class RadioState:
    """Process-wide observable store.

    Built once at start-up and handed by reference to the transmitter and to
    observers. Every mutation takes the state lock, and the subscribed
    callback runs after the lock is released, exactly once per mutation.
    Callbacks must not block and must not call back into the mutators.
    """

    def __init__(
        self,
        *,
        history_size: int = MAX_HISTORY_SIZE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._connection_status = ConnectionStatus.DISCONNECTED
        self._mode = RadioMode.NORMAL
        self._device = DeviceConfiguration()
        self._start_time = clock()
        self._live = LiveTelemetry(last_update=self._start_time)
        self._last_error = ""
        self._system_ready = False
        self._rssi_history: Deque[int] = deque(maxlen=history_size)
        self._lq_history: Deque[int] = deque(maxlen=history_size)
        self._tx_power_history: Deque[int] = deque(maxlen=history_size)
        self._spectrum: List[int] = []
        self._spectrum_ts = self._start_time
        self._callback: Optional[StateChangeCallback] = None

    # -- subscription -----------------------------------------------------

    def subscribe(self, callback: StateChangeCallback) -> Optional[StateChangeCallback]:
        """Install *callback*, replacing and returning any previous one."""

        with self._lock:
            previous, self._callback = self._callback, callback
        return previous

    def unsubscribe(self) -> None:
        with self._lock:
            self._callback = None

    def _notify(self) -> None:
        callback = self._callback
        if callback is None:
            return
        try:
            callback()
        except Exception:  # pragma: no cover - observer failure
            log.exception("state change callback failed")

    # -- connection, mode, device -------------------------------------------

    def set_connection_status(self, status: ConnectionStatus) -> None:
        with self._lock:
            self._connection_status = status
        self._notify()

    @property
    def connection_status(self) -> ConnectionStatus:
        return self._connection_status

    def connection_status_string(self) -> str:
        return self._connection_status.value

    def set_mode(self, mode: RadioMode) -> None:
        with self._lock:
            self._mode = mode
        self._notify()

    @property
    def mode(self) -> RadioMode:
        return self._mode

    def mode_string(self) -> str:
        return self._mode.value

    def set_device_configuration(self, config: DeviceConfiguration) -> None:
        with self._lock:
            self._device = replace(config)
        self._notify()

    def device_configuration(self) -> DeviceConfiguration:
        with self._lock:
            return replace(self._device)

    # -- telemetry ----------------------------------------------------------

    def _stamp(self) -> None:
        self._live.last_update = self._clock()
        self._live.is_valid = True

    def update_telemetry(self, telemetry: LiveTelemetry) -> None:
        with self._lock:
            self._live = replace(telemetry)
            self._stamp()
            self._rssi_history.append(telemetry.rssi1)
            self._lq_history.append(telemetry.link_quality)
            self._tx_power_history.append(telemetry.tx_power)
        self._notify()

    def update_link_stats(
        self,
        *,
        rssi1: int,
        rssi2: int,
        link_quality: int,
        snr: int,
        tx_power: int,
    ) -> None:
        with self._lock:
            live = self._live
            live.rssi1 = rssi1
            live.rssi2 = rssi2
            live.link_quality = max(0, min(100, link_quality))
            live.snr = snr
            live.tx_power = tx_power
            self._stamp()
            self._rssi_history.append(rssi1)
            self._lq_history.append(live.link_quality)
            self._tx_power_history.append(tx_power)
        self._notify()

    def update_rssi(self, rssi1: int, rssi2: int = -120) -> None:
        with self._lock:
            self._live.rssi1 = rssi1
            self._live.rssi2 = rssi2
            self._stamp()
            self._rssi_history.append(rssi1)
        self._notify()

    def update_link_quality(self, quality: int) -> None:
        with self._lock:
            self._live.link_quality = max(0, min(100, quality))
            self._stamp()
            self._lq_history.append(self._live.link_quality)
        self._notify()

    def update_tx_power(self, power: int) -> None:
        with self._lock:
            self._live.tx_power = power
            self._stamp()
            self._tx_power_history.append(power)
        self._notify()

    def update_packet_stats(self, received: int, transmitted: int, lost: int = 0) -> None:
        with self._lock:
            self._live.packets_received = received
            self._live.packets_transmitted = transmitted
            self._live.packets_lost = lost
            self._stamp()
        self._notify()

    def update_battery(self, voltage: float, current: float, *, capacity_mah: Optional[int] = None) -> None:
        with self._lock:
            self._live.voltage = voltage
            self._live.current = current
            if capacity_mah is not None:
                self._live.capacity_mah = capacity_mah
            self._stamp()
        self._notify()

    def update_temperature(self, temperature: int) -> None:
        with self._lock:
            self._live.temperature = temperature
            self._stamp()
        self._notify()

    def live_telemetry(self) -> LiveTelemetry:
        with self._lock:
            return replace(self._live)

    def is_telemetry_fresh(self, max_age_ms: float = 5000) -> bool:
        with self._lock:
            if not self._live.is_valid:
                return False
            age_ms = (self._clock() - self._live.last_update) * 1000.0
        return age_ms < max_age_ms

    def packet_loss_rate(self) -> float:
        with self._lock:
            total = self._live.packets_received + self._live.packets_lost
            if total == 0:
                return 0.0
            return self._live.packets_lost / total * 100.0

    # -- histories ----------------------------------------------------------

    @staticmethod
    def _tail(history: Deque[int], max_points: int) -> List[int]:
        values = list(history)
        if max_points <= 0:
            return []
        return values[-max_points:]

    def rssi_history(self, max_points: int = 100) -> List[int]:
        with self._lock:
            return self._tail(self._rssi_history, max_points)

    def link_quality_history(self, max_points: int = 100) -> List[int]:
        with self._lock:
            return self._tail(self._lq_history, max_points)

    def tx_power_history(self, max_points: int = 100) -> List[int]:
        with self._lock:
            return self._tail(self._tx_power_history, max_points)

    def reset_statistics(self) -> None:
        with self._lock:
            self._live.packets_received = 0
            self._live.packets_transmitted = 0
            self._live.packets_lost = 0
            self._rssi_history.clear()
            self._lq_history.clear()
            self._tx_power_history.clear()
            self._start_time = self._clock()
        self._notify()

    # -- spectrum -----------------------------------------------------------

    def update_spectrum_data(self, bins: List[int]) -> None:
        """Replace the spectrum snapshot, keeping the newest 256 bins."""

        with self._lock:
            self._spectrum = [int(value) for value in bins[-MAX_SPECTRUM_SIZE:]]
            self._spectrum_ts = self._clock()
        self._notify()

    def spectrum_data(self) -> List[int]:
        with self._lock:
            return list(self._spectrum)

    def spectrum_bin_count(self) -> int:
        with self._lock:
            return len(self._spectrum)

    def spectrum_last_update(self) -> float:
        with self._lock:
            return self._spectrum_ts

    def is_spectrum_fresh(self, max_age_ms: float = 1000) -> bool:
        with self._lock:
            if not self._spectrum:
                return False
            age_ms = (self._clock() - self._spectrum_ts) * 1000.0
        return age_ms < max_age_ms

    # -- errors and lifecycle -----------------------------------------------

    def set_last_error(self, error: str) -> None:
        with self._lock:
            self._last_error = error
        self._notify()

    @property
    def last_error(self) -> str:
        with self._lock:
            return self._last_error

    def has_error(self) -> bool:
        return bool(self._last_error)

    def clear_error(self) -> None:
        self.set_last_error("")

    def mark_system_ready(self) -> None:
        with self._lock:
            self._system_ready = True
        self._notify()

    def is_system_ready(self) -> bool:
        return self._system_ready

    @property
    def start_time(self) -> float:
        return self._start_time

    def uptime_string(self) -> str:
        elapsed = max(0, int(self._clock() - self._start_time))
        hours, remainder = divmod(elapsed, 3600)
        minutes, seconds = divmod(remainder, 60)
        return f"{hours:02d}:{minutes:02d}:{seconds:02d}"
