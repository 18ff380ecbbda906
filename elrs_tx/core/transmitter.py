"""Transmitter façade: TX loop, reader loop and MSP command entry points."""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from typing import Optional, Protocol

from . import msp
from .config import LinkProfile
from .crsf import CrsfDeframer
from .errors import FrameStats, NotConnectedError, TransportError
from .scheduler import POLL_REQUESTS, ControlInputs, TxScheduler, build_poll_scheduler
from .state import ConnectionStatus, DeviceConfiguration, RadioMode, RadioState
from .telemetry import TelemetryHandler

log = logging.getLogger(__name__)

READ_CHUNK = 4096


class PortLike(Protocol):
    """Subset of :class:`elrs_tx.io.serial_port.SerialPort` the façade relies on."""

    name: str

    @property
    def is_open(self) -> bool: ...

    def open(self) -> object: ...

    def close(self) -> None: ...

    def write(self, data: bytes) -> int: ...

    def read(self, size: int = READ_CHUNK, timeout: float = 0.05) -> bytes: ...


class Transmitter:
    """Drive an ELRS module: CRSF channels out, MSP/CRSF telemetry in.

    The façade owns the port, the TX scheduler, the telemetry handler and both
    deframers. :meth:`start` opens the port and spawns the TX and reader
    threads; :meth:`stop` cancels both, joins them and releases the port.
    """

    def __init__(
        self,
        port: PortLike,
        state: RadioState,
        *,
        profile: Optional[LinkProfile] = None,
        device: Optional[DeviceConfiguration] = None,
    ) -> None:
        self._port = port
        self._state = state
        self.profile = profile or LinkProfile()
        self._device = device or DeviceConfiguration()
        self.telemetry = TelemetryHandler(state)
        self._msp_deframer = msp.MSPDeframer()
        self._crsf_deframer = CrsfDeframer()
        self._inputs = ControlInputs()
        self._inputs_lock = threading.Lock()
        self._scheduler = TxScheduler(
            port,
            self.get_control_inputs,
            rate_hz=self.profile.tx_rate_hz,
            on_error=self._on_tx_error,
            on_recover=self._on_tx_recover,
        )
        self._poller = build_poll_scheduler(dict(self.profile.poll_rates))
        self._lifecycle_lock = threading.Lock()
        self._stop = threading.Event()
        self._reader: Optional[threading.Thread] = None
        self._reader_failing = False
        self.msp_sent = 0

    # -- lifecycle ----------------------------------------------------------

    @property
    def running(self) -> bool:
        reader = self._reader
        return self._scheduler.running or (reader is not None and reader.is_alive())

    def start(self) -> bool:
        """Open the port and spawn both loops; ``False`` if the port cannot open."""

        with self._lifecycle_lock:
            if self.running:
                return True
            self._state.set_connection_status(ConnectionStatus.CONNECTING)
            try:
                if not self._port.is_open:
                    self._port.open()
            except TransportError as exc:
                log.error("cannot start transmitter: %s", exc)
                self._state.set_last_error(str(exc))
                self._state.set_connection_status(ConnectionStatus.ERROR)
                return False
            self._state.set_device_configuration(
                replace(self._device, port=self._port.name, baud_rate=self.profile.baudrate)
            )
            self._msp_deframer.reset()
            self._crsf_deframer.reset()
            self._reader_failing = False
            self._stop.clear()
            # Must precede the workers, which only ever report failures.
            self._state.set_connection_status(ConnectionStatus.CONNECTED)
            self._reader = threading.Thread(target=self._read_loop, name="elrs-reader", daemon=True)
            self._reader.start()
            self._scheduler.start()
        log.info("transmitter started on %s", self._port.name)
        return True

    def stop(self) -> None:
        with self._lifecycle_lock:
            reader, self._reader = self._reader, None
            if reader is None and not self._scheduler.running and not self._port.is_open:
                return
            self._stop.set()
            self._scheduler.stop()
            if reader is not None:
                reader.join(timeout=1.0)
                if reader.is_alive():  # pragma: no cover - blocked in the OS read
                    log.warning("reader loop did not stop in time")
            self._port.close()
            self._state.set_connection_status(ConnectionStatus.DISCONNECTED)
        log.info("transmitter stopped on %s", self._port.name)

    def __enter__(self) -> "Transmitter":
        if not self.start():
            raise TransportError(self._state.last_error or "transmitter failed to start")
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    # -- control inputs -----------------------------------------------------

    def set_control_inputs(self, inputs: ControlInputs) -> None:
        with self._inputs_lock:
            previous = self._inputs
            self._inputs = replace(inputs)
        if previous.armed != inputs.armed:
            self._log_arm_change(inputs.armed)

    def get_control_inputs(self) -> ControlInputs:
        with self._inputs_lock:
            return replace(self._inputs)

    def set_armed(self, armed: bool) -> None:
        with self._inputs_lock:
            changed = self._inputs.armed != armed
            self._inputs.armed = armed
        if changed:
            self._log_arm_change(armed)

    @property
    def armed(self) -> bool:
        with self._inputs_lock:
            return self._inputs.armed

    def emergency_stop(self) -> None:
        """Centre every axis, cut throttle and clear all switches."""

        with self._inputs_lock:
            self._inputs = ControlInputs()
        log.warning("emergency stop: all controls zeroed and disarmed")

    @staticmethod
    def _log_arm_change(armed: bool) -> None:
        if armed:
            log.warning("ARM: vehicle is now armed, propellers may spin")
        else:
            log.info("DISARM: vehicle is now safe")

    def set_mode(self, mode: RadioMode) -> None:
        self._state.set_mode(mode)

    # -- MSP commands -------------------------------------------------------

    def send_msp(self, command: int, payload: bytes = b"") -> bool:
        return self._send(msp.encode(command, payload), f"MSP {command:#04x}")

    def send_bind(self) -> bool:
        sent = self._send(msp.bind_request(), "bind")
        if sent:
            self._state.set_mode(RadioMode.BINDING)
        return sent

    def send_power_up(self) -> bool:
        return self._send(msp.power_request(True), "power up")

    def send_power_down(self) -> bool:
        return self._send(msp.power_request(False), "power down")

    def send_model_select(self, model_id: int = 1) -> bool:
        return self._send(msp.model_select_request(model_id), f"model select {model_id}")

    def send_link_stats_request(self) -> bool:
        return self._send(msp.link_stats_request(), "link stats request")

    def send_device_discovery(self) -> bool:
        return self._send(msp.device_discovery_request(), "device discovery")

    def _send(self, data: bytes, label: str) -> bool:
        """Write one MSP request; ``True`` once the OS accepted the bytes."""

        if not self._port.is_open:
            raise NotConnectedError(f"cannot send {label}: {self._port.name} is not open")
        try:
            self._port.write(data)
        except NotConnectedError:
            raise
        except TransportError as exc:
            log.warning("%s failed: %s", label, exc)
            self._state.set_last_error(f"{label} failed: {exc}")
            return False
        self.msp_sent += 1
        log.debug("%s sent (%s)", label, msp.hexlify(data))
        return True

    # -- counters -----------------------------------------------------------

    @property
    def frames_sent(self) -> int:
        return self._scheduler.frames_sent

    @property
    def tx_errors(self) -> int:
        return self._scheduler.error_count

    @property
    def msp_stats(self) -> FrameStats:
        return replace(self._msp_deframer.stats)

    @property
    def crsf_stats(self) -> FrameStats:
        return replace(self._crsf_deframer.stats)

    # -- worker callbacks ---------------------------------------------------

    def _on_tx_error(self, exc: TransportError) -> None:
        self._state.set_last_error(f"CRSF write failed: {exc}")
        self._state.set_connection_status(ConnectionStatus.ERROR)

    def _on_tx_recover(self) -> None:
        self._state.set_connection_status(ConnectionStatus.CONNECTED)

    def _read_loop(self) -> None:
        timeout = self.profile.read_timeout
        while not self._stop.is_set():
            try:
                self._poll()
                data = self._port.read(READ_CHUNK, timeout)
            except NotConnectedError:
                log.info("reader loop exiting: %s closed", self._port.name)
                break
            except TransportError as exc:
                self._on_read_error(exc)
                self._stop.wait(0.1)
                continue
            if self._reader_failing:
                self._reader_failing = False
                self._state.set_connection_status(ConnectionStatus.CONNECTED)
            if not data:
                continue
            try:
                decoded = self._ingest(data)
            except Exception:  # pragma: no cover - defensive
                log.exception("error while decoding telemetry")
                continue
            if decoded:
                self._publish_packet_stats()

    def _poll(self) -> None:
        if not self._poller.rates:
            return
        for name in self._poller.due():
            self._send(POLL_REQUESTS[name](), name)

    def _on_read_error(self, exc: TransportError) -> None:
        if self._reader_failing:
            return
        self._reader_failing = True
        log.error("serial read failed: %s", exc)
        self._state.set_last_error(str(exc))
        self._state.set_connection_status(ConnectionStatus.ERROR)

    def _ingest(self, data: bytes) -> int:
        """Feed every byte to both deframers and dispatch what they emit."""

        msp_frames = self._msp_deframer.feed(data)
        crsf_frames = self._crsf_deframer.feed(data)
        for msp_frame in msp_frames:
            self.telemetry.dispatch_msp(msp_frame)
        for crsf_frame in crsf_frames:
            self.telemetry.dispatch_crsf(crsf_frame)
        return len(msp_frames) + len(crsf_frames)

    def _publish_packet_stats(self) -> None:
        msp_stats = self._msp_deframer.stats
        crsf_stats = self._crsf_deframer.stats
        self._state.update_packet_stats(
            received=msp_stats.frames + crsf_stats.frames,
            transmitted=self._scheduler.frames_sent + self.msp_sent,
            lost=msp_stats.crc_errors + crsf_stats.crc_errors,
        )
