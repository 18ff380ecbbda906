"""Command line monitor: drive a module with centred sticks and print telemetry."""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from pathlib import Path
from typing import Callable, List

from elrs_tx.core.config import DEFAULT_PROFILE, ProfileError, load_profiles, resolve_profile
from elrs_tx.core.errors import TransportError
from elrs_tx.core.state import DeviceConfiguration, RadioState
from elrs_tx.core.transmitter import Transmitter
from elrs_tx.io.ports import find_port, list_ports
from elrs_tx.io.serial_port import SerialPort

log = logging.getLogger(__name__)

REPORT_INTERVAL = 0.5


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="ExpressLRS transmitter monitor")
    parser.add_argument("port", nargs="?", help="Serial port of the TX module (default: first discovered)")
    parser.add_argument("--config", help="Path to config.yaml overriding defaults")
    parser.add_argument("--profile", default=DEFAULT_PROFILE, help="Link profile defined in config.yaml")
    parser.add_argument("--tx-rate", type=float, help="Override the profile CRSF frame rate in Hz")
    parser.add_argument(
        "--duration",
        type=float,
        help="Stop after this many seconds (default: run until interrupted)",
    )
    parser.add_argument(
        "--jsonl",
        action="store_true",
        help="Emit JSON lines instead of human readable output",
    )
    parser.add_argument("--bind", action="store_true", help="Send a bind request after start")
    parser.add_argument("--model", type=int, help="Select this receiver model id after start")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    return parser


def snapshot(state: RadioState, transmitter: Transmitter) -> dict:
    """Collect one telemetry report from *state* and *transmitter* counters."""

    live = state.live_telemetry()
    profile = transmitter.profile
    return {
        "status": state.connection_status_string(),
        "mode": state.mode_string(),
        "uptime": state.uptime_string(),
        "rssi1": live.rssi1,
        "rssi2": live.rssi2,
        "lq": live.link_quality,
        "snr": live.snr,
        "tx_power": live.tx_power,
        "voltage": round(live.voltage, 2),
        "current": round(live.current, 2),
        "capacity_mah": live.capacity_mah,
        "fresh": state.is_telemetry_fresh(profile.telemetry_fresh_ms),
        "spectrum_bins": state.spectrum_bin_count() if state.is_spectrum_fresh(profile.spectrum_fresh_ms) else 0,
        "frames_sent": transmitter.frames_sent,
        "tx_errors": transmitter.tx_errors,
        "packet_loss": round(state.packet_loss_rate(), 1),
        "error": state.last_error,
    }


def _format(report: dict) -> str:
    if not report["fresh"]:
        link = "telemetry stale"
    else:
        link = (
            f"RSSI {report['rssi1']}/{report['rssi2']} dBm LQ {report['lq']}% "
            f"SNR {report['snr']} dB power {report['tx_power']}"
        )
    line = (
        f"[{report['uptime']}] {report['status']} ({report['mode']}) {link} "
        f"batt {report['voltage']:.1f}V {report['current']:.1f}A "
        f"tx {report['frames_sent']} err {report['tx_errors']}"
    )
    if report["error"]:
        line += f" last error: {report['error']}"
    return line


def _resolve_device(port: str | None) -> DeviceConfiguration | None:
    if port:
        descriptor = find_port(port)
        return descriptor.to_device_configuration() if descriptor else DeviceConfiguration(port=port)
    ports = list_ports()
    if not ports:
        return None
    return ports[0].to_device_configuration()


def main(argv: List[str] | None = None, *, port_factory: Callable[..., SerialPort] = SerialPort) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        profiles = load_profiles(Path(args.config) if args.config else None)
        profile = resolve_profile(args.profile, profiles).with_overrides(tx_rate_hz=args.tx_rate)
    except ProfileError as exc:
        parser.error(str(exc))
    if profile.tx_rate_hz <= 0:
        parser.error("--tx-rate must be positive")

    device = _resolve_device(args.port)
    if device is None:
        print("no ELRS transmitter module discovered", file=sys.stderr)
        return 2

    port = port_factory(device.port, baudrate=profile.baudrate, write_timeout=profile.write_timeout)
    state = RadioState(history_size=profile.history_size)
    transmitter = Transmitter(port, state, profile=profile, device=device)

    if not transmitter.start():
        print(f"cannot open {device.port}: {state.last_error}", file=sys.stderr)
        return 1
    state.mark_system_ready()

    exit_code = 0
    deadline = None if args.duration is None else time.monotonic() + args.duration
    try:
        if args.model is not None:
            transmitter.send_model_select(args.model)
        if args.bind:
            transmitter.send_bind()
        while deadline is None or time.monotonic() < deadline:
            wait = REPORT_INTERVAL if deadline is None else min(REPORT_INTERVAL, deadline - time.monotonic())
            if wait > 0:
                time.sleep(wait)
            report = snapshot(state, transmitter)
            if args.jsonl:
                print(json.dumps(report, ensure_ascii=False), flush=True)
            else:
                print(_format(report), flush=True)
    except KeyboardInterrupt:
        log.info("interrupted, stopping")
    except TransportError as exc:
        print(f"transport failure: {exc}", file=sys.stderr)
        exit_code = 1
    finally:
        transmitter.emergency_stop()
        transmitter.stop()
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
