"""Serial port discovery for ELRS transmitter modules."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Sequence, Tuple

import serial.tools.list_ports

from elrs_tx.core.state import DeviceConfiguration

KNOWN_MODULES: Dict[Tuple[int, int], str] = {
    (0x10C4, 0xEA60): "BetaFPV ELRS Micro TX (CP210x)",
    (0x10C4, 0xEA70): "BetaFPV ELRS Nano TX (CP2105)",
    (0x0483, 0x5740): "ELRS TX module (STM32 VCP)",
    (0x0483, 0x5742): "ELRS TX module (STM32 composite)",
    (0x1209, 0x5741): "ELRS TX module (pid.codes)",
    (0x0403, 0x6001): "ELRS TX module (FTDI)",
    (0x2E8A, 0x000A): "Radiomaster ELRS module (RP2040)",
    (0x303A, 0x1001): "ELRS TX module (ESP32-S3)",
}


@dataclass
class PortFilterConfig:
    """Configuration used when filtering serial ports."""

    enforce_whitelist: bool = True
    known_modules: Dict[Tuple[int, int], str] = field(default_factory=lambda: dict(KNOWN_MODULES))
    allowed_prefixes: Sequence[str] = ("/dev/ttyACM", "/dev/ttyUSB", "/dev/cu.", "COM")

    def product_for(self, vid: int | None, pid: int | None) -> str | None:
        if vid is None or pid is None:
            return None
        return self.known_modules.get((vid, pid))

    def allow(self, vid: int | None, pid: int | None) -> bool:
        if not self.enforce_whitelist:
            return True
        return self.product_for(vid, pid) is not None


@dataclass
class PortDescriptor:
    """Metadata describing an available serial interface."""

    device: str
    description: str
    hwid: str
    vid: int | None = None
    pid: int | None = None
    manufacturer: str | None = None
    product: str | None = None
    serial_number: str | None = None
    known_module: str | None = None

    @property
    def is_elrs(self) -> bool:
        return self.known_module is not None

    def to_device_configuration(self) -> DeviceConfiguration:
        return DeviceConfiguration(
            port=self.device,
            product_name=self.known_module or self.product or self.description,
            manufacturer=self.manufacturer or "",
            serial_number=self.serial_number or "",
            vid=self.vid or 0,
            pid=self.pid or 0,
            is_verified=self.is_elrs,
        )


def _is_candidate(device: str, prefixes: Sequence[str]) -> bool:
    return any(device.startswith(prefix) for prefix in prefixes)


def list_ports(config: PortFilterConfig | None = None) -> List[PortDescriptor]:
    """Discover serial ports that look like ELRS modules, filtered by *config*."""

    config = config or PortFilterConfig()
    ports: List[PortDescriptor] = []
    for entry in serial.tools.list_ports.comports():
        device = entry.device or ""
        if not device or not _is_candidate(device, config.allowed_prefixes):
            # Skip on-board UARTs such as /dev/ttyS*
            continue
        vid = getattr(entry, "vid", None)
        pid = getattr(entry, "pid", None)
        if not config.allow(vid, pid):
            continue
        ports.append(
            PortDescriptor(
                device=device,
                description=entry.description or "",
                hwid=entry.hwid or "",
                vid=vid,
                pid=pid,
                manufacturer=getattr(entry, "manufacturer", None),
                product=getattr(entry, "product", None),
                serial_number=getattr(entry, "serial_number", None),
                known_module=config.product_for(vid, pid),
            )
        )
    ports.sort(key=lambda p: p.device)
    return ports


def find_port(name: str, config: PortFilterConfig | None = None) -> PortDescriptor | None:
    """Return the descriptor for *name* if discovery reports it."""

    unfiltered = PortFilterConfig(enforce_whitelist=False, allowed_prefixes=("",))
    config = config or unfiltered
    for descriptor in list_ports(config):
        if descriptor.device == name:
            return descriptor
    return None
