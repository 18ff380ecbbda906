"""Helpers for loading transmitter link profiles from YAML."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, Mapping

from ruamel.yaml import YAML, YAMLError


class ProfileError(RuntimeError):
    """Raised when the configuration file or requested profile is invalid."""


DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config.yaml"
DEFAULT_PROFILE = "default"

_yaml = YAML(typ="safe")


def load_profiles(path: Path | None = None) -> Dict[str, Mapping[str, object]]:
    """Read the named link profiles from *path* (default: the packaged file)."""

    config_path = path or DEFAULT_CONFIG_PATH
    try:
        text = config_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ProfileError(f"cannot read link profiles from {config_path}: {exc}") from exc
    try:
        document = _yaml.load(text)
    except YAMLError as exc:
        raise ProfileError(f"cannot parse link profiles in {config_path}: {exc}") from exc
    profiles = document.get("profiles") if isinstance(document, dict) else None
    if not isinstance(profiles, dict):
        raise ProfileError(f"{config_path} has no 'profiles' mapping of link profiles")
    for name, values in profiles.items():
        if not isinstance(values, Mapping):
            raise ProfileError(f"link profile '{name}' must be a mapping of settings")
    return dict(profiles)


@dataclass(frozen=True)
class LinkProfile:
    """Serial and timing parameters for one transmitter link."""

    name: str = DEFAULT_PROFILE
    baudrate: int = 420_000
    tx_rate_hz: float = 250.0
    read_timeout: float = 0.02
    write_timeout: float = 0.05
    telemetry_fresh_ms: int = 5000
    spectrum_fresh_ms: int = 1000
    history_size: int = 200
    poll_rates: Mapping[str, float] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, name: str, data: Mapping[str, object]) -> "LinkProfile":
        poll_rates = data.get("poll_rates", {})
        if not isinstance(poll_rates, Mapping):
            raise ProfileError(f"profile '{name}' poll_rates must be a mapping")
        defaults = cls()
        try:
            profile = cls(
                name=name,
                baudrate=int(data.get("baudrate", defaults.baudrate)),
                tx_rate_hz=float(data.get("tx_rate_hz", defaults.tx_rate_hz)),
                read_timeout=float(data.get("read_timeout", defaults.read_timeout)),
                write_timeout=float(data.get("write_timeout", defaults.write_timeout)),
                telemetry_fresh_ms=int(data.get("telemetry_fresh_ms", defaults.telemetry_fresh_ms)),
                spectrum_fresh_ms=int(data.get("spectrum_fresh_ms", defaults.spectrum_fresh_ms)),
                history_size=int(data.get("history_size", defaults.history_size)),
                poll_rates={str(key): float(value) for key, value in poll_rates.items()},
            )
        except (TypeError, ValueError) as exc:
            raise ProfileError(f"profile '{name}' has an invalid value: {exc}") from exc
        if profile.tx_rate_hz <= 0:
            raise ProfileError(f"profile '{name}' tx_rate_hz must be positive")
        if not 0 < profile.read_timeout <= 0.05:
            raise ProfileError(f"profile '{name}' read_timeout must be within (0, 0.05] seconds")
        if profile.history_size <= 0:
            raise ProfileError(f"profile '{name}' history_size must be positive")
        return profile

    def with_overrides(self, **overrides: object) -> "LinkProfile":
        values = {key: value for key, value in overrides.items() if value is not None}
        return replace(self, **values)


def resolve_profile(name: str, profiles: Mapping[str, Mapping[str, object]]) -> LinkProfile:
    """Resolve *name* from *profiles* and return a :class:`LinkProfile`."""

    if name not in profiles:
        available = ", ".join(sorted(profiles)) or "<none>"
        raise ProfileError(f"unknown link profile '{name}'. available: {available}")
    return LinkProfile.from_mapping(name, profiles[name])
