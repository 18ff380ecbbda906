"""Host-side control and telemetry for ExpressLRS transmitter modules."""

from importlib.metadata import version, PackageNotFoundError

__all__ = ["__version__"]

try:
    __version__ = version("elrs-tx")
except PackageNotFoundError:  # pragma: no cover - during local dev without install
    __version__ = "0.0.0"
