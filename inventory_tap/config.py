"""
inventory_tap — Pipeline Configuration

One dataclass holds every knob the capture pipeline reads. Values come from
defaults, a dict, or a JSON file:

    config = load_config("inventory_tap.json")
    config = PipelineConfig(backend=BackendType.REPLAY, replay_path="cap.json")
"""

from __future__ import annotations

import json
import logging
import sys
from dataclasses import dataclass, fields
from enum import Enum
from pathlib import Path

log = logging.getLogger(__name__)

# Game server port range (inclusive)
DEFAULT_SERVER_PORTS = (22101, 22102)

# Key exchange must show up within this many leading stream bytes
DEFAULT_HANDSHAKE_SCAN_LIMIT = 1024

# Envelope sanity limits
DEFAULT_MAX_PAYLOAD_SIZE = 4 * 1024 * 1024
DEFAULT_MAX_DECOMPRESSED_SIZE = 16 * 1024 * 1024

# Deltas waiting for their base record (all guids combined)
DEFAULT_MAX_PENDING_DELTAS = 256

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class ConfigError(Exception):
    """Invalid configuration, detected at startup."""


class BackendType(str, Enum):
    PCAP = "pcap"            # scapy / libpcap, any platform
    WINDIVERT = "windivert"  # pydivert, Windows only
    REPLAY = "replay"        # recorded frames from a JSON file


class Transport(str, Enum):
    KCP = "kcp"  # KCP segments over UDP
    TCP = "tcp"

    @property
    def protocol(self) -> str:
        """IP protocol underneath, spelled the way RawFrame.protocol spells it."""
        return "udp" if self is Transport.KCP else "tcp"


DEFAULT_BACKEND = BackendType.WINDIVERT if sys.platform == "win32" else BackendType.PCAP


@dataclass
class PipelineConfig:
    """Capture pipeline configuration."""
    backend: BackendType = DEFAULT_BACKEND
    # Network interface for the pcap backend (None = scapy default)
    iface: str | None = None
    server_ports: tuple[int, int] = DEFAULT_SERVER_PORTS
    transport: Transport = Transport.KCP
    # Which direction carries the key exchange record
    handshake_direction: str = "S2C"
    handshake_scan_limit: int = DEFAULT_HANDSHAKE_SCAN_LIMIT
    max_payload_size: int = DEFAULT_MAX_PAYLOAD_SIZE
    max_decompressed_size: int = DEFAULT_MAX_DECOMPRESSED_SIZE
    max_pending_deltas: int = DEFAULT_MAX_PENDING_DELTAS
    # Keep the previous inventory when the game reconnects mid-capture
    carry_forward_on_reconnect: bool = False
    # Frames source for BackendType.REPLAY
    replay_path: str | None = None
    # Save every captured frame to this JSON file when the session ends
    record_path: str | None = None
    # Hex-dump every captured frame at DEBUG level
    log_raw_packets: bool = False

    def __post_init__(self) -> None:
        try:
            self.backend = BackendType(self.backend)
            self.transport = Transport(self.transport)
        except ValueError as e:
            raise ConfigError(str(e)) from e
        self.server_ports = tuple(self.server_ports)

    @property
    def requires_elevation(self) -> bool:
        """Live capture needs admin/root; replaying a file does not."""
        return self.backend is not BackendType.REPLAY

    @property
    def bpf_filter(self) -> str:
        """BPF filter string for the game traffic."""
        low, high = self.server_ports
        return f"{self.transport.protocol} and portrange {low}-{high}"

    def is_server_port(self, port: int) -> bool:
        low, high = self.server_ports
        return low <= port <= high

    def validate(self) -> PipelineConfig:
        """Raise ConfigError for values the pipeline cannot run with."""
        if len(self.server_ports) != 2:
            raise ConfigError(f"server_ports must be (low, high), got {self.server_ports!r}")
        low, high = self.server_ports
        if not (0 < low <= high <= 65535):
            raise ConfigError(f"invalid server port range {low}-{high}")
        if self.handshake_direction not in ("C2S", "S2C"):
            raise ConfigError(
                f"handshake_direction must be 'C2S' or 'S2C', got {self.handshake_direction!r}"
            )
        for name in ("handshake_scan_limit", "max_payload_size",
                     "max_decompressed_size", "max_pending_deltas"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive")
        if self.backend is BackendType.WINDIVERT and sys.platform != "win32":
            raise ConfigError("windivert backend is only available on Windows")
        if self.backend is BackendType.REPLAY and not self.replay_path:
            raise ConfigError("replay backend needs replay_path")
        return self

    @classmethod
    def from_dict(cls, data: dict) -> PipelineConfig:
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigError(f"unknown config keys: {', '.join(sorted(unknown))}")
        try:
            return cls(**data)
        except TypeError as e:
            raise ConfigError(str(e)) from e

    def to_dict(self) -> dict:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["backend"] = self.backend.value
        data["transport"] = self.transport.value
        data["server_ports"] = list(self.server_ports)
        return data


def load_config(path: str | Path) -> PipelineConfig:
    """Load and validate a JSON config file."""
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigError(f"cannot read {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"{path} is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a JSON object")
    config = PipelineConfig.from_dict(data).validate()
    log.debug("Loaded config from %s: %s", path, config)
    return config


def configure_logging(verbose: bool = False) -> None:
    """Root logging setup for whoever embeds the pipeline."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt="%H:%M:%S",
    )
