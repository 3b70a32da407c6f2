"""
inventory_tap — Packet Capture Backends

Captures the game client's traffic and yields RawFrame values.
Two live backends share one contract:
  - PcapBackend: scapy over libpcap/Npcap (any platform)
  - WinDivertBackend: pydivert in sniff mode (Windows)
plus ReplayBackend for frames recorded earlier.

Live capture requires admin/root privileges. A backend that cannot start
raises CaptureUnavailable instead of silently capturing nothing.
"""

from __future__ import annotations

import logging
import queue
import sys
import threading
import time
from dataclasses import dataclass
from typing import Iterator

from inventory_tap.config import BackendType, ConfigError, PipelineConfig, Transport

log = logging.getLogger(__name__)

# How often a blocked iterator re-checks for close()
_POLL_INTERVAL = 0.25


class CaptureUnavailable(Exception):
    """The backend cannot capture (no privilege, no adapter, driver missing)."""


@dataclass(frozen=True)
class RawFrame:
    """A captured game frame with transport addressing."""
    timestamp: float
    direction: str          # "C2S" (client→server) or "S2C" (server→client)
    protocol: str           # "udp" or "tcp"
    src_ip: str
    dst_ip: str
    src_port: int
    dst_port: int
    payload: bytes
    seq: int = 0
    ack: int = 0
    flags: str = ""         # TCP flags as scapy prints them ("S", "PA", "FA", ...)

    @property
    def size(self) -> int:
        return len(self.payload)

    @property
    def hex_dump(self) -> str:
        return self.payload.hex()

    @property
    def pretty_hex(self) -> str:
        """16-byte wide hex dump with ASCII."""
        lines = []
        data = self.payload
        for i in range(0, len(data), 16):
            chunk = data[i:i+16]
            hex_part = " ".join(f"{b:02x}" for b in chunk)
            ascii_part = "".join(chr(b) if 32 <= b < 127 else "." for b in chunk)
            lines.append(f"  {i:04x}  {hex_part:<48s}  {ascii_part}")
        return "\n".join(lines)

    @property
    def client(self) -> tuple[str, int]:
        if self.direction == "C2S":
            return self.src_ip, self.src_port
        return self.dst_ip, self.dst_port

    @property
    def server(self) -> tuple[str, int]:
        if self.direction == "C2S":
            return self.dst_ip, self.dst_port
        return self.src_ip, self.src_port

    @property
    def flow(self) -> tuple:
        """Direction-independent connection key."""
        return (self.protocol, *self.client, *self.server)

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "direction": self.direction,
            "protocol": self.protocol,
            "src": f"{self.src_ip}:{self.src_port}",
            "dst": f"{self.dst_ip}:{self.dst_port}",
            "size": self.size,
            "seq": self.seq,
            "ack": self.ack,
            "flags": self.flags,
            "payload_hex": self.hex_dump,
        }

    @classmethod
    def from_dict(cls, d: dict) -> RawFrame:
        src_ip, src_port = d["src"].rsplit(":", 1)
        dst_ip, dst_port = d["dst"].rsplit(":", 1)
        return cls(
            timestamp=d.get("timestamp", 0.0),
            direction=d["direction"],
            protocol=d.get("protocol", "udp"),
            src_ip=src_ip,
            dst_ip=dst_ip,
            src_port=int(src_port),
            dst_port=int(dst_port),
            payload=bytes.fromhex(d["payload_hex"]) if d.get("payload_hex") else b"",
            seq=d.get("seq", 0),
            ack=d.get("ack", 0),
            flags=d.get("flags", ""),
        )

    def __repr__(self) -> str:
        arrow = "→" if self.direction == "C2S" else "←"
        return (
            f"[{self.direction}] {self.src_ip}:{self.src_port} "
            f"{arrow} {self.dst_ip}:{self.dst_port} "
            f"{self.protocol} ({self.size} bytes)"
        )


def classify_direction(config: PipelineConfig, src_port: int, dst_port: int) -> str | None:
    """C2S when the destination is a server port, S2C when the source is."""
    if config.is_server_port(dst_port):
        return "C2S"
    if config.is_server_port(src_port):
        return "S2C"
    return None


class CaptureBackend:
    """Produces RawFrames until closed. Not restartable: open a new one."""

    name = "base"

    def __init__(self, config: PipelineConfig):
        self.config = config
        self._closed = threading.Event()
        self._opened = False

    def open(self) -> None:
        """Acquire the capture resource. Raises CaptureUnavailable."""
        self._opened = True

    def close(self) -> None:
        """Stop producing frames. Safe to call from another thread."""
        self._closed.set()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def frames(self) -> Iterator[RawFrame]:
        raise NotImplementedError

    def __iter__(self) -> Iterator[RawFrame]:
        if self.closed:
            return iter(())
        if not self._opened:
            self.open()
        return self.frames()

    def __enter__(self) -> CaptureBackend:
        self.open()
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class PcapBackend(CaptureBackend):
    """scapy capture on one interface, fed through a queue by AsyncSniffer."""

    name = "pcap"

    def __init__(self, config: PipelineConfig):
        super().__init__(config)
        self._queue: queue.Queue = queue.Queue()
        self._sniffer = None
        self._socket = None

    def open(self) -> None:
        try:
            from scapy.all import AsyncSniffer, conf
            from scapy.error import Scapy_Exception
        except ImportError as e:
            raise CaptureUnavailable(f"scapy is not installed: {e}") from e

        log.info("pcap capture starting: filter=%r iface=%s",
                 self.config.bpf_filter, self.config.iface or "auto")
        try:
            # Opening the socket up front surfaces privilege errors here
            # rather than inside the sniffer thread.
            self._socket = conf.L2listen(iface=self.config.iface, filter=self.config.bpf_filter)
        except (PermissionError, OSError, Scapy_Exception) as e:
            raise CaptureUnavailable(f"cannot open capture socket: {e}") from e

        self._sniffer = AsyncSniffer(
            opened_socket=self._socket,
            prn=self._on_packet,
            store=False,
        )
        self._sniffer.start()
        super().open()

    def _on_packet(self, raw_pkt) -> None:
        frame = frame_from_scapy(raw_pkt, self.config)
        if frame is not None:
            self._queue.put(frame)

    def frames(self) -> Iterator[RawFrame]:
        while not self.closed:
            try:
                yield self._queue.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                if self._sniffer is not None and not self._sniffer.running:
                    log.info("pcap sniffer thread ended")
                    return

    def close(self) -> None:
        super().close()
        if self._sniffer is not None and self._sniffer.running:
            try:
                self._sniffer.stop()
            except Exception as e:
                log.warning("pcap sniffer stop failed: %s", e)
        if self._socket is not None:
            self._socket.close()
            self._socket = None


def frame_from_scapy(raw_pkt, config: PipelineConfig) -> RawFrame | None:
    """Convert a scapy packet to a RawFrame, or None if it is not game traffic."""
    from scapy.all import IP, TCP, UDP
    from scapy.layers.inet6 import IPv6

    if raw_pkt.haslayer(IP):
        ip_layer = raw_pkt[IP]
    elif raw_pkt.haslayer(IPv6):
        ip_layer = raw_pkt[IPv6]
    else:
        return None

    if config.transport is Transport.TCP:
        if not raw_pkt.haslayer(TCP):
            return None
        l4 = raw_pkt[TCP]
        seq, ack, flags = l4.seq, l4.ack, str(l4.flags)
    else:
        if not raw_pkt.haslayer(UDP):
            return None
        l4 = raw_pkt[UDP]
        seq, ack, flags = 0, 0, ""

    direction = classify_direction(config, l4.sport, l4.dport)
    if direction is None:
        return None

    return RawFrame(
        timestamp=float(getattr(raw_pkt, "time", time.time())),
        direction=direction,
        protocol=config.transport.protocol,
        src_ip=ip_layer.src,
        dst_ip=ip_layer.dst,
        src_port=l4.sport,
        dst_port=l4.dport,
        payload=bytes(l4.payload),
        seq=seq,
        ack=ack,
        flags=flags,
    )


class WinDivertBackend(CaptureBackend):
    """pydivert handle opened in sniff mode: packets are copied, never held."""

    name = "windivert"

    def __init__(self, config: PipelineConfig):
        super().__init__(config)
        self._handle = None

    @property
    def windivert_filter(self) -> str:
        low, high = self.config.server_ports
        proto = self.config.transport.protocol
        return (
            f"{proto} and (({proto}.DstPort >= {low} and {proto}.DstPort <= {high}) "
            f"or ({proto}.SrcPort >= {low} and {proto}.SrcPort <= {high}))"
        )

    def open(self) -> None:
        if sys.platform != "win32":
            raise CaptureUnavailable("WinDivert capture is not supported on this operating system")
        try:
            import pydivert
        except ImportError as e:
            raise CaptureUnavailable(f"pydivert is not installed: {e}") from e

        log.info("WinDivert capture starting: filter=%r", self.windivert_filter)
        try:
            self._handle = pydivert.WinDivert(self.windivert_filter, flags=pydivert.Flag.SNIFF)
            self._handle.open()
        except OSError as e:
            raise CaptureUnavailable(f"cannot open WinDivert handle (run as Administrator?): {e}") from e
        super().open()

    def frames(self) -> Iterator[RawFrame]:
        while not self.closed:
            try:
                packet = self._handle.recv()
            except OSError as e:
                if self.closed:
                    return
                raise CaptureUnavailable(f"WinDivert receive failed: {e}") from e
            frame = self._convert(packet)
            if frame is not None:
                yield frame

    def _convert(self, packet) -> RawFrame | None:
        if self.config.transport is Transport.TCP:
            l4 = packet.tcp
            if l4 is None:
                return None
            flags = "".join(
                letter for letter, on in (
                    ("F", l4.fin), ("S", l4.syn), ("R", l4.rst), ("P", l4.psh), ("A", l4.ack),
                ) if on
            )
            seq, ack = l4.seq_num, l4.ack_num
        else:
            if packet.udp is None:
                return None
            seq, ack, flags = 0, 0, ""

        direction = classify_direction(self.config, packet.src_port, packet.dst_port)
        if direction is None:
            return None
        return RawFrame(
            timestamp=time.time(),
            direction=direction,
            protocol=self.config.transport.protocol,
            src_ip=packet.src_addr,
            dst_ip=packet.dst_addr,
            src_port=packet.src_port,
            dst_port=packet.dst_port,
            payload=bytes(packet.payload or b""),
            seq=seq,
            ack=ack,
            flags=flags,
        )

    def close(self) -> None:
        super().close()
        if self._handle is not None:
            try:
                self._handle.close()
            except OSError as e:
                log.debug("WinDivert close: %s", e)
            self._handle = None


class ReplayBackend(CaptureBackend):
    """Yields frames from a recording file (see recording.py)."""

    name = "replay"

    def __init__(self, config: PipelineConfig, frames: list[RawFrame] | None = None):
        super().__init__(config)
        self._frames = frames

    def open(self) -> None:
        if self._frames is None:
            from inventory_tap.sniffer.recording import CaptureRecording

            try:
                recording = CaptureRecording.load(self.config.replay_path)
            except (OSError, ValueError, KeyError) as e:
                raise CaptureUnavailable(f"cannot load recording {self.config.replay_path}: {e}") from e
            self._frames = recording.frames
            log.info("Replaying %d frames from %s", len(self._frames), self.config.replay_path)
        super().open()

    def frames(self) -> Iterator[RawFrame]:
        for frame in self._frames:
            if self.closed:
                return
            yield frame
        self.close()


BACKENDS: dict[BackendType, type[CaptureBackend]] = {
    BackendType.PCAP: PcapBackend,
    BackendType.WINDIVERT: WinDivertBackend,
    BackendType.REPLAY: ReplayBackend,
}


def create_backend(config: PipelineConfig) -> CaptureBackend:
    """Build the configured backend. Raises ConfigError for bad selections."""
    config.validate()
    try:
        backend_cls = BACKENDS[config.backend]
    except KeyError:
        raise ConfigError(f"unsupported backend {config.backend!r}") from None
    return backend_cls(config)
