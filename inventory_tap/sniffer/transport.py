"""
Transport adapters — turn RawFrames into sequenced Segments.

KCP over UDP (the game's default transport):
  control datagram, 20 bytes big-endian:
    [magic1:4][conv:4][token:4][data:4][magic2:4]
  data datagram, one or more segments, little-endian headers:
    [conv:4][token:4][cmd:1][frg:1][wnd:2][ts:4][sn:4][una:4][len:4][data:len]
  Only PUSH segments carry stream data; their sn orders the stream.

TCP:
  The TCP sequence number orders bytes. Offsets are made relative to the
  initial sequence number, with 32-bit wraparound. A FIN only half-closes:
  the connection ends once both sides sent one, or on RST.
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from enum import Enum

from .capture import RawFrame

log = logging.getLogger(__name__)

# ---- KCP constants ----

KCP_HEADER = struct.Struct("<IIBBHIIII")
KCP_HEADER_SIZE = KCP_HEADER.size  # 28

KCP_CMD_PUSH = 81
KCP_CMD_ACK = 82

CONTROL_DATAGRAM = struct.Struct(">IIIII")
CONTROL_SIZE = CONTROL_DATAGRAM.size  # 20


class Control(Enum):
    CONNECT = (0x000000FF, 0xFFFFFFFF)
    ESTABLISHED = (0x00000145, 0x14514545)
    DISCONNECT = (0x00000194, 0x19419494)


_CONTROL_BY_MAGIC = {c.value: c for c in Control}


@dataclass(frozen=True)
class Segment:
    """A sequenced chunk of one direction's stream.

    byte_sequenced=True: seq is a byte offset, the segment covers seq..seq+len.
    byte_sequenced=False: seq counts whole segments (KCP sn).
    """
    direction: str
    seq: int
    data: bytes
    byte_sequenced: bool = False

    @property
    def end(self) -> int:
        return self.seq + (len(self.data) if self.byte_sequenced else 1)


@dataclass(frozen=True)
class KcpSegment:
    conv: int
    token: int
    cmd: int
    frg: int
    wnd: int
    ts: int
    sn: int
    una: int
    data: bytes


def parse_control(payload: bytes) -> tuple[Control, int] | None:
    """Return (control kind, conv) for a KCP control datagram, else None."""
    if len(payload) != CONTROL_SIZE:
        return None
    magic1, conv, _token, _data, magic2 = CONTROL_DATAGRAM.unpack(payload)
    kind = _CONTROL_BY_MAGIC.get((magic1, magic2))
    if kind is None:
        return None
    return kind, conv


def build_control(kind: Control, conv: int = 0, token: int = 0, data: int = 0) -> bytes:
    magic1, magic2 = kind.value
    return CONTROL_DATAGRAM.pack(magic1, conv, token, data, magic2)


def parse_kcp_segments(payload: bytes) -> list[KcpSegment]:
    """Split a KCP datagram into segments. Stops at the first truncated one."""
    segments: list[KcpSegment] = []
    off = 0
    while off + KCP_HEADER_SIZE <= len(payload):
        conv, token, cmd, frg, wnd, ts, sn, una, length = KCP_HEADER.unpack_from(payload, off)
        off += KCP_HEADER_SIZE
        if off + length > len(payload):
            log.debug("Truncated KCP segment sn=%d (need %d, have %d)", sn, length, len(payload) - off)
            break
        segments.append(KcpSegment(conv, token, cmd, frg, wnd, ts, sn, una, payload[off:off + length]))
        off += length
    return segments


def build_kcp_segment(
    sn: int, data: bytes, conv: int = 1, token: int = 0, cmd: int = KCP_CMD_PUSH,
    frg: int = 0, wnd: int = 256, ts: int = 0, una: int = 0,
) -> bytes:
    return KCP_HEADER.pack(conv, token, cmd, frg, wnd, ts, sn, una, len(data)) + data


class TransportEvent(Enum):
    OPEN = "open"      # connection establishment seen (SYN / KCP connect)
    CLOSE = "close"    # connection teardown seen (FIN both ways, RST / KCP disconnect)


class KcpAdapter:
    """KCP-over-UDP frames → Segments (sn-sequenced)."""

    def classify(self, frame: RawFrame) -> TransportEvent | None:
        control = parse_control(frame.payload)
        if control is None:
            return None
        kind, _conv = control
        if kind is Control.DISCONNECT:
            return TransportEvent.CLOSE
        if kind is Control.CONNECT:
            return TransportEvent.OPEN
        return None

    def segments(self, frame: RawFrame) -> list[Segment]:
        if parse_control(frame.payload) is not None:
            return []
        return [
            Segment(frame.direction, seg.sn, seg.data, byte_sequenced=False)
            for seg in parse_kcp_segments(frame.payload)
            if seg.cmd == KCP_CMD_PUSH and seg.data
        ]


class TcpAdapter:
    """TCP frames → Segments (byte offsets relative to the initial seq)."""

    MOD = 1 << 32
    HALF = 1 << 31

    def __init__(self):
        # direction -> sequence number of stream byte 0
        self._base: dict[str, int] = {}
        # directions that sent a FIN
        self._fin: set[str] = set()

    def classify(self, frame: RawFrame) -> TransportEvent | None:
        flags = frame.flags
        if "R" in flags:
            return TransportEvent.CLOSE
        if "F" in flags:
            self._fin.add(frame.direction)
            if len(self._fin) == 2:
                return TransportEvent.CLOSE
            log.debug("%s half-closed", frame.direction)
            return None
        if "S" in flags and "A" not in flags:
            return TransportEvent.OPEN
        return None

    def segments(self, frame: RawFrame) -> list[Segment]:
        if "S" in frame.flags:
            # SYN consumes one sequence number
            self._base[frame.direction] = (frame.seq + 1) % self.MOD
            if not frame.payload:
                return []
        if not frame.payload:
            return []
        base = self._base.setdefault(frame.direction, frame.seq)
        rel = (frame.seq - base) % self.MOD
        if rel >= self.HALF:
            # Retransmission from before the base we picked
            rel -= self.MOD
        return [Segment(frame.direction, rel, frame.payload, byte_sequenced=True)]


ADAPTERS: dict[str, type[KcpAdapter] | type[TcpAdapter]] = {
    "udp": KcpAdapter,
    "tcp": TcpAdapter,
}


def create_adapter(protocol: str) -> KcpAdapter | TcpAdapter:
    """Adapter for a RawFrame.protocol value ("udp" carries KCP)."""
    try:
        return ADAPTERS[protocol]()
    except KeyError:
        raise ValueError(f"no transport adapter for protocol {protocol!r}") from None
