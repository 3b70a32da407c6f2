"""
Stream Reassembler — rebuild each direction's byte stream from Segments.

Segments arrive in any order, may repeat, and (TCP) may overlap what was
already emitted. Per direction this module:
1. Emits the maximal contiguous run as soon as the next expected
   sequence number is present
2. Buffers segments that arrive ahead of the expected position
3. Drops exact duplicates and clips overlaps to their novel suffix

There is no timeout for a missing segment. Emission for that direction
stalls until retransmission fills the gap.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable

from .transport import Segment

log = logging.getLogger(__name__)


@dataclass
class ReorderBuffer:
    """Reorder state for one direction of a stream."""
    direction: str
    # Next sequence number to emit; None until the first segment sets it
    next_seq: int | None = None
    pending: dict[int, bytes] = field(default_factory=dict)
    segments: int = 0
    duplicates: int = 0
    bytes_emitted: int = 0

    @property
    def buffered(self) -> int:
        return sum(len(d) for d in self.pending.values())

    def push(self, segment: Segment) -> bytes:
        """Add one segment, return the bytes that became contiguous."""
        self.segments += 1
        if self.next_seq is None:
            self.next_seq = segment.seq

        if segment.byte_sequenced:
            self._stash_bytes(segment.seq, segment.data)
        else:
            self._stash_unit(segment.seq, segment.data)

        out = bytearray()
        while self.next_seq in self.pending:
            data = self.pending.pop(self.next_seq)
            out.extend(data)
            self.next_seq += len(data) if segment.byte_sequenced else 1
            if segment.byte_sequenced:
                self._clip_pending()
        self.bytes_emitted += len(out)
        return bytes(out)

    def _stash_unit(self, seq: int, data: bytes) -> None:
        if seq < self.next_seq or seq in self.pending:
            self.duplicates += 1
            return
        self.pending[seq] = data

    def _stash_bytes(self, seq: int, data: bytes) -> None:
        end = seq + len(data)
        if end <= self.next_seq:
            self.duplicates += 1
            return
        if seq < self.next_seq:
            data = data[self.next_seq - seq:]
            seq = self.next_seq
        existing = self.pending.get(seq)
        if existing is not None and len(existing) >= len(data):
            self.duplicates += 1
            return
        self.pending[seq] = data

    def _clip_pending(self) -> None:
        """Re-key buffered segments that now start before next_seq."""
        for seq in [s for s in self.pending if s < self.next_seq]:
            data = self.pending.pop(seq)
            end = seq + len(data)
            if end <= self.next_seq:
                self.duplicates += 1
                continue
            novel = data[self.next_seq - seq:]
            existing = self.pending.get(self.next_seq)
            if existing is None or len(existing) < len(novel):
                self.pending[self.next_seq] = novel


class StreamReassembler:
    """Reassemble both directions of one session into ordered byte streams."""

    def __init__(self, start: int | None = None):
        """start: first sequence number of each direction, or None to take
        it from the first segment seen."""
        self.streams: dict[str, ReorderBuffer] = {
            "C2S": ReorderBuffer("C2S", next_seq=start),
            "S2C": ReorderBuffer("S2C", next_seq=start),
        }
        self.callbacks: list[Callable[[str, bytes], None]] = []

    def on_data(self, callback: Callable[[str, bytes], None]) -> None:
        """Register callback for newly contiguous bytes. Args: (direction, data)."""
        self.callbacks.append(callback)

    def feed(self, segment: Segment) -> bytes:
        """Feed one segment. Returns the newly contiguous bytes (maybe empty)."""
        stream = self.streams[segment.direction]
        data = stream.push(segment)
        if data:
            self._emit(segment.direction, data)
        return data

    def _emit(self, direction: str, data: bytes) -> None:
        for cb in self.callbacks:
            try:
                cb(direction, data)
            except Exception as e:
                log.error("Stream callback error: %s", e)

    def stats(self) -> dict:
        return {
            d: {
                "segments": s.segments,
                "duplicates": s.duplicates,
                "buffered": s.buffered,
                "pending_segments": len(s.pending),
                "bytes_emitted": s.bytes_emitted,
            }
            for d, s in self.streams.items()
        }
