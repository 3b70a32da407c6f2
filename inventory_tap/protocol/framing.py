"""
Frame Decoder — split a deciphered stream into application messages.

Envelope (after XOR with the session keystream), big-endian:
  [head:2 = 0x4567][cmd_id:2][header_len:2][payload_len:4][header][payload][tail:2 = 0x89AB]

header is empty or at least 5 bytes:
  [flags:1][seq_tag:4][... ignored ...]
flags bit 0 marks a zlib-compressed payload.

A bad magic or an absurd length means the cipher position no longer lines up
with the sender's. That cannot self-correct, so the decoder stops for good.
"""

from __future__ import annotations

import logging
import struct
import zlib
from dataclasses import dataclass

from .handshake import CipherState, ProtocolError

log = logging.getLogger(__name__)

ENVELOPE_HEAD = 0x4567
ENVELOPE_TAIL = 0x89AB
PREFIX = struct.Struct(">HHHI")
PREFIX_SIZE = PREFIX.size  # 10
TAIL_SIZE = 2

HEADER = struct.Struct(">BI")
HEADER_MIN_SIZE = HEADER.size  # 5
MAX_HEADER_SIZE = 1024

FLAG_COMPRESSED = 0x01

DEFAULT_MAX_PAYLOAD_SIZE = 4 * 1024 * 1024
DEFAULT_MAX_DECOMPRESSED_SIZE = 16 * 1024 * 1024


class FramingError(ProtocolError):
    """Envelope corrupt: the stream is out of sync with the cipher.

    messages holds what decoded cleanly in the same feed() before the
    corruption.
    """
    status = "FramingError"

    def __init__(self, reason: str, messages: list[ApplicationMessage] | None = None):
        super().__init__(reason)
        self.messages = messages or []


class PayloadDecodeError(Exception):
    """One message could not be decoded. Recoverable: drop it and go on."""


@dataclass(frozen=True)
class ApplicationMessage:
    """One decoded, deciphered command unit."""
    cmd_id: int
    seq_tag: int
    payload: bytes
    compressed: bool = False
    direction: str = "S2C"

    def __repr__(self) -> str:
        return (
            f"ApplicationMessage({self.direction} cmd={self.cmd_id} seq={self.seq_tag} "
            f"{len(self.payload)} bytes{' z' if self.compressed else ''})"
        )


def encode_message(msg: ApplicationMessage, level: int = 6) -> bytes:
    """Build the plaintext envelope for a message."""
    flags = FLAG_COMPRESSED if msg.compressed else 0
    body = zlib.compress(msg.payload, level) if msg.compressed else msg.payload
    header = HEADER.pack(flags, msg.seq_tag)
    return (
        PREFIX.pack(ENVELOPE_HEAD, msg.cmd_id, len(header), len(body))
        + header
        + body
        + ENVELOPE_TAIL.to_bytes(TAIL_SIZE, "big")
    )


def inflate(data: bytes, max_size: int = DEFAULT_MAX_DECOMPRESSED_SIZE) -> bytes:
    """Fully inflate a zlib payload. Partial or oversized output is an error."""
    d = zlib.decompressobj()
    try:
        out = d.decompress(data, max_size)
    except zlib.error as e:
        raise PayloadDecodeError(f"inflate failed: {e}") from e
    if d.unconsumed_tail or (not d.eof and len(out) >= max_size):
        raise PayloadDecodeError(f"inflated payload exceeds {max_size} bytes")
    if not d.eof:
        raise PayloadDecodeError("compressed payload is truncated")
    if d.unused_data:
        raise PayloadDecodeError(f"{len(d.unused_data)} trailing bytes after compressed payload")
    return out


@dataclass(frozen=True)
class RawEnvelope:
    """A complete envelope whose payload has not been inflated yet."""
    cmd_id: int
    flags: int
    seq_tag: int
    body: bytes
    size: int


class FrameDecoder:
    """Decipher one direction's stream and cut it into messages."""

    def __init__(
        self,
        cipher: CipherState,
        direction: str = "S2C",
        max_payload_size: int = DEFAULT_MAX_PAYLOAD_SIZE,
        max_decompressed_size: int = DEFAULT_MAX_DECOMPRESSED_SIZE,
    ):
        self.cipher = cipher
        self.direction = direction
        self.max_payload_size = max_payload_size
        self.max_decompressed_size = max_decompressed_size
        self._buffer = bytearray()
        self.failed = False
        self.messages_decoded = 0
        # Compressed payloads that failed to inflate, for the caller to count
        self.errors: list[PayloadDecodeError] = []

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def feed(self, ciphertext: bytes) -> list[ApplicationMessage]:
        """Decipher all input and return every complete message.

        Raises FramingError when the stream is corrupt, with the messages
        that preceded the corruption attached; the decoder stays failed
        afterwards.
        """
        if self.failed:
            raise FramingError(f"{self.direction} decoder already failed")
        self._buffer.extend(self.cipher.apply(ciphertext))

        messages: list[ApplicationMessage] = []
        try:
            while True:
                envelope = self._next_envelope()
                if envelope is None:
                    break
                msg = self._to_message(envelope)
                if msg is not None:
                    messages.append(msg)
        except FramingError as e:
            e.messages = messages
            raise
        return messages

    def _next_envelope(self) -> RawEnvelope | None:
        buf = self._buffer
        if len(buf) < PREFIX_SIZE:
            return None
        head, cmd_id, header_len, payload_len = PREFIX.unpack_from(buf)
        if head != ENVELOPE_HEAD:
            self._fail(f"bad envelope head 0x{head:04x}")
        if 0 < header_len < HEADER_MIN_SIZE or header_len > MAX_HEADER_SIZE:
            self._fail(f"bad header length {header_len} (cmd {cmd_id})")
        if payload_len > self.max_payload_size:
            self._fail(f"payload length {payload_len} exceeds {self.max_payload_size} (cmd {cmd_id})")

        total = PREFIX_SIZE + header_len + payload_len + TAIL_SIZE
        if len(buf) < total:
            return None  # need more data

        tail = int.from_bytes(buf[total - TAIL_SIZE:total], "big")
        if tail != ENVELOPE_TAIL:
            self._fail(f"bad envelope tail 0x{tail:04x} (cmd {cmd_id})")

        flags, seq_tag = 0, 0
        if header_len:
            flags, seq_tag = HEADER.unpack_from(buf, PREFIX_SIZE)
        body_start = PREFIX_SIZE + header_len
        body = bytes(buf[body_start:body_start + payload_len])
        del buf[:total]
        return RawEnvelope(cmd_id, flags, seq_tag, body, total)

    def _to_message(self, env: RawEnvelope) -> ApplicationMessage | None:
        compressed = bool(env.flags & FLAG_COMPRESSED)
        payload = env.body
        if compressed:
            try:
                payload = inflate(env.body, self.max_decompressed_size)
            except PayloadDecodeError as e:
                log.warning("Dropping %s cmd %d seq %d: %s", self.direction, env.cmd_id, env.seq_tag, e)
                self.errors.append(e)
                return None
        self.messages_decoded += 1
        return ApplicationMessage(
            cmd_id=env.cmd_id,
            seq_tag=env.seq_tag,
            payload=payload,
            compressed=compressed,
            direction=self.direction,
        )

    def _fail(self, reason: str) -> None:
        self.failed = True
        self._buffer.clear()
        log.error("Framing error on %s stream: %s", self.direction, reason)
        raise FramingError(reason)
