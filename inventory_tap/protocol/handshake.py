"""
Handshake Observer — find the key exchange and derive the session cipher.

Key exchange record (plaintext, big-endian, 28 bytes):
  [head:4 = 0x4B455931][version:2][flags:2][client_seed:8][server_seed:8][tail:4 = 0x31594B45]

Keystream: seed = client_seed ^ server_seed. MT19937-64 seeded with it is
reseeded with its own first output, one output is discarded, then 512
outputs (big-endian) make the 4096-byte keystream. Payload bytes are XORed
with the keystream at a rolling position that never resets mid-session.

A capture that starts after the key exchange has no way to recover the key:
the observer gives up after a bounded amount of leading stream data.
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from enum import Enum, auto
from typing import Callable

log = logging.getLogger(__name__)

KEY_EXCHANGE = struct.Struct(">IHHQQI")
KEY_EXCHANGE_SIZE = KEY_EXCHANGE.size  # 28
KEY_EXCHANGE_HEAD = 0x4B455931
KEY_EXCHANGE_TAIL = 0x31594B45
KEY_EXCHANGE_VERSION = 1

_HEAD_BYTES = KEY_EXCHANGE_HEAD.to_bytes(4, "big")

KEYSTREAM_WORDS = 512
KEYSTREAM_SIZE = KEYSTREAM_WORDS * 8  # 4096

MASK64 = (1 << 64) - 1


class ProtocolError(Exception):
    """Fatal protocol failure for the current session."""
    status = "ProtocolError"


class HandshakeNotObserved(ProtocolError):
    """The key exchange was not in the leading stream data."""
    status = "HandshakeNotObserved"


class HandshakeState(Enum):
    AWAITING_HANDSHAKE = auto()
    KEY_DERIVED = auto()
    ACTIVE = auto()
    HANDSHAKE_FAILED = auto()


class MT19937_64:
    """64-bit Mersenne Twister (Matsumoto & Nishimura, mt19937-64.c)."""

    NN = 312
    MM = 156
    MATRIX_A = 0xB5026F5AA96619E9
    UM = 0xFFFFFFFF80000000  # most significant 33 bits
    LM = 0x7FFFFFFF          # least significant 31 bits

    def __init__(self, seed: int = 5489):
        self.mt = [0] * self.NN
        self.mti = self.NN + 1
        self.seed(seed)

    def seed(self, seed: int) -> None:
        mt = self.mt
        mt[0] = seed & MASK64
        for i in range(1, self.NN):
            prev = mt[i - 1]
            mt[i] = (6364136223846793005 * (prev ^ (prev >> 62)) + i) & MASK64
        self.mti = self.NN

    def _twist(self) -> None:
        mt = self.mt
        nn, mm = self.NN, self.MM
        for i in range(nn):
            x = (mt[i] & self.UM) | (mt[(i + 1) % nn] & self.LM)
            xa = x >> 1
            if x & 1:
                xa ^= self.MATRIX_A
            mt[i] = mt[(i + mm) % nn] ^ xa
        self.mti = 0

    def next_u64(self) -> int:
        if self.mti >= self.NN:
            self._twist()
        x = self.mt[self.mti]
        self.mti += 1
        x ^= (x >> 29) & 0x5555555555555555
        x ^= (x << 17) & 0x71D67FFFEDA60000
        x ^= (x << 37) & 0xFFF7EEE000000000
        x ^= x >> 43
        return x & MASK64


@dataclass(frozen=True)
class KeyExchange:
    """Decoded key exchange record."""
    version: int
    flags: int
    client_seed: int
    server_seed: int

    @property
    def seed(self) -> int:
        return self.client_seed ^ self.server_seed

    def encode(self) -> bytes:
        return KEY_EXCHANGE.pack(
            KEY_EXCHANGE_HEAD, self.version, self.flags,
            self.client_seed, self.server_seed, KEY_EXCHANGE_TAIL,
        )

    @classmethod
    def decode(cls, data: bytes) -> KeyExchange | None:
        """Parse a record at the start of data, None if it is not one."""
        if len(data) < KEY_EXCHANGE_SIZE:
            return None
        head, version, flags, client_seed, server_seed, tail = KEY_EXCHANGE.unpack_from(data)
        if head != KEY_EXCHANGE_HEAD or tail != KEY_EXCHANGE_TAIL:
            return None
        if version != KEY_EXCHANGE_VERSION:
            return None
        return cls(version, flags, client_seed, server_seed)


@dataclass(frozen=True)
class SessionKey:
    """Key material derived once per session."""
    seed: int
    keystream: bytes


def generate_keystream(seed: int) -> bytes:
    mt = MT19937_64(seed)
    mt.seed(mt.next_u64())
    mt.next_u64()
    return b"".join(mt.next_u64().to_bytes(8, "big") for _ in range(KEYSTREAM_WORDS))


def derive_session_key(exchange: KeyExchange) -> SessionKey:
    """Pure function of the observed key exchange."""
    return SessionKey(seed=exchange.seed, keystream=generate_keystream(exchange.seed))


@dataclass
class CipherState:
    """Keystream plus rolling position for one direction of one session."""
    key: SessionKey
    position: int = 0

    def apply(self, data: bytes) -> bytes:
        """XOR data with the keystream and advance by len(data)."""
        n = len(data)
        if not n:
            return b""
        ks = self.key.keystream
        start = self.position % len(ks)
        need = start + n
        reps = -(-need // len(ks))
        stream = (ks * reps)[start:need]
        self.position += n
        return (int.from_bytes(data, "big") ^ int.from_bytes(stream, "big")).to_bytes(n, "big")


DeriveFn = Callable[[KeyExchange], SessionKey]


class HandshakeObserver:
    """Watches the leading bytes of one direction for the key exchange.

    feed() returns the stream bytes that follow the record (ciphertext), or
    b"" while still searching. Once ACTIVE, data passes straight through.
    """

    def __init__(
        self,
        direction: str = "S2C",
        scan_limit: int = 1024,
        derive: DeriveFn = derive_session_key,
    ):
        self.direction = direction
        self.scan_limit = scan_limit
        self._derive = derive
        self.state = HandshakeState.AWAITING_HANDSHAKE
        self.exchange: KeyExchange | None = None
        self.key: SessionKey | None = None
        self._buffer = bytearray()
        self.skipped = 0  # bytes discarded before the record

    @property
    def active(self) -> bool:
        return self.state is HandshakeState.ACTIVE

    def feed(self, data: bytes) -> bytes:
        match self.state:
            case HandshakeState.ACTIVE:
                return data
            case HandshakeState.HANDSHAKE_FAILED:
                raise HandshakeNotObserved("handshake already failed for this session")

        self._buffer.extend(data)
        offset = self._find_record()
        if offset is None:
            if len(self._buffer) >= self.scan_limit:
                self.fail(f"no key exchange in the first {self.scan_limit} stream bytes")
            return b""

        self.exchange = KeyExchange.decode(bytes(self._buffer[offset:offset + KEY_EXCHANGE_SIZE]))
        self.key = self._derive(self.exchange)
        self.state = HandshakeState.KEY_DERIVED
        self.skipped = offset
        log.info("Key exchange found (%s, offset %d, version %d), keystream derived",
                 self.direction, offset, self.exchange.version)

        rest = bytes(self._buffer[offset + KEY_EXCHANGE_SIZE:])
        self._buffer.clear()
        self.state = HandshakeState.ACTIVE
        return rest

    def _find_record(self) -> int | None:
        buf = self._buffer
        limit = min(len(buf), self.scan_limit) - KEY_EXCHANGE_SIZE
        pos = buf.find(_HEAD_BYTES)
        while 0 <= pos <= limit:
            if KeyExchange.decode(bytes(buf[pos:pos + KEY_EXCHANGE_SIZE])) is not None:
                return pos
            pos = buf.find(_HEAD_BYTES, pos + 1)
        return None

    def fail(self, reason: str) -> None:
        """Enter HANDSHAKE_FAILED and raise HandshakeNotObserved."""
        self.state = HandshakeState.HANDSHAKE_FAILED
        self._buffer.clear()
        log.warning("Handshake not observed: %s", reason)
        raise HandshakeNotObserved(reason)

    def new_cipher(self) -> CipherState:
        """A fresh CipherState at position 0. Only valid once ACTIVE."""
        if self.key is None:
            raise ProtocolError("no session key derived yet")
        return CipherState(self.key)
