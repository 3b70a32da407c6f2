"""
inventory_tap — Capture Pipeline

Drives one capture end to end:

  CaptureBackend → SessionFilter → SessionContext
                                     ├─ StreamReassembler (both directions)
                                     ├─ HandshakeObserver (key direction)
                                     ├─ FrameDecoder per direction
                                     ├─ dispatch()
                                     └─ DomainAccumulator → InventoryModel

Frames are processed in arrival order on the thread that calls run().
snapshot() can be called from any thread. stop() halts the backend and keeps
whatever was extracted as the final result.

Each game connection is one session. A session ends with exactly one status:
ENDED (connection closed or capture exhausted), STOPPED (operator stop),
HANDSHAKE_NOT_OBSERVED or FRAMING_ERROR (fatal, nothing more is decoded
for that connection).
"""

from __future__ import annotations

import copy
import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Callable

from inventory_tap.config import PipelineConfig, Transport
from inventory_tap.data.state import DomainAccumulator, InventoryModel
from inventory_tap.protocol.framing import FrameDecoder, FramingError, PayloadDecodeError
from inventory_tap.protocol.handshake import HandshakeNotObserved, HandshakeObserver
from inventory_tap.protocol.packet_types import KNOWN_COMMANDS, command_name, dispatch
from inventory_tap.sniffer.capture import CaptureBackend, CaptureUnavailable, RawFrame, create_backend
from inventory_tap.sniffer.recording import CaptureRecording
from inventory_tap.sniffer.session import SessionEvent, SessionEventType, SessionFilter
from inventory_tap.sniffer.stream import StreamReassembler

log = logging.getLogger(__name__)

DIRECTIONS = ("C2S", "S2C")


class EventKind(str, Enum):
    SESSION_STARTED = "SessionStarted"
    KEY_DERIVED = "KeyDerived"
    CAPTURE_UNAVAILABLE = "CaptureUnavailable"
    HANDSHAKE_NOT_OBSERVED = "HandshakeNotObserved"
    FRAMING_ERROR = "FramingError"
    SESSION_ENDED = "SessionEnded"


class SessionStatus(str, Enum):
    ACTIVE = "Active"
    ENDED = "Ended"
    STOPPED = "Stopped"
    HANDSHAKE_NOT_OBSERVED = "HandshakeNotObserved"
    FRAMING_ERROR = "FramingError"

    @property
    def failed(self) -> bool:
        return self in (SessionStatus.HANDSHAKE_NOT_OBSERVED, SessionStatus.FRAMING_ERROR)


@dataclass
class PipelineEvent:
    """Status event for whoever renders the capture state."""
    kind: EventKind
    session_id: int
    detail: str = ""
    timestamp: float = field(default_factory=time.time)

    def __repr__(self) -> str:
        detail = f": {self.detail}" if self.detail else ""
        return f"PipelineEvent({self.kind.value} session={self.session_id}{detail})"


@dataclass
class SessionStats:
    """Per-session counters. Recoverable problems only show up here and in the log."""
    segments: int = 0
    bytes_c2s: int = 0
    bytes_s2c: int = 0
    messages: int = 0
    unknown_commands: int = 0
    records: int = 0
    decode_errors: int = 0
    deltas_dropped: int = 0
    by_command: dict[str, int] = field(default_factory=dict)

    def count_command(self, name: str) -> None:
        self.by_command[name] = self.by_command.get(name, 0) + 1

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class SessionResult:
    session_id: int
    status: SessionStatus
    inventory: InventoryModel
    stats: SessionStats
    flow: tuple | None = None
    error: str = ""
    started: float = 0.0
    ended: float = 0.0

    @property
    def complete(self) -> bool:
        """Data extracted without any recoverable errors."""
        return not self.status.failed and not self.stats.decode_errors and not self.stats.deltas_dropped


EventCallback = Callable[[PipelineEvent], None]


class SessionContext:
    """All state for one game connection. Discarded when the session ends."""

    def __init__(
        self,
        session_id: int,
        flow: tuple,
        config: PipelineConfig,
        fresh_connection: bool,
        model: InventoryModel | None = None,
        on_key: Callable[[SessionContext], None] | None = None,
    ):
        self.session_id = session_id
        self._on_key = on_key
        self.flow = flow
        self.config = config
        self.started = time.time()
        self.status = SessionStatus.ACTIVE
        self.error = ""
        self.stats = SessionStats()

        # TCP offsets are already relative; KCP numbering is only known to
        # start at 0 when the connect handshake was seen
        start = 0 if fresh_connection or config.transport is Transport.TCP else None
        self.reassembler = StreamReassembler(start=start)
        self.observer = HandshakeObserver(
            direction=config.handshake_direction,
            scan_limit=config.handshake_scan_limit,
        )
        self.decoders: dict[str, FrameDecoder] = {}
        # Other direction's ciphertext received before the key exists
        self._held = bytearray()

        model = model or InventoryModel()
        model.session_id = session_id
        self.accumulator = DomainAccumulator(model, max_pending_deltas=config.max_pending_deltas)
        self.accumulator.on_update(self._on_update)

    @property
    def active(self) -> bool:
        return self.status is SessionStatus.ACTIVE

    def _on_update(self, event_type: str, record) -> None:
        if event_type == "delta_dropped":
            self.stats.deltas_dropped += 1

    def feed_segments(self, segments: list) -> None:
        """Push segments through the session.

        Raises HandshakeNotObserved or FramingError when the session cannot
        continue.
        """
        for segment in segments:
            self.stats.segments += 1
            data = self.reassembler.feed(segment)
            if not data:
                continue
            if segment.direction == "C2S":
                self.stats.bytes_c2s += len(data)
            else:
                self.stats.bytes_s2c += len(data)
            self._on_stream(segment.direction, data)

    def _on_stream(self, direction: str, data: bytes) -> None:
        if not self.observer.active:
            if direction != self.observer.direction:
                self._hold(data)
                return
            data = self.observer.feed(data)
            if not self.observer.active:
                return
            if self._on_key is not None:
                self._on_key(self)
            self._start_decoders()
        self._decode(direction, data)

    def _hold(self, data: bytes) -> None:
        self._held.extend(data)
        if len(self._held) > self.config.max_payload_size:
            self.observer.fail(
                f"{len(self._held)} bytes of {_other(self.observer.direction)} data before any key exchange"
            )

    def _start_decoders(self) -> None:
        for direction in DIRECTIONS:
            self.decoders[direction] = FrameDecoder(
                self.observer.new_cipher(),
                direction=direction,
                max_payload_size=self.config.max_payload_size,
                max_decompressed_size=self.config.max_decompressed_size,
            )
        if self._held:
            held = bytes(self._held)
            self._held.clear()
            log.debug("Deciphering %d held %s bytes", len(held), _other(self.observer.direction))
            self._decode(_other(self.observer.direction), held)

    def _decode(self, direction: str, ciphertext: bytes) -> None:
        if not ciphertext:
            return
        decoder = self.decoders[direction]
        try:
            messages = decoder.feed(ciphertext)
        except FramingError as e:
            # Keep what decoded before the stream went out of sync
            self._dispatch(e.messages)
            raise
        finally:
            if decoder.errors:
                self.stats.decode_errors += len(decoder.errors)
                decoder.errors.clear()
        self._dispatch(messages)

    def _dispatch(self, messages: list) -> None:
        for msg in messages:
            self.stats.messages += 1
            if msg.cmd_id not in KNOWN_COMMANDS:
                self.stats.unknown_commands += 1
                continue
            name = command_name(msg.cmd_id)
            try:
                records = dispatch(msg)
            except PayloadDecodeError as e:
                self.stats.decode_errors += 1
                log.warning("Dropping %s seq %d: %s", name, msg.seq_tag, e)
                continue
            self.stats.count_command(name)
            self.stats.records += len(records)
            log.debug("%s → %d records", name, len(records))
            self.accumulator.apply_all(records)

    def snapshot(self) -> InventoryModel:
        return self.accumulator.snapshot()

    def finish(self, status: SessionStatus, error: str = "") -> SessionResult:
        """Close the session with its one terminal status."""
        if self.active:
            self.status = status
            self.error = error
        inventory = self.accumulator.finish()
        return SessionResult(
            session_id=self.session_id,
            status=self.status,
            inventory=inventory,
            stats=self.stats,
            flow=self.flow,
            error=self.error,
            started=self.started,
            ended=time.time(),
        )


def _other(direction: str) -> str:
    return "C2S" if direction == "S2C" else "S2C"


class CapturePipeline:
    """Capture → inventory, one session at a time."""

    def __init__(self, config: PipelineConfig | None = None, backend: CaptureBackend | None = None):
        self.config = config or PipelineConfig()
        if backend is None:
            self.config.validate()
        self.backend = backend
        self.filter = SessionFilter(self.config)
        self.results: list[SessionResult] = []
        self.recording: CaptureRecording | None = (
            CaptureRecording(name="inventory_tap") if self.config.record_path else None
        )
        self._context: SessionContext | None = None
        self._next_session_id = 1
        self._callbacks: list[EventCallback] = []
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()
        self._ran = False
        self.error: CaptureUnavailable | None = None

    # -- events --

    def on_event(self, callback: EventCallback) -> None:
        """Register callback for status events."""
        self._callbacks.append(callback)

    def _emit(self, kind: EventKind, session_id: int, detail: str = "") -> None:
        event = PipelineEvent(kind, session_id, detail)
        log.debug("Event %r", event)
        for cb in self._callbacks:
            try:
                cb(event)
            except Exception as e:
                log.error("Event callback error: %s", e)

    # -- running --

    def run(self) -> SessionResult | None:
        """Process frames until the backend is exhausted or stop() is called.

        Returns the last session's result (None if no game connection was
        seen). Raises CaptureUnavailable if the backend cannot be opened.
        """
        if self._ran:
            raise RuntimeError("a pipeline runs once; create a new one for a new capture")
        self._ran = True

        if self.backend is None:
            self.backend = create_backend(self.config)
        try:
            self.backend.open()
        except CaptureUnavailable as e:
            log.error("Capture unavailable: %s", e)
            self._emit(EventKind.CAPTURE_UNAVAILABLE, 0, str(e))
            raise

        log.info("Capture started (%s backend, %s on ports %d-%d)",
                 self.backend.name, self.config.transport.value, *self.config.server_ports)
        try:
            for frame in self.backend:
                if self._stop.is_set():
                    break
                self.feed(frame)
        finally:
            self.backend.close()
            status = SessionStatus.STOPPED if self._stop.is_set() else SessionStatus.ENDED
            self._end_session(status)
            self._save_recording()
        log.info("Capture finished: %d sessions", len(self.results))
        return self.results[-1] if self.results else None

    def start(self) -> threading.Thread:
        """Run in a daemon thread."""
        self._thread = threading.Thread(target=self._run_thread, name="inventory-tap", daemon=True)
        self._thread.start()
        return self._thread

    def _run_thread(self) -> None:
        try:
            self.run()
        except CaptureUnavailable as e:
            # Already logged and reported through CAPTURE_UNAVAILABLE
            self.error = e

    def stop(self, timeout: float | None = 5.0) -> None:
        """Stop capturing. The current inventory becomes the final result."""
        self._stop.set()
        if self.backend is not None:
            self.backend.close()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # -- frame processing --

    def feed(self, frame: RawFrame) -> None:
        """Process one captured frame."""
        if self.recording is not None:
            self.recording.add(frame)
        if self.config.log_raw_packets:
            log.debug("%r\n%s", frame, frame.pretty_hex)
        for event in self.filter.feed(frame):
            self._handle(event)

    def _handle(self, event: SessionEvent) -> None:
        match event.kind:
            case SessionEventType.LOCKED:
                self._begin_session(event)
            case SessionEventType.CLOSED:
                self._end_session(SessionStatus.ENDED)
            case SessionEventType.SEGMENTS:
                self._process_segments(event)

    def _begin_session(self, event: SessionEvent) -> None:
        self._end_session(SessionStatus.ENDED)
        session_id = self._next_session_id
        self._next_session_id += 1

        model = None
        previous = self.results[-1] if self.results else None
        if self.config.carry_forward_on_reconnect and previous and not previous.inventory.is_empty:
            model = copy.deepcopy(previous.inventory)
            model.carried_forward = True
            log.info("Session %d starts from session %d's inventory (%d entries)",
                     session_id, previous.session_id, len(model))

        with self._lock:
            self._context = SessionContext(
                session_id, event.flow, self.config, event.fresh_connection, model,
                on_key=self._on_key_derived,
            )
        self._emit(EventKind.SESSION_STARTED, session_id,
                   "new connection" if event.fresh_connection else "joined established connection")

    def _process_segments(self, event: SessionEvent) -> None:
        ctx = self._context
        if ctx is None:
            return
        try:
            ctx.feed_segments(event.segments)
        except HandshakeNotObserved as e:
            self._fail_session(SessionStatus.HANDSHAKE_NOT_OBSERVED, EventKind.HANDSHAKE_NOT_OBSERVED, str(e))
        except FramingError as e:
            self._fail_session(SessionStatus.FRAMING_ERROR, EventKind.FRAMING_ERROR, str(e))

    def _on_key_derived(self, ctx: SessionContext) -> None:
        self._emit(EventKind.KEY_DERIVED, ctx.session_id,
                   f"{ctx.observer.skipped} bytes skipped before key exchange")

    def _fail_session(self, status: SessionStatus, kind: EventKind, reason: str) -> None:
        ctx = self._context
        log.error("Session %d failed (%s): %s", ctx.session_id, status.value, reason)
        self._emit(kind, ctx.session_id, reason)
        self._end_session(status, reason)

    def _end_session(self, status: SessionStatus, error: str = "") -> None:
        ctx = self._context
        if ctx is None:
            return
        if status in (SessionStatus.ENDED, SessionStatus.STOPPED) and not ctx.observer.active:
            status = SessionStatus.HANDSHAKE_NOT_OBSERVED
            error = error or "session ended before the key exchange was seen"
            log.warning("Session %d: %s", ctx.session_id, error)
            self._emit(EventKind.HANDSHAKE_NOT_OBSERVED, ctx.session_id, error)

        result = ctx.finish(status, error)
        with self._lock:
            self.results.append(result)
            self._context = None
        log.info("Session %d ended (%s): %s, %d messages, %d decode errors",
                 result.session_id, result.status.value,
                 ", ".join(f"{n} {k}" for k, n in result.inventory.counts().items()),
                 result.stats.messages, result.stats.decode_errors)
        self._emit(EventKind.SESSION_ENDED, result.session_id, result.status.value)

    def _save_recording(self) -> None:
        if self.recording is None or not self.recording.frames:
            return
        try:
            self.recording.save(self.config.record_path)
        except OSError as e:
            log.error("Could not save recording to %s: %s", self.config.record_path, e)

    # -- results --

    @property
    def session(self) -> SessionContext | None:
        return self._context

    def snapshot(self) -> InventoryModel:
        """Consistent copy of the current inventory (or the last finished one)."""
        with self._lock:
            ctx = self._context
            last = self.results[-1] if self.results else None
        if ctx is not None:
            return ctx.snapshot()
        if last is not None:
            return copy.deepcopy(last.inventory)
        return InventoryModel()
