"""
Session Filter — isolate the one game connection out of captured traffic.

The filter starts SEARCHING and locks onto the first flow whose server side
uses a game port. Other flows are ignored for as long as the lock holds.
A teardown on the locked flow ends the session and the filter searches
again; a fresh connect on the locked flow counts as a reconnect (close
followed by a new lock).

Joining a connection that is already established needs a frame carrying
stream data, and the flow that was just closed can only be picked up again
by a new connect: trailing ACKs after a teardown never start a session.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum, auto

from inventory_tap.config import PipelineConfig
from .capture import RawFrame
from .transport import Segment, TransportEvent, create_adapter

log = logging.getLogger(__name__)


class FilterState(Enum):
    SEARCHING = auto()
    LOCKED = auto()


class SessionEventType(Enum):
    LOCKED = auto()
    SEGMENTS = auto()
    CLOSED = auto()


@dataclass
class SessionEvent:
    kind: SessionEventType
    flow: tuple
    segments: list[Segment] = field(default_factory=list)
    # True when the lock came from a connect/SYN, so streams start at 0
    fresh_connection: bool = False


class SessionFilter:
    """Locks onto the first matching flow and turns its frames into Segments."""

    def __init__(self, config: PipelineConfig):
        self.config = config
        self.state = FilterState.SEARCHING
        self.flow: tuple | None = None
        self._adapter = None
        # Last flow torn down; only a connect/SYN may lock it again
        self.closed_flow: tuple | None = None
        self.frames_seen = 0
        self.frames_dropped = 0

    def _matches(self, frame: RawFrame) -> bool:
        if frame.protocol != self.config.transport.protocol:
            return False
        _server_ip, server_port = frame.server
        return self.config.is_server_port(server_port)

    def feed(self, frame: RawFrame) -> list[SessionEvent]:
        """Process one frame. Returns the session events it caused, in order."""
        self.frames_seen += 1
        if not self._matches(frame):
            self.frames_dropped += 1
            return []

        events: list[SessionEvent] = []

        if self.state is FilterState.LOCKED and frame.flow != self.flow:
            self.frames_dropped += 1
            return events

        if self.state is FilterState.SEARCHING:
            return self._search(frame)

        transport_event = self._adapter.classify(frame)
        if transport_event is TransportEvent.CLOSE:
            events.append(self._unlock())
            return events
        if transport_event is TransportEvent.OPEN:
            log.info("Reconnect on %s, starting a new session", _flow_str(frame.flow))
            events.append(self._unlock())
            events.append(self._lock(frame, create_adapter(frame.protocol), True))

        segments = self._adapter.segments(frame)
        if segments:
            events.append(SessionEvent(SessionEventType.SEGMENTS, self.flow, segments))
        return events

    def _search(self, frame: RawFrame) -> list[SessionEvent]:
        adapter = create_adapter(frame.protocol)
        transport_event = adapter.classify(frame)
        if transport_event is TransportEvent.CLOSE:
            # Teardown of a connection we never followed
            self.frames_dropped += 1
            return []

        fresh = transport_event is TransportEvent.OPEN
        if not fresh and frame.flow == self.closed_flow:
            log.debug("Ignoring trailing frame of closed connection %s", _flow_str(frame.flow))
            self.frames_dropped += 1
            return []
        segments = adapter.segments(frame)
        if not fresh and not segments:
            # ACKs and control traffic: nothing to join yet
            self.frames_dropped += 1
            return []

        events = [self._lock(frame, adapter, fresh)]
        if segments:
            events.append(SessionEvent(SessionEventType.SEGMENTS, self.flow, segments))
        return events

    def _lock(self, frame: RawFrame, adapter, fresh: bool) -> SessionEvent:
        self.state = FilterState.LOCKED
        self.flow = frame.flow
        self._adapter = adapter
        if self.flow == self.closed_flow:
            self.closed_flow = None
        log.info("Locked on game connection %s (%s)", _flow_str(self.flow),
                 "new connection" if fresh else "already established")
        return SessionEvent(SessionEventType.LOCKED, self.flow, fresh_connection=fresh)

    def _unlock(self) -> SessionEvent:
        flow = self.flow
        log.info("Game connection %s closed", _flow_str(flow))
        self.closed_flow = flow
        self.state = FilterState.SEARCHING
        self.flow = None
        self._adapter = None
        return SessionEvent(SessionEventType.CLOSED, flow)


def _flow_str(flow: tuple | None) -> str:
    if not flow:
        return "-"
    proto, cip, cport, sip, sport = flow
    return f"{proto} {cip}:{cport} ↔ {sip}:{sport}"
