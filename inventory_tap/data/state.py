"""
inventory_tap — Inventory State

InventoryModel: everything known about the account, keyed by in-game guid.
DomainAccumulator: the single writer that folds decoded records into it.

Rules:
- A full record for guid G replaces whatever was stored for G, even if it
  was stored as a different kind.
- A delta (artifact roll) for an unknown guid waits in a bounded pending
  buffer and is applied once the base record arrives.
- Roll history only grows; unactivated rolls stay visible.
- Nothing is deleted during a session.
"""

from __future__ import annotations

import copy
import logging
import threading
from collections import OrderedDict, defaultdict
from dataclasses import dataclass, field
from typing import Callable

from .records import (
    AnyRecord, Artifact, ArtifactRollDelta, Character, DomainRecord, Material, Weapon,
)

log = logging.getLogger(__name__)


@dataclass
class InventoryModel:
    """Point-in-time inventory. Treat snapshots as read-only."""
    characters: dict[int, Character] = field(default_factory=dict)
    weapons: dict[int, Weapon] = field(default_factory=dict)
    artifacts: dict[int, Artifact] = field(default_factory=dict)
    materials: dict[int, Material] = field(default_factory=dict)
    session_id: int = 0
    # True when this model started from a previous session's inventory
    carried_forward: bool = False

    def _table(self, kind: str) -> dict:
        match kind:
            case "character":
                return self.characters
            case "weapon":
                return self.weapons
            case "artifact":
                return self.artifacts
            case "material":
                return self.materials
        raise ValueError(f"unknown record kind {kind!r}")

    def get(self, guid: int) -> DomainRecord | None:
        for table in (self.characters, self.weapons, self.artifacts, self.materials):
            if guid in table:
                return table[guid]
        return None

    def __len__(self) -> int:
        return len(self.characters) + len(self.weapons) + len(self.artifacts) + len(self.materials)

    @property
    def is_empty(self) -> bool:
        return len(self) == 0

    def equip_map(self) -> dict[int, Character]:
        """Equipped item guid -> equipping character."""
        result: dict[int, Character] = {}
        for character in self.characters.values():
            for guid in character.equip_guids:
                result[guid] = character
        return result

    def counts(self) -> dict[str, int]:
        return {
            "characters": len(self.characters),
            "weapons": len(self.weapons),
            "artifacts": len(self.artifacts),
            "materials": len(self.materials),
        }


# Callback type: called with (event_type, record)
# event_type: "record", "delta", "delta_buffered", "delta_dropped"
UpdateCallback = Callable[[str, AnyRecord], None]


class DomainAccumulator:
    """Applies records to an InventoryModel in arrival order, one at a time."""

    def __init__(self, model: InventoryModel | None = None, max_pending_deltas: int = 256):
        self.model = model or InventoryModel()
        self.max_pending_deltas = max_pending_deltas
        # guid -> deltas waiting for their base record, oldest guid first
        self._pending: OrderedDict[int, list[ArtifactRollDelta]] = OrderedDict()
        self._pending_count = 0
        self._lock = threading.Lock()
        self._callbacks: list[UpdateCallback] = []
        # Notifications collected under the lock, delivered after it is released
        self._outbox: list[tuple[str, AnyRecord]] = []
        self.counts: defaultdict[str, int] = defaultdict(int)

    def on_update(self, callback: UpdateCallback) -> None:
        """Subscribe to applied records."""
        self._callbacks.append(callback)

    def _notify(self, event_type: str, record: AnyRecord) -> None:
        for cb in self._callbacks:
            try:
                cb(event_type, record)
            except Exception as e:
                log.error("Accumulator callback error: %s", e)

    def _deliver(self) -> None:
        with self._lock:
            notices, self._outbox = self._outbox, []
        for event_type, record in notices:
            self._notify(event_type, record)

    @property
    def pending_deltas(self) -> int:
        return self._pending_count

    def apply(self, record: AnyRecord) -> None:
        """Apply one record (full entity or delta)."""
        with self._lock:
            if isinstance(record, ArtifactRollDelta):
                self._apply_delta(record)
            else:
                self._replace(record)
                self._flush_pending(record.guid)
        self._deliver()

    def apply_all(self, records: list[AnyRecord]) -> None:
        for record in records:
            self.apply(record)

    def _replace(self, record: DomainRecord) -> None:
        guid = record.guid
        target = self.model._table(record.kind)
        for table in (self.model.characters, self.model.weapons,
                      self.model.artifacts, self.model.materials):
            if table is not target and guid in table:
                log.warning("guid %d changed kind to %s", guid, record.kind)
                del table[guid]
        # Copy so the caller's object can never alias model state
        target[guid] = copy.deepcopy(record)
        self.counts["records_applied"] += 1
        self._outbox.append(("record", record))

    def _apply_delta(self, delta: ArtifactRollDelta) -> None:
        artifact = self.model.artifacts.get(delta.guid)
        if artifact is None:
            self._buffer_delta(delta)
            return
        artifact.rolls.extend(copy.deepcopy(delta.rolls))
        self.counts["deltas_applied"] += 1
        self._outbox.append(("delta", delta))

    def _buffer_delta(self, delta: ArtifactRollDelta) -> None:
        while self._pending_count >= self.max_pending_deltas and self._pending:
            guid, waiting = next(iter(self._pending.items()))
            oldest = waiting.pop(0)
            if not waiting:
                del self._pending[guid]
            self._pending_count -= 1
            self._drop(oldest, "pending delta buffer full")
        self._pending.setdefault(delta.guid, []).append(copy.deepcopy(delta))
        self._pending_count += 1
        self.counts["deltas_buffered"] += 1
        log.debug("Buffered roll delta for unknown artifact guid %d", delta.guid)
        self._outbox.append(("delta_buffered", delta))

    def _flush_pending(self, guid: int) -> None:
        waiting = self._pending.pop(guid, None)
        if not waiting:
            return
        self._pending_count -= len(waiting)
        artifact = self.model.artifacts.get(guid)
        if artifact is None:
            for delta in waiting:
                self._drop(delta, "base record is not an artifact")
            return
        for delta in waiting:
            artifact.rolls.extend(delta.rolls)
            self.counts["deltas_applied"] += 1
            self._outbox.append(("delta", delta))
        log.debug("Applied %d buffered roll deltas to artifact %d", len(waiting), guid)

    def _drop(self, delta: ArtifactRollDelta, reason: str) -> None:
        self.counts["deltas_dropped"] += 1
        log.warning("Inconsistent data: dropping roll delta for guid %d (%s)", delta.guid, reason)
        self._outbox.append(("delta_dropped", delta))

    def snapshot(self) -> InventoryModel:
        """Deep copy of the model between two apply() calls."""
        with self._lock:
            return copy.deepcopy(self.model)

    def finish(self) -> InventoryModel:
        """End of session: drop deltas whose base never came, return the final snapshot."""
        with self._lock:
            for waiting in self._pending.values():
                for delta in waiting:
                    self._drop(delta, "base record never arrived")
            self._pending.clear()
            self._pending_count = 0
            final = copy.deepcopy(self.model)
        self._deliver()
        return final
