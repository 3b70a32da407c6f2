"""Tests for the domain accumulator and inventory model."""

import threading

import pytest

from inventory_tap.data.records import (
    Artifact, ArtifactRoll, ArtifactRollDelta, Character, Material, Weapon,
)
from inventory_tap.data.state import DomainAccumulator, InventoryModel


def _make_artifact(guid: int = 3001, level: int = 1, rolls=None) -> Artifact:
    if rolls is None:
        rolls = [ArtifactRoll(501204, True, True), ArtifactRoll(501224, True, True)]
    return Artifact(guid=guid, item_id=77544, level=level, main_prop_id=10001, rolls=rolls)


def _make_delta(guid: int, *affix_ids: int, activated: bool = True) -> ArtifactRollDelta:
    return ArtifactRollDelta(guid, [ArtifactRoll(a, activated) for a in affix_ids])


class TestFullRecords:

    def test_apply_each_kind(self):
        acc = DomainAccumulator()
        acc.apply(Character(1001, 10000002))
        acc.apply(Weapon(2001, 11509))
        acc.apply(_make_artifact())
        acc.apply(Material(4001, 104003, 5))
        assert acc.model.counts() == {"characters": 1, "weapons": 1, "artifacts": 1, "materials": 1}
        assert acc.counts["records_applied"] == 4

    def test_repeated_record_is_idempotent(self):
        acc = DomainAccumulator()
        record = Material(4001, 104003, 5)
        acc.apply(record)
        once = acc.snapshot()
        acc.apply(record)
        acc.apply(record)
        assert acc.snapshot() == once

    def test_later_record_supersedes(self):
        acc = DomainAccumulator()
        a1 = _make_artifact(3001, level=1)
        b = _make_artifact(3002, level=5)
        a2 = _make_artifact(3001, level=9, rolls=[ArtifactRoll(501054)])
        for record in (a1, b, a2):
            acc.apply(record)
        assert len(acc.model.artifacts) == 2
        assert acc.model.artifacts[3001] == a2

    def test_guid_changing_kind(self):
        acc = DomainAccumulator()
        acc.apply(Weapon(7, 11509))
        acc.apply(Material(7, 202, 1))
        assert 7 not in acc.model.weapons
        assert acc.model.get(7) == Material(7, 202, 1)
        assert len(acc.model) == 1

    def test_model_does_not_alias_input(self):
        acc = DomainAccumulator()
        artifact = _make_artifact()
        acc.apply(artifact)
        artifact.rolls.append(ArtifactRoll(1))
        assert len(acc.model.artifacts[3001].rolls) == 2

    def test_equip_map(self):
        model = InventoryModel()
        model.characters[1] = Character(1, 10000002, equip_guids=[10, 11])
        model.characters[2] = Character(2, 10000032, equip_guids=[12])
        assert {g: c.guid for g, c in model.equip_map().items()} == {10: 1, 11: 1, 12: 2}


class TestDeltas:

    def test_n_deltas_extend_history_in_order(self):
        acc = DomainAccumulator()
        acc.apply(_make_artifact())
        affixes = [501054, 501064, 501204, 501224, 501054]
        for i, affix in enumerate(affixes):
            acc.apply(_make_delta(3001, affix, activated=i % 2 == 0))
        rolls = acc.model.artifacts[3001].rolls
        assert len(rolls) == 2 + len(affixes)
        assert [r.affix_id for r in rolls[2:]] == affixes
        assert [r.activated for r in rolls[2:]] == [True, False, True, False, True]
        assert acc.counts["deltas_applied"] == 5

    def test_delta_before_base_applied_once(self):
        acc = DomainAccumulator()
        acc.apply(_make_delta(3001, 501054))
        assert acc.pending_deltas == 1
        assert 3001 not in acc.model.artifacts

        acc.apply(_make_artifact())
        rolls = acc.model.artifacts[3001].rolls
        assert [r.affix_id for r in rolls] == [501204, 501224, 501054]
        assert acc.pending_deltas == 0

        # A later full record replaces everything, the old delta is not replayed
        acc.apply(_make_artifact())
        assert len(acc.model.artifacts[3001].rolls) == 2

    def test_pending_deltas_flush_in_arrival_order(self):
        acc = DomainAccumulator()
        acc.apply(_make_delta(3001, 1))
        acc.apply(_make_delta(3002, 9))
        acc.apply(_make_delta(3001, 2))
        acc.apply(_make_artifact(3001, rolls=[]))
        assert [r.affix_id for r in acc.model.artifacts[3001].rolls] == [1, 2]
        assert acc.pending_deltas == 1

    def test_pending_buffer_is_bounded(self):
        acc = DomainAccumulator(max_pending_deltas=3)
        for guid in (1, 2, 3, 4):
            acc.apply(_make_delta(guid, 100 + guid))
        assert acc.pending_deltas == 3
        assert acc.counts["deltas_dropped"] == 1
        acc.apply(_make_artifact(1, rolls=[]))
        assert acc.model.artifacts[1].rolls == []
        acc.apply(_make_artifact(4, rolls=[]))
        assert [r.affix_id for r in acc.model.artifacts[4].rolls] == [104]

    def test_delta_for_non_artifact_base_dropped(self):
        acc = DomainAccumulator()
        acc.apply(_make_delta(5, 1))
        acc.apply(Weapon(5, 11509))
        assert acc.counts["deltas_dropped"] == 1
        assert acc.pending_deltas == 0

    def test_finish_drops_orphans(self):
        acc = DomainAccumulator()
        dropped = []
        acc.on_update(lambda kind, record: kind == "delta_dropped" and dropped.append(record.guid))
        acc.apply(_make_delta(3001, 1))
        acc.apply(_make_delta(3002, 2))
        final = acc.finish()
        assert final.is_empty
        assert sorted(dropped) == [3001, 3002]
        assert acc.pending_deltas == 0


class TestSnapshots:

    def test_snapshot_is_a_copy(self):
        acc = DomainAccumulator()
        acc.apply(_make_artifact())
        snap = acc.snapshot()
        acc.apply(_make_delta(3001, 501054))
        assert len(snap.artifacts[3001].rolls) == 2
        snap.artifacts.clear()
        assert 3001 in acc.model.artifacts

    def test_callbacks(self):
        acc = DomainAccumulator()
        events = []
        acc.on_update(lambda kind, record: events.append((kind, record.guid)))
        acc.apply(_make_delta(3001, 1))
        acc.apply(_make_artifact())
        acc.apply(_make_delta(3001, 2))
        assert events == [
            ("delta_buffered", 3001), ("record", 3001), ("delta", 3001), ("delta", 3001),
        ]

    def test_callback_error_does_not_stop_accumulation(self):
        acc = DomainAccumulator()

        def broken(kind, record):
            raise ValueError("boom")

        acc.on_update(broken)
        acc.apply(Material(1, 202, 3))
        assert 1 in acc.model.materials

    def test_concurrent_snapshots_never_see_partial_delta(self):
        acc = DomainAccumulator()
        acc.apply(_make_artifact(rolls=[]))
        delta = ArtifactRollDelta(3001, [ArtifactRoll(1), ArtifactRoll(2), ArtifactRoll(3)])
        seen = set()
        done = threading.Event()

        def reader():
            while not done.is_set():
                seen.add(len(acc.snapshot().artifacts[3001].rolls))

        t = threading.Thread(target=reader)
        t.start()
        for _ in range(200):
            acc.apply(delta)
        done.set()
        t.join()
        assert all(n % 3 == 0 for n in seen)

    def test_unknown_kind_rejected(self):
        with pytest.raises(ValueError):
            InventoryModel()._table("achievement")
