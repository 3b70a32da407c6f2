"""
inventory_tap — GOOD Export

Projects an InventoryModel snapshot to GOOD v3 JSON (the Genshin Open
Object Description format used by optimizer tools).

Conversion rules:
- only owned characters (avatar_type 1) are exported
- artifact level on the wire is 1-based, GOOD is 0-based
- substats are summed per stat in first-seen order; initialValue is the
  value of the first roll of that stat
- percentage stats (GOOD keys ending in "_") round to 0.1, flat stats to
  whole numbers
- weapon refinement on the wire is 0-based, GOOD is 1-based
- anything the game data does not know is skipped
"""

from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import asdict, dataclass, fields

from .game_data import GameData
from .records import Artifact, ArtifactRoll, Character, Material, Weapon
from .state import InventoryModel

log = logging.getLogger(__name__)

GOOD_FORMAT = "GOOD"
GOOD_VERSION = 3
GOOD_SOURCE = "inventory_tap"
SUBSTAT_SLOTS = 4

_NON_ALNUM = re.compile(r"[^A-Za-z0-9]")


@dataclass
class ExportSettings:
    include_characters: bool = True
    include_artifacts: bool = True
    include_weapons: bool = True
    include_materials: bool = True
    fake_initialize_4th_line: bool = False

    min_character_level: int = 0
    min_character_ascension: int = 0
    min_character_constellation: int = 0

    min_artifact_level: int = 0
    min_artifact_rarity: int = 0

    min_weapon_level: int = 0
    min_weapon_refinement: int = 0
    min_weapon_ascension: int = 0
    min_weapon_rarity: int = 0

    @classmethod
    def from_dict(cls, data: dict) -> ExportSettings:
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"unknown export settings: {', '.join(sorted(unknown))}")
        return cls(**data)

    def to_dict(self) -> dict:
        return asdict(self)


def to_good_key(name: str) -> str:
    """'Gladiator's Finale' -> 'GladiatorsFinale', 'Kamisato Ayaka' -> 'KamisatoAyaka'."""
    words = name.split()
    return _NON_ALNUM.sub("", "".join(w[:1].upper() + w[1:] for w in words))


def is_percentage(stat_key: str) -> bool:
    return stat_key.endswith("_")


def round_stat(stat_key: str, value: float) -> float:
    """The game shows percentages to 0.1 and flat stats as whole numbers (half up)."""
    if is_percentage(stat_key):
        return math.floor(value * 10 + 0.5) / 10
    return float(math.floor(value + 0.5))


class GoodExporter:
    """Builds the GOOD document for one snapshot."""

    def __init__(self, snapshot: InventoryModel, settings: ExportSettings, game_data: GameData):
        self.snapshot = snapshot
        self.settings = settings
        self.game_data = game_data
        self.skipped = 0
        self._locations = self._location_map()

    def _location_map(self) -> dict[int, str]:
        result: dict[int, str] = {}
        for guid, character in self.snapshot.equip_map().items():
            name = self.game_data.character(character.avatar_id)
            if name is not None:
                result[guid] = to_good_key(name)
        return result

    def _skip(self, what: str, item_id: int) -> None:
        self.skipped += 1
        log.debug("Skipping %s %d: not in game data", what, item_id)

    # -- characters --

    def character(self, c: Character) -> dict | None:
        if c.avatar_type != 1:
            return None
        name = self.game_data.character(c.avatar_id)
        if name is None:
            self._skip("character", c.avatar_id)
            return None
        s = self.settings
        if (c.level < s.min_character_level
                or c.ascension < s.min_character_ascension
                or c.constellation < s.min_character_constellation):
            return None
        return {
            "key": to_good_key(name),
            "level": c.level,
            "constellation": c.constellation,
            "ascension": c.ascension,
            "talent": {"auto": c.talent_auto, "skill": c.talent_skill, "burst": c.talent_burst},
        }

    # -- artifacts --

    def _substats(self, rolls: list[ArtifactRoll]) -> list[dict]:
        # stat key -> [total, first roll value], insertion order is first-seen order
        summed: dict[str, list[float]] = {}
        for roll in rolls:
            affix = self.game_data.affix(roll.affix_id)
            if affix is None:
                continue
            entry = summed.setdefault(affix.property, [0.0, affix.value])
            entry[0] += affix.value
        return [
            {"key": key, "value": round_stat(key, total), "initialValue": round_stat(key, initial)}
            for key, (total, initial) in summed.items()
        ]

    def _unactivated(self, rolls: list[ArtifactRoll]) -> list[dict]:
        result = []
        for roll in rolls:
            affix = self.game_data.affix(roll.affix_id)
            if affix is None:
                continue
            value = round_stat(affix.property, affix.value)
            result.append({"key": affix.property, "value": value, "initialValue": value})
        return result

    def artifact(self, a: Artifact) -> dict | None:
        data = self.game_data.artifact(a.item_id)
        main_stat = self.game_data.stat_key(a.main_prop_id)
        if data is None or main_stat is None:
            self._skip("artifact", a.item_id)
            return None
        level = a.level - 1
        if level < self.settings.min_artifact_level or data.rarity < self.settings.min_artifact_rarity:
            return None
        activated = a.activated_rolls
        return {
            "setKey": to_good_key(data.set),
            "slotKey": data.slot,
            "level": level,
            "rarity": data.rarity,
            "mainStatKey": main_stat,
            "location": self._locations.get(a.guid, ""),
            "lock": a.locked,
            "substats": self._substats(activated),
            "totalRolls": len(activated),
            "astralMark": a.starred,
            "elixirCrafted": a.elixir_crafted,
            "unactivatedSubstats": self._unactivated(a.unactivated_rolls),
        }

    # -- weapons --

    def weapon(self, w: Weapon) -> dict | None:
        data = self.game_data.weapon(w.item_id)
        if data is None:
            self._skip("weapon", w.item_id)
            return None
        refinement = w.refinement + 1
        s = self.settings
        if (w.level < s.min_weapon_level
                or refinement < s.min_weapon_refinement
                or w.ascension < s.min_weapon_ascension
                or data.rarity < s.min_weapon_rarity):
            return None
        return {
            "key": to_good_key(data.name),
            "level": w.level,
            "ascension": w.ascension,
            "refinement": refinement,
            "location": self._locations.get(w.guid, ""),
            "lock": w.locked,
        }

    # -- materials --

    def materials(self, materials: list[Material]) -> dict[str, int]:
        result: dict[str, int] = {}
        for m in materials:
            name = self.game_data.material(m.item_id)
            if name is None:
                self._skip("material", m.item_id)
                continue
            result[to_good_key(name)] = m.count
        return result

    def build(self) -> dict:
        snap, s = self.snapshot, self.settings
        doc: dict = {
            "format": GOOD_FORMAT,
            "version": GOOD_VERSION,
            "source": GOOD_SOURCE,
            "characters": [],
            "artifacts": [],
            "weapons": [],
            "materials": {},
        }
        if s.include_characters:
            doc["characters"] = _collect(self.character, snap.characters.values())
        if s.include_artifacts:
            artifacts = _collect(self.artifact, snap.artifacts.values())
            if s.fake_initialize_4th_line:
                artifacts = fake_initialize_4th_line(artifacts)
            doc["artifacts"] = artifacts
        if s.include_weapons:
            doc["weapons"] = _collect(self.weapon, snap.weapons.values())
        if s.include_materials:
            doc["materials"] = self.materials(list(snap.materials.values()))
        if self.skipped:
            log.info("Export skipped %d entities missing from game data", self.skipped)
        return doc


def _collect(convert, records) -> list[dict]:
    return [d for d in (convert(r) for r in records) if d is not None]


def fake_initialize_4th_line(artifacts: list[dict]) -> list[dict]:
    """Treat pending 4th-line substats as already rolled in.

    Some optimizers only read "substats"; this moves unactivated substats
    there while free substat slots remain.
    """
    result = []
    for artifact in artifacts:
        pending = artifact["unactivatedSubstats"]
        if pending and len(artifact["substats"]) < SUBSTAT_SLOTS:
            room = SUBSTAT_SLOTS - len(artifact["substats"])
            artifact = {
                **artifact,
                "substats": artifact["substats"] + pending[:room],
                "unactivatedSubstats": pending[room:],
            }
        result.append(artifact)
    return result


def export_good(snapshot: InventoryModel, settings: ExportSettings | None = None,
                game_data: GameData | None = None) -> bytes:
    """Serialize a snapshot as GOOD v3 JSON (UTF-8)."""
    exporter = GoodExporter(snapshot, settings or ExportSettings(), game_data or GameData())
    doc = exporter.build()
    log.info(
        "Exported %d characters, %d artifacts, %d weapons, %d materials",
        len(doc["characters"]), len(doc["artifacts"]), len(doc["weapons"]), len(doc["materials"]),
    )
    return json.dumps(doc, ensure_ascii=False).encode("utf-8")
