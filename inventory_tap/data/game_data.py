"""
inventory_tap — Game Data Lookup

Loads id -> name/property tables from a JSON file (data/game_data.json by
default). Every lookup returns None for an unknown id; callers decide
whether that means "skip" or "show the raw id".

File layout (all keys are decimal id strings):
  {
    "characters": {"10000002": "Kamisato Ayaka"},
    "weapons":    {"11101": {"name": "Dull Blade", "rarity": 1}},
    "artifacts":  {"77544": {"set": "Gladiator's Finale", "slot": "flower", "rarity": 5}},
    "materials":  {"202": "Mora"},
    "affixes":    {"501204": {"property": "critRate_", "value": 3.89}},
    "properties": {"10001": "hp"}
  }
Affix and property values are already GOOD stat keys ("atk_", "critDMG_").
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path

log = logging.getLogger(__name__)

TABLES = ("characters", "weapons", "artifacts", "materials", "affixes", "properties")


class GameDataError(Exception):
    """Game data file missing or malformed."""


@dataclass(frozen=True)
class WeaponData:
    name: str
    rarity: int


@dataclass(frozen=True)
class ArtifactData:
    set: str
    slot: str
    rarity: int


@dataclass(frozen=True)
class AffixData:
    property: str
    value: float


@dataclass
class GameData:
    characters: dict[int, str] = field(default_factory=dict)
    weapons: dict[int, WeaponData] = field(default_factory=dict)
    artifacts: dict[int, ArtifactData] = field(default_factory=dict)
    materials: dict[int, str] = field(default_factory=dict)
    affixes: dict[int, AffixData] = field(default_factory=dict)
    properties: dict[int, str] = field(default_factory=dict)

    def character(self, avatar_id: int) -> str | None:
        return self.characters.get(avatar_id)

    def weapon(self, item_id: int) -> WeaponData | None:
        return self.weapons.get(item_id)

    def artifact(self, item_id: int) -> ArtifactData | None:
        return self.artifacts.get(item_id)

    def material(self, item_id: int) -> str | None:
        return self.materials.get(item_id)

    def affix(self, affix_id: int) -> AffixData | None:
        return self.affixes.get(affix_id)

    def stat_key(self, prop_id: int) -> str | None:
        return self.properties.get(prop_id)

    def name(self, item_id: int) -> str:
        """Display name for any item or character id: 'Name (ID)' or just 'ID'."""
        weapon = self.weapons.get(item_id)
        artifact = self.artifacts.get(item_id)
        name = (
            self.characters.get(item_id)
            or self.materials.get(item_id)
            or (weapon.name if weapon else None)
            or (artifact.set if artifact else None)
        )
        if name:
            return f"{name} ({item_id})"
        return str(item_id)

    @classmethod
    def from_dict(cls, data: dict) -> GameData:
        unknown = set(data) - set(TABLES)
        if unknown:
            log.warning("Ignoring unknown game data tables: %s", ", ".join(sorted(unknown)))
        try:
            return cls(
                characters={int(k): str(v) for k, v in data.get("characters", {}).items()},
                weapons={int(k): WeaponData(v["name"], int(v["rarity"]))
                         for k, v in data.get("weapons", {}).items()},
                artifacts={int(k): ArtifactData(v["set"], v["slot"], int(v["rarity"]))
                           for k, v in data.get("artifacts", {}).items()},
                materials={int(k): str(v) for k, v in data.get("materials", {}).items()},
                affixes={int(k): AffixData(v["property"], float(v["value"]))
                         for k, v in data.get("affixes", {}).items()},
                properties={int(k): str(v) for k, v in data.get("properties", {}).items()},
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise GameDataError(f"malformed game data: {e!r}") from e

    def summary(self) -> str:
        return ", ".join(f"{len(getattr(self, t))} {t}" for t in TABLES)


def default_paths() -> list[Path]:
    # Running from the project root or from an installed package
    return [
        Path(__file__).parent.parent.parent / "data" / "game_data.json",
        Path("data/game_data.json"),
    ]


def load_game_data(path: str | Path | None = None) -> GameData:
    """Load game data from path, or from the first default location that exists."""
    candidates = [Path(path)] if path is not None else default_paths()
    for candidate in candidates:
        if not candidate.exists():
            continue
        try:
            raw = json.loads(candidate.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise GameDataError(f"{candidate}: {e}") from e
        game_data = GameData.from_dict(raw)
        log.info("Loaded game data from %s (%s)", candidate, game_data.summary())
        return game_data
    if path is not None:
        raise GameDataError(f"game data file not found: {path}")
    log.warning("No game data file found, exports will be empty")
    return GameData()
