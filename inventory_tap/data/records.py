"""
Domain records decoded from game commands.

Full-entity records (Character, Weapon, Artifact, Material) replace whatever
was known for their guid. ArtifactRollDelta only appends rolls to an
artifact that already exists.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Union


@dataclass
class ArtifactRoll:
    """One substat roll. Unactivated rolls are locked in but not yet counted."""
    affix_id: int
    activated: bool = True
    initial: bool = False  # part of the artifact's pre-roll substats


@dataclass
class Character:
    guid: int
    avatar_id: int
    avatar_type: int = 1  # 1 = owned character; others are trial/event copies
    level: int = 1
    ascension: int = 0
    constellation: int = 0
    talent_auto: int = 1
    talent_skill: int = 1
    talent_burst: int = 1
    equip_guids: list[int] = field(default_factory=list)

    kind = "character"


@dataclass
class Weapon:
    guid: int
    item_id: int
    level: int = 1
    ascension: int = 0
    refinement: int = 0  # 0-based on the wire
    locked: bool = False

    kind = "weapon"


@dataclass
class Artifact:
    guid: int
    item_id: int
    level: int = 1  # 1-based on the wire, +0 artifact is level 1
    main_prop_id: int = 0
    locked: bool = False
    starred: bool = False
    elixir_crafted: bool = False
    rolls: list[ArtifactRoll] = field(default_factory=list)

    kind = "artifact"

    @property
    def activated_rolls(self) -> list[ArtifactRoll]:
        return [r for r in self.rolls if r.activated]

    @property
    def unactivated_rolls(self) -> list[ArtifactRoll]:
        return [r for r in self.rolls if not r.activated]

    @property
    def initial_rolls(self) -> list[ArtifactRoll]:
        return [r for r in self.rolls if r.initial]


@dataclass
class Material:
    guid: int
    item_id: int
    count: int = 0

    kind = "material"


@dataclass
class ArtifactRollDelta:
    """Rolls added to an existing artifact (upgrade / re-roll event)."""
    guid: int
    rolls: list[ArtifactRoll] = field(default_factory=list)

    kind = "artifact_roll"


DomainRecord = Union[Character, Weapon, Artifact, Material]
DeltaRecord = ArtifactRollDelta
AnyRecord = Union[Character, Weapon, Artifact, Material, ArtifactRollDelta]
