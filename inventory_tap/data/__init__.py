from .records import Character, Weapon, Artifact, ArtifactRoll, Material, ArtifactRollDelta
from .state import InventoryModel, DomainAccumulator
from .game_data import GameData, load_game_data
from .export import ExportSettings, export_good

__all__ = [
    "Character", "Weapon", "Artifact", "ArtifactRoll", "Material", "ArtifactRollDelta",
    "InventoryModel", "DomainAccumulator", "GameData", "load_game_data",
    "ExportSettings", "export_good",
]
