"""Tests for the GOOD export projection."""

import json

import pytest

from inventory_tap.data.export import (
    ExportSettings, export_good, fake_initialize_4th_line, round_stat, to_good_key,
)
from inventory_tap.data.game_data import GameData, GameDataError, load_game_data
from inventory_tap.data.records import Artifact, ArtifactRoll, Character, Material, Weapon
from inventory_tap.data.state import InventoryModel


def _make_model() -> InventoryModel:
    model = InventoryModel()
    model.characters[1] = Character(
        1, 10000002, avatar_type=1, level=90, ascension=6, constellation=2,
        talent_auto=10, talent_skill=9, talent_burst=8, equip_guids=[2001, 3001],
    )
    model.characters[2] = Character(2, 10000032, avatar_type=2, level=70)  # trial copy
    model.weapons[2001] = Weapon(2001, 11509, level=90, ascension=6, refinement=0, locked=True)
    model.weapons[2002] = Weapon(2002, 11101, level=1)
    model.artifacts[3001] = Artifact(
        3001, 77544, level=21, main_prop_id=10001, locked=True, starred=True,
        rolls=[
            ArtifactRoll(501204, True, True),
            ArtifactRoll(501224, True, True),
            ArtifactRoll(501054, True, True),
            ArtifactRoll(501204, True),
            ArtifactRoll(501204, True),
        ],
    )
    model.artifacts[3002] = Artifact(
        3002, 99544, level=1, main_prop_id=30002,
        rolls=[
            ArtifactRoll(501024, True, True),
            ArtifactRoll(501064, True, True),
            ArtifactRoll(501054, True, True),
            ArtifactRoll(501224, False, True),
        ],
    )
    model.materials[4001] = Material(4001, 104003, 120)
    model.materials[4002] = Material(4002, 999999, 1)  # not in game data
    return model


def _export(model, game_data, **settings) -> dict:
    return json.loads(export_good(model, ExportSettings(**settings), game_data))


class TestHelpers:

    @pytest.mark.parametrize("name,key", [
        ("Kamisato Ayaka", "KamisatoAyaka"),
        ("Gladiator's Finale", "GladiatorsFinale"),
        ("Hero's Wit", "HerosWit"),
        ("The Catch", "TheCatch"),
        ("favonius sword", "FavoniusSword"),
        ('"The Catch"', "TheCatch"),
    ])
    def test_to_good_key(self, name, key):
        assert to_good_key(name) == key

    def test_round_percentage(self):
        assert round_stat("critRate_", 3.89 * 3) == 11.7
        assert round_stat("atk_", 5.25) == 5.3

    def test_round_flat(self):
        assert round_stat("hp", 298.75) == 299
        assert round_stat("def", 23.15 * 2) == 46


class TestExportGood:

    def test_document_header(self, game_data):
        doc = _export(InventoryModel(), game_data)
        assert doc["format"] == "GOOD"
        assert doc["version"] == 3
        assert doc["source"] == "inventory_tap"
        assert doc["characters"] == [] and doc["artifacts"] == [] and doc["weapons"] == []
        assert doc["materials"] == {}

    def test_characters(self, game_data):
        doc = _export(_make_model(), game_data)
        assert doc["characters"] == [{
            "key": "KamisatoAyaka",
            "level": 90,
            "constellation": 2,
            "ascension": 6,
            "talent": {"auto": 10, "skill": 9, "burst": 8},
        }]

    def test_weapons(self, game_data):
        doc = _export(_make_model(), game_data)
        by_key = {w["key"]: w for w in doc["weapons"]}
        assert by_key["MistsplitterReforged"] == {
            "key": "MistsplitterReforged", "level": 90, "ascension": 6,
            "refinement": 1, "location": "KamisatoAyaka", "lock": True,
        }
        assert by_key["DullBlade"]["location"] == ""

    def test_artifact(self, game_data):
        doc = _export(_make_model(), game_data)
        flower = next(a for a in doc["artifacts"] if a["setKey"] == "GladiatorsFinale")
        assert flower["slotKey"] == "flower"
        assert flower["level"] == 20
        assert flower["rarity"] == 5
        assert flower["mainStatKey"] == "hp"
        assert flower["location"] == "KamisatoAyaka"
        assert flower["lock"] is True
        assert flower["astralMark"] is True
        assert flower["elixirCrafted"] is False
        assert flower["totalRolls"] == 5
        assert flower["substats"] == [
            {"key": "critRate_", "value": 11.7, "initialValue": 3.9},
            {"key": "critDMG_", "value": 7.8, "initialValue": 7.8},
            {"key": "atk_", "value": 5.8, "initialValue": 5.8},
        ]
        assert flower["unactivatedSubstats"] == []

    def test_unactivated_substats(self, game_data):
        doc = _export(_make_model(), game_data)
        circlet = next(a for a in doc["artifacts"] if a["setKey"] == "BlizzardStrayer")
        assert circlet["level"] == 0
        assert circlet["mainStatKey"] == "critRate_"
        assert circlet["totalRolls"] == 3
        assert [s["key"] for s in circlet["substats"]] == ["hp", "def", "atk_"]
        assert circlet["substats"][0]["value"] == 299
        assert circlet["unactivatedSubstats"] == [
            {"key": "critDMG_", "value": 7.8, "initialValue": 7.8},
        ]

    def test_fake_initialize_4th_line(self, game_data):
        doc = _export(_make_model(), game_data, fake_initialize_4th_line=True)
        circlet = next(a for a in doc["artifacts"] if a["setKey"] == "BlizzardStrayer")
        assert [s["key"] for s in circlet["substats"]] == ["hp", "def", "atk_", "critDMG_"]
        assert circlet["unactivatedSubstats"] == []

    def test_fake_initialize_keeps_full_artifacts(self):
        full = {"substats": [{"key": k} for k in "abcd"], "unactivatedSubstats": [{"key": "e"}]}
        assert fake_initialize_4th_line([full]) == [full]

    def test_materials(self, game_data):
        doc = _export(_make_model(), game_data)
        assert doc["materials"] == {"HerosWit": 120}

    def test_include_flags(self, game_data):
        doc = _export(_make_model(), game_data, include_artifacts=False, include_materials=False)
        assert doc["artifacts"] == []
        assert doc["materials"] == {}
        assert doc["characters"]

    def test_minimum_filters(self, game_data):
        doc = _export(_make_model(), game_data, min_artifact_level=4, min_weapon_level=20,
                      min_character_constellation=3)
        assert [a["setKey"] for a in doc["artifacts"]] == ["GladiatorsFinale"]
        assert [w["key"] for w in doc["weapons"]] == ["MistsplitterReforged"]
        assert doc["characters"] == []

    def test_unknown_entities_skipped(self):
        doc = _export(_make_model(), GameData())
        assert doc["characters"] == []
        assert doc["artifacts"] == []
        assert doc["weapons"] == []
        assert doc["materials"] == {}

    def test_settings_from_dict(self):
        settings = ExportSettings.from_dict({"include_weapons": False, "min_artifact_rarity": 5})
        assert settings.include_weapons is False
        assert settings.to_dict()["min_artifact_rarity"] == 5
        with pytest.raises(ValueError):
            ExportSettings.from_dict({"include_wishes": True})


class TestGameData:

    def test_lookups(self, game_data):
        assert game_data.character(10000002) == "Kamisato Ayaka"
        assert game_data.weapon(11509).rarity == 5
        assert game_data.artifact(77544).slot == "flower"
        assert game_data.affix(501204).property == "critRate_"
        assert game_data.stat_key(10001) == "hp"
        assert game_data.material(1) is None

    def test_display_name(self, game_data):
        assert game_data.name(202) == "Mora (202)"
        assert game_data.name(123) == "123"

    def test_load_file(self, tmp_path):
        path = tmp_path / "game_data.json"
        path.write_text(json.dumps({"materials": {"202": "Mora"}}))
        assert load_game_data(path).material(202) == "Mora"

    def test_missing_file(self, tmp_path):
        with pytest.raises(GameDataError):
            load_game_data(tmp_path / "missing.json")

    def test_malformed(self, tmp_path):
        path = tmp_path / "game_data.json"
        path.write_text(json.dumps({"weapons": {"1": {"rarity": 3}}}))
        with pytest.raises(GameDataError):
            load_game_data(path)
