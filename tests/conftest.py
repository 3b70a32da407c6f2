"""Shared fixtures for inventory_tap tests."""

import pytest

from inventory_tap.config import PipelineConfig
from inventory_tap.data.game_data import GameData
from inventory_tap.sniffer.capture import RawFrame


@pytest.fixture
def replay_config() -> PipelineConfig:
    """Config that never touches a live capture device."""
    return PipelineConfig(backend="replay", replay_path="unused.json")


@pytest.fixture
def sample_c2s_frame() -> RawFrame:
    """A sample client→server KCP datagram."""
    return RawFrame(
        timestamp=1000.0,
        direction="C2S",
        protocol="udp",
        src_ip="192.168.1.100",
        dst_ip="47.100.10.20",
        src_port=54321,
        dst_port=22102,
        payload=b"\x01\x00\x00\x00\x48\x65\x6c\x6c\x6f\x00\x00\x00",
    )


@pytest.fixture
def sample_s2c_frame() -> RawFrame:
    """A sample server→client KCP datagram."""
    return RawFrame(
        timestamp=1000.5,
        direction="S2C",
        protocol="udp",
        src_ip="47.100.10.20",
        dst_ip="192.168.1.100",
        src_port=22102,
        dst_port=54321,
        payload=b"\x01\x00\x00\x00\xaa\xbb\xcc\xdd\x01\x02\x03\x04",
    )


@pytest.fixture
def game_data() -> GameData:
    """A handful of real-looking ids for export tests."""
    return GameData.from_dict({
        "characters": {
            "10000002": "Kamisato Ayaka",
            "10000032": "Bennett",
        },
        "weapons": {
            "11509": {"name": "Mistsplitter Reforged", "rarity": 5},
            "11101": {"name": "Dull Blade", "rarity": 1},
        },
        "artifacts": {
            "77544": {"set": "Gladiator's Finale", "slot": "flower", "rarity": 5},
            "99544": {"set": "Blizzard Strayer", "slot": "circlet", "rarity": 5},
        },
        "materials": {
            "104003": "Hero's Wit",
            "202": "Mora",
        },
        "affixes": {
            "501204": {"property": "critRate_", "value": 3.89},
            "501224": {"property": "critDMG_", "value": 7.77},
            "501024": {"property": "hp", "value": 298.75},
            "501054": {"property": "atk_", "value": 5.83},
            "501064": {"property": "def", "value": 23.15},
        },
        "properties": {
            "10001": "hp",
            "30002": "critRate_",
        },
    })
