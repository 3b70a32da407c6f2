"""
Protocol Command Types — registry of supported command payloads.

Each known cmd_id maps to a CommandDef: a field layout plus a builder that
turns the decoded fields into domain records. Anything not in the registry
(achievements, wish history, chat, movement...) is skipped without error.

Payload fields are little-endian and read in order. Variable parts use
counted lists (u16le count) and u16le-length-prefixed strings. Inventory
items are a tagged union:
  [guid:8][item_id:4][kind:1][body_len:2][body:body_len]
so unknown kinds can be stepped over.
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass, field
from typing import Callable

from inventory_tap.data.records import (
    AnyRecord, Artifact, ArtifactRoll, ArtifactRollDelta, Character, Material, Weapon,
)
from .framing import ApplicationMessage, PayloadDecodeError

log = logging.getLogger(__name__)


class Direction:
    C2S = "C2S"  # client → server
    S2C = "S2C"  # server → client


@dataclass
class FieldDef:
    """A field within a payload layout."""
    name: str
    type: str  # "u8", "bool", "u16le", "u32le", "u64le", "i32le", "f32", "str", "list", "item"
    description: str = ""
    # For "list": a nested layout (list of dicts) or a scalar type name
    item: list[FieldDef] | str | None = None


# ---- Item kinds ----

ITEM_KIND_WEAPON = 1
ITEM_KIND_ARTIFACT = 2
ITEM_KIND_MATERIAL = 3

ROLL_LAYOUT = [
    FieldDef("affix_id", "u32le", "Substat affix ID"),
    FieldDef("activated", "bool", "Counted toward current stats"),
]

WEAPON_LAYOUT = [
    FieldDef("level", "u32le"),
    FieldDef("ascension", "u32le", "Promote level"),
    FieldDef("refinement", "u32le", "Affix level, 0-based"),
    FieldDef("locked", "bool"),
]

ARTIFACT_LAYOUT = [
    FieldDef("level", "u32le", "1-based level"),
    FieldDef("main_prop_id", "u32le", "Main stat property ID"),
    FieldDef("locked", "bool"),
    FieldDef("starred", "bool", "Astral mark"),
    FieldDef("elixir_crafted", "bool"),
    FieldDef("initial_rolls", "u8", "Leading rolls that are the pre-roll substats"),
    FieldDef("rolls", "list", "Substat rolls in roll order", item=ROLL_LAYOUT),
]

MATERIAL_LAYOUT = [
    FieldDef("count", "u32le", "Stack count"),
]

ITEM_BODIES: dict[int, list[FieldDef]] = {
    ITEM_KIND_WEAPON: WEAPON_LAYOUT,
    ITEM_KIND_ARTIFACT: ARTIFACT_LAYOUT,
    ITEM_KIND_MATERIAL: MATERIAL_LAYOUT,
}

ITEM_HEADER = struct.Struct("<QIBH")

CHARACTER_LAYOUT = [
    FieldDef("guid", "u64le", "Avatar GUID"),
    FieldDef("avatar_id", "u32le", "Character ID"),
    FieldDef("avatar_type", "u8", "1 = owned"),
    FieldDef("level", "u32le"),
    FieldDef("ascension", "u32le"),
    FieldDef("constellation", "u8", "Unlocked talents"),
    FieldDef("talent_auto", "u8"),
    FieldDef("talent_skill", "u8"),
    FieldDef("talent_burst", "u8"),
    FieldDef("equip_guids", "list", "Equipped weapon/artifact GUIDs", item="u64le"),
]


# ---- Field codec ----

_SCALARS: dict[str, struct.Struct] = {
    "u8": struct.Struct("<B"),
    "bool": struct.Struct("<?"),
    "u16le": struct.Struct("<H"),
    "u32le": struct.Struct("<I"),
    "u64le": struct.Struct("<Q"),
    "i32le": struct.Struct("<i"),
    "f32": struct.Struct("<f"),
}


class PayloadReader:
    """Sequential reader over a payload. Underflow raises PayloadDecodeError."""

    def __init__(self, data: bytes):
        self.data = data
        self.pos = 0

    @property
    def remaining(self) -> int:
        return len(self.data) - self.pos

    def take(self, n: int) -> bytes:
        if n > self.remaining:
            raise PayloadDecodeError(
                f"need {n} bytes at offset {self.pos}, only {self.remaining} left"
            )
        raw = self.data[self.pos:self.pos + n]
        self.pos += n
        return raw

    def scalar(self, type_name: str) -> int | float | bool:
        s = _SCALARS[type_name]
        return s.unpack(self.take(s.size))[0]


def decode_field(reader: PayloadReader, field_def: FieldDef):
    """Decode a single field at the reader's position."""
    match field_def.type:
        case "u8" | "bool" | "u16le" | "u32le" | "u64le" | "i32le" | "f32":
            return reader.scalar(field_def.type)
        case "str":
            length = reader.scalar("u16le")
            return reader.take(length).decode("utf-8", errors="replace")
        case "list":
            count = reader.scalar("u16le")
            item = field_def.item
            if item == "item":
                return [decode_item(reader) for _ in range(count)]
            if isinstance(item, str):
                return [reader.scalar(item) for _ in range(count)]
            return [decode_layout(reader, item or []) for _ in range(count)]
        case "item":
            return decode_item(reader)
        case _:
            raise PayloadDecodeError(f"unknown field type {field_def.type!r}")


def decode_layout(reader: PayloadReader, layout: list[FieldDef]) -> dict:
    return {f.name: decode_field(reader, f) for f in layout}


def decode_item(reader: PayloadReader) -> dict:
    """Decode one tagged inventory item. Unknown kinds come back with body=None."""
    guid, item_id, kind, body_len = ITEM_HEADER.unpack(reader.take(ITEM_HEADER.size))
    body = reader.take(body_len)
    result = {"guid": guid, "item_id": item_id, "kind": kind}
    layout = ITEM_BODIES.get(kind)
    if layout is None:
        result["body"] = None
        return result
    # Newer clients may append fields; read what we know, ignore the rest
    result.update(decode_layout(PayloadReader(body), layout))
    return result


def encode_field(buf: bytearray, field_def: FieldDef, value) -> None:
    match field_def.type:
        case "u8" | "bool" | "u16le" | "u32le" | "u64le" | "i32le" | "f32":
            buf.extend(_SCALARS[field_def.type].pack(value))
        case "str":
            raw = value.encode("utf-8")
            buf.extend(_SCALARS["u16le"].pack(len(raw)))
            buf.extend(raw)
        case "list":
            buf.extend(_SCALARS["u16le"].pack(len(value)))
            item = field_def.item
            for v in value:
                if item == "item":
                    buf.extend(encode_item(v))
                elif isinstance(item, str):
                    buf.extend(_SCALARS[item].pack(v))
                else:
                    buf.extend(encode_layout(item or [], v))
        case "item":
            buf.extend(encode_item(value))
        case _:
            raise ValueError(f"unknown field type {field_def.type!r}")


def encode_layout(layout: list[FieldDef], values: dict) -> bytes:
    buf = bytearray()
    for f in layout:
        encode_field(buf, f, values[f.name])
    return bytes(buf)


def encode_item(values: dict) -> bytes:
    kind = values["kind"]
    layout = ITEM_BODIES.get(kind)
    body = encode_layout(layout, values) if layout else values.get("body") or b""
    return ITEM_HEADER.pack(values["guid"], values["item_id"], kind, len(body)) + body


# ---- Record builders ----

def record_from_item(d: dict) -> AnyRecord | None:
    match d["kind"]:
        case 1:  # ITEM_KIND_WEAPON
            return Weapon(
                guid=d["guid"], item_id=d["item_id"], level=d["level"],
                ascension=d["ascension"], refinement=d["refinement"], locked=d["locked"],
            )
        case 2:  # ITEM_KIND_ARTIFACT
            initial = d["initial_rolls"]
            return Artifact(
                guid=d["guid"], item_id=d["item_id"], level=d["level"],
                main_prop_id=d["main_prop_id"], locked=d["locked"],
                starred=d["starred"], elixir_crafted=d["elixir_crafted"],
                rolls=[
                    ArtifactRoll(r["affix_id"], r["activated"], initial=i < initial)
                    for i, r in enumerate(d["rolls"])
                ],
            )
        case 3:  # ITEM_KIND_MATERIAL
            return Material(guid=d["guid"], item_id=d["item_id"], count=d["count"])
        case _:
            return None


def _build_characters(d: dict) -> list[AnyRecord]:
    return [Character(**a) for a in d["avatars"]]


def _build_character(d: dict) -> list[AnyRecord]:
    return [Character(**d)]


def _build_items(d: dict) -> list[AnyRecord]:
    records = []
    for item in d["items"]:
        record = record_from_item(item)
        if record is None:
            log.debug("Skipping item guid=%d of unsupported kind %d", item["guid"], item["kind"])
            continue
        records.append(record)
    return records


def _build_roll_delta(d: dict) -> list[AnyRecord]:
    return [ArtifactRollDelta(
        guid=d["guid"],
        rolls=[ArtifactRoll(r["affix_id"], r["activated"]) for r in d["rolls"]],
    )]


# ---- Registry ----

RecordBuilder = Callable[[dict], list[AnyRecord]]


@dataclass
class CommandDef:
    """Definition of a supported command."""
    cmd_id: int
    name: str
    direction: str
    build: RecordBuilder
    description: str = ""
    fields: list[FieldDef] = field(default_factory=list)


KNOWN_COMMANDS: dict[int, CommandDef] = {

    1633: CommandDef(
        cmd_id=1633,
        name="AVATAR_DATA_NOTIFY",
        direction=Direction.S2C,
        description="Full character roster, sent once at login",
        fields=[FieldDef("avatars", "list", "Characters", item=CHARACTER_LAYOUT)],
        build=_build_characters,
    ),

    1608: CommandDef(
        cmd_id=1608,
        name="AVATAR_CHANGE_NOTIFY",
        direction=Direction.S2C,
        description="One character's full state after a change (level, talents, equipment)",
        fields=CHARACTER_LAYOUT,
        build=_build_character,
    ),

    672: CommandDef(
        cmd_id=672,
        name="PLAYER_STORE_NOTIFY",
        direction=Direction.S2C,
        description="Full inventory, sent once at login",
        fields=[
            FieldDef("store_type", "u8", "1 = pack"),
            FieldDef("items", "list", "Inventory items", item="item"),
        ],
        build=_build_items,
    ),

    612: CommandDef(
        cmd_id=612,
        name="STORE_ITEM_CHANGE_NOTIFY",
        direction=Direction.S2C,
        description="Items added or changed (full item state)",
        fields=[
            FieldDef("store_type", "u8", "1 = pack"),
            FieldDef("items", "list", "Changed items", item="item"),
        ],
        build=_build_items,
    ),

    689: CommandDef(
        cmd_id=689,
        name="RELIQUARY_ROLL_NOTIFY",
        direction=Direction.S2C,
        description="New substat rolls for one artifact (upgrade or re-roll)",
        fields=[
            FieldDef("guid", "u64le", "Artifact GUID"),
            FieldDef("rolls", "list", "New rolls in roll order", item=ROLL_LAYOUT),
        ],
        build=_build_roll_delta,
    ),
}


def register_command(cdef: CommandDef) -> None:
    """Register a command definition (replaces an existing one)."""
    KNOWN_COMMANDS[cdef.cmd_id] = cdef


def decode_payload(cmd_id: int, payload: bytes) -> dict | None:
    """Decode a payload into a field dict. None for unknown commands.

    Raises PayloadDecodeError when a known command's payload does not fit
    its layout.
    """
    cdef = KNOWN_COMMANDS.get(cmd_id)
    if cdef is None:
        return None
    reader = PayloadReader(payload)
    values = decode_layout(reader, cdef.fields)
    if reader.remaining:
        raise PayloadDecodeError(
            f"{cdef.name}: {reader.remaining} unexpected trailing bytes"
        )
    return values


def encode_payload(cmd_id: int, values: dict) -> bytes:
    """Build a payload for a known command from a field dict."""
    return encode_layout(KNOWN_COMMANDS[cmd_id].fields, values)


def dispatch(msg: ApplicationMessage) -> list[AnyRecord]:
    """Map a message to domain records.

    Unknown commands give []. Malformed payloads of known commands raise
    PayloadDecodeError.
    """
    cdef = KNOWN_COMMANDS.get(msg.cmd_id)
    if cdef is None:
        return []
    values = decode_payload(msg.cmd_id, msg.payload)
    try:
        return cdef.build(values)
    except (KeyError, TypeError, ValueError) as e:
        raise PayloadDecodeError(f"{cdef.name}: {e}") from e


def command_name(cmd_id: int) -> str:
    cdef = KNOWN_COMMANDS.get(cmd_id)
    return cdef.name if cdef else f"0x{cmd_id:04x}"
