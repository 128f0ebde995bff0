"""
Protocol Packet Types — MU packet headers, client versions and known packets.

Every MU packet starts with a header type byte:

    C1 / C3: [type:1][length:1][code:1][sub_code:1]...
    C2 / C4: [type:1][length:2 BE][code:1][sub_code:1]...

C3 and C4 carry an encrypted body, so their code bytes are not readable
from the raw stream.
"""

from __future__ import annotations

import re
import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import NamedTuple


# ---- Packet header ----

C1, C2, C3, C4 = 0xC1, 0xC2, 0xC3, 0xC4

HEADER_TYPES: dict[int, str] = {C1: "C1", C2: "C2", C3: "C3", C4: "C4"}
HEADER_SIZES: dict[int, int] = {C1: 2, C2: 3, C3: 2, C4: 3}
ENCRYPTED_TYPES = frozenset({C3, C4})

# Smallest buffer that can tell us the declared length of any header type
MIN_HEADER_SIZE = 3


class Direction:
    C2S = "C2S"  # client → server
    S2C = "S2C"  # server → client

    ALL = ("C2S", "S2C")


def header_type_of(data: bytes) -> int | None:
    """Header type byte (0xC1..0xC4) or None if the data isn't a MU frame."""
    if not data or data[0] not in HEADER_TYPES:
        return None
    return data[0]


def get_packet_size(data: bytes) -> int | None:
    """Declared frame size from the header, or None if not enough bytes / not a frame."""
    htype = header_type_of(data)
    if htype is None:
        return None
    if HEADER_SIZES[htype] == 2:
        if len(data) < 2:
            return None
        return data[1]
    if len(data) < 3:
        return None
    return int.from_bytes(data[1:3], "big")


def get_code(data: bytes) -> int | None:
    htype = header_type_of(data)
    if htype is None or htype in ENCRYPTED_TYPES:
        return None
    offset = HEADER_SIZES[htype]
    return data[offset] if len(data) > offset else None


def get_sub_code(data: bytes) -> int | None:
    htype = header_type_of(data)
    if htype is None or htype in ENCRYPTED_TYPES:
        return None
    offset = HEADER_SIZES[htype] + 1
    return data[offset] if len(data) > offset else None


class PacketKey(NamedTuple):
    """Classification key used to look up decode rules."""
    direction: str
    header_type: int | None
    code: int | None
    sub_code: int | None = None

    def without_sub_code(self) -> PacketKey:
        return self._replace(sub_code=None)

    def __str__(self) -> str:
        parts = [HEADER_TYPES.get(self.header_type, "??")]
        if self.code is not None:
            parts.append(f"{self.code:02X}")
        if self.sub_code is not None:
            parts.append(f"{self.sub_code:02X}")
        return f"{' '.join(parts)} ({self.direction})"


def classify(data: bytes, direction: str) -> PacketKey:
    return PacketKey(direction, header_type_of(data), get_code(data), get_sub_code(data))


# ---- Client versions ----

class ClientLanguage(IntEnum):
    INVARIANT = 0
    ENGLISH = 1
    JAPANESE = 2
    VIETNAMESE = 3
    FILIPINO = 4
    CHINESE = 5
    KOREAN = 6
    THAI = 7


_VERSION_RE = re.compile(r"^\s*(\d+)\.(\d+)\s*(?:[:/ -]\s*([A-Za-z]+))?\s*$")


@dataclass(frozen=True, order=True)
class ClientVersion:
    """Protocol version of a game client: (major, minor, language)."""
    major: int
    minor: int
    language: ClientLanguage = ClientLanguage.INVARIANT

    def covers(self, other: ClientVersion) -> bool:
        """True if a rule written for `other` applies to clients of this version."""
        if other.language not in (ClientLanguage.INVARIANT, self.language):
            return False
        return (other.major, other.minor) <= (self.major, self.minor)

    @classmethod
    def parse(cls, text: str) -> ClientVersion:
        """Parse '6.3', '6.3:english' or a display name from KNOWN_CLIENT_VERSIONS."""
        for version, display in KNOWN_CLIENT_VERSIONS.items():
            if text.strip().lower() == display.lower():
                return version
        m = _VERSION_RE.match(text)
        if not m:
            raise ValueError(f"Invalid client version: {text!r}")
        language = ClientLanguage.INVARIANT
        if m.group(3):
            try:
                language = ClientLanguage[m.group(3).upper()]
            except KeyError:
                raise ValueError(f"Unknown client language: {m.group(3)!r}") from None
        return cls(int(m.group(1)), int(m.group(2)), language)

    def to_dict(self) -> dict:
        return {"major": self.major, "minor": self.minor, "language": self.language.name}

    @classmethod
    def from_dict(cls, d: dict) -> ClientVersion:
        return cls(int(d["major"]), int(d["minor"]), ClientLanguage[d.get("language", "INVARIANT")])

    def __str__(self) -> str:
        return f"{self.major}.{self.minor} ({self.language.name.lower()})"


KNOWN_CLIENT_VERSIONS: dict[ClientVersion, str] = {
    ClientVersion(6, 3, ClientLanguage.ENGLISH): "S6E3 (1.04d)",
    ClientVersion(1, 0, ClientLanguage.INVARIANT): "Season 1 - 6",
    ClientVersion(0, 97, ClientLanguage.INVARIANT): "0.97",
    ClientVersion(0, 75, ClientLanguage.INVARIANT): "0.75",
}

DEFAULT_CLIENT_VERSION = ClientVersion(6, 3, ClientLanguage.ENGLISH)
MIN_CLIENT_VERSION = ClientVersion(0, 0, ClientLanguage.INVARIANT)


# ---- Packet definitions ----

@dataclass
class PacketDef:
    """Definition of a known packet type."""
    header_type: int
    code: int
    name: str
    direction: str
    sub_code: int | None = None
    description: str = ""
    size: int | None = None  # Expected size in bytes (None = variable)
    fields: list[FieldDef] = field(default_factory=list)
    min_version: ClientVersion = MIN_CLIENT_VERSION

    @property
    def key(self) -> PacketKey:
        return PacketKey(self.direction, self.header_type, self.code, self.sub_code)


@dataclass
class FieldDef:
    """A field within a packet."""
    name: str
    offset: int
    size: int
    type: str  # "u8", "u16le", "u16be", "u32le", "u32be", "i32le", "f32", "str", "bytes"
    description: str = ""


_V075 = ClientVersion(0, 75, ClientLanguage.INVARIANT)
_V100 = ClientVersion(1, 0, ClientLanguage.INVARIANT)

KNOWN_PACKETS: list[PacketDef] = [

    # ---- Connect server ----

    PacketDef(
        header_type=C1, code=0x00, sub_code=0x01,
        name="Hello",
        direction=Direction.S2C,
        size=4,
        description="Connect server greeting after the client connects",
    ),

    PacketDef(
        header_type=C1, code=0xF4, sub_code=0x06,
        name="ServerListRequest",
        direction=Direction.C2S,
        size=4,
        description="Client asks for the game server list",
    ),

    PacketDef(
        header_type=C2, code=0xF4, sub_code=0x06,
        name="ServerListResponse",
        direction=Direction.S2C,
        description="Game server list with load per server",
        fields=[
            FieldDef("server_count", 5, 2, "u16be", "Number of entries"),
        ],
    ),

    PacketDef(
        header_type=C1, code=0xF4, sub_code=0x03,
        name="ConnectionInfoRequest",
        direction=Direction.C2S,
        size=6,
        description="Client asks for the address of a game server",
        fields=[
            FieldDef("server_id", 4, 2, "u16le", "Game server ID"),
        ],
    ),

    PacketDef(
        header_type=C1, code=0xF4, sub_code=0x03,
        name="ConnectionInfo",
        direction=Direction.S2C,
        size=22,
        description="Address of the requested game server",
        fields=[
            FieldDef("ip_address", 4, 16, "str", "Game server IP"),
            FieldDef("port", 20, 2, "u16le", "Game server port"),
        ],
    ),

    # ---- Game server ----

    PacketDef(
        header_type=C1, code=0xF1, sub_code=0x00,
        name="GameServerEntered",
        direction=Direction.S2C,
        size=12,
        description="Greeting of the game server with the assigned player id",
        fields=[
            FieldDef("success", 4, 1, "u8", "1 = entered"),
            FieldDef("player_id", 5, 2, "u16be", "Object id of the player"),
            FieldDef("version", 7, 5, "str", "Server version string"),
        ],
    ),

    PacketDef(
        header_type=C1, code=0xF1, sub_code=0x01,
        name="LoginResponse",
        direction=Direction.S2C,
        size=5,
        description="Result of the account login",
        fields=[
            FieldDef("result", 4, 1, "u8", "0 = wrong password, 1 = ok, ..."),
        ],
    ),

    PacketDef(
        header_type=C1, code=0x00,
        name="ChatMessage",
        direction=Direction.S2C,
        description="Public chat message of another character",
        fields=[
            FieldDef("sender", 3, 10, "str", "Character name"),
            FieldDef("message", 13, 60, "str", "Message text"),
        ],
    ),

    PacketDef(
        header_type=C1, code=0x00,
        name="PublicChatMessage",
        direction=Direction.C2S,
        description="Public chat message sent by the player",
        fields=[
            FieldDef("character", 3, 10, "str", "Character name"),
            FieldDef("message", 13, 60, "str", "Message text"),
        ],
    ),

    PacketDef(
        header_type=C1, code=0x0E, sub_code=0x00,
        name="Ping",
        direction=Direction.C2S,
        description="Client tick count and attack speed",
        fields=[
            FieldDef("tick_count", 4, 4, "u32le", "Client tick count"),
            FieldDef("attack_speed", 8, 2, "u16le", "Current attack speed"),
        ],
        min_version=_V100,
    ),

    PacketDef(
        header_type=C1, code=0x10,
        name="WalkRequest075",
        direction=Direction.C2S,
        description="Walk request of 0.75 clients",
        fields=[
            FieldDef("source_x", 3, 1, "u8", "Start X"),
            FieldDef("source_y", 4, 1, "u8", "Start Y"),
            FieldDef("step_count", 5, 1, "u8", "Steps (low nibble) and first direction"),
        ],
        min_version=_V075,
    ),

    PacketDef(
        header_type=C1, code=0xD4,
        name="WalkRequest",
        direction=Direction.C2S,
        description="Walk request",
        fields=[
            FieldDef("source_x", 3, 1, "u8", "Start X"),
            FieldDef("source_y", 4, 1, "u8", "Start Y"),
            FieldDef("step_count", 5, 1, "u8", "Steps (low nibble) and first direction"),
        ],
        min_version=_V100,
    ),

    PacketDef(
        header_type=C1, code=0xD4,
        name="ObjectWalked",
        direction=Direction.S2C,
        size=8,
        description="Another object walked to a target position",
        fields=[
            FieldDef("object_id", 3, 2, "u16be", "Object id"),
            FieldDef("target_x", 5, 1, "u8", "Target X"),
            FieldDef("target_y", 6, 1, "u8", "Target Y"),
            FieldDef("rotation", 7, 1, "u8", "Rotation (high nibble)"),
        ],
        min_version=_V100,
    ),
]


def decode_field(data: bytes, field_def: FieldDef) -> int | float | str | bytes:
    """Decode a single field from packet data."""
    raw = data[field_def.offset:field_def.offset + field_def.size]
    match field_def.type:
        case "u8":
            return raw[0]
        case "u16le":
            return int.from_bytes(raw, "little", signed=False)
        case "u16be":
            return int.from_bytes(raw, "big", signed=False)
        case "u32le":
            return int.from_bytes(raw, "little", signed=False)
        case "u32be":
            return int.from_bytes(raw, "big", signed=False)
        case "i32le":
            return int.from_bytes(raw, "little", signed=True)
        case "f32":
            return struct.unpack("<f", raw)[0]
        case "str":
            return raw.split(b"\x00", 1)[0].decode("latin-1")
        case "bytes":
            return raw
        case _:
            return raw


def decode_packet(data: bytes, pdef: PacketDef) -> dict:
    """Decode `data` with a packet definition.

    Fixed-width fields are only decoded when fully present; text and byte
    fields may be cut short by the end of the packet.
    """
    result = {
        "name": pdef.name,
        "direction": pdef.direction,
        "size": len(data),
    }
    if pdef.size is not None and len(data) != pdef.size:
        result["expected_size"] = pdef.size
    for f in pdef.fields:
        if f.offset + f.size <= len(data):
            result[f.name] = decode_field(data, f)
        elif f.type in ("str", "bytes") and f.offset < len(data):
            result[f.name] = decode_field(data, f)
    return result


def register_packet(pdef: PacketDef) -> None:
    """Register a packet definition for default_registry()."""
    KNOWN_PACKETS.append(pdef)
