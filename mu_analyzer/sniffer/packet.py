"""
Packet record — one chunk of bytes read from the wire, with direction and time.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from functools import cached_property

from mu_analyzer.protocol.packet_types import (
    HEADER_TYPES, Direction, PacketKey, classify,
)


@dataclass(frozen=True)
class Packet:
    """A captured MU packet. Immutable; header fields are derived lazily."""
    data: bytes
    direction: str          # "C2S" (client→server) or "S2C" (server→client)
    timestamp: float = field(default_factory=time.time)

    def __post_init__(self):
        if self.direction not in Direction.ALL:
            raise ValueError(f"Invalid direction: {self.direction!r}")
        if not math.isfinite(self.timestamp):
            raise ValueError(f"Invalid timestamp: {self.timestamp!r}")
        if not isinstance(self.data, bytes):
            object.__setattr__(self, "data", bytes(self.data))

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def to_server(self) -> bool:
        return self.direction == Direction.C2S

    @cached_property
    def key(self) -> PacketKey:
        return classify(self.data, self.direction)

    @property
    def header_type(self) -> str:
        """'C1'..'C4', or '' for data that doesn't start with a MU header."""
        return HEADER_TYPES.get(self.key.header_type, "")

    @property
    def code(self) -> int | None:
        return self.key.code

    @property
    def sub_code(self) -> int | None:
        return self.key.sub_code

    @cached_property
    def hex_dump(self) -> str:
        return self.data.hex(" ").upper()

    @property
    def pretty_hex(self) -> str:
        """16-byte wide hex dump with ASCII."""
        lines = []
        data = self.data
        for i in range(0, len(data), 16):
            chunk = data[i:i+16]
            hex_part = " ".join(f"{b:02X}" for b in chunk)
            ascii_part = "".join(chr(b) if 32 <= b < 127 else "." for b in chunk)
            lines.append(f"  {i:04x}  {hex_part:<48s}  {ascii_part}")
        return "\n".join(lines)

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "direction": self.direction,
            "type": self.header_type,
            "code": self.code,
            "sub_code": self.sub_code,
            "size": self.size,
            "payload_hex": self.data.hex(),
        }

    @classmethod
    def from_dict(cls, d: dict) -> Packet:
        return cls(
            data=bytes.fromhex(d.get("payload_hex", "")),
            direction=d["direction"],
            timestamp=d["timestamp"],
        )

    def __repr__(self) -> str:
        arrow = "→" if self.direction == Direction.C2S else "←"
        header = self.hex_dump[:11] if self.header_type else "raw"
        return f"[{self.direction}] {arrow} {header} ({self.size} bytes)"
