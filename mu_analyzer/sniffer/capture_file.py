"""
Capture files (.mucap) — persist a connection's packet log and load it back.

Layout: a plain sequence of records, no global header. Each record is

    [direction:1][timestamp:8 f64 LE][length:4 u32 LE][payload:length]

with direction 0 = client→server and 1 = server→client. A file that is
empty, cut off mid-record or has an unknown direction byte is not a capture
file; loading it yields a connection without packets.
"""

from __future__ import annotations

import json
import logging
import math
import os
import struct
import tempfile
from pathlib import Path
from typing import Iterable

from mu_analyzer.protocol.packet_types import Direction
from .connection import CapturedConnection, SavedConnection
from .packet import Packet

log = logging.getLogger(__name__)

CAPTURE_EXTENSION = ".mucap"
RECORD_HEADER = struct.Struct("<BdI")

DIRECTION_MARKERS = {Direction.C2S: 0, Direction.S2C: 1}
MARKER_DIRECTIONS = {v: k for k, v in DIRECTION_MARKERS.items()}


class CaptureFormatError(ValueError):
    """Data is not a valid capture record stream."""


def encode_packets(packets: Iterable[Packet]) -> bytes:
    out = bytearray()
    for p in packets:
        out += RECORD_HEADER.pack(DIRECTION_MARKERS[p.direction], p.timestamp, len(p.data))
        out += p.data
    return bytes(out)


def decode_packets(data: bytes) -> list[Packet]:
    """Parse a record stream. Raises CaptureFormatError on any inconsistency."""
    if not data:
        raise CaptureFormatError("empty capture")

    packets = []
    offset = 0
    while offset < len(data):
        if len(data) - offset < RECORD_HEADER.size:
            raise CaptureFormatError(f"truncated record header at offset {offset}")
        marker, timestamp, length = RECORD_HEADER.unpack_from(data, offset)
        if marker not in MARKER_DIRECTIONS:
            raise CaptureFormatError(f"unknown direction marker 0x{marker:02x} at offset {offset}")
        if not math.isfinite(timestamp):
            raise CaptureFormatError(f"invalid timestamp at offset {offset}")
        offset += RECORD_HEADER.size
        if len(data) - offset < length:
            raise CaptureFormatError(f"truncated payload at offset {offset} ({length} bytes declared)")
        packets.append(Packet(
            data=data[offset:offset + length],
            direction=MARKER_DIRECTIONS[marker],
            timestamp=timestamp,
        ))
        offset += length
    return packets


def save_capture(connection: CapturedConnection, path: str | Path) -> Path:
    """Write all packets of `connection` to `path`.

    The file is written under a temporary name in the same directory and
    renamed into place, so `path` is either the complete capture or untouched.
    """
    out_path = Path(path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    packets = connection.packets.snapshot()
    payload = encode_packets(packets)

    fd, tmp_name = tempfile.mkstemp(prefix=f".{out_path.name}.", suffix=".tmp", dir=out_path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, out_path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise

    log.info("Saved %d packets of %s to %s", len(packets), connection.name, out_path)
    return out_path


def load_capture(path: str | Path) -> SavedConnection:
    """Load a capture file. Unreadable or malformed files give an empty connection."""
    path = Path(path)
    try:
        packets = decode_packets(path.read_bytes())
    except OSError as e:
        log.warning("Cannot read capture %s: %s", path, e)
        packets = []
    except CaptureFormatError as e:
        log.warning("Not a capture file %s: %s", path, e)
        packets = []
    return SavedConnection(path.name, packets)


def export_json(connection: CapturedConnection, path: str | Path) -> Path:
    """Write the packet log as JSON (one dict per packet)."""
    out_path = Path(path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    packets = connection.packets.snapshot()
    data = {
        "name": connection.name,
        "packet_count": len(packets),
        "packets": [p.to_dict() for p in packets],
    }
    out_path.write_text(json.dumps(data, indent=2))
    log.info("Exported %d packets to %s", len(packets), out_path)
    return out_path


def import_json(path: str | Path) -> SavedConnection:
    """Load a JSON export back into a saved connection."""
    path = Path(path)
    data = json.loads(path.read_text())
    return SavedConnection(data.get("name", path.name), [Packet.from_dict(p) for p in data.get("packets", [])])
