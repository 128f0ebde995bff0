"""
Export a captured connection as a pcap for Wireshark and friends.

The relay only sees payload bytes, so the Ethernet/IP/TCP layers are
synthesized: one TCP segment per recorded packet between a fixed client and
server endpoint, with sequence numbers that follow the payload lengths.
"""

from __future__ import annotations

import logging
from pathlib import Path

from scapy.all import Ether, IP, TCP, Raw, wrpcap

from mu_analyzer.protocol.packet_types import Direction
from .connection import CapturedConnection
from .packet import Packet

log = logging.getLogger(__name__)

DEFAULT_CLIENT = ("10.0.0.1", 50000)
DEFAULT_SERVER = ("10.0.0.2", 55901)

_CLIENT_MAC = "02:00:00:00:00:01"
_SERVER_MAC = "02:00:00:00:00:02"


def to_scapy(
    packets: list[Packet],
    client: tuple[str, int] = DEFAULT_CLIENT,
    server: tuple[str, int] = DEFAULT_SERVER,
) -> list:
    """Wrap each packet's payload into an Ether/IP/TCP frame."""
    seq = {Direction.C2S: 1000, Direction.S2C: 5000}
    frames = []
    for p in packets:
        if p.direction == Direction.C2S:
            (src, sport), (dst, dport) = client, server
            smac, dmac = _CLIENT_MAC, _SERVER_MAC
            other = Direction.S2C
        else:
            (src, sport), (dst, dport) = server, client
            smac, dmac = _SERVER_MAC, _CLIENT_MAC
            other = Direction.C2S
        frame = (
            Ether(src=smac, dst=dmac)
            / IP(src=src, dst=dst)
            / TCP(sport=sport, dport=dport, flags="PA", seq=seq[p.direction], ack=seq[other])
            / Raw(load=p.data)
        )
        frame.time = p.timestamp
        seq[p.direction] = (seq[p.direction] + len(p.data)) & 0xFFFFFFFF
        frames.append(frame)
    return frames


def export_pcap(
    connection: CapturedConnection,
    path: str | Path,
    client: tuple[str, int] = DEFAULT_CLIENT,
    server: tuple[str, int] = DEFAULT_SERVER,
) -> Path:
    """Write the connection's packets to a pcap file."""
    out_path = Path(path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    frames = to_scapy(connection.packets.snapshot(), client, server)
    wrpcap(str(out_path), frames)
    log.info("Exported %d packets of %s to %s", len(frames), connection.name, out_path)
    return out_path
