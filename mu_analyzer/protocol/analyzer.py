"""
Protocol Analyzer — turn a captured packet into readable text.

Decoding is delegated to rules from a DecodeRegistry, chosen by the
configured client version and the packet's classification key. Packets
without a rule get a generic header/length/hex summary.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .packet_types import DEFAULT_CLIENT_VERSION, ENCRYPTED_TYPES, ClientVersion
from .registry import DecodeRegistry, default_registry

if TYPE_CHECKING:
    from mu_analyzer.sniffer.packet import Packet

log = logging.getLogger(__name__)


class PacketAnalyzer:
    """Extract information from single packets for a given client version."""

    def __init__(
        self,
        registry: DecodeRegistry | None = None,
        client_version: ClientVersion = DEFAULT_CLIENT_VERSION,
    ):
        self.registry = registry if registry is not None else default_registry()
        self.client_version = client_version

    def extract_information(self, packet: Packet) -> str:
        """Human-readable description of `packet`. Never raises for bad packet data."""
        rule = self.registry.resolve_decoder(self.client_version, packet.key)
        if rule is None:
            return self.generic_summary(packet)
        try:
            return rule(packet)
        except Exception as e:
            log.warning("Decode rule %s failed for %r: %s", getattr(rule, "__name__", rule), packet, e)
            return self.generic_summary(packet, error=e)

    @staticmethod
    def generic_summary(packet: Packet, error: Exception | None = None) -> str:
        key = packet.key
        if not packet.header_type:
            title = "Unknown data (no MU header)"
        elif key.header_type in ENCRYPTED_TYPES:
            title = f"Encrypted {packet.header_type} packet"
        else:
            title = f"Unknown packet {key}"
        lines = [f"{title}, {packet.size} bytes ({packet.direction})"]
        if error is not None:
            lines.append(f"  decode error: {error}")
        lines.append(packet.pretty_hex)
        return "\n".join(lines)
