"""
Decode-rule registry — version-specific packet decoders keyed by PacketKey.

A rule registered with a minimum client version applies to that version and
every later one of the same language (or all languages if the rule is
language invariant). The most specific rule wins:

    1. exact key (with sub code) before the code-only key
    2. the highest minimum version that still covers the client
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

from .packet_types import (
    KNOWN_PACKETS, MIN_CLIENT_VERSION, ClientVersion, PacketDef, PacketKey, decode_packet,
)

if TYPE_CHECKING:
    from mu_analyzer.sniffer.packet import Packet

log = logging.getLogger(__name__)

DecodeRule = Callable[["Packet"], str]


@dataclass(frozen=True)
class _Registration:
    min_version: ClientVersion
    rule: DecodeRule


class DecodeRegistry:
    """Maps (client version, packet key) to a decode rule."""

    def __init__(self):
        self._rules: defaultdict[PacketKey, list[_Registration]] = defaultdict(list)
        self._lock = threading.Lock()

    def register(
        self,
        key: PacketKey,
        rule: DecodeRule,
        min_version: ClientVersion = MIN_CLIENT_VERSION,
    ) -> None:
        """Register a rule. A later registration for the same key and version replaces the earlier one."""
        with self._lock:
            regs = self._rules[key]
            regs[:] = [r for r in regs if r.min_version != min_version]
            regs.append(_Registration(min_version, rule))
        log.debug("Registered decode rule for %s (>= %s)", key, min_version)

    def rule(self, key: PacketKey, min_version: ClientVersion = MIN_CLIENT_VERSION):
        """Decorator form of register()."""
        def decorator(fn: DecodeRule) -> DecodeRule:
            self.register(key, fn, min_version)
            return fn
        return decorator

    def register_definition(self, pdef: PacketDef) -> None:
        self.register(pdef.key, describe_with(pdef), pdef.min_version)

    def resolve_decoder(self, version: ClientVersion, key: PacketKey) -> DecodeRule | None:
        """Find the best rule for a client version, or None."""
        candidates = [key]
        if key.sub_code is not None:
            candidates.append(key.without_sub_code())

        with self._lock:
            for candidate in candidates:
                best: _Registration | None = None
                for reg in self._rules.get(candidate, ()):
                    if not version.covers(reg.min_version):
                        continue
                    if best is None or reg.min_version > best.min_version:
                        best = reg
                if best is not None:
                    return best.rule
        return None

    def __len__(self) -> int:
        with self._lock:
            return sum(len(regs) for regs in self._rules.values())


def format_decoded(decoded: dict, key: PacketKey) -> str:
    """Render a decoded field dict as indented text."""
    lines = [f"{decoded['name']} — {key}, {decoded['size']} bytes"]
    if "expected_size" in decoded:
        lines.append(f"  (expected {decoded['expected_size']} bytes)")
    for name, value in decoded.items():
        if name in ("name", "direction", "size", "expected_size"):
            continue
        if isinstance(value, bytes):
            value = value.hex(" ").upper()
        elif isinstance(value, int):
            value = f"{value} (0x{value:X})"
        lines.append(f"  {name}: {value}")
    return "\n".join(lines)


def describe_with(pdef: PacketDef) -> DecodeRule:
    """Build a decode rule from a field-table packet definition."""
    def rule(packet: Packet) -> str:
        return format_decoded(decode_packet(packet.data, pdef), packet.key)
    rule.__name__ = f"describe_{pdef.name}"
    return rule


def default_registry() -> DecodeRegistry:
    """A registry populated with every definition in KNOWN_PACKETS."""
    registry = DecodeRegistry()
    for pdef in KNOWN_PACKETS:
        registry.register_definition(pdef)
    return registry
