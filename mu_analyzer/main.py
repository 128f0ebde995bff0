"""
MU Analyzer — command line entry point

Usage:
  mu-analyzer proxy --target-host 10.0.0.5 --target-port 55901 --save captures
  mu-analyzer proxy --config proxy.json --filter "[Type] IN 'C1', 'C2'"
  mu-analyzer show captures/001_session.mucap --decode --version 0.97
  mu-analyzer export captures/001_session.mucap --json out.json
  mu-analyzer export captures/001_session.mucap --pcap out.pcap
  mu-analyzer versions

Ctrl+C stops the proxy; with --save every connection is written as .mucap.
"""

from __future__ import annotations

import argparse
import logging
import sys
import threading
import time
from dataclasses import replace
from pathlib import Path

from rich.console import Console
from rich.table import Table
from rich.text import Text

from mu_analyzer.data.connections import ConnectionList
from mu_analyzer.data.filter import FilterError, FilterPredicate, compile_filter
from mu_analyzer.protocol.analyzer import PacketAnalyzer
from mu_analyzer.protocol.packet_types import (
    DEFAULT_CLIENT_VERSION, KNOWN_CLIENT_VERSIONS, ClientVersion, Direction,
)
from mu_analyzer.sniffer.capture_file import export_json, load_capture
from mu_analyzer.sniffer.connection import CapturedConnection, LiveConnection
from mu_analyzer.sniffer.listener import ListenerError, LiveConnectionListener, ProxyConfig
from mu_analyzer.sniffer.packet import Packet

log = logging.getLogger("mu_analyzer")
console = Console(highlight=False, markup=False)

DIRECTION_STYLES = {Direction.C2S: "cyan", Direction.S2C: "green"}


def _fmt_time(ts: float) -> str:
    ms = int((ts % 1) * 1000)
    return f"{time.strftime('%H:%M:%S', time.localtime(ts))}.{ms:03d}"


def _packet_line(index: int, pkt: Packet, name: str = "", max_hex: int = 32) -> Text:
    style = DIRECTION_STYLES[pkt.direction]
    text = Text()
    text.append(f"{index:>5} ", style="dim")
    text.append(f"[{_fmt_time(pkt.timestamp)}] ")
    text.append(f"{pkt.direction} ", style=f"bold {style}")
    if name:
        text.append(f"{name} ", style="dim")
    hex_part = pkt.data[:max_hex].hex(" ").upper()
    if pkt.size > max_hex:
        hex_part += " …"
    text.append(f"({pkt.size:>4} b) ", style="yellow")
    text.append(hex_part, style=style)
    return text


# ---- proxy ----

def cmd_proxy(args) -> int:
    config = ProxyConfig.load(args.config) if args.config else ProxyConfig()
    overrides = {
        "listen_port": args.listen_port,
        "target_host": args.target_host,
        "target_port": args.target_port,
        "client_version": args.version,
    }
    config = replace(config, **{k: v for k, v in overrides.items() if v is not None})

    predicate: FilterPredicate | None = compile_filter(args.filter)
    analyzer = PacketAnalyzer(client_version=config.client_version)
    connections = ConnectionList()
    listener = LiveConnectionListener(config)
    connections.attach(listener)
    print_lock = threading.Lock()

    def on_packet(conn: CapturedConnection, pkt: Packet) -> None:
        if predicate is not None and not predicate(pkt):
            return
        with print_lock:
            console.print(_packet_line(len(conn.packets), pkt, conn.name))
            if args.decode:
                console.print(analyzer.extract_information(pkt), style="dim")

    def on_connected(conn: LiveConnection) -> None:
        conn.on_packet_appended(on_packet)
        conn.on_disconnected(lambda c: console.print(f"[-] {c.name} disconnected ({len(c.packets)} packets)"))
        console.print(f"[+] {conn.name} connected", style="bold")

    listener.on_client_connected(on_connected)
    listener.on_connection_failed(
        lambda addr, err: console.print(f"[!] Client {addr[0]}:{addr[1]}: target unreachable ({err})", style="red")
    )

    try:
        listener.start()
    except ListenerError as e:
        log.error("%s", e)
        return 1

    console.print(f"[*] Proxy {config.bind_host}:{listener.listen_address[1]} → "
                  f"{config.target_host}:{config.target_port} ({config.client_version})")
    console.print("[*] Press Ctrl+C to stop\n")
    try:
        while True:
            time.sleep(0.5)
    except KeyboardInterrupt:
        console.print("\n[*] Stopped by user")
    finally:
        listener.stop()
        if args.save:
            for path in connections.save_all(args.save):
                console.print(f"[*] Saved {path}")
    return 0


# ---- show ----

def cmd_show(args) -> int:
    connection = load_capture(args.file)
    if not connection.packets:
        log.error("The file %s couldn't be loaded. It was either empty or in a wrong format.", args.file)
        return 1

    packets = connection.packets.snapshot()
    predicate = compile_filter(args.filter)
    if predicate is not None:
        packets = predicate.apply(packets)

    console.print(connection.summary())
    if predicate is not None:
        console.print(f"  Filter: {predicate} → {len(packets)} packets")
    console.print()

    analyzer = PacketAnalyzer(client_version=args.version or DEFAULT_CLIENT_VERSION)
    for i, pkt in enumerate(packets, start=1):
        console.print(_packet_line(i, pkt, max_hex=args.max_hex))
        if args.decode:
            console.print(analyzer.extract_information(pkt), style="dim")
    return 0


# ---- export ----

def cmd_export(args) -> int:
    connection = load_capture(args.file)
    if not connection.packets:
        log.error("The file %s couldn't be loaded. It was either empty or in a wrong format.", args.file)
        return 1
    if args.json:
        export_json(connection, args.json)
        console.print(f"[*] Exported {len(connection.packets)} packets to {args.json}")
    if args.pcap:
        from mu_analyzer.sniffer.pcap_export import export_pcap
        export_pcap(connection, args.pcap, server=("10.0.0.2", args.server_port))
        console.print(f"[*] Exported {len(connection.packets)} packets to {args.pcap}")
    return 0


# ---- versions ----

def cmd_versions(args) -> int:
    table = Table(title="Known client versions")
    table.add_column("Name")
    table.add_column("Version")
    table.add_column("Default")
    for version, name in KNOWN_CLIENT_VERSIONS.items():
        table.add_row(name, str(version), "*" if version == DEFAULT_CLIENT_VERSION else "")
    console.print(table)
    return 0


# ---- CLI ----

def _version_arg(text: str) -> ClientVersion:
    try:
        return ClientVersion.parse(text)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mu-analyzer",
        description="MU Analyzer — capturing proxy for MU Online client/server traffic",
        epilog=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("proxy", help="Run the capturing proxy")
    p.add_argument("--config", type=Path, help="JSON file with proxy settings")
    p.add_argument("--listen-port", type=int, help="Port the game client connects to")
    p.add_argument("--target-host", help="Real server host")
    p.add_argument("--target-port", type=int, help="Real server port")
    p.add_argument("--version", type=_version_arg, help="Client version, e.g. '6.3:english' or '0.97'")
    p.add_argument("--filter", help="Only print packets matching this filter")
    p.add_argument("--decode", action="store_true", help="Print decoded information for each packet")
    p.add_argument("--save", type=Path, help="Directory to save connections to on exit")
    p.set_defaults(func=cmd_proxy)

    p = sub.add_parser("show", help="Print a saved capture")
    p.add_argument("file", type=Path)
    p.add_argument("--filter", help="Filter, e.g. \"[Type] IN 'C1' AND [Code] IN 241\"")
    p.add_argument("--version", type=_version_arg, help="Client version used for decoding")
    p.add_argument("--decode", action="store_true", help="Print decoded information")
    p.add_argument("--max-hex", type=int, default=32, help="Max bytes of hex per line (default: 32)")
    p.set_defaults(func=cmd_show)

    p = sub.add_parser("export", help="Convert a saved capture")
    p.add_argument("file", type=Path)
    p.add_argument("--json", type=Path, help="Write JSON to this path")
    p.add_argument("--pcap", type=Path, help="Write pcap to this path")
    p.add_argument("--server-port", type=int, default=55901, help="Server port used in the pcap")
    p.set_defaults(func=cmd_export)

    p = sub.add_parser("versions", help="List known client versions")
    p.set_defaults(func=cmd_versions)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        return args.func(args)
    except FilterError as e:
        log.error("Invalid filter: %s", e)
        return 2
    except ValueError as e:
        log.error("%s", e)
        return 2


if __name__ == "__main__":
    sys.exit(main())
