"""Tests for the command line entry point."""

import json
import socket

import pytest

from mu_analyzer.main import build_parser, main
from mu_analyzer.protocol.packet_types import ClientVersion
from mu_analyzer.sniffer.capture_file import save_capture
from mu_analyzer.sniffer.connection import SavedConnection


@pytest.fixture
def capture(tmp_path, mixed_packets):
    return save_capture(SavedConnection("x", mixed_packets), tmp_path / "session.mucap")


def test_versions(capsys):
    assert main(["versions"]) == 0
    out = capsys.readouterr().out
    assert "Known client versions" in out
    assert "0.75" in out


def test_show(capture, capsys):
    assert main(["show", str(capture)]) == 0
    out = capsys.readouterr().out
    assert "Connection: session.mucap" in out
    assert "C1 04 F4 06" in out


def test_show_with_filter(capture, capsys):
    assert main(["show", str(capture), "--filter", "[Direction] IN 'C2S'"]) == 0
    out = capsys.readouterr().out
    assert "3 packets" in out
    assert "S2C" not in out.split("Filter:")[1]


def test_show_decode(capture, capsys):
    assert main(["show", str(capture), "--decode", "--version", "0.97"]) == 0
    assert "ServerListRequest" in capsys.readouterr().out


def test_show_invalid_filter(capture):
    assert main(["show", str(capture), "--filter", "[Direction] 'C2S'"]) == 2


def test_show_unloadable_file(tmp_path):
    path = tmp_path / "empty.mucap"
    path.write_bytes(b"")
    assert main(["show", str(path)]) == 1


def test_export_json(capture, tmp_path):
    out = tmp_path / "out.json"
    assert main(["export", str(capture), "--json", str(out)]) == 0
    data = json.loads(out.read_text())
    assert data["packet_count"] == 6


def test_export_pcap(capture, tmp_path):
    out = tmp_path / "out.pcap"
    assert main(["export", str(capture), "--pcap", str(out)]) == 0
    assert out.stat().st_size > 0


def test_version_argument_parsed():
    args = build_parser().parse_args(["show", "x.mucap", "--version", "6.3:english"])
    assert args.version == ClientVersion.parse("6.3:english")


def test_invalid_version_argument():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["show", "x.mucap", "--version", "nonsense"])


def test_proxy_port_in_use():
    blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    blocker.bind(("0.0.0.0", 0))
    blocker.listen(1)
    try:
        assert main(["proxy", "--listen-port", str(blocker.getsockname()[1])]) == 1
    finally:
        blocker.close()


def test_proxy_invalid_target_port():
    assert main(["proxy", "--target-port", "0"]) == 2
