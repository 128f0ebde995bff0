"""Tests for packet headers, client versions and the packet definition table."""

import pytest

from mu_analyzer.protocol.packet_types import (
    C1, C2, KNOWN_CLIENT_VERSIONS, KNOWN_PACKETS,
    ClientLanguage, ClientVersion, Direction, FieldDef, PacketDef,
    classify, decode_field, decode_packet, get_packet_size,
)


def test_decode_field_u8():
    f = FieldDef("test", 0, 1, "u8")
    assert decode_field(b"\xff", f) == 255


def test_decode_field_u16le():
    f = FieldDef("test", 0, 2, "u16le")
    assert decode_field(b"\x01\x00", f) == 1
    assert decode_field(b"\x00\x01", f) == 256


def test_decode_field_u16be():
    f = FieldDef("test", 0, 2, "u16be")
    assert decode_field(b"\x12\x34", f) == 0x1234


def test_decode_field_i32le():
    f = FieldDef("test", 0, 4, "i32le")
    assert decode_field(b"\xff\xff\xff\xff", f) == -1


def test_decode_field_str():
    f = FieldDef("test", 0, 10, "str")
    assert decode_field(b"hello\x00\x00\x00\x00\x00", f) == "hello"


def test_decode_field_with_offset():
    f = FieldDef("test", 4, 2, "u16le")
    data = b"\x00\x00\x00\x00\x42\x00"
    assert decode_field(data, f) == 0x42


def test_packet_size_c1():
    assert get_packet_size(b"\xc1\x05") == 5
    assert get_packet_size(b"\xc3\x20\x00") == 0x20


def test_packet_size_c2():
    assert get_packet_size(b"\xc2\x01\x00") == 256
    assert get_packet_size(b"\xc2\x01") is None  # need the second length byte


def test_packet_size_not_mu():
    assert get_packet_size(b"\x00\x05\x00") is None
    assert get_packet_size(b"") is None


def test_classify():
    key = classify(b"\xc2\x00\x05\xf4\x06", Direction.S2C)
    assert key.header_type == C2
    assert key.code == 0xF4
    assert key.sub_code == 0x06
    assert key.without_sub_code().sub_code is None
    assert str(key) == "C2 F4 06 (S2C)"


def test_client_version_parse():
    assert ClientVersion.parse("6.3:english") == ClientVersion(6, 3, ClientLanguage.ENGLISH)
    assert ClientVersion.parse("0.97") == ClientVersion(0, 97)
    assert ClientVersion.parse("S6E3 (1.04d)") == ClientVersion(6, 3, ClientLanguage.ENGLISH)
    with pytest.raises(ValueError):
        ClientVersion.parse("six")
    with pytest.raises(ValueError):
        ClientVersion.parse("1.0:klingon")


def test_client_version_covers():
    eng = ClientVersion(6, 3, ClientLanguage.ENGLISH)
    assert eng.covers(ClientVersion(1, 0))
    assert eng.covers(ClientVersion(6, 3, ClientLanguage.ENGLISH))
    assert not eng.covers(ClientVersion(6, 3, ClientLanguage.JAPANESE))
    assert not ClientVersion(0, 75).covers(ClientVersion(1, 0))


def test_client_version_dict_round_trip():
    v = ClientVersion(6, 3, ClientLanguage.ENGLISH)
    assert ClientVersion.from_dict(v.to_dict()) == v


def test_known_versions():
    assert len(KNOWN_CLIENT_VERSIONS) == 4
    assert KNOWN_CLIENT_VERSIONS[ClientVersion(0, 75)] == "0.75"


def test_decode_packet_fixed_size():
    pdef = next(p for p in KNOWN_PACKETS if p.name == "GameServerEntered")
    decoded = decode_packet(b"\xc1\x0c\xf1\x00\x01\x12\x3410525", pdef)
    assert decoded["success"] == 1
    assert decoded["player_id"] == 0x1234
    assert decoded["version"] == "10525"
    assert "expected_size" not in decoded


def test_decode_packet_truncated():
    pdef = PacketDef(C1, 0x99, "Test", Direction.S2C, size=8, fields=[
        FieldDef("value", 4, 4, "u32le"),
        FieldDef("text", 3, 10, "str"),
    ])
    decoded = decode_packet(b"\xc1\x08\x99ab", pdef)
    assert "value" not in decoded
    assert decoded["text"] == "ab"
    assert decoded["expected_size"] == 8


def test_known_packet_keys_unique_per_version():
    seen = set()
    for pdef in KNOWN_PACKETS:
        entry = (pdef.key, pdef.min_version)
        assert entry not in seen, pdef.name
        seen.add(entry)
