"""Tests for PacketView — filtering and live updates."""

import threading

import pytest

from mu_analyzer.data.filter import FilterError
from mu_analyzer.data.view import PacketView
from mu_analyzer.sniffer.connection import SavedConnection
from mu_analyzer.sniffer.packet import Packet


def test_no_filter_shows_everything(mixed_packets):
    view = PacketView(SavedConnection("saved", mixed_packets))
    assert view.packets == mixed_packets
    assert view.evaluations == 0


def test_filter_on_saved_connection(mixed_packets):
    view = PacketView(SavedConnection("saved", mixed_packets), "[Type] IN 'C1'")
    assert [p.header_type for p in view.packets] == ["C1", "C1", "C1"]


def test_set_filter_rebuilds(mixed_packets):
    view = PacketView(SavedConnection("saved", mixed_packets))
    view.set_filter("[Direction] IN 'S2C'")
    assert len(view) == 3
    view.set_filter("")
    assert len(view) == len(mixed_packets)
    assert view.predicate is None


def test_invalid_filter_keeps_previous_view(mixed_packets):
    view = PacketView(SavedConnection("saved", mixed_packets), "[Direction] IN 'C2S'")
    before = view.packets

    with pytest.raises(FilterError):
        view.set_filter("[Direction] 'S2C'")

    assert view.packets == before
    assert view.filter_text == "[Direction] IN 'C2S'"


def test_live_appends_tested_once(recording_connection, mixed_packets):
    view = PacketView(recording_connection, "[Direction] IN 'C2S'")
    added = []
    view.on_packet_added(added.append)

    for pkt in mixed_packets:
        recording_connection.add(pkt)

    expected = [p for p in mixed_packets if p.direction == "C2S"]
    assert added == expected
    assert view.packets == expected
    # incremental: one evaluation per appended packet, no re-filtering
    assert view.evaluations == len(mixed_packets)


def test_filter_change_on_live_connection(recording_connection, mixed_packets):
    view = PacketView(recording_connection)
    resets = []
    view.on_reset(lambda: resets.append(len(view.packets)))

    for pkt in mixed_packets[:3]:
        recording_connection.add(pkt)
    view.set_filter("[Direction] IN 'S2C'")
    assert resets == [2]

    for pkt in mixed_packets[3:]:
        recording_connection.add(pkt)
    assert view.packets == [p for p in mixed_packets if p.direction == "S2C"]


def test_set_connection_switches_source(recording_connection, mixed_packets):
    other = SavedConnection("saved", mixed_packets)
    view = PacketView(recording_connection)
    recording_connection.add(mixed_packets[0])
    assert len(view) == 1

    view.set_connection(other)
    assert view.packets == mixed_packets

    # the old connection no longer feeds the view
    recording_connection.add(mixed_packets[1])
    assert len(view) == len(mixed_packets)


def test_close_detaches(recording_connection, sample_c2s_packet):
    view = PacketView(recording_connection)
    view.close()
    recording_connection.add(sample_c2s_packet)
    assert view.packets == []
    assert view.connection is None


def test_callback_error_does_not_stop_view(recording_connection, sample_c2s_packet):
    view = PacketView(recording_connection)

    def broken(packet):
        raise RuntimeError("boom")

    view.on_packet_added(broken)
    recording_connection.add(sample_c2s_packet)
    assert view.packets == [sample_c2s_packet]


def test_concurrent_appends_keep_capture_order(recording_connection):
    view = PacketView(recording_connection, "[Size] IN 3")

    def produce(direction, marker):
        for i in range(200):
            recording_connection.add(Packet(bytes([marker, i, 0]), direction, float(i)))

    threads = [
        threading.Thread(target=produce, args=("C2S", 1)),
        threading.Thread(target=produce, args=("S2C", 2)),
    ]
    for t in threads:
        t.start()
    # readers racing the producers
    for _ in range(50):
        view.set_filter("[Size] IN 3")
    for t in threads:
        t.join()

    captured = recording_connection.packets.snapshot()
    assert view.packets == captured
    assert len(captured) == 400
