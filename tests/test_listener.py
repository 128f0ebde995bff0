"""Tests for the proxy listener, against local echo servers."""

import json
import socket

import pytest

from conftest import wait_for
from mu_analyzer.protocol.packet_types import ClientVersion
from mu_analyzer.sniffer.listener import ListenerError, LiveConnectionListener, ProxyConfig

GREETING = b"\xc1\x04\x00\x01"


def _config(target_port: int, **kwargs) -> ProxyConfig:
    return ProxyConfig(listen_port=0, bind_host="127.0.0.1", target_port=target_port, **kwargs)


def _connect(listener: LiveConnectionListener) -> socket.socket:
    return socket.create_connection(listener.listen_address, timeout=5)


def _recv_exact(sock: socket.socket, n: int) -> bytes:
    data = b""
    while len(data) < n:
        chunk = sock.recv(n - len(data))
        if not chunk:
            break
        data += chunk
    return data


@pytest.fixture
def listener_factory():
    listeners = []

    def factory(config: ProxyConfig) -> LiveConnectionListener:
        listener = LiveConnectionListener(config)
        listeners.append(listener)
        return listener

    yield factory
    for listener in listeners:
        listener.stop()


def test_proxy_round_trip(tcp_server, listener_factory):
    server = tcp_server(GREETING)
    listener = listener_factory(_config(server.port))
    connected = []
    listener.on_client_connected(connected.append)
    listener.start()

    client = _connect(listener)
    try:
        assert _recv_exact(client, len(GREETING)) == GREETING
        client.sendall(b"\xc1\x03\x0e")
        assert _recv_exact(client, 3) == b"\xc1\x03\x0e"

        assert wait_for(lambda: len(connected) == 1)
        conn = connected[0]
        assert listener.open_connections == [conn]
        assert wait_for(lambda: len(conn.packets) == 3)
        # chunks are recorded before they are forwarded, so replies follow what they answer
        assert [(p.direction, p.data) for p in conn.packets] == [
            ("S2C", GREETING),
            ("C2S", b"\xc1\x03\x0e"),
            ("S2C", b"\xc1\x03\x0e"),
        ]
    finally:
        client.close()


def test_connection_uses_configured_version(tcp_server, listener_factory):
    server = tcp_server()
    version = ClientVersion.parse("0.97")
    listener = listener_factory(_config(server.port, client_version=version))
    connected = []
    listener.on_client_connected(connected.append)
    listener.start()

    client = _connect(listener)
    try:
        assert wait_for(lambda: len(connected) == 1)
        assert connected[0].client_version == version
    finally:
        client.close()


def test_client_disconnect_removes_connection(tcp_server, listener_factory):
    server = tcp_server()
    listener = listener_factory(_config(server.port))
    connected = []
    listener.on_client_connected(connected.append)
    listener.start()

    client = _connect(listener)
    assert wait_for(lambda: len(connected) == 1)
    client.close()

    assert connected[0].wait_closed(5)
    assert wait_for(lambda: listener.open_connections == [])


def test_port_in_use(listener_factory):
    blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    blocker.bind(("127.0.0.1", 0))
    blocker.listen(1)
    try:
        cfg = ProxyConfig(listen_port=blocker.getsockname()[1], bind_host="127.0.0.1")
        listener = listener_factory(cfg)
        with pytest.raises(ListenerError):
            listener.start()
        assert not listener.is_running
        assert listener.listen_address is None
    finally:
        blocker.close()


def test_start_twice_fails(tcp_server, listener_factory):
    listener = listener_factory(_config(tcp_server().port))
    listener.start()
    with pytest.raises(ListenerError):
        listener.start()


def test_unreachable_target(unused_port, listener_factory):
    listener = listener_factory(_config(unused_port, connect_timeout=2.0))
    failures = []
    connected = []
    listener.on_connection_failed(lambda addr, err: failures.append((addr, err)))
    listener.on_client_connected(connected.append)
    listener.start()

    client = _connect(listener)
    try:
        assert wait_for(lambda: len(failures) == 1)
        addr, err = failures[0]
        assert addr[1] == client.getsockname()[1]
        assert isinstance(err, OSError)
        # client side is closed, nothing was recorded
        assert client.recv(16) == b""
        assert connected == []
        assert listener.open_connections == []
    finally:
        client.close()


def test_target_change_applies_to_new_connections(tcp_server, listener_factory):
    first = tcp_server()
    second = tcp_server()
    listener = listener_factory(_config(first.port))
    connected = []
    listener.on_client_connected(connected.append)
    listener.start()

    c1 = _connect(listener)
    assert wait_for(lambda: first.accepted == 1)

    listener.target_port = second.port
    c2 = _connect(listener)
    try:
        assert wait_for(lambda: second.accepted == 1)
        assert first.accepted == 1
        # the existing connection still goes to the first server
        c1.sendall(b"\xc1\x03\x0e")
        assert _recv_exact(c1, 3) == b"\xc1\x03\x0e"
        assert wait_for(lambda: len(connected) == 2)
    finally:
        c1.close()
        c2.close()


def test_invalid_target_port_rejected(listener_factory):
    listener = listener_factory(ProxyConfig())
    with pytest.raises(ValueError):
        listener.target_port = 70000
    assert listener.target_port == 55901


def test_stop_disconnects_connections(tcp_server, listener_factory):
    server = tcp_server()
    listener = listener_factory(_config(server.port))
    connected = []
    listener.on_client_connected(connected.append)
    listener.start()

    client = _connect(listener)
    try:
        assert wait_for(lambda: len(connected) == 1)
        listener.stop()

        assert connected[0].wait_closed(5)
        assert client.recv(16) == b""
        assert not listener.is_running
        assert listener.listen_address is None
        assert listener.open_connections == []
    finally:
        client.close()


def test_context_manager(tcp_server):
    server = tcp_server()
    with LiveConnectionListener(_config(server.port)) as listener:
        assert listener.is_running
        assert listener.listen_address[1] > 0
    assert not listener.is_running


@pytest.mark.parametrize("kwargs", [
    {"listen_port": -1},
    {"listen_port": 70000},
    {"target_port": 0},
    {"buffer_size": 0},
])
def test_config_validation(kwargs):
    with pytest.raises(ValueError):
        ProxyConfig(**kwargs)


def test_config_load(tmp_path):
    cfg = ProxyConfig(listen_port=44405, target_host="10.1.1.1", client_version=ClientVersion.parse("0.75"))
    path = tmp_path / "proxy.json"
    path.write_text(json.dumps(cfg.to_dict()))

    loaded = ProxyConfig.load(path)
    assert loaded == cfg


def test_config_load_partial(tmp_path):
    path = tmp_path / "proxy.json"
    path.write_text(json.dumps({"target_port": 44405}))
    loaded = ProxyConfig.load(path)
    assert loaded.target_port == 44405
    assert loaded.listen_port == ProxyConfig().listen_port
