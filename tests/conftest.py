"""Shared fixtures for MU Analyzer tests."""

import socket
import threading
import time

import pytest

from mu_analyzer.sniffer.connection import CapturedConnection
from mu_analyzer.sniffer.packet import Packet


class RecordingConnection(CapturedConnection):
    """Captured connection that tests append to directly, like a relay pump would."""

    def add(self, packet: Packet) -> None:
        self.packets.append(packet)
        self._emit("packet_appended", packet)


def wait_for(condition, timeout: float = 5.0, interval: float = 0.01) -> bool:
    """Poll `condition` until it's true or the timeout expires."""
    deadline = time.time() + timeout
    while time.time() < deadline:
        if condition():
            return True
        time.sleep(interval)
    return condition()


class TcpServer:
    """Tiny threaded TCP server: optional greeting on accept, then echo."""

    def __init__(self, greeting: bytes = b""):
        self.greeting = greeting
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.sock.bind(("127.0.0.1", 0))
        self.sock.listen(5)
        self.sock.settimeout(0.2)
        self.port = self.sock.getsockname()[1]
        self.accepted = 0
        self._clients: list[socket.socket] = []
        self._running = True
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()

    def _serve(self) -> None:
        while self._running:
            try:
                client, _ = self.sock.accept()
            except socket.timeout:
                continue
            except OSError:
                break
            self.accepted += 1
            self._clients.append(client)
            threading.Thread(target=self._echo, args=(client,), daemon=True).start()

    def _echo(self, client: socket.socket) -> None:
        try:
            if self.greeting:
                client.sendall(self.greeting)
            while True:
                data = client.recv(4096)
                if not data:
                    break
                client.sendall(data)
        except OSError:
            pass
        finally:
            client.close()

    def close(self) -> None:
        self._running = False
        self.sock.close()
        for c in self._clients:
            try:
                c.close()
            except OSError:
                pass
        self._thread.join(1)


@pytest.fixture
def tcp_server():
    """Factory for echo servers; all are closed after the test."""
    servers = []

    def factory(greeting: bytes = b"") -> TcpServer:
        server = TcpServer(greeting)
        servers.append(server)
        return server

    yield factory
    for s in servers:
        s.close()


@pytest.fixture
def unused_port() -> int:
    """A localhost port with nothing listening on it."""
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    return port


@pytest.fixture
def sample_c2s_packet() -> Packet:
    """ConnectionInfoRequest for server 1."""
    return Packet(
        data=b"\xc1\x06\xf4\x03\x01\x00",
        direction="C2S",
        timestamp=1000.0,
    )


@pytest.fixture
def sample_s2c_packet() -> Packet:
    """GameServerEntered, player id 0x1234, version '10525'."""
    return Packet(
        data=b"\xc1\x0c\xf1\x00\x01\x12\x34" + b"10525",
        direction="S2C",
        timestamp=1000.5,
    )


@pytest.fixture
def mixed_packets() -> list[Packet]:
    """A short session with C1, C2, C3 and non-MU data, both directions."""
    return [
        Packet(b"\xc1\x04\x00\x01", "S2C", 1000.0),                     # Hello
        Packet(b"\xc1\x04\xf4\x06", "C2S", 1000.1),                     # ServerListRequest
        Packet(b"\xc2\x00\x0b\xf4\x06\x00\x01\x00\x00\x00\x00", "S2C", 1000.2),
        Packet(b"\xc3\x0d\x8a\x11\x22\x33\x44\x55\x66\x77\x88\x99\xaa", "C2S", 1000.3),
        Packet(b"\x01\x02\x03", "S2C", 1000.4),
        Packet(b"\xc1\x06\xf4\x03\x05\x00", "C2S", 1000.5),             # ConnectionInfoRequest
    ]


@pytest.fixture
def recording_connection() -> RecordingConnection:
    return RecordingConnection("test")
