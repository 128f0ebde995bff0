"""
Captured connections — an ordered, observable packet log plus a name.

    LiveConnection   backed by two relay pumps between client and server
    SavedConnection  loaded once from a capture file, read-only

Events (subscribe with on_*, unsubscribe with off_*):
    packet_appended(connection, packet)
    disconnected(connection)
    frame_parsed(connection, direction, frame)
"""

from __future__ import annotations

import logging
import socket
import threading
import time
from collections import Counter
from enum import Flag, auto
from pathlib import Path
from typing import Callable, Iterable, Iterator

from mu_analyzer.protocol.packet_types import DEFAULT_CLIENT_VERSION, ClientVersion, Direction
from .packet import Packet
from .stream import MUFrameSplitter

log = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 8192


class ConnectionClosedError(RuntimeError):
    """Operation needs an open live connection."""


class Capability(Flag):
    NONE = 0
    CAN_DISCONNECT = auto()
    CAN_SEND = auto()


class PacketList:
    """Append-only packet sequence.

    Safe for concurrent appends from both relay pumps and for readers
    iterating while it grows. Iteration yields every packet present when
    the iterator reaches it, so a reader sees appends made during iteration.
    """

    def __init__(self, packets: Iterable[Packet] = (), read_only: bool = False):
        self._items: list[Packet] = list(packets)
        self._lock = threading.Lock()
        self.read_only = read_only

    def append(self, packet: Packet) -> int:
        """Append and return the packet's index."""
        if self.read_only:
            raise RuntimeError("Packet list is read-only")
        with self._lock:
            self._items.append(packet)
            return len(self._items) - 1

    def snapshot(self) -> list[Packet]:
        with self._lock:
            return list(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __getitem__(self, index):
        return self._items[index]

    def __iter__(self) -> Iterator[Packet]:
        i = 0
        while i < len(self._items):
            yield self._items[i]
            i += 1

    def __bool__(self) -> bool:
        return bool(self._items)


class CapturedConnection:
    """Base class: a named, ordered packet log with subscriber events."""

    capabilities = Capability.NONE

    def __init__(self, name: str, packets: PacketList | None = None):
        self.name = name
        self.packets = packets if packets is not None else PacketList()
        self._callbacks: dict[str, list[Callable]] = {
            "packet_appended": [],
            "disconnected": [],
            "frame_parsed": [],
        }

    # ---- Events ----

    def on_packet_appended(self, callback: Callable[[CapturedConnection, Packet], None]) -> None:
        self._callbacks["packet_appended"].append(callback)

    def off_packet_appended(self, callback: Callable) -> None:
        self._remove("packet_appended", callback)

    def on_disconnected(self, callback: Callable[[CapturedConnection], None]) -> None:
        self._callbacks["disconnected"].append(callback)

    def off_disconnected(self, callback: Callable) -> None:
        self._remove("disconnected", callback)

    def on_frame_parsed(self, callback: Callable[[CapturedConnection, str, bytes], None]) -> None:
        self._callbacks["frame_parsed"].append(callback)

    def off_frame_parsed(self, callback: Callable) -> None:
        self._remove("frame_parsed", callback)

    def _remove(self, event: str, callback: Callable) -> None:
        try:
            self._callbacks[event].remove(callback)
        except ValueError:
            pass

    def _emit(self, event: str, *args) -> None:
        for cb in list(self._callbacks[event]):
            try:
                cb(self, *args)
            except Exception:
                log.exception("%s callback error on %s", event, self.name)

    # ---- Persistence / info ----

    def save(self, path: str | Path) -> Path:
        """Write the packet log to a .mucap file."""
        from .capture_file import save_capture
        return save_capture(self, path)

    def summary(self) -> str:
        packets = self.packets.snapshot()
        by_dir = Counter(p.direction for p in packets)
        types = Counter(p.header_type or "raw" for p in packets)
        lines = [
            f"Connection: {self.name}",
            f"  Packets: {len(packets)} total "
            f"({by_dir[Direction.C2S]} C2S, {by_dir[Direction.S2C]} S2C)",
            f"  Bytes: {sum(p.size for p in packets)}",
        ]
        if types:
            lines.append("  Types: " + ", ".join(f"{t}={n}" for t, n in sorted(types.items())))
        if packets:
            lines.append(f"  Duration: {packets[-1].timestamp - packets[0].timestamp:.1f}s")
        return "\n".join(lines)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r}, {len(self.packets)} packets)"


class SavedConnection(CapturedConnection):
    """Connection loaded from a file. Its packet list never changes."""

    def __init__(self, name: str, packets: Iterable[Packet] = ()):
        super().__init__(name, PacketList(packets, read_only=True))

    @classmethod
    def from_file(cls, path: str | Path) -> SavedConnection:
        from .capture_file import load_capture
        return load_capture(path)


def _endpoint(sock: socket.socket, peer: bool) -> str:
    try:
        addr = sock.getpeername() if peer else sock.getsockname()
    except OSError:
        return "?"
    if not isinstance(addr, tuple):
        return str(addr) or "?"  # AF_UNIX
    return f"{addr[0]}:{addr[1]}"


class LiveConnection(CapturedConnection):
    """A proxied client connection.

    Owns the client-side and server-side sockets. Once started, one relay
    pump per direction copies and records traffic until either side closes.
    """

    capabilities = Capability.CAN_DISCONNECT | Capability.CAN_SEND

    def __init__(
        self,
        client_socket: socket.socket,
        server_socket: socket.socket,
        client_version: ClientVersion = DEFAULT_CLIENT_VERSION,
        name: str = "",
        buffer_size: int = DEFAULT_BUFFER_SIZE,
    ):
        super().__init__(name or f"{_endpoint(client_socket, True)} <-> {_endpoint(server_socket, True)}")
        self.client_socket = client_socket
        self.server_socket = server_socket
        self.client_version = client_version
        self.buffer_size = buffer_size
        self.connected_at = time.time()
        self.splitter = MUFrameSplitter()
        self.splitter.on_frame(lambda d, frame: self._emit("frame_parsed", d, frame))
        # Writers per destination socket: the pump for that direction and send()
        self._write_locks = {
            Direction.C2S: threading.Lock(),
            Direction.S2C: threading.Lock(),
        }
        self._state_lock = threading.Lock()
        self._started = False
        self._closed = threading.Event()
        self._pumps: list = []
        self._threads: list[threading.Thread] = []

    @property
    def is_connected(self) -> bool:
        return self._started and not self._closed.is_set()

    def start(self) -> None:
        """Start both relay pumps."""
        from .relay import RelayPump

        with self._state_lock:
            if self._started:
                raise RuntimeError(f"{self.name} already started")
            if self._closed.is_set():
                raise ConnectionClosedError(f"{self.name} is disconnected")
            self._started = True

        self._pumps = [
            RelayPump(self.client_socket, self.server_socket, self, Direction.C2S,
                      self._write_locks[Direction.C2S], self.buffer_size, self.splitter),
            RelayPump(self.server_socket, self.client_socket, self, Direction.S2C,
                      self._write_locks[Direction.S2C], self.buffer_size, self.splitter),
        ]
        for pump in self._pumps:
            t = threading.Thread(target=pump.run, daemon=True, name=f"relay-{pump.direction}")
            self._threads.append(t)
            t.start()
        log.info("Relaying %s (version %s)", self.name, self.client_version)

    def disconnect(self) -> None:
        """Close both sockets. Idempotent; blocked pumps wake up and end."""
        self._close("disconnect requested")

    def wait_closed(self, timeout: float | None = None) -> bool:
        """Block until the connection is disconnected."""
        return self._closed.wait(timeout)

    def join(self, timeout: float | None = None) -> None:
        """Wait for both pump threads to finish."""
        for t in self._threads:
            t.join(timeout)

    # ---- Sending ----

    def send_to_server(self, data: bytes) -> Packet:
        return self._send(Direction.C2S, data)

    def send_to_client(self, data: bytes) -> Packet:
        return self._send(Direction.S2C, data)

    def _send(self, direction: str, data: bytes) -> Packet:
        """Inject data as if it came from the other side; it is recorded like relayed data."""
        if not self.is_connected:
            raise ConnectionClosedError(f"Cannot send on {self.name}: not connected")
        sock = self.server_socket if direction == Direction.C2S else self.client_socket
        try:
            # Record under the write lock so records follow wire order
            with self._write_locks[direction]:
                timestamp = time.time()
                sock.sendall(data)
                packet = self._record(direction, bytes(data), timestamp)
        except OSError as e:
            self._close(f"send failed: {e}")
            raise ConnectionClosedError(f"Send on {self.name} failed: {e}") from e
        self._publish(packet)
        return packet

    # ---- Pump callbacks ----

    def _record(self, direction: str, data: bytes, timestamp: float) -> Packet:
        """Append a packet without notifying subscribers."""
        packet = Packet(data=data, direction=direction, timestamp=timestamp)
        self.packets.append(packet)
        return packet

    def _publish(self, packet: Packet) -> None:
        self._emit("packet_appended", packet)

    def _pump_finished(self, pump, error: Exception | None) -> None:
        if error is not None:
            reason = f"{pump.direction} relay error: {error}"
        else:
            reason = f"{'client' if pump.direction == Direction.C2S else 'server'} closed"
        self._close(reason)

    def _close(self, reason: str) -> None:
        with self._state_lock:
            if self._closed.is_set():
                return
            self._closed.set()

        for sock in (self.client_socket, self.server_socket):
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass  # already closed by the peer
            sock.close()

        log.info("Disconnected %s (%s, %d packets)", self.name, reason, len(self.packets))
        self._emit("disconnected")
