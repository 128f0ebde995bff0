"""
Live connection listener — the proxy's accept side.

For each client that connects to the listen port, a connection to the
target server is opened and both sockets are handed to a LiveConnection.
Target host/port and client version can change at runtime; changes apply
to connections accepted afterwards.
"""

from __future__ import annotations

import json
import logging
import socket
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from mu_analyzer.protocol.packet_types import DEFAULT_CLIENT_VERSION, ClientVersion
from .connection import DEFAULT_BUFFER_SIZE, ConnectionClosedError, LiveConnection

log = logging.getLogger(__name__)

DEFAULT_LISTEN_PORT = 55902
DEFAULT_TARGET_HOST = "127.0.0.1"
DEFAULT_TARGET_PORT = 55901

# accept() wakes up this often to notice stop()
ACCEPT_POLL_INTERVAL = 0.5


class ListenerError(Exception):
    """The listener could not be started."""


# ---- Configuration ----

@dataclass
class ProxyConfig:
    """Proxy listener configuration."""
    listen_port: int = DEFAULT_LISTEN_PORT
    target_host: str = DEFAULT_TARGET_HOST
    target_port: int = DEFAULT_TARGET_PORT
    client_version: ClientVersion = field(default=DEFAULT_CLIENT_VERSION)
    # Interface to listen on
    bind_host: str = "0.0.0.0"
    # Max bytes per socket read (one read = one recorded packet)
    buffer_size: int = DEFAULT_BUFFER_SIZE
    # Timeout for connecting to the target server (seconds)
    connect_timeout: float = 10.0
    backlog: int = 5

    def __post_init__(self):
        if not 0 <= self.listen_port <= 65535:
            raise ValueError(f"Invalid listen port: {self.listen_port}")
        if not 0 < self.target_port <= 65535:
            raise ValueError(f"Invalid target port: {self.target_port}")
        if self.buffer_size <= 0:
            raise ValueError(f"Invalid buffer size: {self.buffer_size}")

    def to_dict(self) -> dict:
        return {
            "listen_port": self.listen_port,
            "target_host": self.target_host,
            "target_port": self.target_port,
            "client_version": self.client_version.to_dict(),
            "bind_host": self.bind_host,
            "buffer_size": self.buffer_size,
            "connect_timeout": self.connect_timeout,
            "backlog": self.backlog,
        }

    @classmethod
    def from_dict(cls, d: dict) -> ProxyConfig:
        d = dict(d)
        if "client_version" in d:
            d["client_version"] = ClientVersion.from_dict(d["client_version"])
        return cls(**d)

    @classmethod
    def load(cls, path: str | Path) -> ProxyConfig:
        """Load a config from a JSON file."""
        return cls.from_dict(json.loads(Path(path).read_text()))


# ---- Listener ----

ConnectedCallback = Callable[[LiveConnection], None]
FailedCallback = Callable[[tuple, Exception], None]


class LiveConnectionListener:
    """Accept clients and proxy each one to the target server."""

    def __init__(self, config: ProxyConfig | None = None):
        self.config = config or ProxyConfig()
        self._lock = threading.Lock()
        self._sock: socket.socket | None = None
        self._thread: threading.Thread | None = None
        self._running = False
        self._connections: list[LiveConnection] = []
        self._connected_callbacks: list[ConnectedCallback] = []
        self._failed_callbacks: list[FailedCallback] = []

    # ---- Runtime configuration (applies to new connections) ----

    @property
    def target_host(self) -> str:
        return self.config.target_host

    @target_host.setter
    def target_host(self, value: str) -> None:
        with self._lock:
            self.config.target_host = value

    @property
    def target_port(self) -> int:
        return self.config.target_port

    @target_port.setter
    def target_port(self, value: int) -> None:
        if not 0 < value <= 65535:
            raise ValueError(f"Invalid target port: {value}")
        with self._lock:
            self.config.target_port = value

    @property
    def client_version(self) -> ClientVersion:
        return self.config.client_version

    @client_version.setter
    def client_version(self, value: ClientVersion) -> None:
        with self._lock:
            self.config.client_version = value

    # ---- Events ----

    def on_client_connected(self, callback: ConnectedCallback) -> None:
        """Subscribe to new proxied connections. Called before the connection starts relaying."""
        self._connected_callbacks.append(callback)

    def off_client_connected(self, callback: ConnectedCallback) -> None:
        if callback in self._connected_callbacks:
            self._connected_callbacks.remove(callback)

    def on_connection_failed(self, callback: FailedCallback) -> None:
        """Subscribe to failed target connects. Args: (client_address, error)."""
        self._failed_callbacks.append(callback)

    def off_connection_failed(self, callback: FailedCallback) -> None:
        if callback in self._failed_callbacks:
            self._failed_callbacks.remove(callback)

    def _notify(self, callbacks: list, *args) -> None:
        for cb in list(callbacks):
            try:
                cb(*args)
            except Exception:
                log.exception("Listener callback error")

    # ---- Lifecycle ----

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def listen_address(self) -> tuple[str, int] | None:
        """Bound (host, port), or None when not running."""
        sock = self._sock
        if sock is None:
            return None
        return sock.getsockname()[:2]

    @property
    def open_connections(self) -> list[LiveConnection]:
        with self._lock:
            return list(self._connections)

    def start(self) -> None:
        """Bind and start accepting. Raises ListenerError if the port can't be bound."""
        with self._lock:
            if self._running:
                raise ListenerError("Listener already running")
            cfg = self.config
            sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            try:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
                sock.bind((cfg.bind_host, cfg.listen_port))
                sock.listen(cfg.backlog)
            except OSError as e:
                sock.close()
                raise ListenerError(f"Cannot listen on {cfg.bind_host}:{cfg.listen_port}: {e}") from e
            sock.settimeout(ACCEPT_POLL_INTERVAL)
            self._sock = sock
            self._running = True

        self._thread = threading.Thread(target=self._accept_loop, args=(sock,), daemon=True, name="accept")
        self._thread.start()
        host, port = self.listen_address
        log.info("Listening on %s:%d → %s:%d", host, port, cfg.target_host, cfg.target_port)

    def stop(self) -> None:
        """Close the listening socket and every open connection."""
        with self._lock:
            if not self._running:
                return
            self._running = False
            sock, self._sock = self._sock, None
            connections, self._connections = self._connections, []

        sock.close()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(ACCEPT_POLL_INTERVAL * 4)
        for conn in connections:
            conn.disconnect()
        log.info("Listener stopped (%d connections closed)", len(connections))

    def _accept_loop(self, sock: socket.socket) -> None:
        while self._running:
            try:
                client, address = sock.accept()
            except socket.timeout:
                continue
            except OSError as e:
                if self._running:
                    log.error("Accept failed: %s", e)
                break
            client.settimeout(None)
            threading.Thread(
                target=self._handle_client, args=(client, address), daemon=True, name="connect",
            ).start()

    def _handle_client(self, client: socket.socket, address: tuple) -> None:
        with self._lock:
            cfg = self.config
            host, port, version = cfg.target_host, cfg.target_port, cfg.client_version
            timeout, buffer_size = cfg.connect_timeout, cfg.buffer_size

        log.info("Client connected from %s:%d, connecting to %s:%d", address[0], address[1], host, port)
        try:
            server = socket.create_connection((host, port), timeout=timeout)
            server.settimeout(None)
        except OSError as e:
            log.warning("Connection to %s:%d for client %s:%d failed: %s", host, port, address[0], address[1], e)
            client.close()
            self._notify(self._failed_callbacks, address, e)
            return

        conn = LiveConnection(client, server, client_version=version, buffer_size=buffer_size)
        with self._lock:
            if not self._running:
                # stop() ran while we were connecting
                client.close()
                server.close()
                return
            self._connections.append(conn)
        conn.on_disconnected(self._forget)
        # Subscribers attach before the first byte is relayed
        self._notify(self._connected_callbacks, conn)
        try:
            conn.start()
        except ConnectionClosedError:
            log.debug("%s closed before relaying started", conn.name)

    def _forget(self, conn: LiveConnection) -> None:
        with self._lock:
            if conn in self._connections:
                self._connections.remove(conn)

    def __enter__(self) -> LiveConnectionListener:
        self.start()
        return self

    def __exit__(self, *exc) -> None:
        self.stop()
