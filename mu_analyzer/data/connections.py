"""
Connection list — every captured connection of a session, live or loaded.

Architecture:
  LiveConnectionListener → ConnectionList ← load_file(.mucap)
                                 ↓
                      connection_added callbacks (presentation layer)
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Callable, Iterator

from mu_analyzer.sniffer.capture_file import CAPTURE_EXTENSION, load_capture
from mu_analyzer.sniffer.connection import CapturedConnection, LiveConnection, SavedConnection
from mu_analyzer.sniffer.listener import LiveConnectionListener

log = logging.getLogger(__name__)

ConnectionCallback = Callable[[CapturedConnection], None]


class ConnectionList:
    """Ordered, thread-safe list of captured connections."""

    def __init__(self):
        self._connections: list[CapturedConnection] = []
        self._lock = threading.Lock()
        self._callbacks: list[ConnectionCallback] = []

    def add(self, connection: CapturedConnection) -> None:
        with self._lock:
            self._connections.append(connection)
        log.debug("Connection added: %s", connection.name)

        for cb in list(self._callbacks):
            try:
                cb(connection)
            except Exception:
                log.exception("Connection callback error")

    def attach(self, listener: LiveConnectionListener) -> None:
        """Add every connection the listener accepts from now on."""
        listener.on_client_connected(self.add)

    def load_file(self, path: str | Path) -> SavedConnection | None:
        """Load a capture file and add it. Returns None if it had no packets."""
        connection = load_capture(path)
        if not connection.packets:
            log.warning("The file %s couldn't be loaded. It was either empty or in a wrong format.", path)
            return None
        self.add(connection)
        return connection

    def on_connection_added(self, callback: ConnectionCallback) -> None:
        """Subscribe to new connection events."""
        self._callbacks.append(callback)

    def get_by_index(self, index: int) -> CapturedConnection | None:
        """Get connection by 1-based index (for keybind/CLI selection)."""
        with self._lock:
            if 1 <= index <= len(self._connections):
                return self._connections[index - 1]
        return None

    def live_connections(self) -> list[LiveConnection]:
        with self._lock:
            return [c for c in self._connections if isinstance(c, LiveConnection)]

    def disconnect_all(self) -> None:
        for conn in self.live_connections():
            conn.disconnect()

    def save_all(self, directory: str | Path) -> list[Path]:
        """Save every non-empty connection as <index>_<name>.mucap."""
        out_dir = Path(directory)
        saved = []
        for i, conn in enumerate(list(self), start=1):
            if not conn.packets:
                continue
            name = conn.name.removesuffix(CAPTURE_EXTENSION)
            safe = "".join(c if c.isalnum() or c in "._-" else "_" for c in name)
            saved.append(conn.save(out_dir / f"{i:03d}_{safe}{CAPTURE_EXTENSION}"))
        return saved

    def __len__(self) -> int:
        with self._lock:
            return len(self._connections)

    def __iter__(self) -> Iterator[CapturedConnection]:
        with self._lock:
            return iter(list(self._connections))
