"""
Packet View — the filtered, live-updating packet list of one connection.

The view keeps a cursor into the connection's packet list. Every packet is
tested against the filter exactly once, in list order, when the cursor
passes it; changing the filter or the connection rebuilds from the start.

Relay threads deliver appends. They never wait for the view: if the view is
busy, whoever holds it picks up the pending packets before letting go.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Callable

from mu_analyzer.sniffer.connection import CapturedConnection
from mu_analyzer.sniffer.packet import Packet
from .filter import FilterPredicate, compile_filter

log = logging.getLogger(__name__)

PacketCallback = Callable[[Packet], None]
ResetCallback = Callable[[], None]


class PacketView:
    """Filtered view over a CapturedConnection."""

    def __init__(self, connection: CapturedConnection | None = None, filter_text: str = ""):
        self._lock = threading.RLock()
        self._connection: CapturedConnection | None = None
        self._predicate: FilterPredicate | None = None
        self._filter_text = ""
        self._visible: list[Packet] = []
        self._cursor = 0
        self._draining = False
        self.evaluations = 0
        self._added_callbacks: list[PacketCallback] = []
        self._reset_callbacks: list[ResetCallback] = []

        if filter_text:
            self.set_filter(filter_text)
        if connection is not None:
            self.set_connection(connection)

    # ---- Properties ----

    @property
    def connection(self) -> CapturedConnection | None:
        return self._connection

    @property
    def predicate(self) -> FilterPredicate | None:
        return self._predicate

    @property
    def filter_text(self) -> str:
        return self._filter_text

    @property
    def packets(self) -> list[Packet]:
        """Visible packets in capture order."""
        with self._locked():
            return list(self._visible)

    def __len__(self) -> int:
        with self._locked():
            return len(self._visible)

    # ---- Events ----

    def on_packet_added(self, callback: PacketCallback) -> None:
        """Called for each packet that passes the filter after the last reset."""
        self._added_callbacks.append(callback)

    def on_reset(self, callback: ResetCallback) -> None:
        """Called after the view was rebuilt (new filter or connection)."""
        self._reset_callbacks.append(callback)

    # ---- Changes ----

    def set_filter(self, text: str | None) -> None:
        """Replace the filter. Raises FilterError and keeps the old view if `text` is invalid."""
        predicate = compile_filter(text)
        with self._locked():
            self._predicate = predicate
            self._filter_text = text or ""
            self._rebuild()
        log.debug("Filter set: %s", predicate or "<none>")

    def set_connection(self, connection: CapturedConnection | None) -> None:
        with self._locked():
            if self._connection is not None:
                self._connection.off_packet_appended(self._on_packet_appended)
            self._connection = connection
            if connection is not None:
                connection.on_packet_appended(self._on_packet_appended)
            self._rebuild()

    def close(self) -> None:
        self.set_connection(None)

    # ---- Internals ----

    @contextmanager
    def _locked(self):
        with self._lock:
            yield
        self._catch_up()

    def _rebuild(self) -> None:
        self._visible = []
        self._cursor = 0
        self._drain()
        for cb in list(self._reset_callbacks):
            try:
                cb()
            except Exception:
                log.exception("View reset callback error")

    def _on_packet_appended(self, connection: CapturedConnection, packet: Packet) -> None:
        if connection is self._connection:
            self._catch_up()

    def _pending(self) -> bool:
        conn = self._connection
        return conn is not None and self._cursor < len(conn.packets)

    def _catch_up(self) -> None:
        while self._pending():
            if not self._lock.acquire(blocking=False):
                return  # the holder catches up on release
            try:
                if self._draining:
                    return
                self._draining = True
                try:
                    for packet in self._drain():
                        self._emit(packet)
                finally:
                    self._draining = False
            finally:
                self._lock.release()

    def _drain(self) -> list[Packet]:
        """Test packets from the cursor to the end. Must hold the lock."""
        added = []
        conn = self._connection
        if conn is None:
            return added
        packets = conn.packets
        while self._cursor < len(packets):
            packet = packets[self._cursor]
            self._cursor += 1
            if self._predicate is not None:
                self.evaluations += 1
                if not self._predicate(packet):
                    continue
            self._visible.append(packet)
            added.append(packet)
        return added

    def _emit(self, packet: Packet) -> None:
        for cb in list(self._added_callbacks):
            try:
                cb(packet)
            except Exception:
                log.exception("View callback error")
