"""
Relay pump — copy one direction of a proxied connection and record it.

Each read becomes exactly one Packet, no matter how the protocol frames it.
The chunk is recorded as soon as it is read, even if forwarding it fails.
Subscribers and the frame splitter run after the forward write, so they
never hold up the byte stream.
"""

from __future__ import annotations

import logging
import socket
import threading
import time
from typing import TYPE_CHECKING

from .stream import MUFrameSplitter

if TYPE_CHECKING:
    from .connection import LiveConnection

log = logging.getLogger(__name__)


class RelayPump:
    """One-directional byte copy loop: source → destination."""

    def __init__(
        self,
        source: socket.socket,
        destination: socket.socket,
        connection: LiveConnection,
        direction: str,
        write_lock: threading.Lock,
        buffer_size: int = 8192,
        parser: MUFrameSplitter | None = None,
    ):
        self.source = source
        self.destination = destination
        self.connection = connection
        self.direction = direction
        self.write_lock = write_lock
        self.buffer_size = buffer_size
        self.parser = parser
        self.chunks = 0
        self.bytes_relayed = 0

    def run(self) -> None:
        """Relay until either socket closes or fails. Always ends the connection."""
        error: Exception | None = None
        try:
            while True:
                data = self.source.recv(self.buffer_size)
                if not data:
                    break
                self.chunks += 1
                packet = None
                try:
                    # Same lock as injected sends: records follow wire order
                    with self.write_lock:
                        packet = self.connection._record(self.direction, data, time.time())
                        self.destination.sendall(data)
                finally:
                    if packet is not None:
                        self.connection._publish(packet)
                self.bytes_relayed += len(data)
                if self.parser is not None:
                    self.parser.feed(self.direction, data)
        except OSError as e:
            error = e
            log.debug("Relay %s on %s stopped: %s", self.direction, self.connection.name, e)
        finally:
            self.connection._pump_finished(self, error)
        log.debug("Relay %s finished: %d chunks, %d bytes", self.direction, self.chunks, self.bytes_relayed)
