"""
MU Frame Splitter — reconstruct MU frames from relayed byte chunks.

A single socket read can hold part of a frame or several frames. The relay
records every read as it is, and additionally feeds it in here:
1. Buffers incoming data per direction
2. Splits into frames using the declared length of the C1-C4 header
3. Emits complete frames

Bytes that don't start a valid header are skipped until the next C1-C4 byte.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable

from mu_analyzer.protocol.packet_types import (
    HEADER_SIZES, HEADER_TYPES, MIN_HEADER_SIZE, Direction, get_packet_size,
)

log = logging.getLogger(__name__)

FrameCallback = Callable[[str, bytes], None]


@dataclass
class StreamBuffer:
    """Buffer for one direction of a relayed stream."""
    direction: str
    buffer: bytearray = field(default_factory=bytearray)
    chunk_count: int = 0
    frames_emitted: int = 0
    bytes_skipped: int = 0

    def append(self, data: bytes) -> None:
        self.buffer.extend(data)
        self.chunk_count += 1

    def consume(self, n: int) -> bytes:
        """Consume n bytes from the front of the buffer."""
        data = bytes(self.buffer[:n])
        del self.buffer[:n]
        return data

    def peek(self, n: int) -> bytes:
        return bytes(self.buffer[:n])

    @property
    def size(self) -> int:
        return len(self.buffer)


class MUFrameSplitter:
    """Split both directions of a connection into MU frames.

    feed() may be called concurrently for different directions; each
    direction has its own buffer and lock.
    """

    def __init__(self):
        self.streams: dict[str, StreamBuffer] = {d: StreamBuffer(d) for d in Direction.ALL}
        self._locks: dict[str, threading.Lock] = {d: threading.Lock() for d in Direction.ALL}
        self.callbacks: list[FrameCallback] = []

    def on_frame(self, callback: FrameCallback) -> None:
        """Register callback for complete frames. Args: (direction, frame)."""
        self.callbacks.append(callback)

    def feed(self, direction: str, data: bytes) -> None:
        """Feed a relayed chunk into the splitter."""
        with self._locks[direction]:
            stream = self.streams[direction]
            stream.append(data)
            frames = self._extract(stream)
        for frame in frames:
            self._emit(direction, frame)

    def _extract(self, stream: StreamBuffer) -> list[bytes]:
        frames = []
        while stream.size > 0:
            if stream.buffer[0] not in HEADER_TYPES:
                self._skip_garbage(stream)
                continue

            if stream.size < MIN_HEADER_SIZE:
                break  # Need more data
            frame_size = get_packet_size(stream.peek(MIN_HEADER_SIZE))
            if frame_size is None or frame_size <= HEADER_SIZES[stream.buffer[0]]:
                # Impossible length, treat the type byte as garbage
                stream.consume(1)
                stream.bytes_skipped += 1
                continue

            if stream.size < frame_size:
                break  # Fragmented

            frames.append(stream.consume(frame_size))
            stream.frames_emitted += 1
        return frames

    def _skip_garbage(self, stream: StreamBuffer) -> None:
        buf = stream.buffer
        end = next((i for i, b in enumerate(buf) if b in HEADER_TYPES), len(buf))
        stream.consume(end)
        stream.bytes_skipped += end
        log.debug("Skipped %d non-frame bytes (%s)", end, stream.direction)

    def _emit(self, direction: str, frame: bytes) -> None:
        for cb in self.callbacks:
            try:
                cb(direction, frame)
            except Exception:
                log.exception("Frame callback error")

    def reset(self) -> None:
        for direction in Direction.ALL:
            with self._locks[direction]:
                self.streams[direction].buffer.clear()

    def stats(self) -> dict:
        return {
            d: {
                "buffered": s.size,
                "chunks": s.chunk_count,
                "frames": s.frames_emitted,
                "skipped": s.bytes_skipped,
            }
            for d, s in self.streams.items()
        }
