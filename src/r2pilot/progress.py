"""Progress reporting from the transfer core to the presentation layer.

The core publishes ``ProgressEvent`` values into a ``ProgressChannel`` and
never waits for the consumer: the channel is bounded and drops the oldest
event when full. A slow progress bar sees fewer, newer events; the transfer
itself is never slowed down.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import AsyncIterator, Callable

from r2pilot.models import ProgressEvent

ProgressCallback = Callable[[ProgressEvent], None]


class ProgressChannel:
    """Bounded, drop-oldest, single-consumer event channel.

    Attributes:
        capacity: Maximum number of undelivered events kept.
        dropped: Number of events discarded because the buffer was full.
    """

    def __init__(self, capacity: int = 64, callback: ProgressCallback | None = None) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self.dropped = 0
        self._buffer: deque[ProgressEvent] = deque()
        self._callback = callback
        self._ready = asyncio.Event()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, event: ProgressEvent) -> None:
        """Enqueue ``event`` without blocking; drop the oldest if full."""
        if self._closed:
            raise RuntimeError("progress channel is closed")
        if len(self._buffer) >= self.capacity:
            self._buffer.popleft()
            self.dropped += 1
        self._buffer.append(event)
        self._ready.set()
        if self._callback is not None:
            self._callback(event)

    def close(self) -> None:
        """Mark the end of the stream; consumers drain then stop."""
        self._closed = True
        self._ready.set()

    def drain(self) -> list[ProgressEvent]:
        """Return and clear every buffered event."""
        events = list(self._buffer)
        self._buffer.clear()
        return events

    async def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        while True:
            if self._buffer:
                yield self._buffer.popleft()
                continue
            if self._closed:
                return
            self._ready.clear()
            await self._ready.wait()


class ProgressTracker:
    """Accumulates bytes for one transfer and publishes monotonic events."""

    def __init__(self, total_bytes: int, channel: ProgressChannel | None = None) -> None:
        self.total_bytes = total_bytes
        self.bytes_transferred = 0
        self._channel = channel

    def advance(self, nbytes: int, part_number: int | None = None) -> ProgressEvent:
        """Add ``nbytes`` to the running total and publish the new state.

        Raises:
            ValueError: If nbytes is negative.
        """
        if nbytes < 0:
            raise ValueError("progress cannot go backwards")
        self.bytes_transferred += nbytes
        event = ProgressEvent(
            bytes_transferred=self.bytes_transferred,
            total_bytes=self.total_bytes,
            part_number=part_number,
        )
        if self._channel is not None:
            self._channel.publish(event)
        return event
