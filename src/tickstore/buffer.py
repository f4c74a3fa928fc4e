"""
Bounded FIFO buffer between the feed adapter and the flush coordinator.

The buffer never drops records: a producer that finds it full waits until
the consumer drains it. That wait is the only flow control in the pipeline.
"""

import asyncio
import logging
from typing import List, Dict, Any, Optional

from .models import TickRecord

logger = logging.getLogger(__name__)


class TickBuffer:
    """Fixed-capacity async queue of tick records."""

    def __init__(self, capacity: int):
        if capacity <= 0:
            raise ValueError(f"Buffer capacity must be positive, got {capacity}")

        self.capacity = capacity
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=capacity)

        self._enqueued = 0
        self._drained = 0
        self._peak_size = 0
        self._backpressure_waits = 0

    async def enqueue(self, record: TickRecord) -> None:
        """Append a record, waiting for free space when the buffer is full."""
        if self._queue.full():
            self._backpressure_waits += 1
            logger.debug(f"Tick buffer full ({self.capacity}), producer waiting")

        await self._queue.put(record)
        self._enqueued += 1

        size = self._queue.qsize()
        if size > self._peak_size:
            self._peak_size = size

    def size(self) -> int:
        return self._queue.qsize()

    def full(self) -> bool:
        return self._queue.full()

    def empty(self) -> bool:
        return self._queue.empty()

    def drain(self, max_items: int) -> List[TickRecord]:
        """
        Remove and return up to max_items records in FIFO order.

        Runs without yielding to the event loop, so the result is a consistent
        snapshot of the head of the buffer. Returns an empty list if nothing
        is buffered.
        """
        if max_items <= 0:
            raise ValueError(f"max_items must be positive, got {max_items}")

        batch = []
        while len(batch) < max_items:
            try:
                batch.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                break

        self._drained += len(batch)
        return batch

    async def drain_wait(self, max_items: int, timeout: Optional[float] = None) -> List[TickRecord]:
        """
        Like drain(), but wait for at least one record first.

        Returns an empty list if timeout elapses before anything arrives.
        """
        if max_items <= 0:
            raise ValueError(f"max_items must be positive, got {max_items}")

        try:
            first = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return []

        self._drained += 1
        if max_items == 1:
            return [first]
        return [first] + self.drain(max_items - 1)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "size": self._queue.qsize(),
            "capacity": self.capacity,
            "enqueued": self._enqueued,
            "drained": self._drained,
            "peak_size": self._peak_size,
            "backpressure_waits": self._backpressure_waits,
        }
