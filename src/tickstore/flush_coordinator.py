"""
Flush policy for the tick buffer.

The coordinator decides when buffered ticks are handed to the batch writer
and guarantees that at most one flush runs at a time. Claiming a flush is a
synchronous check-and-schedule on the event loop; draining and writing happen
in the flush task under the flush lock, never under the buffer's own
synchronization.

Failed batches are logged, counted and handed to an optional callback. They
are never requeued.
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Optional, Callable, List, Dict, Any, Sequence

from .batch_writer import BatchWriteError
from .buffer import TickBuffer
from .models import TickRecord, FlushResult

logger = logging.getLogger(__name__)


class WriteTimeoutError(BatchWriteError):
    """The batch write did not finish within the configured timeout."""
    stage = "timeout"


class FlushCoordinator:
    """
    Drains the buffer into the batch writer.

    Features:
    - Threshold flush scheduled after every enqueue that fills a batch
    - Optional periodic flush so sub-threshold tails are persisted
    - Mutual exclusion between all flushes (threshold, periodic, explicit)
    - Per-batch write timeout
    - Graceful shutdown that drains everything still buffered
    """

    def __init__(
        self,
        buffer: TickBuffer,
        writer,
        batch_size: int,
        flush_interval: Optional[float] = None,
        write_timeout: Optional[float] = None,
        on_batch_failed: Optional[Callable[[List[TickRecord], BatchWriteError], Any]] = None,
    ):
        """
        Args:
            buffer: Buffer shared with the feed adapter
            writer: Object with an async write(batch) method
            batch_size: Occupancy that triggers a flush, and the maximum batch size
            flush_interval: Seconds between periodic flushes, None to disable
            write_timeout: Seconds a single batch write may take, None for no limit
            on_batch_failed: Called with the dropped batch and its error
        """
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        if buffer.capacity < batch_size:
            raise ValueError(
                f"Buffer capacity {buffer.capacity} is smaller than batch_size {batch_size}, "
                f"a threshold flush could never trigger"
            )

        self.buffer = buffer
        self.writer = writer
        self.batch_size = batch_size
        self.flush_interval = flush_interval
        self.write_timeout = write_timeout
        self.on_batch_failed = on_batch_failed

        self._flush_lock = asyncio.Lock()
        self._flush_task: Optional[asyncio.Task] = None
        self._periodic_task: Optional[asyncio.Task] = None
        self._running = False
        self._shutdown_event = asyncio.Event()

        self.stats = {
            "flushes_started": 0,
            "flushes_succeeded": 0,
            "flushes_failed": 0,
            "records_written": 0,
            "records_failed": 0,
            "last_flush_time": None,
            "last_error": None,
        }

    async def start(self) -> None:
        """Start the periodic flush loop if an interval is configured."""
        if self._running:
            logger.warning("FlushCoordinator is already running")
            return

        self._running = True
        self._shutdown_event.clear()
        if self.flush_interval:
            self._periodic_task = asyncio.create_task(self._periodic_flush_loop())

        logger.info(
            f"FlushCoordinator started: batch_size={self.batch_size}, "
            f"flush_interval={self.flush_interval}, write_timeout={self.write_timeout}"
        )

    async def stop(self) -> None:
        """Stop periodic flushing, wait for in-flight work and drain the buffer."""
        if not self._running:
            return

        logger.info("Stopping FlushCoordinator...")
        self._running = False
        self._shutdown_event.set()

        if self._periodic_task:
            await self._periodic_task
            self._periodic_task = None

        await self.wait_idle()

        remaining = self.buffer.size()
        if remaining:
            logger.info(f"Flushing {remaining} remaining ticks from buffer...")
        await self.flush(drain_all=True)

        logger.info(
            f"FlushCoordinator stopped. Final stats: "
            f"written={self.stats['records_written']}, failed={self.stats['records_failed']}"
        )

    def on_enqueued(self) -> None:
        """
        Called after every successful enqueue.

        Schedules a threshold flush when a full batch is buffered and no flush
        is running or already scheduled. Contains no await, so the check and
        the claim cannot interleave with another producer.
        """
        self._schedule_if_full()

    def _schedule_if_full(self) -> None:
        if self.buffer.size() < self.batch_size:
            return
        if self.flush_in_progress:
            return

        self._flush_task = asyncio.create_task(self._threshold_flush())

    @property
    def flush_in_progress(self) -> bool:
        if self._flush_lock.locked():
            return True
        return self._flush_task is not None and not self._flush_task.done()

    async def wait_idle(self) -> None:
        """Wait for the currently scheduled threshold flush, if any."""
        task = self._flush_task
        if task is not None and not task.done():
            await asyncio.shield(task)

    async def flush(self, drain_all: bool = False) -> List[FlushResult]:
        """
        Flush buffered ticks in batch_size chunks.

        Writes the records present when the lock is acquired, or keeps going
        until the buffer is empty when drain_all is set.
        """
        results = []
        async with self._flush_lock:
            pending = self.buffer.size()
            while pending > 0 or (drain_all and not self.buffer.empty()):
                limit = self.batch_size if drain_all else min(self.batch_size, pending)
                batch = self.buffer.drain(limit)
                if not batch:
                    break
                pending -= len(batch)
                results.append(await self._write_batch(batch))

        # Producers may have filled a batch while this flush held the lock.
        if not drain_all:
            self._schedule_if_full()
        return results

    async def _threshold_flush(self) -> None:
        async with self._flush_lock:
            while self.buffer.size() >= self.batch_size:
                batch = self.buffer.drain(self.batch_size)
                await self._write_batch(batch)

    async def _periodic_flush_loop(self) -> None:
        """Flush whatever is buffered every flush_interval seconds."""
        while self._running:
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self.flush_interval
                )
                break

            except asyncio.TimeoutError:
                if not self.buffer.empty():
                    await self.flush()

            except Exception as e:
                logger.error(f"Error in periodic flush loop: {e}")
                await asyncio.sleep(1.0)

        logger.debug("Periodic flush loop stopped")

    async def _write_batch(self, batch: Sequence[TickRecord]) -> FlushResult:
        """Write one batch and record the outcome; never raises BatchWriteError."""
        self.stats["flushes_started"] += 1
        started = time.monotonic()

        try:
            if self.write_timeout is not None:
                try:
                    await asyncio.wait_for(self.writer.write(batch), timeout=self.write_timeout)
                except asyncio.TimeoutError as e:
                    raise WriteTimeoutError(
                        f"Batch write exceeded {self.write_timeout}s timeout", len(batch)
                    ) from e
            else:
                await self.writer.write(batch)

        except Exception as e:
            if not isinstance(e, BatchWriteError):
                e = BatchWriteError(f"Unexpected writer error: {e}", len(batch))
            duration_ms = (time.monotonic() - started) * 1000
            self._record_failure(batch, e)
            return FlushResult(
                batch_size=len(batch),
                succeeded=False,
                error=f"{e.stage}: {e}",
                first_observed_at=batch[0].observed_at,
                last_observed_at=batch[-1].observed_at,
                duration_ms=duration_ms,
            )

        duration_ms = (time.monotonic() - started) * 1000
        self.stats["flushes_succeeded"] += 1
        self.stats["records_written"] += len(batch)
        self.stats["last_flush_time"] = datetime.now()

        logger.debug(f"Flushed batch of {len(batch)} ticks in {duration_ms:.1f}ms")
        if self.stats["flushes_succeeded"] % 100 == 0:
            logger.info(f"Flush checkpoint: {self.stats['records_written']} ticks written")

        return FlushResult(
            batch_size=len(batch),
            succeeded=True,
            first_observed_at=batch[0].observed_at,
            last_observed_at=batch[-1].observed_at,
            duration_ms=duration_ms,
        )

    def _record_failure(self, batch: Sequence[TickRecord], error: BatchWriteError) -> None:
        self.stats["flushes_failed"] += 1
        self.stats["records_failed"] += len(batch)
        self.stats["last_error"] = f"{error.stage}: {error}"

        logger.error(
            f"Batch write failed at {error.stage} stage, dropping {len(batch)} ticks "
            f"(first={batch[0].observed_at.isoformat()}, last={batch[-1].observed_at.isoformat()}): {error}"
        )

        if self.on_batch_failed:
            try:
                self.on_batch_failed(list(batch), error)
            except Exception as e:
                logger.error(f"Error in batch failure callback: {e}")

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "flush_in_progress": self.flush_in_progress,
            "is_running": self._running,
            "config": {
                "batch_size": self.batch_size,
                "flush_interval": self.flush_interval,
                "write_timeout": self.write_timeout,
            },
        }
