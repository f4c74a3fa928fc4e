"""
Wires the feed, buffer, flush coordinator and batch writer into one object.

Every component lives on a TickPipeline instance; nothing is held in module
globals, so several pipelines (for example in tests) can coexist.
"""

import asyncio
import logging
import time
from typing import Optional, Callable, Iterable, Dict, Any, List

from .batch_writer import BatchWriter, BatchWriteError
from .buffer import TickBuffer
from .database import Database
from .feed_adapter import TickFeedAdapter
from .flush_coordinator import FlushCoordinator
from .lifecycle import LifecycleSupervisor
from .models import TickRecord
from .ticker_client import KiteTickerClient, MODE_FULL

logger = logging.getLogger(__name__)

# Seconds to let the feed task finish on its own after stop() before cancelling it
FEED_STOP_TIMEOUT = 5.0


class FeedGivenUpError(Exception):
    """The feed exhausted its reconnection attempts; ingestion cannot resume."""
    pass


class TickPipeline:
    """Tick ingestion pipeline: feed -> buffer -> coordinator -> writer."""

    def __init__(
        self,
        feed,
        database,
        instrument_ids: Iterable[int],
        batch_size: int = 100,
        buffer_capacity: Optional[int] = None,
        flush_interval: Optional[float] = 1.0,
        write_timeout: Optional[float] = 30.0,
        mode: str = MODE_FULL,
        on_fatal: Optional[Callable[[str], Any]] = None,
        on_batch_failed: Optional[Callable[[List[TickRecord], BatchWriteError], Any]] = None,
    ):
        """
        Args:
            feed: Ticker feed with subscribe/set_mode/serve/stop and callback slots
            database: Store exposing initialize/get_connection/close
            instrument_ids: Subscription set, re-asserted on every connect
            batch_size: Batch threshold
            buffer_capacity: Buffer capacity, defaults to 4 * batch_size
            flush_interval: Periodic flush interval in seconds, None to disable
            write_timeout: Per-batch write timeout in seconds, None for no limit
            mode: Streaming mode requested on connect
            on_fatal: Called once with a message when the feed gives up
            on_batch_failed: Called with every batch that could not be written
        """
        self.feed = feed
        self.database = database

        if buffer_capacity is None:
            buffer_capacity = batch_size * 4
        self.buffer = TickBuffer(buffer_capacity)
        self.writer = BatchWriter(database)
        self.coordinator = FlushCoordinator(
            self.buffer,
            self.writer,
            batch_size=batch_size,
            flush_interval=flush_interval,
            write_timeout=write_timeout,
            on_batch_failed=on_batch_failed,
        )
        self.adapter = TickFeedAdapter(feed, self.buffer, self.coordinator, instrument_ids, mode=mode)
        self.supervisor = LifecycleSupervisor(self.adapter, on_fatal=on_fatal)
        self.supervisor.attach(feed)

        self._feed_task: Optional[asyncio.Task] = None
        self._running = False
        self._start_time: Optional[float] = None

    @classmethod
    def from_config(cls, config, on_fatal: Optional[Callable[[str], Any]] = None) -> 'TickPipeline':
        """Build the production pipeline from a TickstoreConfig."""
        return cls(
            feed=KiteTickerClient.from_config(config),
            database=Database(config.DATABASE_URL, pool_size=config.DB_POOL_SIZE),
            instrument_ids=config.INSTRUMENTS,
            batch_size=config.BATCH_SIZE,
            buffer_capacity=config.buffer_capacity,
            flush_interval=config.flush_interval,
            write_timeout=config.write_timeout,
            on_fatal=on_fatal,
        )

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Initialize the store, start flushing and start the feed in the background."""
        if self._running:
            logger.warning("Tick pipeline is already running")
            return

        logger.info(f"Starting tick pipeline for {len(self.adapter.instrument_ids)} instruments")

        await self.database.initialize()
        await self.coordinator.start()

        self._running = True
        self._start_time = time.time()

        self.supervisor.on_connecting()
        self._feed_task = asyncio.create_task(self.feed.serve())

        logger.info("Tick pipeline started")

    async def run(self) -> None:
        """
        Run until the feed stops or gives up, then shut down.

        Raises FeedGivenUpError once everything buffered has been flushed if
        the feed exhausted its reconnection attempts.
        """
        await self.start()

        given_up_task = asyncio.create_task(self.supervisor.given_up.wait())
        try:
            await asyncio.wait(
                {self._feed_task, given_up_task},
                return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            given_up_task.cancel()
            await self.stop()

        if self.supervisor.given_up.is_set():
            status = self.supervisor.status()
            raise FeedGivenUpError(status.error_message or "Feed gave up reconnecting")

    async def stop(self) -> None:
        """Stop the feed, drain the buffer and close the store."""
        if not self._running:
            return

        logger.info("Stopping tick pipeline...")
        self._running = False

        try:
            await self.feed.stop()
        except Exception as e:
            logger.error(f"Error stopping feed: {e}")

        await self._finish_feed_task()

        await self.coordinator.stop()
        await self.database.close()

        logger.info("Tick pipeline stopped")

    async def _finish_feed_task(self) -> None:
        task = self._feed_task
        if task is None:
            return
        self._feed_task = None

        if not task.done():
            try:
                await asyncio.wait_for(task, timeout=FEED_STOP_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning(f"Feed did not stop within {FEED_STOP_TIMEOUT}s, cancelled")
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error(f"Feed task failed: {e}")
            return

        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Feed task failed: {task.exception()}")

    def get_stats(self) -> Dict[str, Any]:
        """Aggregated statistics of every component."""
        return {
            "is_running": self._running,
            "uptime_seconds": time.time() - self._start_time if self._start_time else 0,
            "connection": self.supervisor.get_stats(),
            "feed": self.feed.get_stats(),
            "adapter": self.adapter.get_stats(),
            "buffer": self.buffer.get_stats(),
            "coordinator": self.coordinator.get_stats(),
        }
