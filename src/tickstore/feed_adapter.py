"""
Bridges the ticker feed to the tick buffer.

On every (re)connect the adapter re-asserts the full subscription in full
mode. Every inbound tick is normalized into a TickRecord and enqueued
directly; when the buffer is full the enqueue waits, which in turn holds the
feed's delivery loop until the flush coordinator makes room.
"""

import logging
from datetime import datetime
from typing import Iterable, Tuple, Dict, Any, List

from pydantic import ValidationError

from .buffer import TickBuffer
from .models import TickRecord
from .ticker_client import MODE_FULL

logger = logging.getLogger(__name__)


class TickFeedAdapter:
    """Normalizes feed ticks and submits them to the buffer."""

    def __init__(
        self,
        feed,
        buffer: TickBuffer,
        coordinator,
        instrument_ids: Iterable[int],
        mode: str = MODE_FULL,
    ):
        self.feed = feed
        self.buffer = buffer
        self.coordinator = coordinator
        self.instrument_ids: Tuple[int, ...] = tuple(instrument_ids)
        self.mode = mode

        self._accepting = False

        self.stats = {
            "ticks_received": 0,
            "ticks_enqueued": 0,
            "ticks_invalid": 0,
            "ticks_rejected": 0,
            "subscriptions": 0,
            "subscription_errors": 0,
            "last_tick_time": None,
        }

    @property
    def accepting(self) -> bool:
        return self._accepting

    async def handle_connect(self) -> bool:
        """
        Subscribe to every configured instrument and request full mode.

        Failures are logged and counted, never raised. Ticks are accepted
        again afterwards. Returns True when both commands were sent.
        """
        ok = True
        try:
            await self.feed.subscribe(self.instrument_ids)
            await self.feed.set_mode(self.mode, self.instrument_ids)
            self.stats["subscriptions"] += 1
            logger.info(
                f"Subscribed to {len(self.instrument_ids)} instruments in {self.mode} mode"
            )
        except Exception as e:
            ok = False
            self.stats["subscription_errors"] += 1
            logger.error(f"Failed to subscribe to instruments {list(self.instrument_ids)}: {e}")

        self._accepting = True
        return ok

    def handle_disconnect(self) -> None:
        """Stop accepting ticks until the subscription is re-asserted."""
        self._accepting = False

    async def handle_ticks(self, ticks: List[Dict[str, Any]]) -> int:
        """
        Enqueue a delivery of ticks in order.

        Returns the number of records enqueued.
        """
        enqueued = 0
        for tick in ticks:
            self.stats["ticks_received"] += 1

            if not self._accepting:
                self.stats["ticks_rejected"] += 1
                logger.warning(
                    f"Rejected tick for instrument {tick.get('instrument_token')} "
                    f"received before subscription was re-asserted"
                )
                continue

            try:
                record = TickRecord.from_feed_tick(tick)
            except (KeyError, ValueError, ValidationError) as e:
                self.stats["ticks_invalid"] += 1
                logger.error(f"Failed to normalize tick: {e}")
                logger.debug(f"Raw tick: {tick}")
                continue

            await self.buffer.enqueue(record)
            self.coordinator.on_enqueued()

            enqueued += 1
            self.stats["ticks_enqueued"] += 1
            self.stats["last_tick_time"] = datetime.now()

        return enqueued

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "accepting": self._accepting,
            "instruments": len(self.instrument_ids),
            "mode": self.mode,
        }
