"""
Feed connection lifecycle supervision.

The supervisor tracks the feed's connection state machine, drives
resubscription through the feed adapter on every connect, and turns
reconnection exhaustion into a single fatal signal for the process.
Closing or erroring never touches the buffer: ticks already buffered stay
pending until the next flush.
"""

import asyncio
import logging
from collections import deque
from datetime import datetime
from typing import Optional, Callable, Dict, Any, Deque, Tuple

from .models import ConnectionState, ConnectionStatus

logger = logging.getLogger(__name__)

MAX_TRANSITION_HISTORY = 100


class LifecycleSupervisor:
    """Reacts to feed lifecycle notifications."""

    def __init__(self, adapter, on_fatal: Optional[Callable[[str], Any]] = None):
        self.adapter = adapter
        self.on_fatal = on_fatal

        self._state = ConnectionState.DISCONNECTED
        self._last_connected: Optional[datetime] = None
        self._reconnect_attempts = 0
        self._error_message: Optional[str] = None
        self._fatal_reported = False
        self.given_up = asyncio.Event()
        self.transitions: Deque[Tuple[ConnectionState, ConnectionState]] = deque(maxlen=MAX_TRANSITION_HISTORY)

    @property
    def state(self) -> ConnectionState:
        return self._state

    def attach(self, feed) -> None:
        """Register lifecycle and tick handlers on the feed's callback slots."""
        feed.on_connect = self.on_connected
        feed.on_ticks = self.adapter.handle_ticks
        feed.on_reconnect = self.on_reconnecting
        feed.on_noreconnect = self.on_give_up
        feed.on_close = self.on_closed
        feed.on_error = self.on_errored

    def _transition(self, new_state: ConnectionState) -> None:
        old_state = self._state
        self._state = new_state
        self.transitions.append((old_state, new_state))
        logger.info(f"Feed state {old_state.value} -> {new_state.value}")

    def on_connecting(self) -> None:
        if self._fatal_reported:
            return
        self._transition(ConnectionState.CONNECTING)

    async def on_connected(self) -> None:
        """Resubscribe before the feed starts delivering ticks again."""
        if self._fatal_reported:
            logger.warning("Ignoring connect notification after feed gave up")
            return

        self._transition(ConnectionState.CONNECTED)
        self._last_connected = datetime.now()
        self._reconnect_attempts = 0
        self._error_message = None

        await self.adapter.handle_connect()

    def on_reconnecting(self, attempt: int, delay: float) -> None:
        if self._fatal_reported:
            return

        self._reconnect_attempts = attempt
        self.adapter.handle_disconnect()
        logger.warning(f"Feed reconnect attempt {attempt} in {delay:.1f}s")

        if self._state != ConnectionState.RECONNECTING:
            self._transition(ConnectionState.RECONNECTING)

    def on_give_up(self, attempt: int) -> None:
        """Report reconnection exhaustion exactly once."""
        if self._fatal_reported:
            return

        self._fatal_reported = True
        self._reconnect_attempts = attempt
        self._error_message = f"Gave up after {attempt} reconnection attempts"
        self.adapter.handle_disconnect()
        self._transition(ConnectionState.GIVEN_UP)

        logger.critical(
            f"Feed reconnection exhausted after {attempt} attempts; "
            f"the process must be restarted to resume ingestion"
        )
        self.given_up.set()

        if self.on_fatal:
            try:
                self.on_fatal(self._error_message)
            except Exception as e:
                logger.error(f"Error in fatal callback: {e}")

    def on_closed(self, code: Optional[int], reason: Optional[str]) -> None:
        logger.warning(f"Feed connection closed: {code} {reason}")
        self.adapter.handle_disconnect()
        if not self._fatal_reported:
            self._transition(ConnectionState.CLOSED)

    def on_errored(self, error: Exception) -> None:
        """
        Record a feed error.

        Errors reported while connected keep the state; a close notification
        follows if the socket drops.
        """
        logger.error(f"Feed error: {error}")
        self._error_message = str(error)
        if self._fatal_reported or self._state == ConnectionState.CONNECTED:
            return
        self._transition(ConnectionState.ERRORED)

    def status(self) -> ConnectionStatus:
        return ConnectionStatus(
            state=self._state,
            last_connected=self._last_connected,
            reconnect_attempts=self._reconnect_attempts,
            error_message=self._error_message,
        )

    def get_stats(self) -> Dict[str, Any]:
        status = self.status()
        return {
            "state": status.state.value,
            "last_connected": status.last_connected.isoformat() if status.last_connected else None,
            "reconnect_attempts": status.reconnect_attempts,
            "error_message": status.error_message,
            "given_up": self.given_up.is_set(),
        }
