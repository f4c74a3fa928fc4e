"""
Kite Connect ticker client bridged onto the asyncio event loop.

KiteTicker runs its websocket on a Twisted reactor thread and owns packet
parsing, heartbeats and reconnection. Every KiteTicker callback is handed to
the event loop with run_coroutine_threadsafe and the reactor thread waits for
it to finish, so ticks are delivered in order and a full buffer holds the
ticker thread.
"""

import asyncio
import inspect
import logging
from typing import Optional, Dict, Any, Callable, Iterable

from kiteconnect import KiteTicker

logger = logging.getLogger(__name__)

DEFAULT_WS_URL = "wss://ws.kite.trade"

MODE_LTP = KiteTicker.MODE_LTP
MODE_QUOTE = KiteTicker.MODE_QUOTE
MODE_FULL = KiteTicker.MODE_FULL
MODES = (MODE_LTP, MODE_QUOTE, MODE_FULL)


class TickerClientError(Exception):
    """Custom exception for ticker client errors."""
    pass


class KiteTickerClient:
    """
    Async facade over kiteconnect.KiteTicker.

    Callbacks are assigned as attributes, sync or async, and always run on
    the event loop: on_connect(), on_ticks(ticks), on_close(code, reason),
    on_error(error), on_reconnect(attempt, delay), on_noreconnect(attempt).
    """

    def __init__(
        self,
        api_key: str,
        access_token: str,
        websocket_url: str = DEFAULT_WS_URL,
        max_reconnect_attempts: int = 5,
        max_reconnect_delay: int = 60,
        connect_timeout: int = 30,
        ticker: Optional[KiteTicker] = None,
    ):
        """
        Initialize the ticker client.

        Args:
            api_key: Kite Connect API key
            access_token: Session access token
            websocket_url: Ticker endpoint
            max_reconnect_attempts: Reconnection attempts before giving up
            max_reconnect_delay: Maximum delay in seconds between attempts
            connect_timeout: Seconds allowed for each connection attempt
            ticker: Pre-built KiteTicker to wrap instead of creating one
        """
        self.websocket_url = websocket_url
        self.max_reconnect_attempts = max_reconnect_attempts
        self.max_reconnect_delay = max_reconnect_delay

        if ticker is None:
            ticker = KiteTicker(
                api_key,
                access_token,
                root=websocket_url,
                reconnect=True,
                reconnect_max_tries=max_reconnect_attempts,
                reconnect_max_delay=max_reconnect_delay,
                connect_timeout=connect_timeout,
            )
        self.ticker = ticker
        self.ticker.on_connect = self._handle_connect
        self.ticker.on_ticks = self._handle_ticks
        self.ticker.on_close = self._handle_close
        self.ticker.on_error = self._handle_error
        self.ticker.on_reconnect = self._handle_reconnect
        self.ticker.on_noreconnect = self._handle_noreconnect

        self.on_connect: Optional[Callable] = None
        self.on_ticks: Optional[Callable] = None
        self.on_close: Optional[Callable] = None
        self.on_error: Optional[Callable] = None
        self.on_reconnect: Optional[Callable] = None
        self.on_noreconnect: Optional[Callable] = None

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._done = asyncio.Event()
        self.reconnect_attempts = 0
        self.subscribed_tokens: Dict[int, str] = {}

        self.stats = {
            "ticks_received": 0,
            "connections": 0,
            "disconnections": 0,
            "errors": 0,
            "dropped_callbacks": 0,
        }

        logger.info(f"Initialized Kite ticker client for {websocket_url}")

    @property
    def is_connected(self) -> bool:
        return bool(self.ticker.is_connected())

    async def serve(self) -> None:
        """Start the ticker thread and wait until stopped or out of attempts."""
        logger.info("Starting Kite ticker client")
        self._loop = asyncio.get_running_loop()

        if not self._done.is_set():
            self.ticker.connect(threaded=True)
            await self._done.wait()

        logger.info("Kite ticker client stopped")

    async def stop(self) -> None:
        """Stop reconnecting and close the connection."""
        logger.info("Stopping Kite ticker client")
        self._done.set()

        try:
            self.ticker.close()
        except Exception as e:
            logger.error(f"Error closing ticker: {e}")

    async def subscribe(self, instrument_tokens: Iterable[int]) -> None:
        """Subscribe to ticks for the given instrument tokens."""
        tokens = list(instrument_tokens)
        self._require_connection("subscribe")

        try:
            self.ticker.subscribe(tokens)
        except Exception as e:
            raise TickerClientError(f"Failed to subscribe {len(tokens)} instruments: {e}") from e

        for token in tokens:
            self.subscribed_tokens.setdefault(token, MODE_QUOTE)
        logger.info(f"Subscribed to {len(tokens)} instruments")

    async def set_mode(self, mode: str, instrument_tokens: Iterable[int]) -> None:
        """Set the streaming mode for already subscribed tokens."""
        if mode not in MODES:
            raise ValueError(f"Unknown ticker mode {mode!r}, expected one of {MODES}")

        tokens = list(instrument_tokens)
        self._require_connection("mode")

        try:
            self.ticker.set_mode(mode, tokens)
        except Exception as e:
            raise TickerClientError(f"Failed to set {mode} mode: {e}") from e

        for token in tokens:
            self.subscribed_tokens[token] = mode
        logger.info(f"Set {mode} mode for {len(tokens)} instruments")

    def _require_connection(self, command: str) -> None:
        if not self.is_connected:
            raise TickerClientError(f"Cannot send {command} command, ticker is not connected")

    # KiteTicker callbacks, invoked on the ticker thread

    def _handle_connect(self, ws, response) -> None:
        self.reconnect_attempts = 0
        self.stats["connections"] += 1
        logger.info("Ticker WebSocket connection established")
        self._call_in_loop("on_connect")

    def _handle_ticks(self, ws, ticks) -> None:
        self.stats["ticks_received"] += len(ticks)
        self._call_in_loop("on_ticks", ticks)

    def _handle_close(self, ws, code, reason) -> None:
        self.stats["disconnections"] += 1
        logger.warning(f"Ticker connection closed: {code} {reason}")
        self._call_in_loop("on_close", code, reason)

    def _handle_error(self, ws, code, reason) -> None:
        self.stats["errors"] += 1
        logger.error(f"Ticker error: {code} {reason}")
        self._call_in_loop("on_error", TickerClientError(f"{code}: {reason}"))

    def _handle_reconnect(self, ws, attempts_count) -> None:
        self.reconnect_attempts = attempts_count
        delay = self._reconnect_delay()
        logger.info(
            f"Reconnection attempt {attempts_count}/{self.max_reconnect_attempts} "
            f"(delay {delay:.1f}s)"
        )
        self._call_in_loop("on_reconnect", attempts_count, delay)

    def _handle_noreconnect(self, ws) -> None:
        logger.error(f"Exceeded maximum reconnection attempts ({self.max_reconnect_attempts})")
        self._call_in_loop("on_noreconnect", self.reconnect_attempts)

        loop = self._loop
        if loop is not None and not loop.is_closed():
            loop.call_soon_threadsafe(self._done.set)

    def _reconnect_delay(self) -> float:
        """Delay the ticker's reconnecting factory will wait before the next attempt."""
        delay = getattr(getattr(self.ticker, "factory", None), "delay", None)
        if isinstance(delay, (int, float)):
            return min(float(delay), float(self.max_reconnect_delay))
        return 0.0

    def _call_in_loop(self, name: str, *args) -> None:
        """Run a callback slot on the event loop and block until it finishes."""
        loop = self._loop
        if loop is None or loop.is_closed():
            self.stats["dropped_callbacks"] += 1
            logger.warning(f"Event loop not running, dropping {name} callback")
            return

        future = asyncio.run_coroutine_threadsafe(self._dispatch(name, *args), loop)
        try:
            future.result()
        except Exception as e:
            logger.error(f"Error handing {name} to the event loop: {e}")

    async def _dispatch(self, name: str, *args) -> None:
        """Invoke a callback slot; callback errors are logged, never raised."""
        callback = getattr(self, name)
        if callback is None:
            return

        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Error in {name} callback: {e}")

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "is_connected": self.is_connected,
            "reconnect_attempts": self.reconnect_attempts,
            "subscribed_instruments": len(self.subscribed_tokens),
        }

    @classmethod
    def from_config(cls, config) -> 'KiteTickerClient':
        """Create a client from a TickstoreConfig."""
        return cls(
            api_key=config.KITE_API_KEY,
            access_token=config.KITE_ACCESS_TOKEN,
            websocket_url=config.KITE_WS_URL,
            max_reconnect_attempts=config.MAX_RECONNECT_ATTEMPTS,
            max_reconnect_delay=config.MAX_RECONNECT_DELAY,
            connect_timeout=config.CONNECT_TIMEOUT,
        )
