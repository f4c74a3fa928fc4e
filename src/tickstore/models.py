"""
Pydantic models for feed ticks, connection state and flush outcomes.
"""

import math
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

MAX_INSTRUMENT_ID = 2 ** 32


class TickRecord(BaseModel):
    """A single normalized market tick, ready to be persisted."""
    model_config = ConfigDict(frozen=True)

    instrument_id: int = Field(..., description="Exchange instrument token")
    observed_at: datetime = Field(..., description="Exchange timestamp of the tick")
    price: float = Field(..., description="Last traded price")

    @field_validator('instrument_id')
    @classmethod
    def validate_instrument_id(cls, v):
        """Instrument tokens are unsigned 32-bit integers."""
        if not 0 <= v < MAX_INSTRUMENT_ID:
            raise ValueError(f"Instrument id must be an unsigned 32-bit integer, got {v}")
        return v

    @field_validator('observed_at')
    @classmethod
    def validate_observed_at(cls, v):
        """Treat naive timestamps as UTC so every record is comparable."""
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @field_validator('price')
    @classmethod
    def validate_price(cls, v):
        if not math.isfinite(v):
            raise ValueError(f"Price must be a finite number, got {v}")
        return v

    @classmethod
    def from_feed_tick(cls, tick: Dict[str, Any]) -> 'TickRecord':
        """
        Build a record from a tick dict produced by the ticker client.

        The exchange timestamp is preferred; full-mode packets for instruments
        without one fall back to the last trade time.
        """
        observed_at = tick.get("exchange_timestamp") or tick.get("last_trade_time")
        if observed_at is None:
            raise ValueError(
                f"Tick for instrument {tick.get('instrument_token')} carries no timestamp"
            )

        return cls(
            instrument_id=tick["instrument_token"],
            observed_at=observed_at,
            price=tick["last_price"],
        )

    def as_row(self) -> Tuple[int, datetime, float]:
        """Positional parameters for the tick insert statement."""
        return (self.instrument_id, self.observed_at, self.price)


class ConnectionState(str, Enum):
    """Lifecycle states of the feed connection."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    GIVEN_UP = "given_up"
    CLOSED = "closed"
    ERRORED = "errored"


class ConnectionStatus(BaseModel):
    """Feed connection status information."""
    state: ConnectionState = Field(..., description="Current lifecycle state")
    last_connected: Optional[datetime] = Field(None, description="Last successful connection time")
    reconnect_attempts: int = Field(default=0, description="Number of reconnection attempts")
    error_message: Optional[str] = Field(None, description="Last error message if any")

    @property
    def connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED


class FlushResult(BaseModel):
    """Outcome of a single batch write attempted by the flush coordinator."""
    batch_size: int = Field(..., description="Number of records in the batch")
    succeeded: bool = Field(..., description="Whether the transaction committed")
    error: Optional[str] = Field(None, description="Failure description for failed batches")
    first_observed_at: Optional[datetime] = Field(None, description="Timestamp of the first record")
    last_observed_at: Optional[datetime] = Field(None, description="Timestamp of the last record")
    duration_ms: float = Field(default=0.0, description="Wall time spent writing the batch")
