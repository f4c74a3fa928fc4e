"""
Configuration management for tickstore.

Loads environment variables (optionally from a .env file) into a typed
configuration object shared by the pipeline, the ticker client and the
stats server.
"""

import logging
import os
from typing import Optional, Tuple

from dotenv import load_dotenv


class ConfigError(ValueError):
    """Raised when configuration values are missing or invalid."""
    pass


class TickstoreConfig:
    """Configuration for the tick ingestion pipeline."""

    def __init__(self):
        self.ENVIRONMENT: str = os.getenv("ENVIRONMENT", "local")

        # Database
        self.DATABASE_URL: str = self._get_required_env("DATABASE_URL")
        self.DB_POOL_SIZE: int = self._get_int("TICKSTORE_DB_POOL_SIZE", "5")

        # Ticker feed
        self.KITE_API_KEY: str = self._get_required_env("KITE_API_KEY")
        self.KITE_ACCESS_TOKEN: str = self._get_required_env("KITE_ACCESS_TOKEN")
        self.KITE_WS_URL: str = os.getenv("KITE_WS_URL", "wss://ws.kite.trade")
        self.INSTRUMENTS: Tuple[int, ...] = self._parse_instruments()
        self.MAX_RECONNECT_ATTEMPTS: int = self._get_int("TICKSTORE_MAX_RECONNECT_ATTEMPTS", "5")
        self.MAX_RECONNECT_DELAY: int = self._get_int("TICKSTORE_MAX_RECONNECT_DELAY", "60")
        self.CONNECT_TIMEOUT: int = self._get_int("TICKSTORE_CONNECT_TIMEOUT", "30")

        # Buffering and flushing
        self.BATCH_SIZE: int = self._get_int("TICKSTORE_BATCH_SIZE", "100")
        self.BUFFER_MULTIPLIER: int = self._get_int("TICKSTORE_BUFFER_MULTIPLIER", "4")
        self.FLUSH_INTERVAL: float = self._get_float("TICKSTORE_FLUSH_INTERVAL", "1.0")
        self.WRITE_TIMEOUT: float = self._get_float("TICKSTORE_WRITE_TIMEOUT", "30.0")

        # Stats server
        self.HOST: str = os.getenv("TICKSTORE_HOST", "0.0.0.0")
        self.PORT: int = self._get_int("TICKSTORE_PORT", "8000")

        # Logging
        self.LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
        self.LOG_FORMAT: str = os.getenv("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s")

        self._validate_config()

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> 'TickstoreConfig':
        """Load .env (if present) and build the configuration."""
        load_dotenv(env_file)
        return cls()

    @property
    def buffer_capacity(self) -> int:
        return self.BATCH_SIZE * self.BUFFER_MULTIPLIER

    @property
    def flush_interval(self) -> Optional[float]:
        """Periodic flush interval, None when disabled."""
        return self.FLUSH_INTERVAL if self.FLUSH_INTERVAL > 0 else None

    @property
    def write_timeout(self) -> Optional[float]:
        return self.WRITE_TIMEOUT if self.WRITE_TIMEOUT > 0 else None

    def _get_required_env(self, key: str) -> str:
        """Get required environment variable or raise error."""
        value = os.getenv(key)
        if not value:
            # Allow test environments to bypass required env vars
            if self.ENVIRONMENT == "test":
                return f"test_{key.lower()}"
            raise ConfigError(f"Required environment variable {key} is not set")
        return value

    def _get_int(self, key: str, default: str) -> int:
        raw = os.getenv(key, default)
        try:
            return int(raw)
        except ValueError:
            raise ConfigError(f"{key} must be an integer, got {raw!r}")

    def _get_float(self, key: str, default: str) -> float:
        raw = os.getenv(key, default)
        try:
            return float(raw)
        except ValueError:
            raise ConfigError(f"{key} must be a number, got {raw!r}")

    def _parse_instruments(self) -> Tuple[int, ...]:
        """
        Parse TICKSTORE_INSTRUMENTS, a comma-separated list of instrument tokens.

        Duplicates are removed, first occurrence wins.
        """
        raw = os.getenv("TICKSTORE_INSTRUMENTS", "")
        if not raw.strip() and self.ENVIRONMENT == "test":
            return (256265,)

        tokens = []
        for item in raw.split(","):
            item = item.strip()
            if not item:
                continue
            try:
                token = int(item)
            except ValueError:
                raise ConfigError(f"Invalid instrument token: {item!r}")
            if token < 0:
                raise ConfigError(f"Instrument tokens must be unsigned, got {token}")
            if token not in tokens:
                tokens.append(token)

        return tuple(tokens)

    def _validate_config(self) -> None:
        """Validate configuration values."""
        if not self.INSTRUMENTS:
            raise ConfigError("TICKSTORE_INSTRUMENTS cannot be empty")

        if self.BATCH_SIZE <= 0:
            raise ConfigError("TICKSTORE_BATCH_SIZE must be positive")

        if self.BUFFER_MULTIPLIER < 1:
            raise ConfigError("TICKSTORE_BUFFER_MULTIPLIER must be >= 1")

        if self.FLUSH_INTERVAL < 0:
            raise ConfigError("TICKSTORE_FLUSH_INTERVAL must not be negative")

        if self.WRITE_TIMEOUT < 0:
            raise ConfigError("TICKSTORE_WRITE_TIMEOUT must not be negative")

        # Limits enforced by KiteTicker
        if not 0 <= self.MAX_RECONNECT_ATTEMPTS <= 300:
            raise ConfigError("TICKSTORE_MAX_RECONNECT_ATTEMPTS must be between 0 and 300")

        if self.MAX_RECONNECT_DELAY < 5:
            raise ConfigError("TICKSTORE_MAX_RECONNECT_DELAY must be at least 5 seconds")

        if self.CONNECT_TIMEOUT <= 0:
            raise ConfigError("TICKSTORE_CONNECT_TIMEOUT must be positive")

        if self.DB_POOL_SIZE <= 0:
            raise ConfigError("TICKSTORE_DB_POOL_SIZE must be positive")

        if not isinstance(getattr(logging, self.LOG_LEVEL.upper(), None), int):
            raise ConfigError(f"Unknown LOG_LEVEL {self.LOG_LEVEL!r}")


def configure_logging(config: TickstoreConfig) -> None:
    """Configure root logging from LOG_LEVEL and LOG_FORMAT."""
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL.upper()),
        format=config.LOG_FORMAT
    )
