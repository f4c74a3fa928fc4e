"""
PostgreSQL connection management and read queries for stored ticks.
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import List, Optional, Dict, Any

import asyncpg

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = os.path.join(os.path.dirname(__file__), 'migrations')

MIGRATION_FILES = [
    '001_create_ticks.sql',
    '002_ticks_indexes.sql',
]


class Database:
    """PostgreSQL pool manager for tick storage."""

    def __init__(
        self,
        database_url: Optional[str] = None,
        pool_size: int = 5,
        command_timeout: float = 20.0,
    ):
        """Initialize database settings; the pool is created lazily."""
        self.database_url = database_url or os.getenv("DATABASE_URL")
        self.pool_size = pool_size
        self.command_timeout = command_timeout
        self._pool = None
        self._init_lock = asyncio.Lock()
        self._initialized = False

    async def initialize(self):
        """Create the connection pool and apply pending migrations."""
        async with self._init_lock:
            if self._initialized:
                return

            if not self.database_url:
                raise ValueError("DATABASE_URL environment variable is required")

            try:
                self._pool = await asyncpg.create_pool(
                    self.database_url,
                    min_size=1,
                    max_size=self.pool_size,
                    command_timeout=self.command_timeout,
                    server_settings={
                        'application_name': 'tickstore',
                        'timezone': 'UTC'
                    }
                )

                async with self._pool.acquire() as conn:
                    await conn.fetchval('SELECT 1')

                await self._run_migrations()

                logger.info(f"PostgreSQL database initialized with pool size {self.pool_size}")
                self._initialized = True

            except Exception as e:
                logger.error(f"Failed to initialize PostgreSQL database: {e}")
                raise

    async def close(self):
        """Close database connection pool."""
        if self._pool:
            await self._pool.close()
            self._pool = None
            self._initialized = False
            logger.info("PostgreSQL database pool closed")

    async def _run_migrations(self):
        """Apply migration files that have not been recorded yet."""
        async with self._pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS migrations (
                    id SERIAL PRIMARY KEY,
                    filename VARCHAR(255) NOT NULL UNIQUE,
                    applied_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
                )
            """)

            for filename in MIGRATION_FILES:
                existing = await conn.fetchrow(
                    "SELECT id FROM migrations WHERE filename = $1",
                    filename
                )

                if existing:
                    logger.debug(f"Migration {filename} already applied")
                    continue

                migration_path = os.path.join(MIGRATIONS_DIR, filename)
                if not os.path.exists(migration_path):
                    logger.warning(f"Migration file not found: {migration_path}")
                    continue

                with open(migration_path, 'r') as f:
                    migration_sql = f.read()

                try:
                    async with conn.transaction():
                        await conn.execute(migration_sql)
                        await conn.execute(
                            "INSERT INTO migrations (filename) VALUES ($1)",
                            filename
                        )
                    logger.info(f"Applied migration: {filename}")
                except Exception as e:
                    logger.error(f"Failed to apply migration {filename}: {e}")
                    raise

    @asynccontextmanager
    async def get_connection(self):
        """Get a database connection from the pool."""
        if not self._initialized:
            await self.initialize()

        async with self._pool.acquire() as conn:
            yield conn

    async def get_tick_count(self, instrument_id: Optional[int] = None) -> int:
        """Count stored ticks, optionally for one instrument."""
        async with self.get_connection() as conn:
            if instrument_id is None:
                count = await conn.fetchval('SELECT COUNT(*) FROM ticks')
            else:
                count = await conn.fetchval(
                    'SELECT COUNT(*) FROM ticks WHERE instrument_id = $1',
                    instrument_id
                )
            return count or 0

    async def get_recent_ticks(self, instrument_id: int, limit: int = 100) -> List[Dict[str, Any]]:
        """Get the most recent ticks for an instrument, newest first."""
        async with self.get_connection() as conn:
            rows = await conn.fetch('''
                SELECT instrument_id, observed_at, price, received_at
                FROM ticks
                WHERE instrument_id = $1
                ORDER BY observed_at DESC, id DESC
                LIMIT $2
            ''', instrument_id, limit)
            return [dict(row) for row in rows]

    async def get_db_stats(self) -> Dict[str, Any]:
        """Get database statistics for debugging."""
        async with self.get_connection() as conn:
            stats = await conn.fetchrow('''
                SELECT
                    COUNT(*) as total_ticks,
                    MIN(observed_at) as oldest_tick,
                    MAX(observed_at) as newest_tick,
                    COUNT(DISTINCT instrument_id) as unique_instruments
                FROM ticks
            ''')

            return {
                "total_ticks": stats["total_ticks"] if stats else 0,
                "oldest_tick": stats["oldest_tick"] if stats else None,
                "newest_tick": stats["newest_tick"] if stats else None,
                "unique_instruments": stats["unique_instruments"] if stats else 0,
                "database_type": "PostgreSQL",
                "pool_size": self.pool_size
            }
