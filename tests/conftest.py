"""
Shared fixtures and in-memory fakes for tickstore tests.

FakeDatabase mimics the parts of an asyncpg pool the pipeline uses: rows
inserted inside a transaction stay staged until commit and are discarded on
rollback, so tests can assert on exactly what became visible.
"""

import asyncio
import inspect
import os
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from tickstore.models import TickRecord

# Config objects built in tests must not require real credentials.
os.environ.setdefault("ENVIRONMENT", "test")

BASE_TIME = datetime(2024, 1, 15, 9, 15, tzinfo=timezone.utc)


def make_tick(token: int = 256265, price: float = 21500.5, seconds: int = 0) -> Dict[str, Any]:
    """A raw tick dict as produced by the ticker client."""
    return {
        "instrument_token": token,
        "last_price": price,
        "exchange_timestamp": BASE_TIME + timedelta(seconds=seconds),
        "mode": "full",
        "tradable": True,
    }


def make_records(count: int, token: int = 256265, start: int = 0) -> List[TickRecord]:
    """Records with strictly increasing timestamps and prices."""
    return [
        TickRecord(
            instrument_id=token,
            observed_at=BASE_TIME + timedelta(seconds=start + i),
            price=100.0 + start + i,
        )
        for i in range(count)
    ]


class FakeStatement:
    def __init__(self, transaction: "FakeTransaction"):
        self.transaction = transaction

    async def fetchval(self, *args):
        db = self.transaction.db
        db.insert_calls += 1
        if db.fail_row is not None and len(self.transaction.staged) == db.fail_row:
            raise RuntimeError(f"insert rejected at row {db.fail_row}")
        if db.insert_delay:
            await asyncio.sleep(db.insert_delay)
        self.transaction.staged.append(args)
        return None


class FakeTransaction:
    def __init__(self, db: "FakeDatabase"):
        self.db = db
        self.staged: List[tuple] = []
        self.started = False
        self.committed = False
        self.rolled_back = False

    async def start(self):
        if self.db.fail_stage == "begin":
            raise RuntimeError("cannot begin transaction")
        self.started = True
        self.db.active_transactions += 1
        self.db.max_concurrent_transactions = max(
            self.db.max_concurrent_transactions, self.db.active_transactions
        )

    async def commit(self):
        if self.db.commit_delay:
            await asyncio.sleep(self.db.commit_delay)
        if self.db.fail_stage == "commit":
            raise RuntimeError("commit failed")
        self.db.rows.extend(self.staged)
        self.db.committed_batches.append(list(self.staged))
        self.committed = True
        self.db.active_transactions -= 1

    async def rollback(self):
        if self.db.fail_stage == "rollback":
            raise RuntimeError("rollback failed")
        self.staged.clear()
        self.rolled_back = True
        self.db.rollbacks += 1
        if self.started and not self.committed:
            self.db.active_transactions -= 1


class FakeConnection:
    def __init__(self, db: "FakeDatabase"):
        self.db = db
        self.transactions: List[FakeTransaction] = []

    def transaction(self):
        transaction = FakeTransaction(self.db)
        self.transactions.append(transaction)
        self.db.transactions.append(transaction)
        return transaction

    async def prepare(self, sql: str):
        if self.db.fail_stage == "prepare":
            raise RuntimeError("syntax error")
        self.db.prepared_sql.append(sql)
        return FakeStatement(self.transactions[-1])


class FakeDatabase:
    """In-memory stand-in for tickstore.database.Database."""

    def __init__(self):
        self.rows: List[tuple] = []
        self.committed_batches: List[List[tuple]] = []
        self.transactions: List[FakeTransaction] = []
        self.prepared_sql: List[str] = []

        self.fail_stage: Optional[str] = None
        self.fail_row: Optional[int] = None
        self.fail_acquire = False
        self.fail_release = False
        self.insert_delay = 0.0
        self.commit_delay = 0.0

        self.insert_calls = 0
        self.rollbacks = 0
        self.active_transactions = 0
        self.max_concurrent_transactions = 0

        self.initialized = False
        self.closed = False

    async def initialize(self):
        self.initialized = True

    async def close(self):
        self.closed = True

    @asynccontextmanager
    async def get_connection(self):
        if self.fail_acquire:
            raise ConnectionError("pool exhausted")
        try:
            yield FakeConnection(self)
        finally:
            if self.fail_release:
                raise ConnectionError("connection reset during release")

    async def get_recent_ticks(self, instrument_id: int, limit: int = 100):
        rows = [row for row in self.rows if row[0] == instrument_id]
        rows.sort(key=lambda row: row[1], reverse=True)
        return [
            {"instrument_id": row[0], "observed_at": row[1], "price": row[2]}
            for row in rows[:limit]
        ]

    async def get_db_stats(self):
        return {
            "total_ticks": len(self.rows),
            "unique_instruments": len({row[0] for row in self.rows}),
            "database_type": "memory",
        }


class FakeFeed:
    """Feed with the ticker client's shape; tests fire its callbacks directly."""

    def __init__(self):
        self.on_connect = None
        self.on_ticks = None
        self.on_close = None
        self.on_error = None
        self.on_reconnect = None
        self.on_noreconnect = None

        self.commands: List[tuple] = []
        self.fail_subscribe = False
        self.served = False
        self.stopped = False
        self._stop_event = asyncio.Event()

    async def subscribe(self, tokens):
        if self.fail_subscribe:
            raise ConnectionError("socket closed")
        self.commands.append(("subscribe", list(tokens)))

    async def set_mode(self, mode, tokens):
        self.commands.append(("mode", mode, list(tokens)))

    async def serve(self):
        self.served = True
        await self._stop_event.wait()

    async def stop(self):
        self.stopped = True
        self._stop_event.set()

    def get_stats(self):
        return {"commands": len(self.commands), "stopped": self.stopped}

    async def fire(self, name: str, *args):
        callback = getattr(self, name)
        result = callback(*args)
        if inspect.isawaitable(result):
            result = await result
        return result


@pytest.fixture
def fake_db():
    return FakeDatabase()


@pytest.fixture
def fake_feed():
    return FakeFeed()
