"""
Transactional batch insert of tick records.

A batch is written inside a single transaction with one parameterized insert
per record. Either every row of the batch becomes visible or none does.
"""

import logging
from typing import Optional, Sequence

from .models import TickRecord

logger = logging.getLogger(__name__)

INSERT_TICK_SQL = "INSERT INTO ticks (instrument_id, observed_at, price) VALUES ($1, $2, $3)"


class BatchWriteError(Exception):
    """A batch could not be persisted; nothing from it was committed."""

    stage = "write"

    def __init__(self, message: str, batch_size: int):
        super().__init__(message)
        self.batch_size = batch_size


class TransactionBeginError(BatchWriteError):
    """Could not acquire a connection or start the transaction."""
    stage = "begin"


class StatementPrepareError(BatchWriteError):
    """The insert statement could not be prepared."""
    stage = "prepare"


class RowInsertError(BatchWriteError):
    """Executing the insert failed for one row of the batch."""
    stage = "insert"

    def __init__(self, message: str, batch_size: int, row_index: int):
        super().__init__(message, batch_size)
        self.row_index = row_index


class CommitError(BatchWriteError):
    """The transaction failed to commit."""
    stage = "commit"


class BatchWriter:
    """Persists batches of ticks through a Database connection pool."""

    def __init__(self, database, insert_sql: str = INSERT_TICK_SQL):
        self.database = database
        self.insert_sql = insert_sql

    async def write(self, batch: Sequence[TickRecord]) -> int:
        """
        Insert the batch in one transaction, preserving order.

        Returns the number of rows written. Raises a BatchWriteError subclass
        naming the failed stage; the transaction is rolled back in every
        failure case, including cancellation.
        """
        if not batch:
            raise ValueError("Cannot write an empty batch")

        acquired = False
        written = 0
        try:
            async with self.database.get_connection() as conn:
                acquired = True
                written = await self._write_in_transaction(conn, batch)
        except BatchWriteError:
            raise
        except Exception as e:
            if not acquired:
                raise TransactionBeginError(f"Failed to acquire connection: {e}", len(batch)) from e
            if written:
                # The batch is already committed.
                logger.warning(f"Committed batch of {written} ticks but releasing the connection failed: {e}")
                return written
            if isinstance(e.__context__, BatchWriteError):
                logger.warning(f"Releasing the connection after a failed write also failed: {e}")
                raise e.__context__
            raise

        return written

    async def _write_in_transaction(self, conn, batch: Sequence[TickRecord]) -> int:
        batch_size = len(batch)
        transaction = conn.transaction()

        try:
            await transaction.start()
        except Exception as e:
            raise TransactionBeginError(f"Failed to begin transaction: {e}", batch_size) from e

        try:
            try:
                statement = await conn.prepare(self.insert_sql)
            except Exception as e:
                raise StatementPrepareError(f"Failed to prepare insert: {e}", batch_size) from e

            for index, record in enumerate(batch):
                try:
                    await statement.fetchval(*record.as_row())
                except Exception as e:
                    raise RowInsertError(
                        f"Insert failed at row {index} (instrument {record.instrument_id}): {e}",
                        batch_size,
                        row_index=index,
                    ) from e
        except BaseException:
            await self._rollback(transaction, batch_size)
            raise

        try:
            await transaction.commit()
        except BaseException as e:
            await self._rollback(transaction, batch_size)
            if isinstance(e, Exception):
                raise CommitError(f"Failed to commit batch: {e}", batch_size) from e
            raise

        logger.debug(f"Committed batch of {batch_size} ticks")
        return batch_size

    async def _rollback(self, transaction, batch_size: int) -> Optional[bool]:
        """Roll back, logging instead of raising so the original error survives."""
        try:
            await transaction.rollback()
            logger.debug(f"Rolled back batch of {batch_size} ticks")
            return True
        except Exception as e:
            logger.warning(f"Rollback of {batch_size}-tick batch failed: {e}")
            return False
