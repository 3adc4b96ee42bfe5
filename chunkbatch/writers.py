"""Chunk writers - one transactional bulk write per chunk.

A writer receives the whole chunk and writes it inside the transaction the
Step Orchestrator provides. Writers never commit or roll back themselves:
a failure propagates and the orchestrator rolls back the whole chunk, so a
retried chunk never lands on top of a partially-written one.
"""

import logging
import sqlite3
from typing import Any, Callable, Protocol, Sequence, runtime_checkable

from chunkbatch.errors import ConnectionLost, WriteRejected
from chunkbatch.records import record_to_params
from chunkbatch.transactions import Transaction

logger = logging.getLogger(__name__)


@runtime_checkable
class ItemWriter(Protocol):
    """Protocol for chunk writers."""

    def write(self, items: Sequence[Any], transaction: Transaction) -> None:
        """Write all items inside the given transaction.

        Raises:
            WriteRejected: The store refused the batch (constraint violation)
            ConnectionLost: The store went away (transient, retryable)
        """
        ...


class SqlBatchWriter:
    """
    Bulk writer for a parameterised SQL statement.

    Each item is bound by field name to the statement's :name placeholders
    and the whole chunk is sent as one executemany on the transaction's
    connection.

    Example:
        writer = SqlBatchWriter(
            "INSERT INTO person (id, name, email, age) VALUES (:id, :name, :email, :age)"
        )
    """

    def __init__(
        self,
        sql: str,
        item_to_params: Callable[[Any], dict[str, Any]] = record_to_params,
    ):
        if not sql or not sql.strip():
            raise ValueError("SqlBatchWriter requires a SQL statement")
        self._sql = sql
        self._item_to_params = item_to_params

    @property
    def sql(self) -> str:
        return self._sql

    def write(self, items: Sequence[Any], transaction: Transaction) -> None:
        if not items:
            return
        params = [self._item_to_params(item) for item in items]
        try:
            transaction.connection.executemany(self._sql, params)
        except sqlite3.IntegrityError as e:
            raise WriteRejected(f"Store rejected batch of {len(items)}: {e}") from e
        except sqlite3.OperationalError as e:
            raise ConnectionLost(f"Store unavailable during batch of {len(items)}: {e}") from e
        logger.debug(f"Wrote {len(items)} rows")


class ListWriter:
    """
    In-memory writer that honours transaction outcome.

    Items are staged per transaction and only become visible in `items`
    once the chunk commits. Used for dry runs and tests.
    """

    def __init__(self) -> None:
        self.items: list[Any] = []

    def write(self, items: Sequence[Any], transaction: Transaction) -> None:
        staged = list(items)
        transaction.after_commit(lambda: self.items.extend(staged))
