"""Transaction capability for chunk writes.

A TransactionManager begins transactions; each Transaction is committed
or rolled back exactly once. The Step Orchestrator wraps every chunk write
in one transaction, so the transaction is both the unit of atomicity and
the unit of crash recovery.

Every chunk transaction also saves a step checkpoint (the reader position
after the chunk) in the store it writes to. The checkpoint commits or
rolls back together with the chunk's rows, so after a crash between the
chunk commit and the tracker update a restart still resumes after the
last chunk the store actually holds.
"""

import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional, Protocol, runtime_checkable

from chunkbatch.errors import ConnectionLost

logger = logging.getLogger(__name__)

CHECKPOINT_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS chunkbatch_step_checkpoint (
    step_key TEXT PRIMARY KEY,
    position INTEGER NOT NULL,
    updated_at TEXT NOT NULL
)
"""


@runtime_checkable
class Transaction(Protocol):
    connection: Any

    def after_commit(self, callback: Callable[[], None]) -> None:
        ...

    def save_checkpoint(self, step_key: str, position: int) -> None:
        """Stage the step's position; it becomes durable with this commit."""
        ...

    def commit(self) -> None:
        ...

    def rollback(self) -> None:
        ...


@runtime_checkable
class TransactionManager(Protocol):
    def begin(self) -> Transaction:
        ...

    def load_checkpoint(self, step_key: str) -> Optional[int]:
        """Position saved by the last committed chunk of this step, if any."""
        ...


class _TransactionBase:
    """Shared completion bookkeeping, commit hooks and context-manager behaviour."""

    def __init__(self) -> None:
        self.completed = False
        self._after_commit: list[Callable[[], None]] = []

    def after_commit(self, callback: Callable[[], None]) -> None:
        """Run callback once this transaction commits (never on rollback)."""
        self._after_commit.append(callback)

    def _check_open(self) -> None:
        if self.completed:
            raise RuntimeError("Transaction already completed")

    def _run_after_commit(self) -> None:
        callbacks, self._after_commit = self._after_commit, []
        for callback in callbacks:
            callback()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self.completed:
            return
        if exc_type is None:
            self.commit()
        else:
            self.rollback()


class SqliteTransaction(_TransactionBase):
    """One SQLite transaction on its own connection."""

    def __init__(self, connection: sqlite3.Connection):
        super().__init__()
        self.connection = connection

    def save_checkpoint(self, step_key: str, position: int) -> None:
        self._check_open()
        try:
            self.connection.execute(CHECKPOINT_TABLE_DDL)
            self.connection.execute(
                "INSERT INTO chunkbatch_step_checkpoint (step_key, position, updated_at) "
                "VALUES (?, ?, ?) "
                "ON CONFLICT(step_key) DO UPDATE SET "
                "position = excluded.position, updated_at = excluded.updated_at",
                (step_key, position, datetime.now(timezone.utc).isoformat()),
            )
        except sqlite3.OperationalError as e:
            raise ConnectionLost(f"Cannot save checkpoint for {step_key}: {e}") from e

    def commit(self) -> None:
        self._check_open()
        try:
            self.connection.execute("COMMIT")
        except sqlite3.OperationalError as e:
            self.rollback()
            raise ConnectionLost(f"Commit failed: {e}") from e
        self.completed = True
        self.connection.close()
        self._run_after_commit()

    def rollback(self) -> None:
        if self.completed:
            return
        try:
            if self.connection.in_transaction:
                self.connection.execute("ROLLBACK")
        finally:
            self.completed = True
            self._after_commit = []
            self.connection.close()


class SqliteTransactionManager:
    """
    Transaction manager for a SQLite target store.

    Opens a connection per transaction in autocommit mode and issues an
    explicit BEGIN IMMEDIATE, so the write lock is taken up front and a
    busy database surfaces as ConnectionLost before any row is written.
    """

    def __init__(self, database: Path | str, timeout: float = 5.0):
        self._database = str(database)
        self._timeout = timeout

    @property
    def database(self) -> str:
        return self._database

    def connect(self) -> sqlite3.Connection:
        """Open an autocommit connection (used for schema setup and reads)."""
        return sqlite3.connect(self._database, timeout=self._timeout, isolation_level=None)

    def begin(self) -> SqliteTransaction:
        try:
            connection = self.connect()
            connection.execute("BEGIN IMMEDIATE")
        except sqlite3.OperationalError as e:
            raise ConnectionLost(f"Cannot begin transaction on {self._database}: {e}") from e
        return SqliteTransaction(connection)

    def load_checkpoint(self, step_key: str) -> Optional[int]:
        try:
            connection = self.connect()
        except sqlite3.OperationalError as e:
            raise ConnectionLost(f"Cannot open {self._database}: {e}") from e
        try:
            connection.execute(CHECKPOINT_TABLE_DDL)
            row = connection.execute(
                "SELECT position FROM chunkbatch_step_checkpoint WHERE step_key = ?",
                (step_key,),
            ).fetchone()
        except sqlite3.OperationalError as e:
            raise ConnectionLost(f"Cannot read checkpoint for {step_key}: {e}") from e
        finally:
            connection.close()
        return row[0] if row is not None else None


class ResourcelessTransaction(_TransactionBase):
    """Transaction that guards nothing; used by steps that touch no store."""

    connection: Optional[Any] = None

    def __init__(self, checkpoints: Optional[dict[str, int]] = None):
        super().__init__()
        self._checkpoints = checkpoints if checkpoints is not None else {}

    def save_checkpoint(self, step_key: str, position: int) -> None:
        self._check_open()

        def apply() -> None:
            self._checkpoints[step_key] = position

        self.after_commit(apply)

    def commit(self) -> None:
        self._check_open()
        self.completed = True
        self._run_after_commit()

    def rollback(self) -> None:
        self.completed = True
        self._after_commit = []


class ResourcelessTransactionManager:
    """Checkpoints live in memory, next to whatever in-memory writer the step uses."""

    def __init__(self) -> None:
        self._checkpoints: dict[str, int] = {}

    def begin(self) -> ResourcelessTransaction:
        return ResourcelessTransaction(self._checkpoints)

    def load_checkpoint(self, step_key: str) -> Optional[int]:
        return self._checkpoints.get(step_key)
