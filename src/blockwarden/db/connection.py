"""SQLite connection primitives for the protection store.

This module owns connection creation, SQLite runtime pragmas, and the
``Database`` handle that repository modules receive as their first argument.
There is no process-wide database singleton: hosts build one ``Database`` and
thread it through the repository, registry, ledger, and migration pipeline.
"""

from __future__ import annotations

import re
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from blockwarden.config import BlockwardenConfig

_PREFIX_PATTERN = re.compile(r"^[A-Za-z0-9_]*$")


def configure_connection(connection: sqlite3.Connection) -> sqlite3.Connection:
    """Apply connection-level SQLite pragmas required by the store.

    Notes:
        - Rows come back as ``sqlite3.Row`` so the codec can read columns by
          name regardless of legacy column order.
        - ``busy_timeout`` reduces transient lock failures when a CLI command
          runs against a database a host process has open.
    """
    connection.row_factory = sqlite3.Row
    connection.execute("PRAGMA foreign_keys = ON")
    connection.execute("PRAGMA busy_timeout = 5000")
    return connection


def get_connection(db_path: Path | str) -> sqlite3.Connection:
    """Create and configure a new autocommit SQLite connection.

    Transactions are opened explicitly by ``Database.connection_scope`` so
    that nested scopes can share one transaction.
    """
    connection = sqlite3.connect(str(db_path), isolation_level=None)
    return configure_connection(connection)


class Database:
    """Handle to one protection database file.

    Args:
        path: SQLite database file path. Parent directories are created on
            first connection.
        table_prefix: Prefix applied to every table name. Only letters,
            digits and underscores are accepted because the prefix is
            interpolated into SQL.
    """

    def __init__(self, path: Path | str, table_prefix: str = "") -> None:
        if not _PREFIX_PATTERN.match(table_prefix):
            raise ValueError(f"invalid table prefix: {table_prefix!r}")
        self.path = Path(path)
        self.table_prefix = table_prefix
        self._local = threading.local()

    @classmethod
    def from_config(cls, cfg: BlockwardenConfig) -> Database:
        """Build a handle from the database section of a loaded config."""
        return cls(cfg.database.absolute_path, cfg.database.table_prefix)

    def table(self, name: str) -> str:
        """Return the physical table name for a logical one."""
        return f"{self.table_prefix}{name}"

    def connect(self) -> sqlite3.Connection:
        """Open a fresh configured connection outside any scope."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        return get_connection(self.path)

    @contextmanager
    def connection_scope(self, *, write: bool = False) -> Iterator[sqlite3.Connection]:
        """Yield a configured connection with guaranteed cleanup semantics.

        Args:
            write: When True, make sure a transaction is open for the scope.

        Yields:
            Configured SQLite connection.

        Behavior:
            - Scopes nested on the same thread reuse the outermost connection,
              so a composite operation commits or rolls back as one unit.
            - A write scope nested inside a read scope opens the transaction
              on the shared connection; the outermost scope commits it.
            - The outermost scope commits on success, rolls back on any
              exception, and always closes the connection.
        """
        connection = getattr(self._local, "connection", None)
        if connection is not None:
            if write and not connection.in_transaction:
                connection.execute("BEGIN IMMEDIATE")
            yield connection
            return

        connection = self.connect()
        self._local.connection = connection
        try:
            if write:
                connection.execute("BEGIN IMMEDIATE")
            yield connection
            if connection.in_transaction:
                connection.commit()
        except Exception:
            if connection.in_transaction:
                try:
                    connection.rollback()
                except sqlite3.Error:
                    # Preserve the original exception while best-effort rolling back.
                    pass
            raise
        finally:
            self._local.connection = None
            connection.close()


@contextmanager
def savepoint(connection: sqlite3.Connection, name: str) -> Iterator[sqlite3.Connection]:
    """Run a block inside a named savepoint.

    On an exception the work since the savepoint is rolled back and the
    exception re-raised; the enclosing transaction stays usable.
    """
    connection.execute(f"SAVEPOINT {name}")
    try:
        yield connection
    except Exception:
        connection.execute(f"ROLLBACK TO SAVEPOINT {name}")
        connection.execute(f"RELEASE SAVEPOINT {name}")
        raise
    connection.execute(f"RELEASE SAVEPOINT {name}")
