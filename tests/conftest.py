"""
Shared pytest fixtures for the Blockwarden test suite.

This module provides fixtures that are automatically available to all test files:
- Temporary database files wired into the module-level config
- ``Database`` handles with and without the schema prepared
- A fully initialized ``ProtectionRepository``
- A builder for name-keyed (pre-identity) databases used by migration tests

Every database fixture is function-scoped so tests never share state.
"""

import shutil
import sqlite3
import tempfile
from collections.abc import Callable, Generator
from pathlib import Path

import pytest

from blockwarden.config import BlockwardenConfig, DatabaseSettings, use_test_database
from blockwarden.db import schema
from blockwarden.db.connection import Database
from blockwarden.identity import IdentityRegistry
from blockwarden.repository import ProtectionRepository

# ============================================================================
# DATABASE FIXTURES
# ============================================================================


@pytest.fixture(scope="function")
def temp_db_path() -> Generator[Path, None, None]:
    """
    Create a temporary database file path for testing.

    The module-level config points at the file for the duration of the test
    so CLI commands operate on it too.

    Yields:
        Path to temporary database file (not yet created)
    """
    temp_dir = tempfile.mkdtemp()
    temp_db = Path(temp_dir) / "test_blockwarden.db"

    with use_test_database(temp_db):
        yield temp_db

    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture(scope="function")
def db(temp_db_path: Path) -> Database:
    """Database handle on an empty temporary file."""
    return Database(temp_db_path)


@pytest.fixture(scope="function")
def prepared_db(db: Database) -> Database:
    """Database with the current schema created and every upgrade applied."""
    schema.prepare_schema(db)
    schema.apply_upgrades(db)
    return db


@pytest.fixture(scope="function")
def registry(prepared_db: Database) -> IdentityRegistry:
    return IdentityRegistry(prepared_db)


@pytest.fixture(scope="function")
def repo_config(temp_db_path: Path) -> BlockwardenConfig:
    """Built-in defaults pointed at the temporary database."""
    return BlockwardenConfig(database=DatabaseSettings(path=str(temp_db_path)))


@pytest.fixture(scope="function")
def repo(db: Database, repo_config: BlockwardenConfig) -> ProtectionRepository:
    """Initialized repository on a fresh database."""
    repository = ProtectionRepository(db, repo_config)
    repository.initialize()
    return repository


# ============================================================================
# LEGACY DATABASE FIXTURES
# ============================================================================


def _create_legacy_tables(path: Path, prefix: str = "") -> None:
    connection = sqlite3.connect(str(path))
    try:
        connection.executescript(f"""
            CREATE TABLE {prefix}protections (
                id INTEGER PRIMARY KEY,
                owner VARCHAR(255),
                type INTEGER,
                x INTEGER,
                y INTEGER,
                z INTEGER,
                flags INTEGER,
                data TEXT,
                blockId INTEGER,
                world VARCHAR(255),
                password VARCHAR(255),
                date VARCHAR(255),
                last_accessed INTEGER
            );
            CREATE TABLE {prefix}history (
                id INTEGER PRIMARY KEY,
                protectionId INTEGER,
                player VARCHAR(255),
                x INTEGER,
                y INTEGER,
                z INTEGER,
                type INTEGER,
                status INTEGER,
                metadata VARCHAR(255),
                timestamp INTEGER
            );
            CREATE TABLE {prefix}internal (
                name VARCHAR(40) PRIMARY KEY,
                value VARCHAR(40)
            );
            CREATE INDEX {prefix}protections_main ON {prefix}protections (x, y, z, world);
            CREATE INDEX {prefix}history_main ON {prefix}history (protectionId);
            INSERT INTO {prefix}internal (name, value) VALUES ('version', '4');
            """)
        connection.commit()
    finally:
        connection.close()


@pytest.fixture(scope="function")
def legacy_db(temp_db_path: Path) -> Callable[..., Database]:
    """
    Factory for a name-keyed database in the pre-identity layout.

    Usage:
        db = legacy_db(
            protections=[legacy_protection(1, "alice", 10)],
            history=[legacy_history(1, 1, "alice", 10)],
        )

    Row tuples are built by ``tests.helpers.legacy_protection`` and
    ``tests.helpers.legacy_history``.
    """

    def build(
        protections: list[tuple] = (),
        history: list[tuple] = (),
        prefix: str = "",
    ) -> Database:
        _create_legacy_tables(temp_db_path, prefix)
        connection = sqlite3.connect(str(temp_db_path))
        try:
            connection.executemany(
                f"""
                INSERT INTO {prefix}protections
                    (id, owner, type, x, y, z, flags, data, blockId, world, password, date,
                     last_accessed)
                VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?, ?)
                """,
                list(protections),
            )
            connection.executemany(
                f"""
                INSERT INTO {prefix}history
                    (id, protectionId, player, x, y, z, type, status, metadata, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                list(history),
            )
            connection.commit()
        finally:
            connection.close()
        return Database(temp_db_path, prefix)

    return build

