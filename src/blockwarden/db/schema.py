"""Schema creation and versioned upgrade steps for the protection store.

Tables are created with ``IF NOT EXISTS`` so ``prepare_schema`` is safe to
call on every start. Upgrade steps are indexed by the version they upgrade
*from*; each step and the version bump that follows it commit in one
transaction, so a crash between steps resumes at the last persisted version.
Every step uses ``IF NOT EXISTS`` DDL and may be re-run.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable

from blockwarden.db import internal_repo
from blockwarden.db.connection import Database
from blockwarden.db.constants import (
    HISTORY,
    INTERNAL,
    LEGACY_SUFFIX,
    MIGRATION_OFFSET_KEY,
    MIGRATION_STAGE_KEY,
    PLAYERS,
    PROTECTIONS,
    SCHEMA_VERSION_KEY,
    STAGE_COMPLETE,
)

logger = logging.getLogger(__name__)


# ============================================================================
# INTROSPECTION
# ============================================================================


def table_exists(conn: sqlite3.Connection, table: str) -> bool:
    """Return True if the given table exists."""
    row = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name = ?", (table,)
    ).fetchone()
    return row is not None


def index_exists(conn: sqlite3.Connection, index: str) -> bool:
    row = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='index' AND name = ?", (index,)
    ).fetchone()
    return row is not None


def reserved_next_id(conn: sqlite3.Connection, db: Database, name: str) -> int | None:
    """Next id for ``name`` that cannot collide with an unconverted legacy row.

    Returns ``None`` when there is no legacy table, leaving id assignment to
    SQLite.
    """
    legacy = db.table(name + LEGACY_SUFFIX)
    if not table_exists(conn, legacy):
        return None
    row = conn.execute(f"""
        SELECT MAX(
            (SELECT COALESCE(MAX(id), 0) FROM {db.table(name)}),
            (SELECT COALESCE(MAX(id), 0) FROM {legacy})
        )
        """).fetchone()
    return int(row[0]) + 1


def _drop_explicit_indexes(conn: sqlite3.Connection, table: str) -> None:
    """Drop the named (non-autoindex) indexes attached to a table."""
    rows = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='index' AND tbl_name = ? AND sql IS NOT NULL",
        (table,),
    ).fetchall()
    for row in rows:
        conn.execute(f"DROP INDEX IF EXISTS {row[0]}")


# ============================================================================
# TABLES
# ============================================================================


def create_tables(conn: sqlite3.Connection, db: Database) -> None:
    """Create the four store tables when absent."""
    conn.execute(f"""
        CREATE TABLE IF NOT EXISTS {db.table(PROTECTIONS)} (
            id INTEGER PRIMARY KEY,
            owner INTEGER,
            type INTEGER,
            x INTEGER,
            y INTEGER,
            z INTEGER,
            flags INTEGER DEFAULT 0,
            data TEXT,
            blockId INTEGER,
            world VARCHAR(255),
            password VARCHAR(255),
            date VARCHAR(255),
            last_accessed INTEGER
        )
        """)
    conn.execute(f"""
        CREATE TABLE IF NOT EXISTS {db.table(PLAYERS)} (
            id INTEGER PRIMARY KEY,
            uuid VARCHAR(40) NULL,
            name VARCHAR(40)
        )
        """)
    conn.execute(f"""
        CREATE TABLE IF NOT EXISTS {db.table(HISTORY)} (
            id INTEGER PRIMARY KEY,
            protectionId INTEGER,
            player INTEGER,
            x INTEGER,
            y INTEGER,
            z INTEGER,
            type INTEGER,
            status INTEGER,
            metadata VARCHAR(255),
            timestamp INTEGER
        )
        """)
    conn.execute(f"""
        CREATE TABLE IF NOT EXISTS {db.table(INTERNAL)} (
            name VARCHAR(40) PRIMARY KEY,
            value VARCHAR(40)
        )
        """)


def is_legacy_layout(conn: sqlite3.Connection, db: Database) -> bool:
    """A name-keyed database has protections but no players table."""
    return table_exists(conn, db.table(PROTECTIONS)) and not table_exists(conn, db.table(PLAYERS))


def _rename_legacy_tables(conn: sqlite3.Connection, db: Database) -> None:
    for name in (PROTECTIONS, HISTORY):
        table = db.table(name)
        if not table_exists(conn, table):
            continue
        legacy = db.table(name + LEGACY_SUFFIX)
        _drop_explicit_indexes(conn, table)
        logger.info("Moving legacy table %s to %s for identity conversion", table, legacy)
        conn.execute(f"ALTER TABLE {table} RENAME TO {legacy}")


def prepare_schema(db: Database) -> str:
    """Create tables and seed migration state.

    On a name-keyed database the legacy tables are renamed to
    ``*_old_converting``, fresh tables are created, the schema version is
    reset so every index step re-runs against the new tables, and the
    migration stage is set to ``0``, all in one transaction. A brand-new
    database starts at stage ``complete``.

    Returns:
        The migration stage after preparation.
    """
    with db.connection_scope(write=True) as conn:
        if is_legacy_layout(conn, db):
            _rename_legacy_tables(conn, db)
            create_tables(conn, db)
            internal_repo.set_internal(db, SCHEMA_VERSION_KEY, 0)
            internal_repo.set_migration_state(db, 0, 0)
            return "0"

        fresh = not table_exists(conn, db.table(PROTECTIONS))
        create_tables(conn, db)
        stage = internal_repo.get_internal(db, MIGRATION_STAGE_KEY)
        if stage is None:
            # Anything that already has a players table was created keyed by identity.
            stage = STAGE_COMPLETE
            internal_repo.set_migration_state(db, stage, 0)
            if fresh:
                logger.info("Created protection store schema in %s", db.path)
        elif internal_repo.get_internal(db, MIGRATION_OFFSET_KEY) is None:
            internal_repo.set_internal(db, MIGRATION_OFFSET_KEY, 0)
        return stage


# ============================================================================
# UPGRADE STEPS
# ============================================================================


def _index(db: Database, name: str, table: str, columns: str, *, unique: bool = False) -> str:
    kind = "UNIQUE INDEX" if unique else "INDEX"
    return (
        f"CREATE {kind} IF NOT EXISTS {db.table_prefix}{name} ON {db.table(table)} ({columns})"
    )


def _step_main_indexes(conn: sqlite3.Connection, db: Database) -> None:
    conn.execute(_index(db, "protections_main", PROTECTIONS, "x, y, z, world"))
    conn.execute(_index(db, "protections_utility", PROTECTIONS, "owner"))
    conn.execute(_index(db, "history_main", HISTORY, "protectionId"))
    conn.execute(_index(db, "history_utility", HISTORY, "player"))
    conn.execute(_index(db, "history_utility2", HISTORY, "x, y, z"))


def _step_internal_index(conn: sqlite3.Connection, db: Database) -> None:
    conn.execute(_index(db, "internal_main", INTERNAL, "name"))


def _step_noop(conn: sqlite3.Connection, db: Database) -> None:
    """Placeholder so version numbers line up with existing databases."""


def _step_type_index(conn: sqlite3.Connection, db: Database) -> None:
    conn.execute(_index(db, "protections_type", PROTECTIONS, "type"))


def _step_player_indexes(conn: sqlite3.Connection, db: Database) -> None:
    conn.execute(_index(db, "player_uuid", PLAYERS, "uuid"))
    conn.execute(_index(db, "player_name", PLAYERS, "name"))


def ensure_location_index(conn: sqlite3.Connection, db: Database) -> bool:
    """Create the unique ``(world, x, y, z)`` index unless duplicates exist.

    Returns:
        True when the index exists after the call.
    """
    index_name = f"{db.table_prefix}protections_location"
    if index_exists(conn, index_name):
        return True
    duplicate = conn.execute(f"""
        SELECT world, x, y, z, COUNT(*) FROM {db.table(PROTECTIONS)}
        GROUP BY world, x, y, z HAVING COUNT(*) > 1 LIMIT 1
        """).fetchone()
    if duplicate is not None:
        logger.warning(
            "Skipping unique location index: %d protections share %s:%s:%s:%s",
            duplicate[4],
            duplicate[0],
            duplicate[1],
            duplicate[2],
            duplicate[3],
        )
        return False
    conn.execute(_index(db, "protections_location", PROTECTIONS, "world, x, y, z", unique=True))
    return True


def _step_location_index(conn: sqlite3.Connection, db: Database) -> None:
    stage = internal_repo.get_internal(db, MIGRATION_STAGE_KEY)
    if stage not in (None, STAGE_COMPLETE):
        # Created once the identity migration has copied every legacy row.
        logger.info("Deferring unique location index until identity migration completes")
        return
    ensure_location_index(conn, db)


UpgradeStep = Callable[[sqlite3.Connection, Database], None]

# Position N upgrades version N to N + 1.
UPGRADE_STEPS: tuple[tuple[str, UpgradeStep], ...] = (
    ("protection and history indexes", _step_main_indexes),
    ("internal index", _step_internal_index),
    ("no-op", _step_noop),
    ("protection type index", _step_type_index),
    ("player indexes", _step_player_indexes),
    ("unique protection location index", _step_location_index),
)

LATEST_SCHEMA_VERSION = len(UPGRADE_STEPS)


def apply_upgrades(db: Database) -> int:
    """Run pending upgrade steps in increasing version order.

    Returns:
        The schema version after all pending steps ran.
    """
    version = internal_repo.get_schema_version(db)
    while version < LATEST_SCHEMA_VERSION:
        description, step = UPGRADE_STEPS[version]
        logger.info("Upgrading schema from version %d: %s", version, description)
        with db.connection_scope(write=True) as conn:
            step(conn, db)
            internal_repo.set_schema_version(db, version + 1)
        version += 1
    return version
