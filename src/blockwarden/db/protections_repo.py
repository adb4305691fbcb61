"""Protection repository operations for the SQLite backend.

This module owns SQL for the ``protections`` table and its legacy
``protections_old_converting`` shadow. Functions take the ``Database`` handle
first and return plain row dictionaries; decoding into ``Protection`` objects
(which needs owner resolution) is the caller's job.
"""

from __future__ import annotations

import sqlite3
from typing import Any, NoReturn

from blockwarden.db.connection import Database
from blockwarden.db.constants import LEGACY_SUFFIX, PROTECTIONS
from blockwarden.db.errors import (
    SchemaConflict,
    StorageError,
    StorageOperationContext,
    StorageUnavailable,
)
from blockwarden.db.schema import reserved_next_id, table_exists
from blockwarden.models import Bounds, ProtectionKind

Row = dict[str, Any]

_COLUMNS = "id, owner, type, x, y, z, flags, data, blockId, world, password, date, last_accessed"


def _raise_read_error(operation: str, exc: Exception, *, details: str | None = None) -> NoReturn:
    """Raise a typed repository read error while preserving chained cause."""
    if isinstance(exc, StorageError):
        raise exc
    raise StorageUnavailable(
        context=StorageOperationContext(operation=operation, details=details),
        cause=exc,
    ) from exc


def _raise_write_error(operation: str, exc: Exception, *, details: str | None = None) -> NoReturn:
    """Raise a typed repository write error; uniqueness violations become ``SchemaConflict``."""
    if isinstance(exc, StorageError):
        raise exc
    context = StorageOperationContext(operation=operation, details=details)
    if isinstance(exc, sqlite3.IntegrityError):
        raise SchemaConflict(context=context, cause=exc) from exc
    raise StorageUnavailable(context=context, cause=exc) from exc


def _table(db: Database, *, legacy: bool) -> str:
    return db.table(PROTECTIONS + LEGACY_SUFFIX if legacy else PROTECTIONS)


def legacy_table_exists(db: Database) -> bool:
    """True while the name-keyed protections table is still present."""
    try:
        with db.connection_scope() as conn:
            return table_exists(conn, _table(db, legacy=True))
    except Exception as exc:
        _raise_read_error("protections.legacy_table_exists", exc)


def _fetch_all(db: Database, sql: str, params: tuple | dict = ()) -> list[Row]:
    with db.connection_scope() as conn:
        return [dict(row) for row in conn.execute(sql, params).fetchall()]


def _fetch_one(db: Database, sql: str, params: tuple | dict = ()) -> Row | None:
    with db.connection_scope() as conn:
        row = conn.execute(sql, params).fetchone()
    return dict(row) if row is not None else None


# ============================================================================
# SINGLE-ROW READS
# ============================================================================


def get_protection_row(db: Database, protection_id: int, *, legacy: bool = False) -> Row | None:
    """Return the row for ``protection_id`` or ``None``."""
    try:
        return _fetch_one(
            db,
            f"SELECT {_COLUMNS} FROM {_table(db, legacy=legacy)} WHERE id = ?",
            (protection_id,),
        )
    except Exception as exc:
        _raise_read_error(
            "protections.get_protection_row",
            exc,
            details=f"protection_id={protection_id} legacy={legacy}",
        )


def get_protection_row_at(
    db: Database, world: str, x: int, y: int, z: int, *, legacy: bool = False
) -> Row | None:
    """Return the row protecting ``world:x:y:z`` or ``None``."""
    try:
        return _fetch_one(
            db,
            f"""
            SELECT {_COLUMNS} FROM {_table(db, legacy=legacy)}
            WHERE x = ? AND y = ? AND z = ? AND world = ?
            ORDER BY id LIMIT 1
            """,
            (x, y, z, world),
        )
    except Exception as exc:
        _raise_read_error(
            "protections.get_protection_row_at",
            exc,
            details=f"location={world}:{x}:{y}:{z} legacy={legacy}",
        )


# ============================================================================
# WRITES
# ============================================================================


def insert_protection(
    db: Database,
    *,
    owner_id: int,
    kind: ProtectionKind,
    world: str,
    x: int,
    y: int,
    z: int,
    block_id: int,
    data: str | None,
    password: str | None,
    created: str,
    last_accessed: int,
) -> int:
    """Insert a new protection and return its generated id.

    While a legacy table exists the id is allocated above every legacy id, so
    a later conversion batch never finds its row already taken.

    Raises:
        SchemaConflict: When a protection already exists at the coordinate.
        StorageUnavailable: On any other storage failure.
    """
    location = f"{world}:{x}:{y}:{z}"
    try:
        with db.connection_scope(write=True) as conn:
            taken = conn.execute(
                f"SELECT id FROM {db.table(PROTECTIONS)} "
                "WHERE x = ? AND y = ? AND z = ? AND world = ? LIMIT 1",
                (x, y, z, world),
            ).fetchone()
            if taken is not None:
                raise SchemaConflict(
                    context=StorageOperationContext(
                        operation="protections.insert_protection",
                        details=f"location={location} taken by protection {taken[0]}",
                    )
                )
            cursor = conn.execute(
                f"""
                INSERT INTO {db.table(PROTECTIONS)}
                    (id, owner, type, x, y, z, flags, data, blockId, world, password, date,
                     last_accessed)
                VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?, ?)
                """,
                (
                    reserved_next_id(conn, db, PROTECTIONS),
                    owner_id,
                    int(kind),
                    x,
                    y,
                    z,
                    data,
                    block_id,
                    world,
                    password,
                    created,
                    last_accessed,
                ),
            )
            return int(cursor.lastrowid)
    except Exception as exc:
        _raise_write_error("protections.insert_protection", exc, details=f"location={location}")


def upsert_protection(db: Database, params: dict[str, Any], *, keep_existing: bool = False) -> bool:
    """Write a full protection row keyed by id.

    Args:
        params: Named parameters as built by ``codec.protection_to_params``.
        keep_existing: When True an existing row with the same id is left
            untouched.

    Returns:
        True when a row was written.
    """
    on_conflict = (
        "DO NOTHING"
        if keep_existing
        else """DO UPDATE SET
                owner = excluded.owner,
                type = excluded.type,
                x = excluded.x,
                y = excluded.y,
                z = excluded.z,
                data = excluded.data,
                blockId = excluded.blockId,
                world = excluded.world,
                password = excluded.password,
                date = excluded.date,
                last_accessed = excluded.last_accessed"""
    )
    try:
        with db.connection_scope(write=True) as conn:
            cursor = conn.execute(
                f"""
                INSERT INTO {db.table(PROTECTIONS)}
                    (id, owner, type, x, y, z, data, blockId, world, password, date, last_accessed)
                VALUES
                    (:id, :owner, :type, :x, :y, :z, :data, :blockId, :world, :password, :date,
                     :last_accessed)
                ON CONFLICT(id) {on_conflict}
                """,
                params,
            )
            return cursor.rowcount > 0
    except Exception as exc:
        _raise_write_error(
            "protections.upsert_protection", exc, details=f"protection_id={params.get('id')}"
        )


def delete_protection(db: Database, protection_id: int, *, include_legacy: bool = False) -> int:
    """Delete one protection; returns 1 when it existed, otherwise 0.

    With ``include_legacy`` the matching legacy row is deleted in the same
    transaction so a later conversion batch cannot resurrect it. A protection
    that only exists in the legacy table still counts as removed.
    """
    try:
        with db.connection_scope(write=True) as conn:
            cursor = conn.execute(
                f"DELETE FROM {db.table(PROTECTIONS)} WHERE id = ?", (protection_id,)
            )
            removed = cursor.rowcount
            if include_legacy and table_exists(conn, _table(db, legacy=True)):
                legacy_removed = conn.execute(
                    f"DELETE FROM {_table(db, legacy=True)} WHERE id = ?", (protection_id,)
                ).rowcount
                removed = max(removed, legacy_removed)
            return removed
    except Exception as exc:
        _raise_write_error(
            "protections.delete_protection", exc, details=f"protection_id={protection_id}"
        )


def delete_all_protections(db: Database, *, include_legacy: bool = False) -> int:
    """Delete every protection; returns the number of primary rows removed."""
    try:
        with db.connection_scope(write=True) as conn:
            removed = conn.execute(f"DELETE FROM {db.table(PROTECTIONS)}").rowcount
            if include_legacy and table_exists(conn, _table(db, legacy=True)):
                conn.execute(f"DELETE FROM {_table(db, legacy=True)}")
            return removed
    except Exception as exc:
        _raise_write_error("protections.delete_all_protections", exc)


def delete_by_owner(db: Database, owner_id: int) -> list[int]:
    """Delete every protection of one owner; returns the removed ids."""
    try:
        with db.connection_scope(write=True) as conn:
            ids = [
                int(row[0])
                for row in conn.execute(
                    f"SELECT id FROM {db.table(PROTECTIONS)} WHERE owner = ?", (owner_id,)
                ).fetchall()
            ]
            conn.execute(f"DELETE FROM {db.table(PROTECTIONS)} WHERE owner = ?", (owner_id,))
            return ids
    except Exception as exc:
        _raise_write_error("protections.delete_by_owner", exc, details=f"owner_id={owner_id}")


# ============================================================================
# LIST QUERIES
# ============================================================================


def list_in_range(db: Database, world: str, bounds: Bounds, *, legacy: bool = False) -> list[Row]:
    """Rows inside the inclusive box in ``world``, ordered by id."""
    try:
        return _fetch_all(
            db,
            f"""
            SELECT {_COLUMNS} FROM {_table(db, legacy=legacy)}
            WHERE world = ?
              AND x BETWEEN ? AND ?
              AND y BETWEEN ? AND ?
              AND z BETWEEN ? AND ?
            ORDER BY id
            """,
            (
                world,
                bounds.min_x,
                bounds.max_x,
                bounds.min_y,
                bounds.max_y,
                bounds.min_z,
                bounds.max_z,
            ),
        )
    except Exception as exc:
        _raise_read_error("protections.list_in_range", exc, details=f"world={world!r}")


def list_by_owner(
    db: Database, owner_id: int, *, limit: int | None = None, offset: int = 0
) -> list[Row]:
    """Rows owned by ``owner_id`` ordered by id, optionally paged."""
    sql = f"SELECT {_COLUMNS} FROM {db.table(PROTECTIONS)} WHERE owner = ? ORDER BY id"
    params: tuple = (owner_id,)
    if limit is not None:
        sql += " LIMIT ? OFFSET ?"
        params = (owner_id, limit, offset)
    try:
        return _fetch_all(db, sql, params)
    except Exception as exc:
        _raise_read_error("protections.list_by_owner", exc, details=f"owner_id={owner_id}")


def list_by_kind(db: Database, kind: ProtectionKind) -> list[Row]:
    try:
        return _fetch_all(
            db,
            f"SELECT {_COLUMNS} FROM {db.table(PROTECTIONS)} WHERE type = ? ORDER BY id",
            (int(kind),),
        )
    except Exception as exc:
        _raise_read_error("protections.list_by_kind", exc, details=f"kind={kind!r}")


def list_all(db: Database) -> list[Row]:
    try:
        return _fetch_all(db, f"SELECT {_COLUMNS} FROM {db.table(PROTECTIONS)} ORDER BY id")
    except Exception as exc:
        _raise_read_error("protections.list_all", exc)


def list_newest(db: Database, limit: int) -> list[Row]:
    """The ``limit`` most recently created rows, newest first."""
    try:
        return _fetch_all(
            db,
            f"SELECT {_COLUMNS} FROM {db.table(PROTECTIONS)} ORDER BY id DESC LIMIT ?",
            (limit,),
        )
    except Exception as exc:
        _raise_read_error("protections.list_newest", exc, details=f"limit={limit}")


# ============================================================================
# COUNTS
# ============================================================================


def count_protections(db: Database, kind: ProtectionKind | None = None) -> int:
    """Number of protections, optionally of one kind."""
    try:
        with db.connection_scope() as conn:
            if kind is None:
                row = conn.execute(f"SELECT COUNT(*) FROM {db.table(PROTECTIONS)}").fetchone()
            else:
                row = conn.execute(
                    f"SELECT COUNT(*) FROM {db.table(PROTECTIONS)} WHERE type = ?", (int(kind),)
                ).fetchone()
        return int(row[0])
    except Exception as exc:
        _raise_read_error("protections.count_protections", exc, details=f"kind={kind!r}")


def count_by_owner(db: Database, owner_id: int, block_id: int | None = None) -> int:
    try:
        with db.connection_scope() as conn:
            if block_id is None:
                row = conn.execute(
                    f"SELECT COUNT(*) FROM {db.table(PROTECTIONS)} WHERE owner = ?", (owner_id,)
                ).fetchone()
            else:
                row = conn.execute(
                    f"SELECT COUNT(*) FROM {db.table(PROTECTIONS)} "
                    "WHERE owner = ? AND blockId = ?",
                    (owner_id, block_id),
                ).fetchone()
        return int(row[0])
    except Exception as exc:
        _raise_read_error(
            "protections.count_by_owner",
            exc,
            details=f"owner_id={owner_id} block_id={block_id}",
        )


# ============================================================================
# LEGACY WALK
# ============================================================================


def list_legacy_batch(db: Database, after_id: int, limit: int) -> list[Row]:
    """Legacy rows with ``id > after_id`` in id order."""
    try:
        with db.connection_scope() as conn:
            table = _table(db, legacy=True)
            if not table_exists(conn, table):
                return []
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM {table} WHERE id > ? ORDER BY id LIMIT ?",
                (after_id, limit),
            ).fetchall()
        return [dict(row) for row in rows]
    except Exception as exc:
        _raise_read_error(
            "protections.list_legacy_batch", exc, details=f"after_id={after_id} limit={limit}"
        )
