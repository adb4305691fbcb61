"""History repository operations for the SQLite backend.

History rows are audit records: protection removal never deletes them.
Read helpers return rows newest first as plain dictionaries; actor
resolution happens in ``blockwarden.ledger``.
"""

from __future__ import annotations

from typing import Any, NoReturn

from blockwarden.db.connection import Database
from blockwarden.db.constants import HISTORY, LEGACY_SUFFIX
from blockwarden.db.errors import StorageError, StorageOperationContext, StorageUnavailable
from blockwarden.db.schema import reserved_next_id, table_exists
from blockwarden.models import HistoryStatus

Row = dict[str, Any]

_COLUMNS = "id, protectionId, player, x, y, z, type, status, metadata, timestamp"


def _raise_read_error(operation: str, exc: Exception, *, details: str | None = None) -> NoReturn:
    """Raise a typed repository read error while preserving chained cause."""
    if isinstance(exc, StorageError):
        raise exc
    raise StorageUnavailable(
        context=StorageOperationContext(operation=operation, details=details),
        cause=exc,
    ) from exc


def _raise_write_error(operation: str, exc: Exception, *, details: str | None = None) -> NoReturn:
    """Raise a typed repository write error while preserving chained cause."""
    if isinstance(exc, StorageError):
        raise exc
    raise StorageUnavailable(
        context=StorageOperationContext(operation=operation, details=details),
        cause=exc,
    ) from exc


def _table(db: Database, *, legacy: bool = False) -> str:
    return db.table(HISTORY + LEGACY_SUFFIX if legacy else HISTORY)


def _page_clause(limit: int | None, offset: int) -> tuple[str, tuple]:
    if limit is None:
        return "", ()
    return " LIMIT ? OFFSET ?", (limit, offset)


def _fetch_all(db: Database, sql: str, params: tuple = ()) -> list[Row]:
    with db.connection_scope() as conn:
        return [dict(row) for row in conn.execute(sql, params).fetchall()]


# ============================================================================
# WRITES
# ============================================================================


def insert_history(db: Database, params: dict[str, Any]) -> int:
    """Append a history row and return its id.

    Ids stay above the legacy table's while it exists.
    """
    try:
        with db.connection_scope(write=True) as conn:
            cursor = conn.execute(
                f"""
                INSERT INTO {_table(db)}
                    (id, protectionId, player, x, y, z, type, status, metadata, timestamp)
                VALUES
                    (:id, :protectionId, :player, :x, :y, :z, :type, :status, :metadata,
                     :timestamp)
                """,
                {**params, "id": reserved_next_id(conn, db, HISTORY)},
            )
            return int(cursor.lastrowid)
    except Exception as exc:
        _raise_write_error(
            "history.insert_history", exc, details=f"protection_id={params.get('protectionId')}"
        )


def insert_history_with_id(db: Database, history_id: int, params: dict[str, Any]) -> bool:
    """Insert a row under a fixed id unless that id already exists.

    Returns:
        True when a row was written.
    """
    try:
        with db.connection_scope(write=True) as conn:
            cursor = conn.execute(
                f"""
                INSERT OR IGNORE INTO {_table(db)}
                    (id, protectionId, player, x, y, z, type, status, metadata, timestamp)
                VALUES
                    (:id, :protectionId, :player, :x, :y, :z, :type, :status, :metadata,
                     :timestamp)
                """,
                {**params, "id": history_id},
            )
            return cursor.rowcount > 0
    except Exception as exc:
        _raise_write_error("history.insert_history_with_id", exc, details=f"history_id={history_id}")


def update_history(db: Database, history_id: int, params: dict[str, Any]) -> bool:
    try:
        with db.connection_scope(write=True) as conn:
            cursor = conn.execute(
                f"""
                UPDATE {_table(db)} SET
                    protectionId = :protectionId, player = :player, x = :x, y = :y, z = :z,
                    type = :type, status = :status, metadata = :metadata, timestamp = :timestamp
                WHERE id = :id
                """,
                {**params, "id": history_id},
            )
            return cursor.rowcount > 0
    except Exception as exc:
        _raise_write_error("history.update_history", exc, details=f"history_id={history_id}")


def set_status_for_player(db: Database, player_id: int, status: HistoryStatus) -> int:
    """Set the status of every row of one actor; returns rows changed."""
    try:
        with db.connection_scope(write=True) as conn:
            cursor = conn.execute(
                f"UPDATE {_table(db)} SET status = ? WHERE player = ?", (int(status), player_id)
            )
            return cursor.rowcount
    except Exception as exc:
        _raise_write_error("history.set_status_for_player", exc, details=f"player_id={player_id}")


def close_for_protection(
    db: Database, protection_id: int, metadata_entry: str | None, *, include_legacy: bool = False
) -> int:
    """Mark every active row of a protection inactive.

    ``metadata_entry`` (a ``key=value`` string) is appended to each closed
    row's metadata when given. With ``include_legacy`` unconverted legacy rows
    are closed too, so the conversion copies them already closed. Returns the
    number of rows closed.
    """
    if metadata_entry:
        sql = """
            UPDATE {table} SET
                status = ?,
                metadata = CASE
                    WHEN metadata IS NULL OR metadata = '' THEN ?
                    ELSE metadata || ',' || ?
                END
            WHERE protectionId = ? AND status = ?
            """
        params: tuple = (
            int(HistoryStatus.INACTIVE),
            metadata_entry,
            metadata_entry,
            protection_id,
            int(HistoryStatus.ACTIVE),
        )
    else:
        sql = "UPDATE {table} SET status = ? WHERE protectionId = ? AND status = ?"
        params = (int(HistoryStatus.INACTIVE), protection_id, int(HistoryStatus.ACTIVE))

    try:
        with db.connection_scope(write=True) as conn:
            tables = [_table(db)]
            legacy = _table(db, legacy=True)
            if include_legacy and table_exists(conn, legacy):
                tables.append(legacy)
            return sum(conn.execute(sql.format(table=table), params).rowcount for table in tables)
    except Exception as exc:
        _raise_write_error(
            "history.close_for_protection", exc, details=f"protection_id={protection_id}"
        )


def delete_history(db: Database, history_id: int) -> bool:
    try:
        with db.connection_scope(write=True) as conn:
            cursor = conn.execute(f"DELETE FROM {_table(db)} WHERE id = ?", (history_id,))
            return cursor.rowcount > 0
    except Exception as exc:
        _raise_write_error("history.delete_history", exc, details=f"history_id={history_id}")


# ============================================================================
# READS
# ============================================================================


def get_history_row(db: Database, history_id: int, *, legacy: bool = False) -> Row | None:
    try:
        with db.connection_scope() as conn:
            table = _table(db, legacy=legacy)
            if legacy and not table_exists(conn, table):
                return None
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM {table} WHERE id = ?", (history_id,)
            ).fetchone()
        return dict(row) if row is not None else None
    except Exception as exc:
        _raise_read_error(
            "history.get_history_row", exc, details=f"history_id={history_id} legacy={legacy}"
        )


def list_by_protection(db: Database, protection_id: int) -> list[Row]:
    try:
        return _fetch_all(
            db,
            f"SELECT {_COLUMNS} FROM {_table(db)} WHERE protectionId = ? ORDER BY id DESC",
            (protection_id,),
        )
    except Exception as exc:
        _raise_read_error(
            "history.list_by_protection", exc, details=f"protection_id={protection_id}"
        )


def list_by_player(
    db: Database, player_id: int, *, limit: int | None = None, offset: int = 0
) -> list[Row]:
    page, page_params = _page_clause(limit, offset)
    try:
        return _fetch_all(
            db,
            f"SELECT {_COLUMNS} FROM {_table(db)} WHERE player = ? ORDER BY id DESC{page}",
            (player_id, *page_params),
        )
    except Exception as exc:
        _raise_read_error("history.list_by_player", exc, details=f"player_id={player_id}")


def list_by_status(db: Database, status: HistoryStatus) -> list[Row]:
    try:
        return _fetch_all(
            db,
            f"SELECT {_COLUMNS} FROM {_table(db)} WHERE status = ? ORDER BY id DESC",
            (int(status),),
        )
    except Exception as exc:
        _raise_read_error("history.list_by_status", exc, details=f"status={status!r}")


def list_at(db: Database, x: int, y: int, z: int, *, player_id: int | None = None) -> list[Row]:
    """Rows recorded at a coordinate, optionally for one actor."""
    sql = f"SELECT {_COLUMNS} FROM {_table(db)} WHERE x = ? AND y = ? AND z = ?"
    params: tuple = (x, y, z)
    if player_id is not None:
        sql += " AND player = ?"
        params = (x, y, z, player_id)
    try:
        return _fetch_all(db, sql + " ORDER BY id DESC", params)
    except Exception as exc:
        _raise_read_error("history.list_at", exc, details=f"location={x}:{y}:{z}")


def list_recent(db: Database, *, limit: int | None = None, offset: int = 0) -> list[Row]:
    page, page_params = _page_clause(limit, offset)
    try:
        return _fetch_all(
            db, f"SELECT {_COLUMNS} FROM {_table(db)} ORDER BY id DESC{page}", page_params
        )
    except Exception as exc:
        _raise_read_error("history.list_recent", exc)


def count_history(db: Database, player_id: int | None = None) -> int:
    try:
        with db.connection_scope() as conn:
            if player_id is None:
                row = conn.execute(f"SELECT COUNT(*) FROM {_table(db)}").fetchone()
            else:
                row = conn.execute(
                    f"SELECT COUNT(*) FROM {_table(db)} WHERE player = ?", (player_id,)
                ).fetchone()
        return int(row[0])
    except Exception as exc:
        _raise_read_error("history.count_history", exc, details=f"player_id={player_id}")


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
            "history.list_legacy_batch", exc, details=f"after_id={after_id} limit={limit}"
        )
