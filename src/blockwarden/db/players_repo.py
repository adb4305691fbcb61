"""Player identity repository operations for the SQLite backend.

Identity rows are append-only: there is no delete helper. Name lookups are
case-insensitive and may match several rows.
"""

from __future__ import annotations

from typing import NoReturn

from blockwarden.db.codec import player_from_row
from blockwarden.db.connection import Database
from blockwarden.db.constants import HISTORY, LEGACY_SUFFIX, PLAYERS, PROTECTIONS
from blockwarden.db.errors import StorageError, StorageOperationContext, StorageUnavailable
from blockwarden.db.schema import table_exists
from blockwarden.models import PlayerInfo


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


def get_player(db: Database, player_id: int) -> PlayerInfo | None:
    try:
        with db.connection_scope() as conn:
            row = conn.execute(
                f"SELECT id, uuid, name FROM {db.table(PLAYERS)} WHERE id = ?", (player_id,)
            ).fetchone()
        return player_from_row(row) if row is not None else None
    except Exception as exc:
        _raise_read_error("players.get_player", exc, details=f"player_id={player_id}")


def get_player_by_stable_id(db: Database, stable_id: str) -> PlayerInfo | None:
    try:
        with db.connection_scope() as conn:
            row = conn.execute(
                f"SELECT id, uuid, name FROM {db.table(PLAYERS)} WHERE LOWER(uuid) = LOWER(?) "
                "ORDER BY id LIMIT 1",
                (stable_id,),
            ).fetchone()
        return player_from_row(row) if row is not None else None
    except Exception as exc:
        _raise_read_error("players.get_player_by_stable_id", exc, details=f"uuid={stable_id!r}")


def find_players_by_name(db: Database, name: str) -> list[PlayerInfo]:
    """Every identity whose name matches case-insensitively, oldest first."""
    try:
        with db.connection_scope() as conn:
            rows = conn.execute(
                f"SELECT id, uuid, name FROM {db.table(PLAYERS)} "
                "WHERE LOWER(name) = LOWER(?) ORDER BY id",
                (name,),
            ).fetchall()
        return [player_from_row(row) for row in rows]
    except Exception as exc:
        _raise_read_error("players.find_players_by_name", exc, details=f"name={name!r}")


def create_player(db: Database, stable_id: str | None, name: str) -> PlayerInfo:
    """Insert a new identity row and return it."""
    try:
        with db.connection_scope(write=True) as conn:
            cursor = conn.execute(
                f"INSERT INTO {db.table(PLAYERS)} (uuid, name) VALUES (?, ?)", (stable_id, name)
            )
            return PlayerInfo(id=int(cursor.lastrowid), stable_id=stable_id, name=name)
    except Exception as exc:
        _raise_write_error(
            "players.create_player", exc, details=f"uuid={stable_id!r} name={name!r}"
        )


def update_player(db: Database, player: PlayerInfo) -> bool:
    """Persist a changed name or stable id; False when the row does not exist."""
    try:
        with db.connection_scope(write=True) as conn:
            cursor = conn.execute(
                f"UPDATE {db.table(PLAYERS)} SET uuid = ?, name = ? WHERE id = ?",
                (player.stable_id, player.name, player.id),
            )
            return cursor.rowcount > 0
    except Exception as exc:
        _raise_write_error("players.update_player", exc, details=f"player_id={player.id}")


def count_players(db: Database) -> int:
    try:
        with db.connection_scope() as conn:
            return int(conn.execute(f"SELECT COUNT(*) FROM {db.table(PLAYERS)}").fetchone()[0])
    except Exception as exc:
        _raise_read_error("players.count_players", exc)


def list_legacy_names(db: Database, offset: int, limit: int) -> list[str]:
    """Distinct player names referenced by the legacy tables, paged by position.

    Names come from ``protections_old_converting.owner`` and
    ``history_old_converting.player`` and are ordered so that the same
    offset always addresses the same name while the legacy tables are
    unchanged.
    """
    try:
        with db.connection_scope() as conn:
            sources = []
            for base, column in ((PROTECTIONS, "owner"), (HISTORY, "player")):
                table = db.table(base + LEGACY_SUFFIX)
                if table_exists(conn, table):
                    sources.append(
                        f"SELECT CAST({column} AS TEXT) AS name FROM {table} "
                        f"WHERE {column} IS NOT NULL AND {column} != ''"
                    )
            if not sources:
                return []
            rows = conn.execute(
                f"SELECT name FROM ({' UNION '.join(sources)}) ORDER BY name LIMIT ? OFFSET ?",
                (limit, offset),
            ).fetchall()
        return [row[0] for row in rows]
    except Exception as exc:
        _raise_read_error(
            "players.list_legacy_names", exc, details=f"offset={offset} limit={limit}"
        )
