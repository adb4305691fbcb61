"""Key/value bookkeeping in the ``internal`` table.

Holds the schema version and the identity-migration checkpoint as
string-encoded values. All helpers join an enclosing connection scope when
one is open, so a checkpoint can commit in the same transaction as the rows
it describes.
"""

from __future__ import annotations

from typing import NoReturn

from blockwarden.db.connection import Database
from blockwarden.db.constants import (
    INTERNAL,
    MIGRATION_OFFSET_KEY,
    MIGRATION_STAGE_KEY,
    SCHEMA_VERSION_KEY,
)
from blockwarden.db.errors import StorageError, StorageOperationContext, StorageUnavailable


def _raise_storage_error(operation: str, exc: Exception, *, details: str | None = None) -> NoReturn:
    """Raise a typed storage error while preserving chained cause."""
    if isinstance(exc, StorageError):
        raise exc
    raise StorageUnavailable(
        context=StorageOperationContext(operation=operation, details=details),
        cause=exc,
    ) from exc


def get_internal(db: Database, key: str) -> str | None:
    """Return the stored value for ``key`` or ``None``."""
    try:
        with db.connection_scope() as conn:
            row = conn.execute(
                f"SELECT value FROM {db.table(INTERNAL)} WHERE name = ?", (key,)
            ).fetchone()
        return None if row is None else row[0]
    except Exception as exc:
        _raise_storage_error("internal.get_internal", exc, details=f"key={key!r}")


def set_internal(db: Database, key: str, value: str | int) -> None:
    """Insert or replace one internal value."""
    try:
        with db.connection_scope(write=True) as conn:
            conn.execute(
                f"INSERT OR REPLACE INTO {db.table(INTERNAL)} (name, value) VALUES (?, ?)",
                (key, str(value)),
            )
    except Exception as exc:
        _raise_storage_error("internal.set_internal", exc, details=f"key={key!r}")


def get_schema_version(db: Database) -> int:
    """Stored schema version, ``0`` when none has been written."""
    value = get_internal(db, SCHEMA_VERSION_KEY)
    try:
        return int(value) if value is not None else 0
    except ValueError:
        return 0


def set_schema_version(db: Database, version: int) -> None:
    set_internal(db, SCHEMA_VERSION_KEY, version)


def get_migration_state(db: Database) -> tuple[str | None, int]:
    """Return ``(stage, offset)``; stage is ``None`` when never written."""
    stage = get_internal(db, MIGRATION_STAGE_KEY)
    offset = get_internal(db, MIGRATION_OFFSET_KEY)
    try:
        return stage, int(offset) if offset is not None else 0
    except ValueError:
        return stage, 0


def set_migration_state(db: Database, stage: str | int, offset: int = 0) -> None:
    """Persist the migration checkpoint in one transaction."""
    with db.connection_scope(write=True):
        set_internal(db, MIGRATION_STAGE_KEY, stage)
        set_internal(db, MIGRATION_OFFSET_KEY, offset)
