"""History ledger: append-only audit trail of protection events.

Overview
--------
Every registration appends a ``TRANSACTION`` record; removing a protection
closes its records (status ``INACTIVE``) instead of deleting them, so the
trail outlives the protection. Reads are plain filtered queries with no
caching because audit reads are rare next to protection reads.

Failure policy
--------------
The ledger sits at the same boundary as the protection repository: storage
failures are logged and reads return empty results, writes return ``None``
or ``0``. A failed audit write never aborts the game interaction that caused
it.

When the ledger is disabled every write is a no-op and every read is empty.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from blockwarden.db import codec, history_repo
from blockwarden.db.connection import Database
from blockwarden.db.errors import StorageError
from blockwarden.identity import IdentityRegistry
from blockwarden.models import HistoryRecord, HistoryStatus, HistoryType, PlayerInfo

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 15


class HistoryLedger:
    """
    Append-only history store.

    Args:
        db: Storage handle.
        registry: Resolves the ``player`` column to identities.
        enabled: When False the ledger records and returns nothing.
        legacy_pending: Returns True while legacy history rows may still be
            unconverted; ``load`` then falls back to the legacy table and
            ``close_protection`` closes legacy rows as well.
    """

    def __init__(
        self,
        db: Database,
        registry: IdentityRegistry,
        *,
        enabled: bool = True,
        legacy_pending: Callable[[], bool] | None = None,
    ) -> None:
        self.db = db
        self.registry = registry
        self.enabled = enabled
        self._legacy_pending = legacy_pending or (lambda: False)

    def _decode(self, rows: list[dict], *, legacy: bool = False) -> list[HistoryRecord]:
        return [
            codec.history_from_row(row, self.registry.resolve_reference(row["player"], legacy=legacy))
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def record(
        self,
        protection_id: int,
        actor: PlayerInfo,
        coordinate: tuple[int, int, int],
        type: HistoryType = HistoryType.TRANSACTION,
        status: HistoryStatus = HistoryStatus.ACTIVE,
        metadata: list[str] | None = None,
    ) -> HistoryRecord | None:
        """Append a record; returns it with its new id, or None when not stored."""
        if not self.enabled:
            return None
        x, y, z = coordinate
        entry = HistoryRecord(
            protection_id=protection_id,
            actor=actor,
            x=x,
            y=y,
            z=z,
            type=type,
            status=status,
            metadata=list(metadata or []),
            timestamp=int(time.time()),
        )
        try:
            entry.id = history_repo.insert_history(self.db, codec.history_to_params(entry))
        except StorageError:
            logger.exception("Failed to record history for protection %s", protection_id)
            return None
        return entry

    def save(self, entry: HistoryRecord) -> bool:
        """Rewrite an existing record (status or metadata changes)."""
        if not self.enabled or entry.id is None:
            return False
        try:
            return history_repo.update_history(self.db, entry.id, codec.history_to_params(entry))
        except StorageError:
            logger.exception("Failed to update history %s", entry.id)
            return False

    def invalidate_all(self, actor: PlayerInfo) -> int:
        """Mark every record of one actor inactive; returns the number changed."""
        if not self.enabled:
            return 0
        try:
            return history_repo.set_status_for_player(self.db, actor.id, HistoryStatus.INACTIVE)
        except StorageError:
            logger.exception("Failed to invalidate history for identity %d", actor.id)
            return 0

    def close_protection(self, protection_id: int, destroyer: PlayerInfo | None = None) -> int:
        """Close the active records of a removed protection.

        A ``destroyer=<name>`` metadata entry is appended when the remover
        is known. Unconverted legacy records are closed as well.
        """
        if not self.enabled:
            return 0
        entry = f"destroyer={destroyer.name}" if destroyer is not None else None
        try:
            return history_repo.close_for_protection(
                self.db, protection_id, entry, include_legacy=self._legacy_pending()
            )
        except StorageError:
            logger.exception("Failed to close history for protection %d", protection_id)
            return 0

    def remove(self, history_id: int) -> bool:
        """Administrative purge of one record."""
        if not self.enabled:
            return False
        try:
            return history_repo.delete_history(self.db, history_id)
        except StorageError:
            logger.exception("Failed to remove history %d", history_id)
            return False

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def load(self, history_id: int) -> HistoryRecord | None:
        if not self.enabled:
            return None
        try:
            row = history_repo.get_history_row(self.db, history_id)
            if row is not None:
                return self._decode([row])[0]
            if self._legacy_pending():
                row = history_repo.get_history_row(self.db, history_id, legacy=True)
                if row is not None:
                    return self._decode([row], legacy=True)[0]
        except StorageError:
            logger.exception("Failed to load history %d", history_id)
        return None

    def by_protection(self, protection_id: int) -> list[HistoryRecord]:
        if not self.enabled:
            return []
        try:
            return self._decode(history_repo.list_by_protection(self.db, protection_id))
        except StorageError:
            logger.exception("Failed to load history for protection %d", protection_id)
            return []

    def by_actor(
        self, actor: PlayerInfo, page: int | None = None, page_size: int = DEFAULT_PAGE_SIZE
    ) -> list[HistoryRecord]:
        """Records of one actor, newest first; ``page`` is zero-based."""
        if not self.enabled:
            return []
        limit, offset = (None, 0) if page is None else (page_size, page * page_size)
        try:
            rows = history_repo.list_by_player(self.db, actor.id, limit=limit, offset=offset)
            return self._decode(rows)
        except StorageError:
            logger.exception("Failed to load history for identity %d", actor.id)
            return []

    def by_status(self, status: HistoryStatus) -> list[HistoryRecord]:
        if not self.enabled:
            return []
        try:
            return self._decode(history_repo.list_by_status(self.db, status))
        except StorageError:
            logger.exception("Failed to load history with status %s", status.name)
            return []

    def at(self, x: int, y: int, z: int, actor: PlayerInfo | None = None) -> list[HistoryRecord]:
        if not self.enabled:
            return []
        try:
            rows = history_repo.list_at(
                self.db, x, y, z, player_id=actor.id if actor is not None else None
            )
            return self._decode(rows)
        except StorageError:
            logger.exception("Failed to load history at %d:%d:%d", x, y, z)
            return []

    def recent(
        self, page: int | None = None, page_size: int = DEFAULT_PAGE_SIZE
    ) -> list[HistoryRecord]:
        if not self.enabled:
            return []
        limit, offset = (None, 0) if page is None else (page_size, page * page_size)
        try:
            return self._decode(history_repo.list_recent(self.db, limit=limit, offset=offset))
        except StorageError:
            logger.exception("Failed to load recent history")
            return []

    def count(self, actor: PlayerInfo | None = None) -> int:
        if not self.enabled:
            return 0
        try:
            return history_repo.count_history(
                self.db, player_id=actor.id if actor is not None else None
            )
        except StorageError:
            logger.exception("Failed to count history")
            return 0
