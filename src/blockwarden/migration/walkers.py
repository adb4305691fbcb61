"""Table walkers: batched iteration over a legacy table from a checkpoint.

A walker knows how to fetch the batch that starts at a checkpoint offset and
how to compute the offset that follows a processed batch. It holds no
position of its own; the pipeline persists the offset.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

from blockwarden.db import players_repo
from blockwarden.db.connection import Database


class TableWalker(ABC):
    """Fetches fixed-size batches of legacy rows."""

    def __init__(self, db: Database) -> None:
        self.db = db

    @abstractmethod
    def fetch(self, offset: int, limit: int) -> list[Any]:
        """Return at most ``limit`` rows starting at ``offset``."""

    @abstractmethod
    def next_offset(self, offset: int, batch: list[Any]) -> int:
        """Checkpoint to persist once ``batch`` has been handled."""


class NameTableWalker(TableWalker):
    """Pages distinct legacy player names by position."""

    def fetch(self, offset: int, limit: int) -> list[str]:
        return players_repo.list_legacy_names(self.db, offset, limit)

    def next_offset(self, offset: int, batch: list[str]) -> int:
        return offset + len(batch)


class KeysetTableWalker(TableWalker):
    """
    Pages rows by id: the offset is the last processed id.

    Args:
        db: Storage handle.
        fetch_batch: ``(db, after_id, limit) -> rows`` returning dict rows
            with an ``id`` key, ordered by id.
    """

    def __init__(
        self, db: Database, fetch_batch: Callable[[Database, int, int], list[dict[str, Any]]]
    ) -> None:
        super().__init__(db)
        self._fetch_batch = fetch_batch

    def fetch(self, offset: int, limit: int) -> list[dict[str, Any]]:
        return self._fetch_batch(self.db, offset, limit)

    def next_offset(self, offset: int, batch: list[dict[str, Any]]) -> int:
        if not batch:
            return offset
        return int(batch[-1]["id"])
