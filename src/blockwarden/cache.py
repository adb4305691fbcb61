"""In-memory protection cache.

Two indices over the same ``Protection`` references: by row id and by the
spatial key ``world:x:y:z``. The cache never evicts; entries leave only
through explicit invalidation by the repository or its callers. It performs
no locking and must only be touched from the tick thread.

``total_live_count`` is set by the repository to the number of protections
in storage. While ``size`` reaches that number the cache is *complete* and a
spatial miss means "not protected" without a storage round trip.
"""

from __future__ import annotations

from collections.abc import Iterator

from blockwarden.models import Protection, location_key


class ProtectionCache:
    """Id and location indices over shared ``Protection`` instances."""

    def __init__(self) -> None:
        self._by_id: dict[int, Protection] = {}
        self._by_key: dict[str, Protection] = {}
        # Key each cached id was indexed under, for when a protection moves.
        self._key_of: dict[int, str] = {}
        self.total_live_count = 0
        # Set while legacy rows exist outside the primary table.
        self.migration_pending = False

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get(self, ref: int | str) -> Protection | None:
        """Look up by id (``int``) or spatial key (``str``)."""
        if isinstance(ref, str):
            return self._by_key.get(ref)
        return self._by_id.get(ref)

    def get_by_id(self, protection_id: int) -> Protection | None:
        return self._by_id.get(protection_id)

    def get_by_key(self, key: str) -> Protection | None:
        return self._by_key.get(key)

    def get_at(self, world: str, x: int, y: int, z: int) -> Protection | None:
        return self._by_key.get(location_key(world, x, y, z))

    def references(self) -> list[Protection]:
        """Snapshot of every cached protection."""
        return list(self._by_id.values())

    def __iter__(self) -> Iterator[Protection]:
        return iter(self.references())

    def __contains__(self, item: object) -> bool:
        if isinstance(item, Protection):
            return self._by_id.get(item.id) is item
        if isinstance(item, (int, str)):
            return self.get(item) is not None
        return False

    def __len__(self) -> int:
        return len(self._by_id)

    def size(self) -> int:
        return len(self._by_id)

    @property
    def is_complete(self) -> bool:
        """True when every live protection is cached."""
        if self.migration_pending:
            return False
        return len(self._by_id) >= self.total_live_count

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def put(self, protection: Protection) -> None:
        """
        Index a protection under its id and current location.

        A stale location key left by an earlier put of the same id is
        dropped, as is any other protection indexed at the new location.
        """
        key = protection.location_key

        previous_key = self._key_of.get(protection.id)
        if previous_key is not None and previous_key != key:
            if self._by_key.get(previous_key) is self._by_id.get(protection.id):
                del self._by_key[previous_key]

        occupant = self._by_key.get(key)
        if occupant is not None and occupant.id != protection.id:
            self._drop(occupant.id)

        self._by_id[protection.id] = protection
        self._by_key[key] = protection
        self._key_of[protection.id] = key

    def invalidate(self, protection: Protection) -> None:
        """Remove a protection from both indices."""
        self._drop(protection.id)
        key = protection.location_key
        if self._by_key.get(key) is protection:
            del self._by_key[key]

    def invalidate_id(self, protection_id: int) -> None:
        self._drop(protection_id)

    def clear(self) -> None:
        self._by_id.clear()
        self._by_key.clear()
        self._key_of.clear()

    def _drop(self, protection_id: int) -> None:
        cached = self._by_id.pop(protection_id, None)
        key = self._key_of.pop(protection_id, None)
        if key is not None and cached is not None and self._by_key.get(key) is cached:
            del self._by_key[key]
