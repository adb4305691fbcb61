"""Identity registry: display names and stable ids to persisted player records.

Player names change and get reused, so a protection stores the row id of a
``PlayerInfo`` rather than a name. The registry resolves names and stable ids
(UUID strings) to those records, creating them on first sight, and keeps an
in-memory cache by row id and by stable id in front of ``players_repo``.

Identities are never deleted: history rows keep pointing at them after the
protections they describe are gone.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable

from blockwarden.db import players_repo
from blockwarden.db.connection import Database
from blockwarden.models import PlayerInfo

logger = logging.getLogger(__name__)

# Maps a display name to a stable id, or None when the host cannot tell.
NameResolver = Callable[[str], "str | None"]


def normalize_stable_id(value: str) -> str | None:
    """Return the canonical lowercase form of a UUID string, or None if invalid."""
    try:
        return str(uuid.UUID(value.strip()))
    except (AttributeError, ValueError):
        return None


def is_stable_id(value: str) -> bool:
    return normalize_stable_id(value) is not None


class IdentityRegistry:
    """
    Cached resolver over the ``players`` table.

    Args:
        db: Storage handle.
        name_resolver: Optional host callback mapping a name to its stable id
            (for example an online-player table or an account service).
    """

    def __init__(self, db: Database, name_resolver: NameResolver | None = None) -> None:
        self.db = db
        self.name_resolver = name_resolver
        self._by_id: dict[int, PlayerInfo] = {}
        self._by_stable_id: dict[str, PlayerInfo] = {}

    def _remember(self, info: PlayerInfo) -> PlayerInfo:
        """Cache ``info``, returning the already-cached instance when there is one."""
        cached = self._by_id.get(info.id)
        if cached is not None:
            cached.name = info.name
            cached.stable_id = info.stable_id
            info = cached
        else:
            self._by_id[info.id] = info
        if info.stable_id:
            self._by_stable_id[info.stable_id.lower()] = info
        return info

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get(self, identity_id: int) -> PlayerInfo | None:
        """Identity by row id."""
        cached = self._by_id.get(identity_id)
        if cached is not None:
            return cached
        info = players_repo.get_player(self.db, identity_id)
        return self._remember(info) if info is not None else None

    def resolve_stable_id(self, stable_id: str) -> PlayerInfo | None:
        """Unique identity for a stable id."""
        key = normalize_stable_id(stable_id) or stable_id
        cached = self._by_stable_id.get(key.lower())
        if cached is not None:
            return cached
        info = players_repo.get_player_by_stable_id(self.db, key)
        return self._remember(info) if info is not None else None

    def resolve_name(self, name: str) -> list[PlayerInfo]:
        """Every identity last seen under ``name`` (case-insensitive)."""
        return [self._remember(info) for info in players_repo.find_players_by_name(self.db, name)]

    def resolve_reference(self, value: int | str | None, *, legacy: bool = False) -> PlayerInfo:
        """
        Resolve an owner/actor column value.

        Converted tables store identity row ids; legacy tables store names.
        A dangling id yields an unnamed placeholder so the row stays readable.
        """
        if legacy:
            return self.lookup(str(value or ""))
        identity_id = int(value or 0)
        info = self.get(identity_id)
        if info is None:
            logger.warning("Row references unknown identity %d", identity_id)
            return PlayerInfo(id=identity_id, stable_id=None, name="")
        return info

    def stable_id_for_name(self, name: str) -> str | None:
        """Best-known stable id for a display name, without creating records."""
        normalized = normalize_stable_id(name)
        if normalized is not None:
            return normalized
        for info in self.resolve_name(name):
            if info.stable_id:
                return info.stable_id
        if self.name_resolver is not None:
            try:
                resolved = self.name_resolver(name)
            except Exception:
                logger.exception("Name resolver failed for %r", name)
                return None
            if resolved:
                return normalize_stable_id(resolved) or resolved
        return None

    # ------------------------------------------------------------------
    # Creation and updates
    # ------------------------------------------------------------------

    def get_or_create(self, stable_id: str | None, name: str) -> PlayerInfo:
        """
        Return the identity for ``stable_id``/``name``, creating it when missing.

        With a stable id the match is by id only. Without one, an existing
        record that also lacks a stable id is preferred so legacy records are
        not fragmented into duplicates.
        """
        if stable_id:
            stable_id = normalize_stable_id(stable_id) or stable_id
            existing = self.resolve_stable_id(stable_id)
            if existing is not None:
                return existing
        else:
            for candidate in self.resolve_name(name):
                if candidate.stable_id is None:
                    return candidate

        info = players_repo.create_player(self.db, stable_id or None, name)
        logger.debug("Created identity %d for %r (stable id %s)", info.id, name, stable_id)
        return self._remember(info)

    def lookup(self, ident: str) -> PlayerInfo:
        """
        Resolve a UUID string or a display name to an identity.

        A UUID string resolves by stable id. A name is first passed through
        the name resolver; when it yields a stable id that id wins, otherwise
        the name maps to a record without a stable id.
        """
        stable_id = normalize_stable_id(ident)
        if stable_id is not None:
            existing = self.resolve_stable_id(stable_id)
            if existing is not None:
                return existing
            return self.get_or_create(stable_id, "")

        resolved = None
        if self.name_resolver is not None:
            try:
                resolved = self.name_resolver(ident)
            except Exception:
                logger.exception("Name resolver failed for %r", ident)
        if resolved:
            return self.get_or_create(resolved, ident)
        return self.get_or_create(None, ident)

    def rename(self, info: PlayerInfo, name: str) -> PlayerInfo:
        """Record a new display name for an identity."""
        if info.name == name:
            return info
        info.name = name
        players_repo.update_player(self.db, info)
        return self._remember(info)

    def attach_stable_id(self, info: PlayerInfo, stable_id: str) -> PlayerInfo:
        """Give a legacy identity its stable id."""
        info.stable_id = normalize_stable_id(stable_id) or stable_id
        players_repo.update_player(self.db, info)
        return self._remember(info)

    def clear_cache(self) -> None:
        self._by_id.clear()
        self._by_stable_id.clear()
