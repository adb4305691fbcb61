"""Row handlers: convert one legacy row into the identity-keyed schema.

Handlers must be idempotent: after a crash the pipeline re-applies the last
uncommitted batch, so converting the same row twice has to leave the same
result. Protection and history rows keep their ids and are inserted only
when the id is not already present.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

from blockwarden.db import codec, history_repo, protections_repo
from blockwarden.db.connection import Database
from blockwarden.db.errors import MalformedExtensionData
from blockwarden.identity import IdentityRegistry
from blockwarden.models import PermissionScope

logger = logging.getLogger(__name__)


class RowHandler(ABC):
    """Transformation applied to each row a walker yields."""

    def on_start(self) -> None:
        """Called when the stage is entered in this process."""

    @abstractmethod
    def handle(self, row: Any) -> bool:
        """Convert one row; returns True when something was written."""

    def on_complete(self) -> None:
        """Called inside the transaction that advances past the stage."""


class PlayerRowHandler(RowHandler):
    """Creates an identity for each legacy player name."""

    def __init__(self, registry: IdentityRegistry) -> None:
        self.registry = registry
        self.seen = 0

    def on_start(self) -> None:
        logger.info("Converting legacy player names to identities")

    def handle(self, row: str) -> bool:
        self.registry.lookup(row)
        self.seen += 1
        return True

    def on_complete(self) -> None:
        logger.info("Completed conversion of player names (%d names seen)", self.seen)


def convert_extension_data(raw: str | None, registry: IdentityRegistry) -> str | None:
    """Rewrite PLAYER-scope permission subjects from names to stable ids.

    Subjects without a known stable id keep their name. Undecodable data is
    returned unchanged.
    """
    try:
        permissions, flags, extra = codec.decode_extension(raw)
    except MalformedExtensionData:
        return raw
    if not any(p.scope == PermissionScope.PLAYER for p in permissions):
        return raw

    for permission in permissions:
        if permission.scope != PermissionScope.PLAYER:
            continue
        stable_id = registry.stable_id_for_name(permission.subject)
        if stable_id:
            permission.subject = stable_id

    return codec.encode_extension_parts(permissions, flags, extra)


class ProtectionRowHandler(RowHandler):
    """Copies ``protections_old_converting`` rows into ``protections``."""

    def __init__(self, db: Database, registry: IdentityRegistry) -> None:
        self.db = db
        self.registry = registry
        self.converted = 0

    def on_start(self) -> None:
        logger.info("Converting %s", self.db.table("protections"))

    def handle(self, row: dict[str, Any]) -> bool:
        owner = self.registry.resolve_reference(row["owner"], legacy=True)
        params = {
            "id": int(row["id"]),
            "owner": owner.id,
            "type": int(row["type"] or 0),
            "x": row["x"],
            "y": row["y"],
            "z": row["z"],
            "data": convert_extension_data(row["data"], self.registry),
            "blockId": row["blockId"],
            "world": row["world"],
            "password": row["password"],
            "date": row["date"],
            "last_accessed": row["last_accessed"],
        }
        written = protections_repo.upsert_protection(self.db, params, keep_existing=True)
        if written:
            self.converted += 1
        return written

    def on_complete(self) -> None:
        logger.info(
            "Completed conversion of %s (%d rows copied)",
            self.db.table("protections"),
            self.converted,
        )


class HistoryRowHandler(RowHandler):
    """Copies ``history_old_converting`` rows into ``history``."""

    def __init__(self, db: Database, registry: IdentityRegistry) -> None:
        self.db = db
        self.registry = registry
        self.converted = 0

    def on_start(self) -> None:
        logger.info("Converting %s", self.db.table("history"))

    def handle(self, row: dict[str, Any]) -> bool:
        actor = self.registry.resolve_reference(row["player"], legacy=True)
        params = {
            "protectionId": row["protectionId"],
            "player": actor.id,
            "x": row["x"],
            "y": row["y"],
            "z": row["z"],
            "type": row["type"],
            "status": row["status"],
            "metadata": row["metadata"],
            "timestamp": row["timestamp"],
        }
        written = history_repo.insert_history_with_id(self.db, int(row["id"]), params)
        if written:
            self.converted += 1
        return written

    def on_complete(self) -> None:
        logger.info(
            "Completed conversion of %s (%d rows copied)", self.db.table("history"), self.converted
        )
