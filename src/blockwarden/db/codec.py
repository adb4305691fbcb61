"""Row codec between SQLite rows and domain entities.

The ``data`` column of a protection is a JSON object. Two members are
understood:

    rights: [{"name": str, "type": <PermissionScope>, "rights": <AccessLevel>}]
    flags:  [{"id": <FlagKind>, "data": [...]}]

Every other top-level member is kept in ``Protection.extra`` in its original
order and written back verbatim, so data written by newer releases survives a
load/save cycle through this one. The same goes for ``rights``/``flags``
entries that do not decode (unknown ordinals) and for non-list values of
those keys: they are kept in ``extra`` under the same key.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from blockwarden.db.errors import MalformedExtensionData
from blockwarden.models import (
    AccessLevel,
    Flag,
    FlagKind,
    HistoryRecord,
    HistoryStatus,
    HistoryType,
    Permission,
    PermissionScope,
    PlayerInfo,
    Protection,
    ProtectionKind,
)

logger = logging.getLogger(__name__)

RIGHTS_KEY = "rights"
FLAGS_KEY = "flags"


# ============================================================================
# EXTENSION BAG
# ============================================================================


def _decode_permission(node: Any) -> Permission | None:
    if not isinstance(node, dict):
        return None
    name = node.get("name")
    try:
        scope = PermissionScope(int(node.get("type")))
        access = AccessLevel(int(node.get("rights")))
    except (TypeError, ValueError):
        return None
    if not isinstance(name, str) or not name:
        return None
    return Permission(name, scope, access)


def _decode_flag(node: Any) -> Flag | None:
    if not isinstance(node, dict):
        return None
    try:
        kind = FlagKind(int(node.get("id")))
    except (TypeError, ValueError):
        return None
    data = node.get("data")
    return Flag(kind, list(data) if isinstance(data, list) else [])


def decode_extension(raw: str | None) -> tuple[list[Permission], list[Flag], dict[str, Any]]:
    """Decode a ``data`` column value.

    Args:
        raw: Column text. ``None`` and blank strings decode to empty values.

    Returns:
        ``(permissions, flags, extra)`` where ``extra`` holds every other
        top-level member in order.

    Raises:
        MalformedExtensionData: If ``raw`` is not a JSON object.
    """
    if raw is None or not raw.strip():
        return [], [], {}

    try:
        root = json.loads(raw)
    except ValueError as exc:
        raise MalformedExtensionData(raw, str(exc)) from exc
    if not isinstance(root, dict):
        raise MalformedExtensionData(raw, f"expected object, got {type(root).__name__}")

    permissions: list[Permission] = []
    flags: list[Flag] = []
    extra: dict[str, Any] = {}

    for key, value in root.items():
        if key == RIGHTS_KEY and isinstance(value, list):
            opaque = []
            for node in value:
                permission = _decode_permission(node)
                if permission is None:
                    opaque.append(node)
                elif permission in permissions:
                    # Later duplicates replace earlier ones.
                    permissions[permissions.index(permission)] = permission
                else:
                    permissions.append(permission)
            if opaque:
                extra[key] = opaque
        elif key == FLAGS_KEY and isinstance(value, list):
            opaque = []
            for node in value:
                flag = _decode_flag(node)
                if flag is None:
                    opaque.append(node)
                elif flag not in flags:
                    flags.append(flag)
            if opaque:
                extra[key] = opaque
        else:
            extra[key] = value

    return permissions, flags, extra


def encode_extension(protection: Protection) -> str | None:
    """Encode permissions, flags and the ordered remainder to ``data`` text.

    Returns:
        The original text when the row was undecodable and nothing has been
        added since, ``None`` when there is nothing to store, otherwise a
        JSON object string.
    """
    if protection.raw_data is not None:
        return protection.raw_data
    return encode_extension_parts(protection.permissions, protection.flags, protection.extra)


def encode_extension_parts(
    permissions: list[Permission], flags: list[Flag], extra: dict[str, Any]
) -> str | None:
    """Encode decoded extension parts back to ``data`` text (``None`` when empty).

    Entries of ``rights``/``flags`` that could not be decoded (unknown
    ordinals from a newer release, or a non-list value) sit in ``extra`` under
    the same key. Undecodable list entries are written back after the known
    ones; a non-list value is written back as long as no entries of that kind
    were added.
    """
    known = {
        RIGHTS_KEY: [
            {"name": p.subject, "type": int(p.scope), "rights": int(p.access)}
            for p in permissions
        ],
        FLAGS_KEY: [{"id": int(f.kind), "data": list(f.data)} for f in flags],
    }
    root: dict[str, Any] = {}
    for key, encoded in known.items():
        if key not in extra:
            if encoded:
                root[key] = encoded
            continue
        opaque = extra[key]
        if not encoded:
            root[key] = opaque
        elif isinstance(opaque, list):
            root[key] = encoded + opaque
        else:
            root[key] = encoded
    for key, value in extra.items():
        if key not in known:
            root[key] = value

    if not root:
        return None
    return json.dumps(root, separators=(",", ":"))


# ============================================================================
# PROTECTIONS
# ============================================================================


def creation_timestamp(now: datetime | None = None) -> str:
    """Format a creation timestamp the way the ``date`` column stores it."""
    moment = now or datetime.now()
    return moment.strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]


def protection_from_row(row: Mapping[str, Any], owner: PlayerInfo) -> Protection:
    """Build a ``Protection`` from a ``protections`` row.

    Undecodable ``data`` yields a protection with no permissions or flags
    whose ``raw_data`` keeps the original text.
    """
    protection = Protection(
        id=int(row["id"]),
        owner=owner,
        kind=ProtectionKind(int(row["type"] or 0)),
        world=row["world"],
        x=int(row["x"]),
        y=int(row["y"]),
        z=int(row["z"]),
        block_id=int(row["blockId"] or 0),
        password=row["password"] or None,
        created=row["date"] or "",
        last_accessed=int(row["last_accessed"] or 0),
    )
    try:
        protection.permissions, protection.flags, protection.extra = decode_extension(row["data"])
    except MalformedExtensionData as exc:
        logger.warning(
            "Protection %s has malformed data (%s); keeping raw value", protection.id, exc.reason
        )
        protection.raw_data = exc.raw
    return protection


def protection_to_params(protection: Protection) -> dict[str, Any]:
    """Named SQL parameters for a full protection row."""
    return {
        "id": protection.id,
        "owner": protection.owner.id,
        "type": int(protection.kind),
        "x": protection.x,
        "y": protection.y,
        "z": protection.z,
        "data": encode_extension(protection),
        "blockId": protection.block_id,
        "world": protection.world,
        "password": protection.password,
        "date": protection.created,
        "last_accessed": protection.last_accessed,
    }


# ============================================================================
# PLAYERS
# ============================================================================


def player_from_row(row: Mapping[str, Any]) -> PlayerInfo:
    stable_id = row["uuid"]
    return PlayerInfo(
        id=int(row["id"]),
        stable_id=stable_id if stable_id else None,
        name=row["name"] or "",
    )


# ============================================================================
# HISTORY
# ============================================================================


def split_metadata(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [entry for entry in raw.split(",") if entry]


def join_metadata(entries: list[str]) -> str:
    """Comma-join metadata entries; commas inside an entry are dropped."""
    return ",".join(entry.replace(",", "") for entry in entries if entry)


def history_from_row(row: Mapping[str, Any], actor: PlayerInfo) -> HistoryRecord:
    return HistoryRecord(
        id=int(row["id"]),
        protection_id=int(row["protectionId"] or 0),
        actor=actor,
        x=int(row["x"] or 0),
        y=int(row["y"] or 0),
        z=int(row["z"] or 0),
        type=HistoryType(int(row["type"] or 0)),
        status=HistoryStatus(int(row["status"] or 0)),
        metadata=split_metadata(row["metadata"]),
        timestamp=int(row["timestamp"] or 0),
    )


def history_to_params(record: HistoryRecord) -> dict[str, Any]:
    """Named SQL parameters for a history row (without ``id``)."""
    return {
        "protectionId": record.protection_id,
        "player": record.actor.id,
        "x": record.x,
        "y": record.y,
        "z": record.z,
        "type": int(record.type),
        "status": int(record.status),
        "metadata": join_metadata(record.metadata),
        "timestamp": record.timestamp,
    }
