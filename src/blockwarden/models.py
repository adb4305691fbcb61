"""Domain model for protections, player identities, and history records.

Every enum is persisted by ordinal, so member values must never be reordered.
Entities here are plain in-memory objects: persistence lives in
``blockwarden.db`` and cache placement in ``blockwarden.cache``.
"""

from __future__ import annotations

import time
from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any

from blockwarden import passwords


class ProtectionKind(IntEnum):
    """Access policy of a protection."""

    PUBLIC = 0
    PASSWORD = 1
    PRIVATE = 2
    RESERVED1 = 3
    RESERVED2 = 4
    DONATION = 5
    DISPLAY = 6


class PermissionScope(IntEnum):
    """What a permission subject names."""

    PLAYER = 0
    GROUP = 1
    TERRITORY = 2
    ITEM = 3
    REGION = 4


class AccessLevel(IntEnum):
    """Access granted by a permission, ordered from least to most."""

    NONE = 0
    PLAYER = 1
    ADMIN = 2


class FlagKind(IntEnum):
    """Behavior toggles attached to a protection."""

    REDSTONE = 0
    MAGNET = 1
    EXEMPTION = 2
    AUTOCLOSE = 3
    ALLOW_EXPLOSIONS = 4
    HOPPER = 5


class HistoryType(IntEnum):
    """Kind of event a history record describes."""

    TRANSACTION = 0
    REMOVAL = 1


class HistoryStatus(IntEnum):
    """Whether a history record still describes a live protection."""

    ACTIVE = 0
    INACTIVE = 1


def location_key(world: str, x: int, y: int, z: int) -> str:
    """Build the spatial cache key ``world:x:y:z``."""
    return f"{world}:{x}:{y}:{z}"


@dataclass(slots=True)
class PlayerInfo:
    """
    Persisted player identity.

    Attributes:
        id: Row id in the ``players`` table.
        stable_id: Migration-independent unique identifier (UUID string).
            ``None`` for legacy records that were never resolved.
        name: Last known display name. Names are not unique.
    """

    id: int
    stable_id: str | None
    name: str


@dataclass(slots=True, eq=False)
class Permission:
    """An access grant. Two permissions are equal when subject and scope match."""

    subject: str
    scope: PermissionScope
    access: AccessLevel = AccessLevel.PLAYER

    @property
    def key(self) -> tuple[str, PermissionScope]:
        return (self.subject, self.scope)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Permission):
            return NotImplemented
        return self.key == other.key

    def __hash__(self) -> int:
        return hash(self.key)


@dataclass(slots=True, eq=False)
class Flag:
    """A behavior flag with optional opaque data values. Equality is by kind."""

    kind: FlagKind
    data: list[Any] = field(default_factory=list)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Flag):
            return NotImplemented
        return self.kind == other.kind

    def __hash__(self) -> int:
        return hash(self.kind)


@dataclass(eq=False)
class Protection:
    """
    A world coordinate bound to an owner and an access policy.

    Protections are compared by identity: the cache hands out shared
    references and two loads of the same row must be the same object while
    it stays cached.

    Attributes:
        id: Row id, ``0`` until the protection is registered.
        owner: Owning identity.
        kind: Access policy.
        world, x, y, z: Protected coordinate.
        block_id: Block-type tag of the protected block.
        password: Argon2 hash for ``PASSWORD`` protections.
        created: Creation timestamp string.
        last_accessed: Epoch seconds of the last owner access.
        permissions: Access grants, unique by ``(subject, scope)``.
        flags: Behavior flags, unique by kind.
        extra: Unrecognized top-level members of the ``data`` column, in
            their original order, plus undecodable ``rights``/``flags``
            entries under those keys.
        raw_data: Original ``data`` text when it could not be decoded; it is
            written back verbatim until permissions or flags are added.
    """

    id: int
    owner: PlayerInfo
    kind: ProtectionKind
    world: str
    x: int
    y: int
    z: int
    block_id: int
    password: str | None = None
    created: str = ""
    last_accessed: int = 0
    permissions: list[Permission] = field(default_factory=list)
    flags: list[Flag] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)
    raw_data: str | None = None

    @property
    def location_key(self) -> str:
        return location_key(self.world, self.x, self.y, self.z)

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    def add_permission(self, permission: Permission) -> None:
        """Add a permission, replacing any existing one with the same subject and scope."""
        self.raw_data = None
        for index, existing in enumerate(self.permissions):
            if existing == permission:
                self.permissions[index] = permission
                return
        self.permissions.append(permission)

    def remove_permission(self, subject: str, scope: PermissionScope) -> bool:
        """Remove the permission for ``(subject, scope)``; True if one was removed."""
        before = len(self.permissions)
        self.permissions = [p for p in self.permissions if p.key != (subject, scope)]
        return len(self.permissions) != before

    def access_for(self, subject: str, scope: PermissionScope) -> AccessLevel:
        """Access level granted to ``subject`` in ``scope`` (``NONE`` when absent)."""
        for permission in self.permissions:
            if permission.key == (subject, scope):
                return permission.access
        return AccessLevel.NONE

    # ------------------------------------------------------------------
    # Flags
    # ------------------------------------------------------------------

    def add_flag(self, flag: Flag) -> bool:
        """Attach a flag; returns False when a flag of that kind is already set."""
        if flag in self.flags:
            return False
        self.raw_data = None
        self.flags.append(flag)
        return True

    def remove_flag(self, kind: FlagKind) -> bool:
        before = len(self.flags)
        self.flags = [f for f in self.flags if f.kind != kind]
        return len(self.flags) != before

    def has_flag(self, kind: FlagKind) -> bool:
        return any(f.kind == kind for f in self.flags)

    def get_flag(self, kind: FlagKind) -> Flag | None:
        for flag in self.flags:
            if flag.kind == kind:
                return flag
        return None

    # ------------------------------------------------------------------
    # Password and access bookkeeping
    # ------------------------------------------------------------------

    def set_password(self, plain: str) -> None:
        """Store an Argon2 hash of ``plain``."""
        self.password = passwords.hash_password(plain)

    def check_password(self, plain: str) -> bool:
        """
        Verify ``plain`` against the stored hash.

        A successful check against an outdated hash (a legacy SHA-1 digest or
        weaker Argon2 parameters) replaces it with a fresh Argon2 hash; the
        caller saves the protection to persist it.
        """
        if not passwords.verify_password(plain, self.password):
            return False
        if passwords.needs_rehash(self.password):
            self.password = passwords.hash_password(plain)
        return True

    def touch(self, now: int | None = None) -> None:
        """Record an access by the owner."""
        self.last_accessed = int(time.time()) if now is None else now

    def copy_policy_from(self, other: Protection) -> None:
        """
        Copy the access policy of another protection onto this one.

        Kind, password hash, permissions and flags are copied; identity,
        owner and coordinate are left alone. Used when a player copies the
        settings of one protection onto another.
        """
        self.kind = other.kind
        self.password = other.password
        self.permissions = [Permission(p.subject, p.scope, p.access) for p in other.permissions]
        self.flags = [Flag(f.kind, list(f.data)) for f in other.flags]
        self.raw_data = None


@dataclass
class HistoryRecord:
    """
    One audit entry in the history ledger.

    ``protection_id`` is kept after the protection is removed. ``metadata``
    holds ``key=value`` strings persisted comma-joined.
    """

    protection_id: int
    actor: PlayerInfo
    x: int
    y: int
    z: int
    type: HistoryType
    status: HistoryStatus = HistoryStatus.ACTIVE
    metadata: list[str] = field(default_factory=list)
    timestamp: int = 0
    id: int | None = None

    def add_metadata(self, entry: str) -> None:
        self.metadata.append(entry)

    def metadata_value(self, key: str) -> str | None:
        """Return the value of the first ``key=value`` metadata entry."""
        prefix = f"{key}="
        for entry in self.metadata:
            if entry.startswith(prefix):
                return entry[len(prefix) :]
        return None


@dataclass(frozen=True, slots=True)
class Bounds:
    """Inclusive axis-aligned box of block coordinates."""

    min_x: int
    max_x: int
    min_y: int
    max_y: int
    min_z: int
    max_z: int

    @classmethod
    def of(cls, x1: int, x2: int, y1: int, y2: int, z1: int, z2: int) -> Bounds:
        """Build bounds from two corners given in any order."""
        return cls(min(x1, x2), max(x1, x2), min(y1, y2), max(y1, y2), min(z1, z2), max(z1, z2))

    @classmethod
    def around(cls, x: int, y: int, z: int, radius: int) -> Bounds:
        """Cube of side ``2 * radius + 1`` centered on a block."""
        radius = abs(radius)
        return cls(x - radius, x + radius, y - radius, y + radius, z - radius, z + radius)

    @property
    def volume(self) -> int:
        return (
            (self.max_x - self.min_x + 1)
            * (self.max_y - self.min_y + 1)
            * (self.max_z - self.min_z + 1)
        )

    def contains(self, x: int, y: int, z: int) -> bool:
        return (
            self.min_x <= x <= self.max_x
            and self.min_y <= y <= self.max_y
            and self.min_z <= z <= self.max_z
        )

    def cells(self) -> Iterator[tuple[int, int, int]]:
        """Yield every block coordinate inside the box."""
        for x in range(self.min_x, self.max_x + 1):
            for y in range(self.min_y, self.max_y + 1):
                for z in range(self.min_z, self.max_z + 1):
                    yield (x, y, z)
