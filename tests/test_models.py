"""Unit tests for the domain model (blockwarden/models.py)."""

import hashlib

import pytest

from blockwarden import passwords
from blockwarden.models import (
    AccessLevel,
    Bounds,
    Flag,
    FlagKind,
    HistoryRecord,
    HistoryType,
    Permission,
    PermissionScope,
    PlayerInfo,
    Protection,
    ProtectionKind,
    location_key,
)
from tests.constants import TEST_PASSWORD, WORLD

ALICE = PlayerInfo(id=1, stable_id=None, name="alice")


def make_protection(**overrides) -> Protection:
    values = {
        "id": 7,
        "owner": ALICE,
        "kind": ProtectionKind.PRIVATE,
        "world": WORLD,
        "x": 10,
        "y": 64,
        "z": 10,
        "block_id": 54,
    }
    values.update(overrides)
    return Protection(**values)


# ============================================================================
# ENUM ORDINALS
# ============================================================================


@pytest.mark.unit
def test_enum_ordinals_are_stable():
    assert [k.value for k in ProtectionKind] == [0, 1, 2, 3, 4, 5, 6]
    assert ProtectionKind.DISPLAY == 6
    assert PermissionScope.REGION == 4
    assert AccessLevel.ADMIN == 2
    assert FlagKind.HOPPER == 5
    assert HistoryType.REMOVAL == 1


@pytest.mark.unit
def test_location_key_format():
    assert location_key(WORLD, -3, 64, 12) == "world:-3:64:12"
    assert make_protection().location_key == "world:10:64:10"


# ============================================================================
# PERMISSIONS
# ============================================================================


@pytest.mark.unit
def test_add_permission_replaces_same_subject_and_scope():
    protection = make_protection()
    protection.add_permission(Permission("bob", PermissionScope.PLAYER, AccessLevel.PLAYER))
    protection.add_permission(Permission("bob", PermissionScope.PLAYER, AccessLevel.ADMIN))

    assert len(protection.permissions) == 1
    assert protection.access_for("bob", PermissionScope.PLAYER) == AccessLevel.ADMIN


@pytest.mark.unit
def test_distinct_permissions_accumulate():
    protection = make_protection()
    protection.add_permission(Permission("bob", PermissionScope.PLAYER))
    protection.add_permission(Permission("bob", PermissionScope.GROUP))
    protection.add_permission(Permission("carol", PermissionScope.PLAYER))

    assert len(protection.permissions) == 3


@pytest.mark.unit
def test_remove_permission():
    protection = make_protection()
    protection.add_permission(Permission("bob", PermissionScope.PLAYER))

    assert protection.remove_permission("bob", PermissionScope.PLAYER) is True
    assert protection.remove_permission("bob", PermissionScope.PLAYER) is False
    assert protection.access_for("bob", PermissionScope.PLAYER) == AccessLevel.NONE


@pytest.mark.unit
def test_permission_equality_ignores_access():
    assert Permission("bob", PermissionScope.PLAYER, AccessLevel.ADMIN) == Permission(
        "bob", PermissionScope.PLAYER, AccessLevel.NONE
    )
    assert Permission("bob", PermissionScope.PLAYER) != Permission("bob", PermissionScope.GROUP)


@pytest.mark.unit
def test_adding_permission_drops_raw_data():
    protection = make_protection(raw_data="{broken")
    protection.add_permission(Permission("bob", PermissionScope.PLAYER))

    assert protection.raw_data is None


# ============================================================================
# FLAGS
# ============================================================================


@pytest.mark.unit
def test_flags_are_unique_by_kind():
    protection = make_protection()

    assert protection.add_flag(Flag(FlagKind.REDSTONE)) is True
    assert protection.add_flag(Flag(FlagKind.REDSTONE, ["x"])) is False
    assert protection.has_flag(FlagKind.REDSTONE)
    assert protection.get_flag(FlagKind.MAGNET) is None
    assert protection.remove_flag(FlagKind.REDSTONE) is True
    assert not protection.has_flag(FlagKind.REDSTONE)


# ============================================================================
# PASSWORD AND POLICY
# ============================================================================


@pytest.mark.unit
def test_password_round_trip():
    protection = make_protection(kind=ProtectionKind.PASSWORD)
    protection.set_password(TEST_PASSWORD)

    assert protection.password != TEST_PASSWORD
    assert protection.check_password(TEST_PASSWORD)
    assert not protection.check_password("wrong password")


@pytest.mark.unit
def test_legacy_password_is_rehashed_on_successful_check():
    legacy = hashlib.sha1(TEST_PASSWORD.encode()).hexdigest()
    protection = make_protection(kind=ProtectionKind.PASSWORD, password=legacy)

    assert not protection.check_password("wrong password")
    assert protection.password == legacy

    assert protection.check_password(TEST_PASSWORD)
    assert passwords.is_argon2_hash(protection.password)
    assert protection.check_password(TEST_PASSWORD)


@pytest.mark.unit
def test_copy_policy_from_copies_policy_only():
    source = make_protection(id=1, kind=ProtectionKind.PUBLIC, password="hash")
    source.add_permission(Permission("bob", PermissionScope.PLAYER, AccessLevel.ADMIN))
    source.add_flag(Flag(FlagKind.HOPPER, [1]))
    target = make_protection(id=2, x=99)

    target.copy_policy_from(source)

    assert target.kind == ProtectionKind.PUBLIC
    assert target.password == "hash"
    assert target.access_for("bob", PermissionScope.PLAYER) == AccessLevel.ADMIN
    assert target.get_flag(FlagKind.HOPPER).data == [1]
    assert target.id == 2
    assert target.x == 99
    # Copies, not shared references.
    assert target.permissions[0] is not source.permissions[0]


@pytest.mark.unit
def test_touch_sets_last_accessed():
    protection = make_protection()
    protection.touch(now=1700000000)

    assert protection.last_accessed == 1700000000


@pytest.mark.unit
def test_protections_compare_by_identity():
    assert make_protection() != make_protection()


# ============================================================================
# HISTORY RECORD
# ============================================================================


@pytest.mark.unit
def test_history_metadata_value():
    record = HistoryRecord(
        protection_id=1, actor=ALICE, x=0, y=0, z=0, type=HistoryType.TRANSACTION
    )
    record.add_metadata("creator=alice")
    record.add_metadata("destroyer=bob")

    assert record.metadata_value("destroyer") == "bob"
    assert record.metadata_value("missing") is None


# ============================================================================
# BOUNDS
# ============================================================================


@pytest.mark.unit
def test_bounds_of_orders_corners():
    bounds = Bounds.of(5, -5, 70, 60, 3, 3)

    assert (bounds.min_x, bounds.max_x) == (-5, 5)
    assert (bounds.min_y, bounds.max_y) == (60, 70)
    assert bounds.volume == 11 * 11 * 1


@pytest.mark.unit
def test_bounds_around_is_inclusive():
    bounds = Bounds.around(0, 64, 0, 1)

    assert bounds.volume == 27
    assert bounds.contains(1, 65, -1)
    assert not bounds.contains(2, 64, 0)
    assert len(list(bounds.cells())) == 27
