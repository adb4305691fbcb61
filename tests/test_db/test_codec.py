"""Tests for the row codec and the JSON extension bag (blockwarden/db/codec.py)."""

import json
from datetime import datetime

import pytest

from blockwarden.db import codec
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
    ProtectionKind,
)

OWNER = PlayerInfo(id=3, stable_id=None, name="alice")


def protection_row(**overrides) -> dict:
    row = {
        "id": 11,
        "owner": 3,
        "type": 2,
        "x": 10,
        "y": 64,
        "z": -4,
        "flags": 0,
        "data": None,
        "blockId": 54,
        "world": "world",
        "password": None,
        "date": "2024-01-02 03:04:05.678",
        "last_accessed": 1700000000,
    }
    row.update(overrides)
    return row


# ============================================================================
# EXTENSION BAG
# ============================================================================


@pytest.mark.unit
@pytest.mark.parametrize("raw", [None, "", "   "])
def test_empty_data_decodes_to_nothing(raw):
    assert codec.decode_extension(raw) == ([], [], {})


@pytest.mark.unit
def test_decode_rights_flags_and_unknown_members():
    raw = json.dumps(
        {
            "future": {"nested": [1, 2]},
            "rights": [
                {"name": "bob", "type": 0, "rights": 1},
                {"name": "mods", "type": 1, "rights": 2},
            ],
            "flags": [{"id": 3, "data": ["10"]}],
            "zeta": 5,
        }
    )

    permissions, flags, extra = codec.decode_extension(raw)

    assert [(p.subject, p.scope, p.access) for p in permissions] == [
        ("bob", PermissionScope.PLAYER, AccessLevel.PLAYER),
        ("mods", PermissionScope.GROUP, AccessLevel.ADMIN),
    ]
    assert flags == [Flag(FlagKind.AUTOCLOSE)]
    assert flags[0].data == ["10"]
    assert list(extra) == ["future", "zeta"]


@pytest.mark.unit
def test_decode_later_duplicate_permission_wins():
    raw = json.dumps(
        {
            "rights": [
                {"name": "bob", "type": 0, "rights": 1},
                {"name": "bob", "type": 0, "rights": 2},
            ]
        }
    )

    permissions, _, _ = codec.decode_extension(raw)

    assert len(permissions) == 1
    assert permissions[0].access == AccessLevel.ADMIN


@pytest.mark.unit
def test_decode_keeps_entries_with_unknown_ordinals_in_extra():
    unknown_right = {"name": "bob", "type": 99, "rights": 1}
    raw = json.dumps(
        {
            "rights": [unknown_right, {"name": "amy", "type": 0, "rights": 1}],
            "flags": [{"id": 42}, "nonsense"],
        }
    )

    permissions, flags, extra = codec.decode_extension(raw)

    assert [p.subject for p in permissions] == ["amy"]
    assert flags == []
    assert extra == {"rights": [unknown_right], "flags": [{"id": 42}, "nonsense"]}


@pytest.mark.unit
@pytest.mark.parametrize(
    "raw",
    [
        '{"rights":"legacy","x":1}',
        '{"flags":{"k":1}}',
        '{"flags":[{"id":9,"data":[]}],"rights":[{"name":"bob","type":7,"rights":1}]}',
        '{"rights":null}',
    ],
)
def test_undecodable_rights_and_flags_round_trip_verbatim(raw):
    encoded = codec.encode_extension_parts(*codec.decode_extension(raw))

    assert json.loads(encoded) == json.loads(raw)


@pytest.mark.unit
def test_known_entries_are_written_before_kept_unknown_ones():
    raw = '{"flags":[{"id":9,"data":[]}],"rights":[{"name":"bob","type":7,"rights":1}]}'
    permissions, flags, extra = codec.decode_extension(raw)
    permissions.append(Permission("carol", PermissionScope.PLAYER, AccessLevel.ADMIN))
    flags.append(Flag(FlagKind.REDSTONE))

    encoded = json.loads(codec.encode_extension_parts(permissions, flags, extra))

    assert encoded["rights"] == [
        {"name": "carol", "type": 0, "rights": 2},
        {"name": "bob", "type": 7, "rights": 1},
    ]
    assert encoded["flags"] == [{"id": 0, "data": []}, {"id": 9, "data": []}]


@pytest.mark.unit
@pytest.mark.parametrize("raw", ["{not json", "[1, 2, 3]", '"text"'])
def test_decode_rejects_non_objects(raw):
    with pytest.raises(MalformedExtensionData) as exc_info:
        codec.decode_extension(raw)

    assert exc_info.value.raw == raw


@pytest.mark.unit
def test_encode_preserves_unknown_members_after_round_trip():
    raw = '{"future":{"a":1},"rights":[{"name":"bob","type":0,"rights":1}],"zeta":[1]}'
    permissions, flags, extra = codec.decode_extension(raw)
    permissions.append(Permission("carol", PermissionScope.PLAYER, AccessLevel.ADMIN))

    encoded = json.loads(codec.encode_extension_parts(permissions, flags, extra))

    assert encoded["future"] == {"a": 1}
    assert encoded["zeta"] == [1]
    assert [r["name"] for r in encoded["rights"]] == ["bob", "carol"]
    assert "flags" not in encoded


@pytest.mark.unit
def test_encode_nothing_is_none():
    assert codec.encode_extension_parts([], [], {}) is None


# ============================================================================
# PROTECTION ROWS
# ============================================================================


@pytest.mark.unit
def test_protection_from_row_maps_columns():
    protection = codec.protection_from_row(protection_row(password="$argon2id$x"), OWNER)

    assert protection.id == 11
    assert protection.owner is OWNER
    assert protection.kind == ProtectionKind.PRIVATE
    assert (protection.world, protection.x, protection.y, protection.z) == ("world", 10, 64, -4)
    assert protection.block_id == 54
    assert protection.password == "$argon2id$x"
    assert protection.created == "2024-01-02 03:04:05.678"
    assert protection.last_accessed == 1700000000


@pytest.mark.unit
def test_malformed_data_is_kept_and_written_back(caplog):
    protection = codec.protection_from_row(protection_row(data="{broken"), OWNER)

    assert protection.permissions == []
    assert protection.raw_data == "{broken"
    assert codec.protection_to_params(protection)["data"] == "{broken"
    assert "malformed data" in caplog.text


@pytest.mark.unit
def test_malformed_data_replaced_once_permission_added():
    protection = codec.protection_from_row(protection_row(data="{broken"), OWNER)
    protection.add_permission(Permission("bob", PermissionScope.PLAYER))

    data = json.loads(codec.protection_to_params(protection)["data"])

    assert data == {"rights": [{"name": "bob", "type": 0, "rights": 1}]}


@pytest.mark.unit
def test_protection_to_params_uses_owner_id():
    params = codec.protection_to_params(codec.protection_from_row(protection_row(), OWNER))

    assert params["owner"] == 3
    assert params["type"] == 2
    assert params["blockId"] == 54
    assert params["data"] is None


@pytest.mark.unit
def test_creation_timestamp_has_millisecond_precision():
    stamp = codec.creation_timestamp(datetime(2024, 1, 2, 3, 4, 5, 678901))

    assert stamp == "2024-01-02 03:04:05.678"


# ============================================================================
# HISTORY ROWS
# ============================================================================


@pytest.mark.unit
def test_metadata_join_and_split():
    joined = codec.join_metadata(["creator=alice", "note=a,b", ""])

    assert joined == "creator=alice,note=ab"
    assert codec.split_metadata(joined) == ["creator=alice", "note=ab"]
    assert codec.split_metadata(None) == []


@pytest.mark.unit
def test_history_row_mapping():
    record = HistoryRecord(
        protection_id=11,
        actor=OWNER,
        x=1,
        y=2,
        z=3,
        type=HistoryType.TRANSACTION,
        status=HistoryStatus.INACTIVE,
        metadata=["creator=alice"],
        timestamp=99,
    )
    params = codec.history_to_params(record)

    assert params["player"] == 3
    assert params["status"] == 1
    assert "id" not in params

    decoded = codec.history_from_row({**params, "id": 5}, OWNER)

    assert decoded.id == 5
    assert decoded.status == HistoryStatus.INACTIVE
    assert decoded.metadata == ["creator=alice"]
