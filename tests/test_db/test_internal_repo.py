"""Tests for internal key/value bookkeeping (blockwarden/db/internal_repo.py)."""

import pytest

from blockwarden.db import internal_repo


@pytest.mark.db
def test_missing_keys(prepared_db):
    assert internal_repo.get_internal(prepared_db, "nope") is None


@pytest.mark.db
def test_set_internal_replaces_value(prepared_db):
    internal_repo.set_internal(prepared_db, "custom", "a")
    internal_repo.set_internal(prepared_db, "custom", 7)

    assert internal_repo.get_internal(prepared_db, "custom") == "7"


@pytest.mark.db
def test_schema_version_round_trip(prepared_db):
    internal_repo.set_schema_version(prepared_db, 2)

    assert internal_repo.get_schema_version(prepared_db) == 2


@pytest.mark.db
def test_garbage_schema_version_reads_as_zero(prepared_db):
    internal_repo.set_internal(prepared_db, "version", "six")

    assert internal_repo.get_schema_version(prepared_db) == 0


@pytest.mark.db
def test_migration_state_round_trip(prepared_db):
    internal_repo.set_migration_state(prepared_db, 1, 250)

    assert internal_repo.get_migration_state(prepared_db) == ("1", 250)


@pytest.mark.db
def test_migration_state_rolls_back_with_enclosing_scope(prepared_db):
    internal_repo.set_migration_state(prepared_db, 1, 0)

    with pytest.raises(RuntimeError):
        with prepared_db.connection_scope(write=True):
            internal_repo.set_migration_state(prepared_db, 2, 500)
            raise RuntimeError("crash before commit")

    assert internal_repo.get_migration_state(prepared_db) == ("1", 0)
