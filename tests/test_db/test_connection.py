"""Tests for connection scopes and savepoints (blockwarden/db/connection.py)."""

import sqlite3

import pytest

from blockwarden.config import BlockwardenConfig, DatabaseSettings
from blockwarden.db.connection import Database, savepoint


def _count(db: Database) -> int:
    with db.connection_scope() as conn:
        return conn.execute("SELECT COUNT(*) FROM t").fetchone()[0]


@pytest.fixture
def scratch_db(db: Database) -> Database:
    with db.connection_scope(write=True) as conn:
        conn.execute("CREATE TABLE t (v INTEGER)")
    return db


@pytest.mark.unit
def test_invalid_table_prefix_rejected(tmp_path):
    with pytest.raises(ValueError):
        Database(tmp_path / "x.db", table_prefix="lwc; DROP TABLE")


@pytest.mark.unit
def test_from_config_uses_database_settings(tmp_path):
    cfg = BlockwardenConfig(
        database=DatabaseSettings(path=str(tmp_path / "store.db"), table_prefix="lwc_")
    )

    db = Database.from_config(cfg)

    assert db.path == tmp_path / "store.db"
    assert db.table("history") == "lwc_history"


@pytest.mark.unit
def test_table_applies_prefix(tmp_path):
    assert Database(tmp_path / "x.db", table_prefix="lwc_").table("protections") == (
        "lwc_protections"
    )


@pytest.mark.db
def test_connect_creates_parent_directory(tmp_path):
    db = Database(tmp_path / "nested" / "dir" / "x.db")

    with db.connection_scope() as conn:
        assert conn.row_factory is sqlite3.Row

    assert (tmp_path / "nested" / "dir" / "x.db").exists()


@pytest.mark.db
def test_write_scope_commits(scratch_db):
    with scratch_db.connection_scope(write=True) as conn:
        conn.execute("INSERT INTO t VALUES (1)")

    assert _count(scratch_db) == 1


@pytest.mark.db
def test_write_scope_rolls_back_on_error(scratch_db):
    with pytest.raises(RuntimeError):
        with scratch_db.connection_scope(write=True) as conn:
            conn.execute("INSERT INTO t VALUES (1)")
            raise RuntimeError("boom")

    assert _count(scratch_db) == 0


@pytest.mark.db
def test_nested_scopes_share_one_transaction(scratch_db):
    with pytest.raises(RuntimeError):
        with scratch_db.connection_scope(write=True) as outer:
            with scratch_db.connection_scope(write=True) as inner:
                assert inner is outer
                inner.execute("INSERT INTO t VALUES (1)")
            raise RuntimeError("boom")

    # The inner scope did not commit on its own.
    assert _count(scratch_db) == 0


@pytest.mark.db
def test_savepoint_rolls_back_only_its_block(scratch_db):
    with scratch_db.connection_scope(write=True) as conn:
        conn.execute("INSERT INTO t VALUES (1)")
        with pytest.raises(ValueError):
            with savepoint(conn, "row"):
                conn.execute("INSERT INTO t VALUES (2)")
                raise ValueError("bad row")
        with savepoint(conn, "row"):
            conn.execute("INSERT INTO t VALUES (3)")

    with scratch_db.connection_scope() as conn:
        values = [row[0] for row in conn.execute("SELECT v FROM t ORDER BY v")]
    assert values == [1, 3]
