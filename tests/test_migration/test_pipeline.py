"""Tests for the resumable identity migration pipeline."""

from unittest.mock import patch

import pytest

from blockwarden.db import internal_repo, players_repo, protections_repo, schema
from blockwarden.db.constants import STAGE_COMPLETE
from blockwarden.db.errors import StorageOperationContext, StorageUnavailable
from blockwarden.identity import IdentityRegistry
from blockwarden.migration import MigrationPipeline, MigrationStage, RowHandler, TableWalker
from tests.helpers import legacy_history, legacy_protection


class ListWalker(TableWalker):
    def __init__(self, db, rows):
        super().__init__(db)
        self.rows = rows

    def fetch(self, offset, limit):
        return self.rows[offset : offset + limit]

    def next_offset(self, offset, batch):
        return offset + len(batch)


class RecordingHandler(RowHandler):
    def __init__(self, fail_on=()):
        self.fail_on = set(fail_on)
        self.started = 0
        self.completed = 0
        self.handled = []

    def on_start(self):
        self.started += 1

    def handle(self, row):
        if row in self.fail_on:
            raise ValueError(f"cannot convert {row}")
        self.handled.append(row)
        return True

    def on_complete(self):
        self.completed += 1


def build_legacy(legacy_db, protections=5, history=3):
    owners = ["alice", "bob"]
    db = legacy_db(
        protections=[
            legacy_protection(i, owners[i % 2], x=i) for i in range(1, protections + 1)
        ],
        history=[
            legacy_history(i, i, owners[i % 2], x=i, metadata=f"creator={owners[i % 2]}")
            for i in range(1, history + 1)
        ],
    )
    schema.prepare_schema(db)
    schema.apply_upgrades(db)
    return db


def snapshot(pipeline):
    return (pipeline.stage, pipeline.reads_legacy_protections, pipeline.reads_legacy_history)


def converted_owners(db, registry):
    return {
        row["id"]: registry.get(row["owner"]).name for row in protections_repo.list_all(db)
    }


# ============================================================================
# STATE MACHINE
# ============================================================================


@pytest.mark.db
def test_fresh_database_is_already_complete(prepared_db, registry):
    pipeline = MigrationPipeline(prepared_db, registry)

    assert pipeline.load_state() == STAGE_COMPLETE
    result = pipeline.step()

    assert result.complete
    assert result.processed == 0


@pytest.mark.db
def test_stage_hooks_and_batches(prepared_db, registry):
    handler = RecordingHandler()
    pipeline = MigrationPipeline(
        prepared_db,
        registry,
        batch_size=2,
        stages=[MigrationStage("numbers", ListWalker(prepared_db, [1, 2, 3]), handler)],
    )
    internal_repo.set_migration_state(prepared_db, 0, 0)

    results = pipeline.run()

    assert [r.processed for r in results] == [2, 1]
    assert results[0].offset == 2 and not results[0].stage_complete
    assert results[-1].complete and results[-1].stage_complete
    assert handler.handled == [1, 2, 3]
    assert (handler.started, handler.completed) == (1, 1)
    assert internal_repo.get_migration_state(prepared_db) == (STAGE_COMPLETE, 0)


@pytest.mark.db
def test_failed_row_is_skipped_and_checkpoint_advances(prepared_db, registry):
    handler = RecordingHandler(fail_on={2})
    pipeline = MigrationPipeline(
        prepared_db,
        registry,
        batch_size=10,
        stages=[MigrationStage("numbers", ListWalker(prepared_db, [1, 2, 3]), handler)],
    )
    internal_repo.set_migration_state(prepared_db, 0, 0)

    result = pipeline.step()

    assert result.processed == 3
    assert result.failed == 1
    assert result.complete
    assert handler.handled == [1, 3]


@pytest.mark.db
def test_legacy_read_flags_follow_stage(legacy_db):
    db = build_legacy(legacy_db, protections=1, history=1)
    pipeline = MigrationPipeline(db, IdentityRegistry(db), batch_size=100)

    seen = []
    pipeline.load_state()
    while True:
        seen.append(snapshot(pipeline))
        if pipeline.step().complete:
            break
    seen.append(snapshot(pipeline))

    assert seen == [
        ("0", True, True),
        ("1", True, True),
        ("2", False, True),
        (STAGE_COMPLETE, False, False),
    ]


# ============================================================================
# LEGACY CONVERSION
# ============================================================================


@pytest.mark.db
def test_full_conversion(legacy_db):
    db = build_legacy(legacy_db)
    registry = IdentityRegistry(db)
    pipeline = MigrationPipeline(db, registry, batch_size=2)

    pipeline.run()

    assert pipeline.is_complete
    assert players_repo.count_players(db) == 2
    assert converted_owners(db, registry) == {1: "bob", 2: "alice", 3: "bob", 4: "alice", 5: "bob"}
    with db.connection_scope() as conn:
        history = conn.execute("SELECT id, player, metadata FROM history ORDER BY id").fetchall()
    assert [row["id"] for row in history] == [1, 2, 3]
    assert registry.get(history[0]["player"]).name == "bob"
    assert history[0]["metadata"] == "creator=bob"
    # Legacy tables are kept as a backup.
    assert protections_repo.legacy_table_exists(db)


@pytest.mark.db
def test_resume_after_crash_reprocesses_only_the_failed_batch(legacy_db):
    db = build_legacy(legacy_db)
    registry = IdentityRegistry(db)
    pipeline = MigrationPipeline(db, registry, batch_size=2)

    # Players stage (two steps) and the first protections batch.
    pipeline.step()
    pipeline.step()
    pipeline.step()
    assert internal_repo.get_migration_state(db) == ("1", 2)

    crash = StorageUnavailable(context=StorageOperationContext(operation="test.crash"))
    with patch.object(internal_repo, "set_migration_state", side_effect=crash):
        with pytest.raises(StorageUnavailable):
            pipeline.step()

    # The interrupted batch left nothing behind.
    assert internal_repo.get_migration_state(db) == ("1", 2)
    assert sorted(converted_owners(db, registry)) == [1, 2]

    resumed = pipeline.step()
    assert resumed.processed == 2
    assert resumed.offset == 4

    pipeline.run()

    assert converted_owners(db, registry) == {1: "bob", 2: "alice", 3: "bob", 4: "alice", 5: "bob"}
    assert players_repo.count_players(db) == 2


@pytest.mark.db
def test_restarted_pipeline_resumes_from_checkpoint(legacy_db):
    db = build_legacy(legacy_db)
    first = MigrationPipeline(db, IdentityRegistry(db), batch_size=2)
    for _ in range(3):
        first.step()

    # A new process: fresh registry and pipeline objects.
    registry = IdentityRegistry(db)
    second = MigrationPipeline(db, registry, batch_size=2)
    assert second.load_state() == "1"
    results = second.run()

    assert sum(r.processed for r in results) == 3 + 3
    assert sorted(converted_owners(db, registry)) == [1, 2, 3, 4, 5]


@pytest.mark.db
def test_failed_protection_row_is_rolled_back_and_skipped(legacy_db):
    db = build_legacy(legacy_db, history=0)
    registry = IdentityRegistry(db)
    pipeline = MigrationPipeline(db, registry, batch_size=10)
    original = protections_repo.upsert_protection

    def flaky_upsert(db_, params, *, keep_existing=False):
        if params["id"] == 3:
            raise StorageUnavailable(context=StorageOperationContext(operation="test.row"))
        return original(db_, params, keep_existing=keep_existing)

    with patch.object(protections_repo, "upsert_protection", side_effect=flaky_upsert):
        results = pipeline.run()

    assert sum(r.failed for r in results) == 1
    assert sorted(converted_owners(db, registry)) == [1, 2, 4, 5]
    assert pipeline.is_complete


@pytest.mark.unit
def test_batch_size_must_be_positive(prepared_db, registry):
    with pytest.raises(ValueError):
        MigrationPipeline(prepared_db, registry, batch_size=0)
