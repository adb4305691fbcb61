"""Resumable identity migration pipeline.

The pipeline is an explicit state machine over a fixed list of stages::

    NOT_STARTED -> stage 0 -> stage 1 -> ... -> stage N-1 -> COMPLETE

The persisted checkpoint ``(stage, offset)`` in the ``internal`` table is the
only state that matters across restarts. Each ``step()`` handles one batch:
the batch's row writes and the advanced checkpoint commit in a single
transaction, so a crash loses at most the batch in flight and the next step
re-applies it. Transitions are driven by ``step()`` return values.

A row that fails conversion is rolled back to its savepoint, logged and
skipped; the checkpoint still moves past it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from blockwarden.db import history_repo, internal_repo, protections_repo
from blockwarden.db.connection import Database, savepoint
from blockwarden.db.constants import STAGE_COMPLETE
from blockwarden.identity import IdentityRegistry
from blockwarden.migration.handlers import (
    HistoryRowHandler,
    PlayerRowHandler,
    ProtectionRowHandler,
    RowHandler,
)
from blockwarden.migration.walkers import KeysetTableWalker, NameTableWalker, TableWalker

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 500

# Stage indices that still have unconverted rows in each legacy table.
PROTECTION_LEGACY_READ_STAGES = frozenset({"0", "1"})
HISTORY_LEGACY_READ_STAGES = frozenset({"0", "1", "2"})


@dataclass(slots=True)
class MigrationStage:
    """A named walker/handler pair."""

    name: str
    walker: TableWalker
    handler: RowHandler


@dataclass(slots=True)
class BatchResult:
    """
    Outcome of one ``MigrationPipeline.step()``.

    Attributes:
        stage: Stage value after the step (an index string or ``"complete"``).
        stage_name: Name of the stage the batch belonged to.
        offset: Persisted checkpoint after the step.
        processed: Rows handled in this batch (converted or skipped).
        failed: Rows that raised and were skipped.
        stage_complete: The batch finished its stage.
        complete: The whole pipeline has finished.
    """

    stage: str
    stage_name: str | None = None
    offset: int = 0
    processed: int = 0
    failed: int = 0
    stage_complete: bool = False
    complete: bool = False


def default_stages(db: Database, registry: IdentityRegistry) -> list[MigrationStage]:
    """Players, then protections, then history."""
    return [
        MigrationStage("players", NameTableWalker(db), PlayerRowHandler(registry)),
        MigrationStage(
            "protections",
            KeysetTableWalker(db, protections_repo.list_legacy_batch),
            ProtectionRowHandler(db, registry),
        ),
        MigrationStage(
            "history",
            KeysetTableWalker(db, history_repo.list_legacy_batch),
            HistoryRowHandler(db, registry),
        ),
    ]


class MigrationPipeline:
    """
    Drives legacy-to-identity conversion one bounded batch at a time.

    Args:
        db: Storage handle.
        registry: Identity registry shared with the repository.
        batch_size: Rows handled per ``step()``.
        stages: Override the default stage list (tests).
    """

    def __init__(
        self,
        db: Database,
        registry: IdentityRegistry,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        stages: list[MigrationStage] | None = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self.db = db
        self.registry = registry
        self.batch_size = batch_size
        self.stages = stages if stages is not None else default_stages(db, registry)
        self.stage: str = STAGE_COMPLETE
        self._entered: set[int] = set()

    def load_state(self) -> str:
        """Refresh ``stage`` from storage and return it."""
        stage, _ = internal_repo.get_migration_state(self.db)
        self.stage = stage if stage is not None else STAGE_COMPLETE
        return self.stage

    @property
    def is_complete(self) -> bool:
        return self.stage == STAGE_COMPLETE

    @property
    def reads_legacy_protections(self) -> bool:
        return self.stage in PROTECTION_LEGACY_READ_STAGES

    @property
    def reads_legacy_history(self) -> bool:
        return self.stage in HISTORY_LEGACY_READ_STAGES

    def step(self) -> BatchResult:
        """Handle one batch of the current stage and persist the checkpoint.

        Raises:
            StorageError: When the checkpoint or the batch read cannot be
                committed. Nothing from the batch is kept; the next call
                retries it.
        """
        stage, offset = internal_repo.get_migration_state(self.db)
        if stage is None or stage == STAGE_COMPLETE:
            self.stage = STAGE_COMPLETE
            return BatchResult(stage=STAGE_COMPLETE, complete=True)

        index = int(stage)
        if index >= len(self.stages):
            internal_repo.set_migration_state(self.db, STAGE_COMPLETE, 0)
            self.stage = STAGE_COMPLETE
            return BatchResult(stage=STAGE_COMPLETE, complete=True)

        current = self.stages[index]
        if index not in self._entered:
            self._entered.add(index)
            current.handler.on_start()

        result = BatchResult(stage=stage, stage_name=current.name, offset=offset)
        try:
            with self.db.connection_scope(write=True) as conn:
                batch = current.walker.fetch(offset, self.batch_size)
                for row in batch:
                    try:
                        with savepoint(conn, "migration_row"):
                            current.handler.handle(row)
                    except Exception:
                        logger.exception(
                            "Skipping %s row at checkpoint %d after conversion failure",
                            current.name,
                            offset,
                        )
                        result.failed += 1
                        # Identities created by the rolled-back row are gone.
                        self.registry.clear_cache()
                    result.processed += 1

                offset = current.walker.next_offset(offset, batch)
                if len(batch) < self.batch_size:
                    current.handler.on_complete()
                    result.stage_complete = True
                    if index + 1 < len(self.stages):
                        next_stage = str(index + 1)
                        offset = 0
                    else:
                        next_stage = STAGE_COMPLETE
                        offset = 0
                        result.complete = True
                    internal_repo.set_migration_state(self.db, next_stage, offset)
                    result.stage = next_stage
                else:
                    internal_repo.set_migration_state(self.db, index, offset)
        except Exception:
            self.registry.clear_cache()
            raise

        result.offset = offset
        self.stage = result.stage
        if result.stage_complete:
            logger.info(
                "Migration stage %s complete; now at %s", current.name, result.stage
            )
        return result

    def run(self) -> list[BatchResult]:
        """Step until complete; returns every batch result."""
        results = []
        while True:
            result = self.step()
            results.append(result)
            if result.complete:
                return results
