"""Migration package: resumable conversion of name-keyed tables.

Public surface
--------------
- :class:`MigrationPipeline`: steps through the stages one batch at a time.
- :class:`BatchResult`: what a single ``step()`` did.
- :class:`MigrationStage`: a named walker/handler pair.
- Walkers: :class:`NameTableWalker`, :class:`KeysetTableWalker`.
- Handlers: :class:`PlayerRowHandler`, :class:`ProtectionRowHandler`,
  :class:`HistoryRowHandler`.

Usage example
-------------
::

    from blockwarden.migration import MigrationPipeline

    pipeline = MigrationPipeline(db, registry, batch_size=500)
    while not pipeline.step().complete:
        pass
"""

from blockwarden.migration.handlers import (
    HistoryRowHandler,
    PlayerRowHandler,
    ProtectionRowHandler,
    RowHandler,
)
from blockwarden.migration.pipeline import (
    BatchResult,
    MigrationPipeline,
    MigrationStage,
    default_stages,
)
from blockwarden.migration.walkers import KeysetTableWalker, NameTableWalker, TableWalker

__all__ = [
    "BatchResult",
    "HistoryRowHandler",
    "KeysetTableWalker",
    "MigrationPipeline",
    "MigrationStage",
    "NameTableWalker",
    "PlayerRowHandler",
    "ProtectionRowHandler",
    "RowHandler",
    "TableWalker",
    "default_stages",
]
