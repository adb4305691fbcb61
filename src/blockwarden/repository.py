"""Protection repository: the single entry point for protection storage.

The repository owns schema setup and upgrades, consults the protection cache
before touching SQLite, keeps the live protection count that decides cache
completeness, and appends to the history ledger on registration and removal.
While the identity migration is running it also reads the legacy tables on
a cache miss.

Failure policy
--------------
Storage failures stop here. Reads log and return ``None``/``[]``/``0``;
``save`` and ``remove`` log and return ``False``. ``register`` is the one
operation whose caller must see the failure, so it re-raises the typed
``SchemaConflict``/``StorageUnavailable`` errors.

Consistency contract
--------------------
``save`` does not refresh the cache: callers batch several mutations on a
cached instance and then call ``recache`` once. ``register`` and ``remove``
update the cache themselves. All calls are expected on the host's tick
thread.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Mapping
from typing import Any

from blockwarden import passwords
from blockwarden.cache import ProtectionCache
from blockwarden.config import BlockwardenConfig
from blockwarden.db import codec, protections_repo, schema
from blockwarden.db.connection import Database
from blockwarden.db.errors import (
    SchemaConflict,
    StorageError,
    StorageOperationContext,
    StorageUnavailable,
)
from blockwarden.identity import IdentityRegistry, NameResolver
from blockwarden.ledger import HistoryLedger
from blockwarden.migration import BatchResult, MigrationPipeline
from blockwarden.models import (
    Bounds,
    HistoryStatus,
    HistoryType,
    PlayerInfo,
    Protection,
    ProtectionKind,
)

logger = logging.getLogger(__name__)

# Receives a callback and runs it on a later host tick.
Scheduler = Callable[[Callable[[], None]], None]

DEFAULT_PAGE_SIZE = 15


class ProtectionRepository:
    """
    Cache-fronted protection store.

    Args:
        db: Storage handle.
        cfg: Settings; defaults to built-in defaults, not the module config.
        name_resolver: Optional host callback mapping names to stable ids.
        cache: Shared cache instance; a new one is created when omitted.
        registry: Shared identity registry; created when omitted.
        ledger: History ledger; created from ``cfg.history`` when omitted.
        pipeline: Migration pipeline; created from ``cfg.migration`` when
            omitted.
    """

    def __init__(
        self,
        db: Database,
        cfg: BlockwardenConfig | None = None,
        *,
        name_resolver: NameResolver | None = None,
        cache: ProtectionCache | None = None,
        registry: IdentityRegistry | None = None,
        ledger: HistoryLedger | None = None,
        pipeline: MigrationPipeline | None = None,
    ) -> None:
        self.db = db
        self.config = cfg or BlockwardenConfig()
        self.registry = registry or IdentityRegistry(db, name_resolver)
        self.cache = cache or ProtectionCache()
        self.pipeline = pipeline or MigrationPipeline(
            db, self.registry, batch_size=self.config.migration.batch_size
        )
        self.ledger = ledger or HistoryLedger(
            db,
            self.registry,
            enabled=self.config.history.enabled,
            legacy_pending=lambda: self.pipeline.reads_legacy_history,
        )
        self.schema_version = 0
        self._live_count = 0
        self._scheduler: Scheduler | None = None
        self._migration_scheduled = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self, scheduler: Scheduler | None = None) -> None:
        """
        Prepare the schema, apply upgrades and start the identity migration.

        Without a scheduler a pending migration runs to completion before
        this returns. With one, a single batch runs per scheduled tick.
        Safe to call more than once.

        Raises:
            StorageError: When the schema cannot be prepared.
        """
        schema.prepare_schema(self.db)
        self.schema_version = schema.apply_upgrades(self.db)
        self.pipeline.load_state()

        if self.pipeline.is_complete:
            self.cache.migration_pending = False
        else:
            self.cache.migration_pending = True
            logger.info("Identity migration pending at stage %s", self.pipeline.stage)
            if scheduler is None:
                self._run_migration()
            elif not self._migration_scheduled:
                self._scheduler = scheduler
                self._migration_scheduled = True
                scheduler(self._scheduled_step)

        self._refresh_live_count()

    def _run_migration(self) -> None:
        while not self.pipeline.is_complete:
            result = self.pipeline.step()
            if result.complete:
                self._finish_migration()

    def _scheduled_step(self) -> None:
        self.migration_tick()
        if self.pipeline.is_complete:
            self._migration_scheduled = False
        elif self._scheduler is not None:
            self._scheduler(self._scheduled_step)

    def migration_tick(self) -> BatchResult | None:
        """Advance the migration by one batch; None when the batch failed."""
        if self.pipeline.is_complete:
            return BatchResult(stage=self.pipeline.stage, complete=True)
        try:
            result = self.pipeline.step()
        except StorageError:
            logger.exception("Migration batch failed at stage %s; will retry", self.pipeline.stage)
            return None
        if result.complete:
            self._finish_migration()
        return result

    def _finish_migration(self) -> None:
        logger.info("Identity migration complete")
        self.cache.migration_pending = False
        try:
            with self.db.connection_scope(write=True) as conn:
                schema.ensure_location_index(conn, self.db)
        except Exception:
            logger.exception("Could not create the unique location index")
        self._refresh_live_count()

    def _refresh_live_count(self) -> None:
        try:
            self._live_count = protections_repo.count_protections(self.db)
        except StorageError:
            logger.exception("Failed to count protections")
            return
        self.cache.total_live_count = self._live_count

    def _adjust_live_count(self, delta: int) -> None:
        self._live_count = max(0, self._live_count + delta)
        self.cache.total_live_count = self._live_count

    @property
    def live_count(self) -> int:
        """In-memory count of live protections."""
        return self._live_count

    # ------------------------------------------------------------------
    # Decoding helpers
    # ------------------------------------------------------------------

    def _identity(self, owner: PlayerInfo | str) -> PlayerInfo:
        if isinstance(owner, PlayerInfo):
            return owner
        return self.registry.lookup(owner)

    def _decode(self, row: Mapping[str, Any], *, legacy: bool = False) -> Protection:
        owner = self.registry.resolve_reference(row["owner"], legacy=legacy)
        return codec.protection_from_row(row, owner)

    def _resolve_rows(
        self, rows: list[dict[str, Any]], *, legacy: bool = False, cache_results: bool = False
    ) -> list[Protection]:
        """Decode rows, reusing cached instances for ids already cached."""
        protections = []
        for row in rows:
            cached = self.cache.get_by_id(int(row["id"]))
            if cached is not None:
                protections.append(cached)
                continue
            protection = self._decode(row, legacy=legacy)
            if cache_results:
                self.cache.put(protection)
            protections.append(protection)
        return protections

    # ------------------------------------------------------------------
    # Single loads
    # ------------------------------------------------------------------

    def load(self, protection_id: int) -> Protection | None:
        """Protection by id; storage is consulted on every cache miss."""
        cached = self.cache.get_by_id(protection_id)
        if cached is not None:
            return cached
        try:
            row = protections_repo.get_protection_row(self.db, protection_id)
            legacy = False
            if row is None and self.pipeline.reads_legacy_protections:
                row = protections_repo.get_protection_row(self.db, protection_id, legacy=True)
                legacy = True
            if row is None:
                return None
            protection = self._decode(row, legacy=legacy)
        except StorageError:
            logger.exception("Failed to load protection %d", protection_id)
            return None
        self.cache.put(protection)
        return protection

    def load_at(self, world: str, x: int, y: int, z: int) -> Protection | None:
        """Protection at a coordinate; a miss on a complete cache is final."""
        cached = self.cache.get_at(world, x, y, z)
        if cached is not None:
            return cached
        if self.cache.is_complete:
            return None
        try:
            row = protections_repo.get_protection_row_at(self.db, world, x, y, z)
            legacy = False
            if row is None and self.pipeline.reads_legacy_protections:
                row = protections_repo.get_protection_row_at(self.db, world, x, y, z, legacy=True)
                legacy = True
            if row is None:
                return None
            protection = self._decode(row, legacy=legacy)
        except StorageError:
            logger.exception("Failed to load protection at %s:%d:%d:%d", world, x, y, z)
            return None
        self.cache.put(protection)
        return protection

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def register(
        self,
        kind: ProtectionKind,
        world: str,
        x: int,
        y: int,
        z: int,
        block_id: int,
        owner: PlayerInfo | str,
        data: Mapping[str, Any] | str | None = None,
        password: str | None = None,
    ) -> Protection:
        """
        Create a protection at a coordinate.

        Args:
            kind: Access policy.
            world, x, y, z: Coordinate to protect.
            block_id: Block-type tag.
            owner: Owning identity, or a name/UUID string to resolve.
            data: Initial extension data as a mapping or JSON text.
            password: Plaintext password for ``PASSWORD`` protections.

        Returns:
            The stored protection, reloaded with its generated id and cached.

        Raises:
            SchemaConflict: The coordinate is already protected.
            StorageUnavailable: Storage failed; nothing was cached.
        """
        if isinstance(data, Mapping):
            data = json.dumps(dict(data), separators=(",", ":"))
        location = f"{world}:{x}:{y}:{z}"

        try:
            info = self._identity(owner)
            password_hash = passwords.hash_password(password) if password else None
            with self.db.connection_scope(write=True):
                if self.pipeline.reads_legacy_protections:
                    shadow = protections_repo.get_protection_row_at(
                        self.db, world, x, y, z, legacy=True
                    )
                    if shadow is not None:
                        raise SchemaConflict(
                            context=StorageOperationContext(
                                operation="repository.register",
                                details=f"location={location} taken by legacy protection "
                                f"{shadow['id']}",
                            )
                        )
                new_id = protections_repo.insert_protection(
                    self.db,
                    owner_id=info.id,
                    kind=kind,
                    world=world,
                    x=x,
                    y=y,
                    z=z,
                    block_id=block_id,
                    data=data,
                    password=password_hash,
                    created=codec.creation_timestamp(),
                    last_accessed=int(time.time()),
                )
                row = protections_repo.get_protection_row(self.db, new_id)
                if row is None:
                    raise StorageUnavailable(
                        context=StorageOperationContext(
                            operation="repository.register",
                            details=f"protection {new_id} vanished after insert",
                        )
                    )
                protection = self._decode(row)
        except SchemaConflict:
            logger.info("Refusing to register protection at %s: already protected", location)
            raise
        except StorageError:
            logger.exception("Failed to register protection at %s", location)
            raise

        self.ledger.record(
            protection.id,
            info,
            (x, y, z),
            HistoryType.TRANSACTION,
            HistoryStatus.ACTIVE,
            [f"creator={info.name}"],
        )
        self.cache.put(protection)
        self._adjust_live_count(1)
        return protection

    def save(self, protection: Protection) -> bool:
        """Write every field of a protection by id. The cache is left alone."""
        if protection.id <= 0:
            logger.warning("Refusing to save unregistered protection at %s", protection.location_key)
            return False
        try:
            protections_repo.upsert_protection(self.db, codec.protection_to_params(protection))
        except StorageError:
            logger.exception("Failed to save protection %d", protection.id)
            return False
        return True

    def recache(self, protection: Protection) -> None:
        """Re-index a protection after a batch of mutations."""
        self.cache.invalidate(protection)
        self.cache.put(protection)

    def remove(self, protection_id: int, actor: PlayerInfo | None = None) -> bool:
        """
        Delete a protection.

        History is kept: the protection's records are closed, tagged with the
        remover when ``actor`` is given.

        Returns:
            True when a stored row was deleted.
        """
        try:
            removed = protections_repo.delete_protection(
                self.db,
                protection_id,
                include_legacy=self.pipeline.reads_legacy_protections,
            )
        except StorageError:
            logger.exception("Failed to remove protection %d", protection_id)
            return False
        cached = self.cache.get_by_id(protection_id)
        if cached is not None:
            self.cache.invalidate(cached)
        else:
            self.cache.invalidate_id(protection_id)
        if removed:
            self._adjust_live_count(-removed)
        self.ledger.close_protection(protection_id, actor)
        return removed > 0

    def remove_all(self) -> int:
        """Delete every protection; history is kept. Returns rows removed."""
        try:
            removed = protections_repo.delete_all_protections(
                self.db, include_legacy=self.pipeline.reads_legacy_protections
            )
        except StorageError:
            logger.exception("Failed to remove all protections")
            return 0
        self.cache.clear()
        self._live_count = 0
        self.cache.total_live_count = 0
        return removed

    def remove_by_owner(self, owner: PlayerInfo | str) -> int:
        """Delete every protection of one owner; returns the number removed."""
        try:
            info = self._identity(owner)
            removed_ids = protections_repo.delete_by_owner(self.db, info.id)
        except StorageError:
            logger.exception("Failed to remove protections of %s", owner)
            return 0
        for protection_id in removed_ids:
            cached = self.cache.get_by_id(protection_id)
            if cached is not None:
                self.cache.invalidate(cached)
            self.ledger.close_protection(protection_id)
        self._adjust_live_count(-len(removed_ids))
        return len(removed_ids)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def load_in_range(self, world: str, bounds: Bounds) -> list[Protection]:
        """
        Protections inside an inclusive box, ordered by id.

        A complete cache answers from memory: small caches (or boxes larger
        than the cache) are scanned linearly, otherwise each cell of the box
        is looked up. An incomplete cache falls through to a range query.
        """
        if self.cache.is_complete:
            size = self.cache.size()
            if size < self.config.cache.range_scan_threshold or bounds.volume > size:
                hits = [
                    p
                    for p in self.cache.references()
                    if p.world == world and bounds.contains(p.x, p.y, p.z)
                ]
            else:
                hits = []
                for x, y, z in bounds.cells():
                    protection = self.cache.get_at(world, x, y, z)
                    if protection is not None:
                        hits.append(protection)
            return sorted(hits, key=lambda p: p.id)

        try:
            protections = self._resolve_rows(
                protections_repo.list_in_range(self.db, world, bounds), cache_results=True
            )
            if self.pipeline.reads_legacy_protections:
                seen = {p.id for p in protections}
                legacy_rows = [
                    row
                    for row in protections_repo.list_in_range(self.db, world, bounds, legacy=True)
                    if int(row["id"]) not in seen
                ]
                protections.extend(
                    self._resolve_rows(legacy_rows, legacy=True, cache_results=True)
                )
        except StorageError:
            logger.exception("Failed range query in %s", world)
            return []
        return sorted(protections, key=lambda p: p.id)

    def load_by_owner(
        self,
        owner: PlayerInfo | str,
        page: int | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> list[Protection]:
        """Protections of one owner ordered by id; ``page`` is zero-based."""
        limit, offset = (None, 0) if page is None else (page_size, page * page_size)
        try:
            info = self._identity(owner)
            rows = protections_repo.list_by_owner(self.db, info.id, limit=limit, offset=offset)
            return self._resolve_rows(rows)
        except StorageError:
            logger.exception("Failed to load protections of %s", owner)
            return []

    def load_by_kind(self, kind: ProtectionKind) -> list[Protection]:
        try:
            return self._resolve_rows(protections_repo.list_by_kind(self.db, kind))
        except StorageError:
            logger.exception("Failed to load %s protections", kind.name)
            return []

    def load_all(self) -> list[Protection]:
        try:
            return self._resolve_rows(protections_repo.list_all(self.db))
        except StorageError:
            logger.exception("Failed to load protections")
            return []

    def precache(self, limit: int | None = None) -> int:
        """
        Reload the cache with the newest protections.

        Args:
            limit: How many to load; defaults to ``cache.precache`` (or
                ``cache.size`` when that is negative).

        Returns:
            Number of protections cached.
        """
        if limit is None:
            limit = self.config.cache.precache_limit
        self.cache.clear()
        try:
            rows = protections_repo.list_newest(self.db, limit) if limit > 0 else []
            for protection in self._resolve_rows(rows, cache_results=True):
                self.cache.put(protection)
        except StorageError:
            logger.exception("Failed to precache protections")
        self._refresh_live_count()
        logger.info(
            "Precached %d of %d protections%s",
            self.cache.size(),
            self._live_count,
            " (complete)" if self.cache.is_complete else "",
        )
        return self.cache.size()

    # ------------------------------------------------------------------
    # Counts
    # ------------------------------------------------------------------

    def total_count(self, kind: ProtectionKind | None = None) -> int:
        try:
            return protections_repo.count_protections(self.db, kind)
        except StorageError:
            logger.exception("Failed to count protections")
            return 0

    def count_by_owner(self, owner: PlayerInfo | str, block_id: int | None = None) -> int:
        try:
            info = self._identity(owner)
            return protections_repo.count_by_owner(self.db, info.id, block_id)
        except StorageError:
            logger.exception("Failed to count protections of %s", owner)
            return 0

    def history_count(self, actor: PlayerInfo | None = None) -> int:
        return self.ledger.count(actor)

    def has_all_cached(self) -> bool:
        return self.cache.is_complete
