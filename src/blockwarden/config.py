"""
Blockwarden configuration management.

Configuration is assembled from three sources with a clear priority order:

    1. Environment variables (highest priority) - for containerized hosts
    2. Config file (config/blockwarden.ini) - for static deployments
    3. Built-in defaults (lowest priority) - sensible fallbacks

The module-level ``config`` object is loaded once at import time and is what
the CLI uses by default. Library callers build a ``ProtectionRepository`` with
an explicit ``BlockwardenConfig`` instead of reaching for the module global.

Usage:
    from blockwarden.config import config

    print(config.database.absolute_path)
    print(config.cache.size)
    print(config.history.enabled)

Environment Variable Mapping:
    BLOCKWARDEN_DB_PATH               -> database.path
    BLOCKWARDEN_TABLE_PREFIX          -> database.table_prefix
    BLOCKWARDEN_CACHE_SIZE            -> cache.size
    BLOCKWARDEN_PRECACHE              -> cache.precache
    BLOCKWARDEN_RANGE_SCAN_THRESHOLD  -> cache.range_scan_threshold
    BLOCKWARDEN_HISTORY_ENABLED       -> history.enabled
    BLOCKWARDEN_MIGRATION_BATCH_SIZE  -> migration.batch_size
    BLOCKWARDEN_LOG_LEVEL             -> logging.level
"""

import configparser
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

# =============================================================================
# PATH CONFIGURATION
# =============================================================================

# Project root directory (contains src/, config/, data/)
PROJECT_ROOT = Path(__file__).parent.parent.parent

CONFIG_DIR = PROJECT_ROOT / "config"
CONFIG_FILE = CONFIG_DIR / "blockwarden.ini"
CONFIG_EXAMPLE = CONFIG_DIR / "blockwarden.example.ini"


# =============================================================================
# CONFIGURATION DATACLASSES
# =============================================================================


@dataclass
class DatabaseSettings:
    """Database configuration."""

    path: str = "data/blockwarden.db"
    table_prefix: str = ""

    @property
    def absolute_path(self) -> Path:
        """Get absolute path to database file."""
        p = Path(self.path)
        if p.is_absolute():
            return p
        return PROJECT_ROOT / p


@dataclass
class CacheSettings:
    """Protection cache configuration.

    ``precache`` of -1 means "use ``size``". ``range_scan_threshold`` is the
    cache size below which range queries scan every cached protection instead
    of looking up each cell of the bounding box.
    """

    size: int = 10000
    precache: int = -1
    range_scan_threshold: int = 1000

    @property
    def precache_limit(self) -> int:
        """Number of protections loaded by ``precache()`` when no limit is given."""
        if self.precache < 0:
            return self.size
        return self.precache


@dataclass
class HistorySettings:
    """History ledger configuration."""

    enabled: bool = True


@dataclass
class MigrationSettings:
    """Identity migration configuration."""

    batch_size: int = 500


@dataclass
class LoggingSettings:
    """Logging configuration."""

    level: str = "INFO"
    format: Literal["simple", "detailed"] = "detailed"


@dataclass
class BlockwardenConfig:
    """
    Complete Blockwarden configuration.

    Aggregates every settings section. The CLI reads the module-level
    ``config`` instance; embedding hosts usually build their own.
    """

    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    cache: CacheSettings = field(default_factory=CacheSettings)
    history: HistorySettings = field(default_factory=HistorySettings)
    migration: MigrationSettings = field(default_factory=MigrationSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)


# =============================================================================
# CONFIGURATION LOADING
# =============================================================================


def _parse_bool(value: str) -> bool:
    """Parse a string value to boolean."""
    return value.lower() in ("true", "yes", "1", "on", "enabled")


def _load_from_ini(parser: configparser.ConfigParser, cfg: BlockwardenConfig) -> None:
    """Load configuration from parsed INI file into BlockwardenConfig."""
    # Database section
    if parser.has_section("database"):
        if parser.has_option("database", "path"):
            cfg.database.path = parser.get("database", "path")
        if parser.has_option("database", "table_prefix"):
            cfg.database.table_prefix = parser.get("database", "table_prefix").strip()

    # Cache section
    if parser.has_section("cache"):
        if parser.has_option("cache", "size"):
            cfg.cache.size = parser.getint("cache", "size")
        if parser.has_option("cache", "precache"):
            cfg.cache.precache = parser.getint("cache", "precache")
        if parser.has_option("cache", "range_scan_threshold"):
            cfg.cache.range_scan_threshold = parser.getint("cache", "range_scan_threshold")

    # History section
    if parser.has_section("history"):
        if parser.has_option("history", "enabled"):
            cfg.history.enabled = _parse_bool(parser.get("history", "enabled"))

    # Migration section
    if parser.has_section("migration"):
        if parser.has_option("migration", "batch_size"):
            cfg.migration.batch_size = parser.getint("migration", "batch_size")

    # Logging section
    if parser.has_section("logging"):
        if parser.has_option("logging", "level"):
            cfg.logging.level = parser.get("logging", "level").upper()
        if parser.has_option("logging", "format"):
            val = parser.get("logging", "format").lower()
            if val in ("simple", "detailed"):
                cfg.logging.format = val  # type: ignore[assignment]


def _apply_env_overrides(cfg: BlockwardenConfig) -> None:
    """Apply environment variable overrides to configuration."""
    if env_db := os.getenv("BLOCKWARDEN_DB_PATH"):
        cfg.database.path = env_db
    if (env_prefix := os.getenv("BLOCKWARDEN_TABLE_PREFIX")) is not None:
        cfg.database.table_prefix = env_prefix.strip()

    if env_cache := os.getenv("BLOCKWARDEN_CACHE_SIZE"):
        cfg.cache.size = int(env_cache)
    if env_precache := os.getenv("BLOCKWARDEN_PRECACHE"):
        cfg.cache.precache = int(env_precache)
    if env_threshold := os.getenv("BLOCKWARDEN_RANGE_SCAN_THRESHOLD"):
        cfg.cache.range_scan_threshold = int(env_threshold)

    if env_history := os.getenv("BLOCKWARDEN_HISTORY_ENABLED"):
        cfg.history.enabled = _parse_bool(env_history)

    if env_batch := os.getenv("BLOCKWARDEN_MIGRATION_BATCH_SIZE"):
        cfg.migration.batch_size = int(env_batch)

    if env_log := os.getenv("BLOCKWARDEN_LOG_LEVEL"):
        cfg.logging.level = env_log.upper()


def load_config() -> BlockwardenConfig:
    """
    Load configuration from all sources with proper priority.

    Priority (highest wins):
        1. Environment variables
        2. config/blockwarden.ini
        3. config/blockwarden.example.ini (fallback for development)
        4. Built-in defaults

    Returns:
        BlockwardenConfig: Fully populated configuration object.
    """
    cfg = BlockwardenConfig()

    config_file = None
    if CONFIG_FILE.exists():
        config_file = CONFIG_FILE
    elif CONFIG_EXAMPLE.exists():
        config_file = CONFIG_EXAMPLE

    if config_file:
        parser = configparser.ConfigParser()
        parser.read(config_file)
        _load_from_ini(parser, cfg)

    _apply_env_overrides(cfg)

    return cfg


def reload_config() -> "BlockwardenConfig":
    """
    Reload configuration from disk and environment.

    Repositories that were built from the previous object keep it; only new
    callers of the module-level ``config`` see the reloaded values.

    Returns:
        BlockwardenConfig: The newly loaded configuration.
    """
    global config
    config = load_config()
    return config


# =============================================================================
# MODULE-LEVEL DEFAULT
# =============================================================================

config = load_config()


def get_config_status() -> dict:
    """
    Get configuration status for diagnostics.

    Returns a dictionary describing where configuration came from and the
    values the storage layer cares about.
    """
    return {
        "config_file_exists": CONFIG_FILE.exists(),
        "config_file_path": str(CONFIG_FILE),
        "using_example": not CONFIG_FILE.exists() and CONFIG_EXAMPLE.exists(),
        "database_path": str(config.database.absolute_path),
        "table_prefix": config.database.table_prefix,
        "cache_size": config.cache.size,
        "history_enabled": config.history.enabled,
    }


# =============================================================================
# TESTING UTILITIES
# =============================================================================


class use_test_database:
    """
    Context manager for pointing the module-level config at a test database.

    Usage:
        from blockwarden.config import use_test_database

        def test_something(tmp_path):
            with use_test_database(tmp_path / "test.db"):
                assert cli.main(["init-db"]) == 0

    Args:
        db_path: Path to the test database file
    """

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)
        self.original_path: str | None = None

    def __enter__(self) -> Path:
        """Set up test database path."""
        self.original_path = config.database.path
        config.database.path = str(self.db_path)
        return self.db_path

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Restore original database path."""
        if self.original_path is not None:
            config.database.path = self.original_path
        return None
