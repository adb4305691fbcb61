"""Shared storage constants for the DB package.

Keys of the ``internal`` table and legacy-table naming live here so schema
setup, the migration pipeline, and the repository agree on them.
"""

from __future__ import annotations

# internal(name) keys
SCHEMA_VERSION_KEY = "version"
MIGRATION_STAGE_KEY = "identity_migration_stage"
MIGRATION_OFFSET_KEY = "identity_migration_offset"

# Terminal value of MIGRATION_STAGE_KEY.
STAGE_COMPLETE = "complete"

# Suffix given to name-keyed tables while they are being converted.
LEGACY_SUFFIX = "_old_converting"

PROTECTIONS = "protections"
PLAYERS = "players"
HISTORY = "history"
INTERNAL = "internal"
