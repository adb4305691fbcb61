"""
Command-line interface for Blockwarden.

Provides CLI commands for protection store maintenance:
- init-db: Create the schema, apply upgrades and run the identity migration
- migrate: Run the remaining identity migration stages, reporting progress
- status: Show schema version, migration stage and row counts

Usage:
    blockwarden init-db
    blockwarden migrate [--batch-size N]
    blockwarden status

Every command accepts --db PATH to operate on a database other than the one
named by the configuration (database.path / BLOCKWARDEN_DB_PATH).
"""

import argparse
import logging
import sys
from dataclasses import replace

from blockwarden import __version__
from blockwarden import config as settings
from blockwarden.config import BlockwardenConfig, LoggingSettings

LOG_FORMATS = {
    "simple": "%(levelname)s %(message)s",
    "detailed": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
}


def configure_logging(cfg: LoggingSettings) -> None:
    """Apply the configured level and format to the root logger."""
    logging.basicConfig(
        level=getattr(logging, cfg.level.upper(), logging.INFO),
        format=LOG_FORMATS.get(cfg.format, LOG_FORMATS["detailed"]),
        force=True,
    )


def _resolve_config(args: argparse.Namespace) -> BlockwardenConfig:
    """Module config with command-line overrides applied to a copy."""
    cfg = settings.config
    db_path = getattr(args, "db", None)
    if db_path:
        cfg = replace(cfg, database=replace(cfg.database, path=str(db_path)))
    batch_size = getattr(args, "batch_size", None)
    if batch_size:
        cfg = replace(cfg, migration=replace(cfg.migration, batch_size=batch_size))
    return cfg


def _build_repository(cfg: BlockwardenConfig):
    from blockwarden.db.connection import Database
    from blockwarden.repository import ProtectionRepository

    return ProtectionRepository(Database.from_config(cfg), cfg)


def cmd_init_db(args: argparse.Namespace) -> int:
    """
    Initialize the protection store.

    Creates the tables, applies pending upgrades and, for a name-keyed
    database, runs the identity migration to completion.

    Returns:
        0 on success, 1 on error
    """
    cfg = _resolve_config(args)
    try:
        repository = _build_repository(cfg)
        repository.initialize()
        print(f"Database initialized at {cfg.database.absolute_path}")
        print(f"Schema version: {repository.schema_version}")
        return 0
    except Exception as e:
        print(f"Error initializing database: {e}", file=sys.stderr)
        return 1


def cmd_migrate(args: argparse.Namespace) -> int:
    """
    Run the remaining identity migration stages.

    Each batch is committed before the next starts, so an interrupted run
    resumes from the last finished batch.

    Returns:
        0 on success, 1 on error
    """
    from blockwarden.db import schema

    cfg = _resolve_config(args)
    try:
        repository = _build_repository(cfg)
        schema.prepare_schema(repository.db)
        schema.apply_upgrades(repository.db)
        pipeline = repository.pipeline
        pipeline.load_state()
        if pipeline.is_complete:
            print("Identity migration already complete.")
            return 0

        batches = 0
        failed = 0
        while True:
            result = repository.migration_tick()
            if result is None:
                print("Error: migration batch failed; rerun to resume.", file=sys.stderr)
                return 1
            batches += 1
            failed += result.failed
            if result.stage_complete:
                print(f"Stage {result.stage_name} complete ({batches} batches so far)")
            if result.complete:
                break

        print(f"Identity migration complete: {batches} batches, {failed} rows skipped.")
        return 0
    except Exception as e:
        print(f"Error running migration: {e}", file=sys.stderr)
        return 1


def cmd_status(args: argparse.Namespace) -> int:
    """
    Print schema version, migration checkpoint and row counts.

    Returns:
        0 on success, 1 on error
    """
    from blockwarden.db import history_repo, internal_repo, players_repo, protections_repo
    from blockwarden.db.connection import Database
    from blockwarden.db.schema import LATEST_SCHEMA_VERSION

    cfg = _resolve_config(args)
    path = cfg.database.absolute_path
    if not path.exists():
        print(f"Error: database not found at {path}", file=sys.stderr)
        return 1

    try:
        db = Database.from_config(cfg)
        version = internal_repo.get_schema_version(db)
        stage, offset = internal_repo.get_migration_state(db)
        print(f"Database:         {path}")
        print(f"Schema version:   {version} (latest {LATEST_SCHEMA_VERSION})")
        print(f"Migration stage:  {stage or 'not started'} (offset {offset})")
        print(f"Protections:      {protections_repo.count_protections(db)}")
        print(f"Players:          {players_repo.count_players(db)}")
        print(f"History records:  {history_repo.count_history(db)}")
        if protections_repo.legacy_table_exists(db):
            print("Legacy tables:    present")
        return 0
    except Exception as e:
        print(f"Error reading status: {e}", file=sys.stderr)
        return 1


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        prog="blockwarden",
        description="Blockwarden - protection storage maintenance",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--db",
        type=str,
        help="Database file to operate on (default: database.path from configuration)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # init-db command
    init_parser = subparsers.add_parser(
        "init-db",
        help="Initialize the database schema",
        description=(
            "Create the protection store tables, apply schema upgrades and "
            "convert a name-keyed database to identity keys."
        ),
    )
    init_parser.set_defaults(func=cmd_init_db)

    # migrate command
    migrate_parser = subparsers.add_parser(
        "migrate",
        help="Run the identity migration",
        description="Run the remaining identity migration stages one batch at a time.",
    )
    migrate_parser.add_argument(
        "--batch-size",
        type=int,
        help="Rows per batch (default: migration.batch_size from configuration)",
    )
    migrate_parser.set_defaults(func=cmd_migrate)

    # status command
    status_parser = subparsers.add_parser(
        "status",
        help="Show database status",
        description="Show schema version, migration checkpoint and row counts.",
    )
    status_parser.set_defaults(func=cmd_status)

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    configure_logging(settings.config.logging)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
