#!/usr/bin/env python
"""Command line entry point and composition root for LightNote storage."""
import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Mapping, Optional

from lightnote import __version__
from lightnote.backup import BackupManager
from lightnote.config import ProviderKind, config
from lightnote.exceptions import DatabaseError
from lightnote.observability import configure_logging, metrics
from lightnote.storage.base import DatabaseProvider
from lightnote.storage.factory import ProviderFactory
from lightnote.storage.sqlite_provider import SQLiteProvider

logger = logging.getLogger(__name__)


def build_factory(environ: Optional[Mapping[str, str]] = None) -> ProviderFactory:
    """Create the provider factory with every provider this build ships."""
    return ProviderFactory(
        {ProviderKind.SQLITE.value: SQLiteProvider},
        environ=environ,
    )


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="LightNote storage tools")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--data-dir",
        help="Directory holding the local databases",
        type=str,
        default=os.environ.get("LIGHTNOTE_DATA_DIR")
    )
    parser.add_argument(
        "--database-name",
        help="Name of the local database",
        type=str,
        default=None
    )
    parser.add_argument(
        "--log-level",
        help="Logging level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.environ.get("LIGHTNOTE_LOG_LEVEL", "INFO")
    )

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("info", help="Show provider status and record counts")

    export = sub.add_parser("export", help="Export data as JSON")
    export.add_argument("--user", help="Only export this user's records")
    export.add_argument("--output", "-o", help="Write to a file instead of stdout")

    import_ = sub.add_parser("import", help="Import a JSON or .json.gz backup")
    import_.add_argument("path", help="Backup file to import")

    backup = sub.add_parser("backup", help="Create or list compressed backups")
    backup.add_argument("--label", help="Label to include in the file name")
    backup.add_argument("--user", help="Only back up this user's records")
    backup.add_argument("--list", action="store_true", help="List existing backups")

    return parser.parse_args(argv)


def update_config(args):
    """Update the global config with command line arguments."""
    if args.data_dir:
        config.data_dir = Path(args.data_dir)


async def _run_command(args, provider: DatabaseProvider) -> int:
    if args.command == "info":
        info = provider.get_info()
        payload = info.model_dump(mode="json")
        payload["counts"] = {
            "notes": await provider.count("notes"),
            "folders": await provider.count("folders"),
        }
        print(json.dumps(payload, indent=2))
        return 0

    if args.command == "export":
        backup = await provider.export_data(args.user)
        text = backup.model_dump_json(indent=2)
        if args.output:
            Path(args.output).write_text(text, encoding="utf-8")
            logger.info(f"Exported to {args.output}")
        else:
            print(text)
        return 0

    if args.command == "import":
        backup = BackupManager.load_backup(args.path)
        result = await provider.import_data(backup)
        print(result.model_dump_json(indent=2))
        return 0 if not result.errors else 2

    if args.command == "backup":
        manager = BackupManager(provider)
        if args.list:
            print(json.dumps(manager.list_backups(), indent=2))
            return 0
        path = await manager.create_backup(label=args.label, user_id=args.user)
        if path is None:
            return 1
        print(path)
        return 0

    return 1


async def run(args) -> int:
    """Open the configured provider, run one command and close it."""
    factory = build_factory()
    db_config = factory.get_default_config()
    if args.database_name:
        db_config.options.database_name = args.database_name

    try:
        provider = await factory.create_provider(db_config)
        return await _run_command(args, provider)
    except DatabaseError as e:
        logger.error(f"{e}")
        for action in e.suggested_actions:
            logger.info(f"Suggested: {action}")
        return 1
    finally:
        await factory.close()
        logger.debug("Metrics: %s", metrics.get_summary())


def main(argv=None):
    """Run the LightNote command line tool."""
    args = parse_args(argv)
    update_config(args)

    # Configure logging (console + persistent file logging with rotation)
    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    try:
        configure_logging(level=log_level, console=True)
    except Exception as e:
        # Fall back to basic console logging if file logging fails
        logging.basicConfig(level=log_level)
        logger.warning(f"Failed to configure file logging: {e}")

    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
