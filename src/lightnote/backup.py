"""Backup utilities for LightNote.

Writes provider exports to gzip-compressed JSON files, rotates old backups
and replays a backup file into a provider through ``import_data``.
"""
import asyncio
import gzip
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from lightnote.config import config
from lightnote.storage.base import (DatabaseBackup, DatabaseProvider,
                                    ImportResult)

logger = logging.getLogger(__name__)

# Backup retention settings
DEFAULT_MAX_BACKUPS = 10  # Keep last N backups
DEFAULT_MAX_AGE_DAYS = 30  # Delete backups older than N days

BACKUP_PREFIX = "lightnote_"
BACKUP_SUFFIX = ".json.gz"


class BackupManager:
    """Manages export backups of a provider with rotation.

    Features:
    - Snapshots taken through the provider's ``export_data``
    - Gzip compression for space efficiency
    - Automatic rotation by count and age
    """

    def __init__(
        self,
        provider: DatabaseProvider,
        backup_dir: Optional[Union[str, Path]] = None,
        max_backups: int = DEFAULT_MAX_BACKUPS,
        max_age_days: int = DEFAULT_MAX_AGE_DAYS,
    ):
        """Initialize the backup manager.

        Args:
            provider: An initialised provider supporting export and import
            backup_dir: Directory for backups. Defaults to the configured backup_dir
            max_backups: Maximum number of backups to keep
            max_age_days: Delete backups older than this many days
        """
        self.provider = provider
        self.backup_dir = Path(backup_dir) if backup_dir else config.backup_dir
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        self.max_backups = max_backups
        self.max_age_days = max_age_days
        self._lock = asyncio.Lock()

    async def create_backup(
        self,
        label: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Optional[Path]:
        """Export the provider's data to a compressed backup file.

        Args:
            label: Optional label to include in filename
            user_id: Restrict the export to one user's records

        Returns:
            Path to the backup file, or None if the backup failed.

        Example:
            backup_path = await manager.create_backup(label="pre-switch")
        """
        async with self._lock:
            try:
                backup = await self.provider.export_data(user_id)

                timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
                label_part = f"_{label}" if label else ""
                backup_path = self.backup_dir / f"{BACKUP_PREFIX}{timestamp}{label_part}{BACKUP_SUFFIX}"

                with gzip.open(backup_path, "wt", encoding="utf-8", compresslevel=6) as f:
                    f.write(backup.model_dump_json())

                size_mb = backup_path.stat().st_size / (1024 * 1024)
                logger.info(
                    f"Backup created: {backup_path} ({size_mb:.2f} MB, "
                    f"{backup.metadata.total_notes} notes, "
                    f"{backup.metadata.total_folders} folders)"
                )

                self._rotate_backups()
                return backup_path

            except Exception as e:
                logger.error(f"Backup failed: {e}", exc_info=True)
                return None

    def _backup_files(self) -> List[Path]:
        """Backup files, newest first."""
        return sorted(
            self.backup_dir.glob(f"{BACKUP_PREFIX}*{BACKUP_SUFFIX}"),
            key=lambda p: (p.stat().st_mtime, p.name),
            reverse=True,
        )

    def _rotate_backups(self) -> int:
        """Remove old backups based on count and age limits.

        Returns:
            Number of backups removed.
        """
        removed = 0
        now = datetime.now(timezone.utc)
        backups = self._backup_files()

        # Remove by count (keep newest N)
        for backup in backups[self.max_backups:]:
            try:
                backup.unlink()
                removed += 1
                logger.debug(f"Removed old backup (count limit): {backup}")
            except OSError:
                logger.warning(f"Could not remove old backup: {backup}")

        # Remove by age
        max_age_seconds = self.max_age_days * 24 * 60 * 60
        for backup in backups[:self.max_backups]:
            try:
                age = now.timestamp() - backup.stat().st_mtime
                if age > max_age_seconds:
                    backup.unlink()
                    removed += 1
                    logger.debug(f"Removed old backup (age limit): {backup}")
            except OSError:
                logger.warning(f"Could not remove old backup: {backup}")

        if removed > 0:
            logger.info(f"Rotated {removed} old backup(s)")

        return removed

    def list_backups(self) -> List[Dict[str, Any]]:
        """List all available backups, newest first."""
        backups = []
        for path in self._backup_files():
            stat = path.stat()
            backups.append({
                "path": str(path),
                "name": path.name,
                "size_bytes": stat.st_size,
                "size_mb": round(stat.st_size / (1024 * 1024), 2),
                "created_at": datetime.fromtimestamp(
                    stat.st_mtime, tz=timezone.utc
                ).isoformat(),
            })
        return backups

    @staticmethod
    def load_backup(backup_path: Union[str, Path]) -> DatabaseBackup:
        """Read and validate a backup file (gzip or plain JSON)."""
        backup_path = Path(backup_path)
        if backup_path.suffix == ".gz":
            with gzip.open(backup_path, "rt", encoding="utf-8") as f:
                payload = f.read()
        else:
            payload = backup_path.read_text(encoding="utf-8")
        return DatabaseBackup.model_validate_json(payload)

    async def restore_backup(
        self,
        backup_path: Union[str, Path],
        safety_backup: bool = True,
    ) -> Optional[ImportResult]:
        """Import a backup file into the provider.

        Existing records are kept; records already present are skipped by
        the import and reported in the result's errors.

        Args:
            backup_path: Path to the backup file
            safety_backup: Take a "pre-restore" backup first (default: True)

        Returns:
            The import result, or None if the file could not be restored.
        """
        backup_path = Path(backup_path)
        if not backup_path.exists():
            logger.error(f"Backup not found: {backup_path}")
            return None

        if safety_backup:
            await self.create_backup(label="pre-restore")

        async with self._lock:
            try:
                backup = self.load_backup(backup_path)
                result = await self.provider.import_data(backup)
                logger.info(f"Backup restored from: {backup_path}")
                return result
            except Exception as e:
                logger.error(f"Restore failed: {e}", exc_info=True)
                return None
