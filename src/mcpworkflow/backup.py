"""Backups of the workflow root's configs, templates and persistent resources."""

from __future__ import annotations

import shutil
from datetime import datetime, timezone
from pathlib import Path

import structlog

from mcpworkflow.exceptions import BackupError
from mcpworkflow.workspace import Workspace

logger = structlog.get_logger()

BACKUP_PREFIX = "mcp-workflow-backup-"


def backup_name(now: datetime | None = None) -> str:
    """``mcp-workflow-backup-2026-10-19T08-30-00-123Z`` style name."""
    now = now or datetime.now(timezone.utc)
    return f"{BACKUP_PREFIX}{now:%Y-%m-%dT%H-%M-%S}-{now.microsecond // 1000:03d}Z"


def prune_backups(backup_dir: Path, retention: int) -> list[Path]:
    """Keep the ``retention`` newest backups (by mtime); delete the rest."""
    entries = sorted(
        (p for p in backup_dir.iterdir() if p.name.startswith(BACKUP_PREFIX)),
        key=lambda p: p.stat().st_mtime,
        reverse=True,
    )
    deleted = []
    for old in entries[retention:]:
        try:
            if old.is_dir():
                shutil.rmtree(old)
            else:
                old.unlink()
            deleted.append(old)
            logger.info("old_backup_deleted", name=old.name)
        except OSError as e:
            logger.error("old_backup_delete_failed", name=old.name, error=str(e))
    return deleted


def create_backup(workspace: Workspace, now: datetime | None = None) -> Path:
    """Copy configs, templates, databases and memory store into a new backup.

    Returns the backup directory, or the archive when compression is on.
    Raises BackupError if backups are disabled in the master config.
    """
    settings = workspace.config.backup
    if settings is None or not settings.enabled:
        raise BackupError("Backup functionality is not enabled in configuration")

    backup_dir = Path(workspace.expand(settings.location))
    backup_dir.mkdir(parents=True, exist_ok=True)

    target = backup_dir / backup_name(now)
    target.mkdir()

    shutil.copytree(workspace.configs_dir, target / "configs")
    shutil.copytree(workspace.templates_dir, target / "templates")

    optional = {
        "databases": workspace.resources_dir / "databases",
        "memory-store": workspace.resources_dir / "memory-store",
    }
    for dest, src in optional.items():
        if src.exists():
            shutil.copytree(src, target / dest)

    result = target
    if settings.compression:
        archive = shutil.make_archive(str(target), "gztar", root_dir=backup_dir, base_dir=target.name)
        shutil.rmtree(target)
        result = Path(archive)
        logger.info("backup_compressed", archive=str(result))

    if settings.retention > 0:
        prune_backups(backup_dir, settings.retention)

    logger.info("backup_created", path=str(result))
    return result
