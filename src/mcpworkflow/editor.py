"""Cursor editor integration: write enabled servers into its settings.json."""

from __future__ import annotations

import shutil
import time
from pathlib import Path
from typing import Any

import structlog

from mcpworkflow.exceptions import ConfigError
from mcpworkflow.workspace import Workspace, read_json_file, write_json_file

logger = structlog.get_logger()

SETTINGS_KEY = "mcp.servers"


def collect_server_entries(workspace: Workspace) -> dict[str, dict[str, Any]]:
    """``{name: {command, args, env}}`` for enabled servers with a config file."""
    entries: dict[str, dict[str, Any]] = {}
    for name, server in workspace.config.servers.items():
        if not server.enabled:
            continue
        if not workspace.server_config_path(name).exists():
            logger.warning("cursor_server_skipped", server=name, reason="config_missing")
            continue
        spec = workspace.load_server_spec(name)
        entries[name] = {
            "command": spec.command,
            "args": spec.args,
            "env": spec.env,
        }
    return entries


def setup_cursor(workspace: Workspace, settings_path: str | Path) -> Path:
    """Replace the ``mcp.servers`` section of Cursor's settings.

    The original file is copied to ``settings.json.backup-<epoch ms>`` first.
    Returns the backup path.
    """
    path = Path(settings_path)
    if not path.exists():
        raise ConfigError(f"Cursor settings file not found: {path}")

    settings = read_json_file(path)
    if not isinstance(settings, dict):
        raise ConfigError(f"Cursor settings file is not a JSON object: {path}")

    settings[SETTINGS_KEY] = collect_server_entries(workspace)

    backup = path.with_name(f"{path.name}.backup-{int(time.time() * 1000)}")
    shutil.copyfile(path, backup)
    logger.info("cursor_settings_backed_up", backup=str(backup))

    write_json_file(path, settings)
    logger.info(
        "cursor_settings_updated",
        path=str(path),
        servers=list(settings[SETTINGS_KEY]),
    )
    return backup

