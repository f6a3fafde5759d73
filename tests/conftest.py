"""Shared fixtures: throwaway workflow roots with Python stand-ins for MCP servers."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any

import pytest

from mcpworkflow.workspace import Workspace, load_workspace

# Child processes standing in for MCP servers.
LONG_RUNNING = [
    "-c",
    "import sys, time; print('ready', flush=True); "
    "print('warming up', file=sys.stderr, flush=True); time.sleep(60)",
]
EXITS_IMMEDIATELY = ["-c", "import sys; sys.exit(3)"]
IGNORES_SIGTERM = [
    "-c",
    "import signal, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); "
    "print('stubborn', flush=True); time.sleep(60)",
]


def server_file(args: list[str], env: dict[str, Any] | None = None) -> dict[str, Any]:
    return {"command": sys.executable, "args": args, "env": env or {}}


@pytest.fixture(autouse=True)
def _quiet_cli_logging(monkeypatch):
    """Keep the CLI from rebinding stdlib logging to CliRunner's stderr."""
    monkeypatch.setattr("mcpworkflow.cli.main.configure_logging", lambda level: None)


@pytest.fixture
def make_workspace(tmp_path, monkeypatch):
    """Build a master config plus per-server files and load it.

    ``servers`` maps name → (ServerEntry fields, per-server file contents or None).
    """
    def _make(
        servers: dict[str, tuple[dict[str, Any], dict[str, Any] | None]] | None = None,
        workflows: dict[str, dict[str, Any]] | None = None,
        backup: dict[str, Any] | None = None,
        environment: dict[str, str] | None = None,
    ) -> Workspace:
        root = tmp_path / "root"
        configs = root / "configs"
        configs.mkdir(parents=True, exist_ok=True)

        server_entries = {}
        for name, (entry, file_contents) in (servers or {}).items():
            entry = {"configPath": f"${{WORKFLOW_ROOT}}/configs/{name}-config.json", **entry}
            server_entries[name] = entry
            if file_contents is not None:
                (configs / f"{name}-config.json").write_text(json.dumps(file_contents))

        master: dict[str, Any] = {
            "workflowRoot": str(root),
            "environmentVariables": environment or {},
            "servers": server_entries,
            "workflows": workflows or {},
        }
        if backup is not None:
            master["backup"] = backup

        path = configs / "master-config.json"
        path.write_text(json.dumps(master))
        for key in (environment or {}):
            monkeypatch.setenv(key, "")  # restored after the test
        return load_workspace(path)

    return _make


@pytest.fixture
def master_config_path(make_workspace) -> Path:
    """A two-server, one-workflow setup; returns the master config path."""
    ws = make_workspace(
        servers={
            "memory": ({"enabled": True, "autostart": True, "priority": 5}, server_file(LONG_RUNNING)),
            "fetch": ({"enabled": False, "priority": 1}, server_file(LONG_RUNNING)),
        },
        workflows={
            "research": {"name": "Research", "description": "Look things up", "servers": ["memory", "fetch"]},
        },
        backup={"enabled": True, "location": "${WORKFLOW_ROOT}/backups", "retention": 2},
    )
    assert ws.config_path is not None
    return ws.config_path
