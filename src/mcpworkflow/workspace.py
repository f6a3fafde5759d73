"""Workflow root: master config loading, placeholder expansion, directory layout.

The master config refers to paths with ``${HOME}`` and ``${WORKFLOW_ROOT}``
placeholders. Loading a workspace resolves them, exports the configured
environment variables into ``os.environ`` and makes sure the standard
directory tree exists under the workflow root.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import structlog
from pydantic import ValidationError

from mcpworkflow.exceptions import ConfigError, UnknownServerError, UnknownWorkflowError
from mcpworkflow.models import (
    MasterConfig,
    ServerEntry,
    ServerLaunchSpec,
    WorkflowDefinition,
)

logger = structlog.get_logger()

# Relative to the workflow root.
DIRECTORY_LAYOUT = [
    "",
    "configs",
    "scripts",
    "resources",
    "logs",
    "templates",
    "resources/databases",
    "resources/screenshots",
    "resources/downloads",
    "resources/memory-store",
    "backups",
]


def expand_placeholders(value: str, workflow_root: str | Path | None = None) -> str:
    """Replace ``${HOME}`` and, when known, ``${WORKFLOW_ROOT}`` everywhere in value."""
    if workflow_root is not None:
        value = value.replace("${WORKFLOW_ROOT}", str(workflow_root))
    return value.replace("${HOME}", str(Path.home()))


def read_json_file(path: Path) -> Any:
    """Read a JSON document, turning I/O and parse failures into ConfigError."""
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise ConfigError(f"Configuration file not found: {path}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"Failed to parse {path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Failed to read {path}: {e}") from e


def write_json_file(path: Path, data: Any) -> None:
    path.write_text(json.dumps(data, indent=2, default=str), encoding="utf-8")


class Workspace:
    """A loaded master config bound to its resolved workflow root."""

    def __init__(self, config: MasterConfig, config_path: Path | None = None) -> None:
        self.config = config
        self.config_path = config_path
        self.root = Path(expand_placeholders(config.workflow_root))

    # ── Layout ────────────────────────────────────────────────

    @property
    def configs_dir(self) -> Path:
        return self.root / "configs"

    @property
    def logs_dir(self) -> Path:
        return self.root / "logs"

    @property
    def templates_dir(self) -> Path:
        return self.root / "templates"

    @property
    def resources_dir(self) -> Path:
        return self.root / "resources"

    @property
    def runtime_state_path(self) -> Path:
        return self.logs_dir / "runtime.json"

    def log_path(self, server_name: str) -> Path:
        return self.logs_dir / f"{server_name}.log"

    def expand(self, value: str) -> str:
        return expand_placeholders(value, self.root)

    def ensure_directory_structure(self) -> list[Path]:
        """Create any missing standard directories. Returns the ones created."""
        created = []
        for rel in DIRECTORY_LAYOUT:
            d = self.root / rel if rel else self.root
            if not d.exists():
                logger.info("creating_directory", path=str(d))
                d.mkdir(parents=True, exist_ok=True)
                created.append(d)
        return created

    def apply_environment(self) -> dict[str, str]:
        """Export the configured environment variables into this process."""
        applied = {}
        for key, value in self.config.environment_variables.items():
            applied[key] = self.expand(str(value))
            os.environ[key] = applied[key]
        return applied

    # ── Lookups ───────────────────────────────────────────────

    def server(self, name: str) -> ServerEntry:
        try:
            return self.config.servers[name]
        except KeyError:
            raise UnknownServerError(name) from None

    def workflow(self, key: str) -> WorkflowDefinition:
        try:
            return self.config.workflows[key]
        except KeyError:
            raise UnknownWorkflowError(key) from None

    def server_config_path(self, name: str) -> Path:
        return Path(self.expand(self.server(name).config_path))

    def load_server_spec(self, name: str) -> ServerLaunchSpec:
        """Read the per-server config file describing how to launch ``name``."""
        path = self.server_config_path(name)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")
        data = read_json_file(path)
        try:
            return ServerLaunchSpec.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"Invalid server configuration in {path}: {e}") from e

    def server_environment(self, spec: ServerLaunchSpec) -> dict[str, str]:
        """The current environment overlaid with the server's own env entries."""
        env = dict(os.environ)
        for key, value in spec.env.items():
            env[key] = self.expand(value) if isinstance(value, str) else str(value)
        return env


def load_workspace(config_path: str | Path) -> Workspace:
    """Initialize: load the master config, export its env vars, build the tree.

    Raises ConfigError if the master config is missing or invalid.
    """
    path = Path(config_path).resolve()
    logger.info("loading_configuration", path=str(path))

    data = read_json_file(path)
    try:
        config = MasterConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid master configuration in {path}: {e}") from e

    workspace = Workspace(config, config_path=path)
    workspace.apply_environment()
    try:
        workspace.ensure_directory_structure()
    except OSError as e:
        raise ConfigError(f"Cannot create workflow directories under {workspace.root}: {e}") from e

    logger.info("workspace_initialized", root=str(workspace.root))
    return workspace
