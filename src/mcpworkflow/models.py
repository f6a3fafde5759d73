"""Core domain models for mcpworkflow.

On-disk JSON uses camelCase keys (``workflowRoot``, ``configPath``), so the
config models carry aliases and accept either spelling.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# ── Master configuration ─────────────────────────────────────


class ServerEntry(_CamelModel):
    """One server as declared in the master config."""

    enabled: bool = False
    autostart: bool = False
    priority: int = 0
    config_path: str = Field(default="", alias="configPath")
    description: str = ""


class WorkflowDefinition(_CamelModel):
    """A named group of servers started and stopped together."""

    name: str = ""
    description: str = ""
    servers: list[str] = Field(default_factory=list)


class BackupSettings(_CamelModel):
    enabled: bool = False
    location: str = "${WORKFLOW_ROOT}/backups"
    retention: int = 0
    compression: bool = False


class MasterConfig(_CamelModel):
    """The master-config.json document."""

    workflow_root: str = Field(alias="workflowRoot")
    environment_variables: dict[str, str] = Field(
        default_factory=dict, alias="environmentVariables"
    )
    servers: dict[str, ServerEntry] = Field(default_factory=dict)
    workflows: dict[str, WorkflowDefinition] = Field(default_factory=dict)
    backup: BackupSettings | None = None


class ServerLaunchSpec(BaseModel):
    """Contents of a per-server config file: what to exec and with which env."""

    command: str
    args: list[str] = Field(default_factory=list)
    env: dict[str, Any] = Field(default_factory=dict)


# ── Runtime state & status ───────────────────────────────────


class RuntimeRecord(BaseModel):
    """A server this tool launched, as remembered between invocations."""

    name: str
    pid: int
    command: str = ""
    args: list[str] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=datetime.now)
    log_path: str = ""
    create_time: float | None = None  # psutil create_time, guards against PID reuse


class ServerStatus(BaseModel):
    running: bool = False
    enabled: bool = False
    autostart: bool = False
    priority: int = 0
    pid: int | None = None


class WorkflowStatus(_CamelModel):
    name: str = ""
    description: str = ""
    required_servers: list[str] = Field(default_factory=list, alias="requiredServers")
    running_servers: int = Field(default=0, alias="runningServers")
    total_servers: int = Field(default=0, alias="totalServers")
    ready: bool = False


class StatusReport(_CamelModel):
    """Snapshot of every configured server and workflow."""

    timestamp: datetime = Field(default_factory=datetime.now)
    servers: dict[str, ServerStatus] = Field(default_factory=dict)
    workflows: dict[str, WorkflowStatus] = Field(default_factory=dict)
    running_server_count: int = Field(default=0, alias="runningServerCount")
    total_server_count: int = Field(default=0, alias="totalServerCount")


class ServerOutcome(BaseModel):
    server: str
    success: bool


class BatchResult(BaseModel):
    """Ordered outcomes of a sequential multi-server operation.

    All-or-nothing: ``ok`` only when every server succeeded.
    """

    outcomes: list[ServerOutcome] = Field(default_factory=list)

    def add(self, server: str, success: bool) -> None:
        self.outcomes.append(ServerOutcome(server=server, success=success))

    @property
    def ok(self) -> bool:
        return all(o.success for o in self.outcomes)

    @property
    def failed(self) -> list[str]:
        return [o.server for o in self.outcomes if not o.success]

    @property
    def servers(self) -> list[str]:
        return [o.server for o in self.outcomes]


# ── Installer ────────────────────────────────────────────────


class CatalogEntry(BaseModel):
    """A known MCP server package and how to run it."""

    command: str = "npx"
    args: list[str] = Field(default_factory=list)
    description: str = ""
    test_args: list[str] = Field(default_factory=lambda: ["--help"])


class ProbeResult(BaseModel):
    available: bool = False
    config: CatalogEntry
    error: str = ""
