"""Configuration management for mcpworkflow.

Loads settings from environment variables and .env file. The master config
(servers, workflows, backup policy) lives in its own JSON file and is handled
by ``mcpworkflow.workspace``; this module only covers how the tool itself runs.
"""

from __future__ import annotations

import logging
import os
import platform
import sys
from pathlib import Path

import structlog
from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()


def default_cursor_settings_path() -> str:
    """Where Cursor keeps its user settings on this platform."""
    home = Path.home()
    system = platform.system()
    if system == "Windows":
        appdata = os.getenv("APPDATA", str(home / "AppData" / "Roaming"))
        return str(Path(appdata) / "Cursor" / "User" / "settings.json")
    if system == "Darwin":
        return str(home / "Library" / "Application Support" / "Cursor" / "User" / "settings.json")
    return str(home / ".config" / "Cursor" / "User" / "settings.json")


class MCPWorkflowConfig(BaseModel):
    """Application configuration, read from env vars with defaults."""

    # Master config
    master_config: str = Field(
        default_factory=lambda: os.getenv(
            "MCPWORKFLOW_CONFIG", "./configs/master-config.json"
        )
    )

    # Supervision
    startup_check_seconds: float = Field(
        default_factory=lambda: float(os.getenv("MCPWORKFLOW_STARTUP_SECONDS", "2"))
    )
    stop_grace_seconds: float = Field(
        default_factory=lambda: float(os.getenv("MCPWORKFLOW_STOP_GRACE_SECONDS", "5"))
    )

    # Installer probes
    probe_timeout_seconds: float | None = Field(
        default_factory=lambda: (
            float(os.environ["MCPWORKFLOW_PROBE_TIMEOUT"])
            if os.getenv("MCPWORKFLOW_PROBE_TIMEOUT")
            else None
        )
    )
    package_runner: str = Field(
        default_factory=lambda: os.getenv("MCPWORKFLOW_PACKAGE_RUNNER", "npx")
    )
    extra_path: str = Field(
        default_factory=lambda: os.getenv("MCPWORKFLOW_EXTRA_PATH", "")
    )

    # Editor integration
    cursor_settings_path: str = Field(
        default_factory=lambda: os.getenv(
            "MCPWORKFLOW_CURSOR_SETTINGS", default_cursor_settings_path()
        )
    )

    log_level: str = Field(
        default_factory=lambda: os.getenv("MCPWORKFLOW_LOG_LEVEL", "INFO")
    )


def load_config() -> MCPWorkflowConfig:
    """Load configuration from environment."""
    return MCPWorkflowConfig()


def configure_logging(level: str = "INFO") -> None:
    """Send structlog events through stdlib logging to stderr.

    stdout is left to the Rich console output of the CLI.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.handlers = []
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
