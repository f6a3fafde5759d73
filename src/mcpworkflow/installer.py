"""Installer: probe the well-known MCP server packages through the package runner.

Each catalog entry is run once with ``--help``. The package runner (``npx -y``)
downloads the package on first use, so a successful probe doubles as the
install step. Two probe strategies exist:

  spawn: exec the runner directly and judge availability by its output
  shell: run the joined command line through the shell with PATH extended;
         exit status 1 and timeouts count as available, since many servers
         reject ``--help`` or keep running instead of printing help

Results are written as JSON snippets for Cursor's settings.
"""

from __future__ import annotations

import os
import shlex
import shutil
import subprocess
from pathlib import Path
from typing import Literal

import psutil
import structlog

from mcpworkflow.models import CatalogEntry, ProbeResult
from mcpworkflow.workspace import write_json_file

logger = structlog.get_logger()

ProbeStrategy = Literal["spawn", "shell"]

SPAWN_TIMEOUT_SECONDS = 10.0
SHELL_TIMEOUT_SECONDS = 15.0

# name → (package, description)
KNOWN_SERVERS: dict[str, tuple[str, str]] = {
    "filesystem": ("@modelcontextprotocol/server-filesystem", "Enhanced filesystem access"),
    "memory": ("@modelcontextprotocol/server-memory", "Persistent memory storage"),
    "github": ("@modelcontextprotocol/server-github", "GitHub integration"),
    "brave-search": ("@modelcontextprotocol/server-brave-search", "Web search with Brave"),
    "fetch": ("@modelcontextprotocol/server-fetch", "HTTP request client"),
    "sqlite": ("@modelcontextprotocol/server-sqlite", "SQLite database integration"),
    "puppeteer": ("@modelcontextprotocol/server-puppeteer", "Browser automation"),
    "sequential-thinking": (
        "@modelcontextprotocol/server-sequential-thinking",
        "Advanced problem solving",
    ),
    "everything": ("@modelcontextprotocol/server-everything", "Windows Everything search"),
}

# Placeholder credentials Cursor needs before these servers work.
REQUIRED_ENV: dict[str, dict[str, str]] = {
    "github": {"GITHUB_PERSONAL_ACCESS_TOKEN": ""},
    "brave-search": {"BRAVE_API_KEY": ""},
}

BASIC_SERVERS = ["filesystem", "memory", "fetch", "sequential-thinking"]

WORKING_SERVERS_FILE = "working-servers.json"
CURSOR_SETTINGS_FILE = "cursor-settings.json"
BASIC_CURSOR_SETTINGS_FILE = "basic-cursor-settings.json"


def build_catalog(runner: str = "npx") -> dict[str, CatalogEntry]:
    return {
        name: CatalogEntry(command=runner, args=["-y", package], description=description)
        for name, (package, description) in KNOWN_SERVERS.items()
    }


def _run_probe(args: str | list[str], timeout: float, **popen_kwargs) -> subprocess.CompletedProcess:
    """``subprocess.run`` for probes: no stdin, and the whole tree dies on timeout.

    The runner and shell spawn grandchildren that inherit the output pipes;
    killing only the direct child would leave ``communicate`` blocked on them.
    """
    with subprocess.Popen(
        args,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        **popen_kwargs,
    ) as proc:
        try:
            stdout, stderr = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            _kill_tree(proc)
            proc.communicate()
            raise
        return subprocess.CompletedProcess(proc.args, proc.returncode, stdout, stderr)


def _kill_tree(proc: subprocess.Popen) -> None:
    try:
        children = psutil.Process(proc.pid).children(recursive=True)
    except psutil.NoSuchProcess:
        children = []
    for child in children:
        try:
            child.kill()
        except psutil.NoSuchProcess:
            pass
    proc.kill()


def _command_line(argv: list[str]) -> str:
    if os.name == "nt":
        return subprocess.list2cmdline(argv)
    return shlex.join(argv)


def _probe_spawn(entry: CatalogEntry, timeout: float) -> tuple[bool, str]:
    executable = shutil.which(entry.command) or entry.command
    try:
        proc = _run_probe([executable, *entry.args, *entry.test_args], timeout=timeout)
    except subprocess.TimeoutExpired:
        return False, "Timeout"
    except OSError as e:
        return False, str(e)

    available = bool(proc.stdout) or "--help" in proc.stderr or proc.returncode == 0
    return available, "" if available else proc.stderr.strip()


def _probe_shell(entry: CatalogEntry, timeout: float, extra_path: str) -> tuple[bool, str]:
    command_line = _command_line([entry.command, *entry.args, *entry.test_args])
    env = dict(os.environ)
    if extra_path:
        env["PATH"] = env.get("PATH", "") + os.pathsep + extra_path
    try:
        proc = _run_probe(command_line, timeout=timeout, shell=True, env=env)
    except subprocess.TimeoutExpired:
        return True, "help returned"
    except OSError as e:
        return False, str(e)

    if proc.returncode == 0:
        return True, ""
    if proc.returncode == 1:
        return True, "help returned"
    return False, proc.stderr.strip() or f"exit status {proc.returncode}"


def probe_server(
    name: str,
    catalog: dict[str, CatalogEntry] | None = None,
    strategy: ProbeStrategy = "spawn",
    timeout: float | None = None,
    extra_path: str = "",
) -> bool:
    """Check whether a catalog server can be executed. Unknown names are unavailable."""
    catalog = catalog if catalog is not None else build_catalog()
    entry = catalog.get(name)
    if entry is None:
        logger.error("probe_unknown_server", server=name)
        return False

    logger.info("probe_started", server=name, description=entry.description, strategy=strategy)
    if strategy == "shell":
        available, detail = _probe_shell(entry, timeout or SHELL_TIMEOUT_SECONDS, extra_path)
    else:
        available, detail = _probe_spawn(entry, timeout or SPAWN_TIMEOUT_SECONDS)

    if available:
        logger.info("probe_available", server=name, detail=detail or None)
    else:
        logger.warning("probe_unavailable", server=name, detail=detail or None)
    return available


def install_and_test(
    output_dir: str | Path,
    catalog: dict[str, CatalogEntry] | None = None,
    strategy: ProbeStrategy = "spawn",
    timeout: float | None = None,
    extra_path: str = "",
) -> dict[str, ProbeResult]:
    """Probe every catalog server in turn and save the working ones."""
    catalog = catalog if catalog is not None else build_catalog()
    results: dict[str, ProbeResult] = {}

    for name, entry in catalog.items():
        try:
            available = probe_server(name, catalog, strategy, timeout, extra_path)
            results[name] = ProbeResult(available=available, config=entry)
        except Exception as e:
            logger.error("probe_failed", server=name, error=str(e))
            results[name] = ProbeResult(available=False, config=entry, error=str(e))

    working = {
        name: {"command": r.config.command, "args": r.config.args, "env": {}}
        for name, r in results.items()
        if r.available
    }
    out = Path(output_dir)
    out.mkdir(parents=True, exist_ok=True)
    path = out / WORKING_SERVERS_FILE
    write_json_file(path, working)
    logger.info("working_configuration_saved", path=str(path), available=len(working))
    return results


def generate_cursor_config(results: dict[str, ProbeResult], output_dir: str | Path) -> dict:
    """Cursor ``mcp.servers`` block for available servers, with credential placeholders."""
    servers = {}
    for name, result in results.items():
        if not result.available:
            continue
        servers[name] = {
            "command": result.config.command,
            "args": list(result.config.args),
            "env": dict(REQUIRED_ENV.get(name, {})),
        }

    cursor_config = {"mcp.servers": servers}
    out = Path(output_dir)
    out.mkdir(parents=True, exist_ok=True)
    path = out / CURSOR_SETTINGS_FILE
    write_json_file(path, cursor_config)
    logger.info("cursor_configuration_saved", path=str(path))
    return cursor_config


def create_basic_config(output_dir: str | Path, runner: str = "npx") -> dict:
    """A known-good starter config, written before any probing happens."""
    catalog = build_catalog(runner)
    home = Path.home()
    servers = {}
    for name in BASIC_SERVERS:
        entry = catalog[name]
        args = list(entry.args)
        if name == "filesystem":
            args += [str(home), home.anchor]
        servers[name] = {"command": entry.command, "args": args, "env": {}}

    basic = {"mcp.servers": servers}
    out = Path(output_dir)
    out.mkdir(parents=True, exist_ok=True)
    path = out / BASIC_CURSOR_SETTINGS_FILE
    write_json_file(path, basic)
    logger.info("basic_configuration_saved", path=str(path))
    return basic
