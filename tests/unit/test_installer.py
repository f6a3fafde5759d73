"""Tests for the MCP server package probes.

The process runner is patched except where real Python children stand in
for server packages; nothing is downloaded.
"""

import json
import subprocess
import sys
import time
from pathlib import Path
from unittest.mock import patch

import pytest

from mcpworkflow.installer import (
    KNOWN_SERVERS,
    _run_probe,
    build_catalog,
    create_basic_config,
    generate_cursor_config,
    install_and_test,
    probe_server,
)
from mcpworkflow.models import CatalogEntry, ProbeResult


def _completed(returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


def test_catalog_uses_runner():
    catalog = build_catalog("bunx")
    assert set(catalog) == set(KNOWN_SERVERS)
    assert catalog["memory"].command == "bunx"
    assert catalog["memory"].args == ["-y", "@modelcontextprotocol/server-memory"]
    assert catalog["memory"].test_args == ["--help"]


def test_unknown_server_is_unavailable():
    assert probe_server("nope") is False


class TestSpawnStrategy:
    @pytest.mark.parametrize("result, expected", [
        (_completed(returncode=1, stdout="Usage: server"), True),
        (_completed(returncode=2, stderr="unknown option --help"), True),
        (_completed(returncode=0), True),
        (_completed(returncode=1, stderr="npm ERR! 404"), False),
    ])
    def test_availability_rules(self, result, expected):
        with patch("mcpworkflow.installer._run_probe", return_value=result) as run:
            assert probe_server("memory", strategy="spawn") is expected
        argv = run.call_args.args[0]
        assert argv[-3:] == ["-y", "@modelcontextprotocol/server-memory", "--help"]

    def test_timeout_is_unavailable(self):
        with patch("mcpworkflow.installer._run_probe",
                   side_effect=subprocess.TimeoutExpired(cmd="npx", timeout=10)):
            assert probe_server("memory", strategy="spawn") is False

    def test_missing_runner_is_unavailable(self):
        with patch("mcpworkflow.installer._run_probe", side_effect=FileNotFoundError("npx")):
            assert probe_server("memory", strategy="spawn") is False


class TestShellStrategy:
    @pytest.mark.parametrize("code, expected", [(0, True), (1, True), (127, False)])
    def test_exit_status_rules(self, code, expected):
        with patch("mcpworkflow.installer._run_probe", return_value=_completed(returncode=code)) as run:
            assert probe_server("fetch", strategy="shell", extra_path="/opt/node/bin") is expected
        assert run.call_args.kwargs["shell"] is True
        assert run.call_args.args[0] == "npx -y @modelcontextprotocol/server-fetch --help"
        assert run.call_args.kwargs["env"]["PATH"].endswith("/opt/node/bin")
        assert run.call_args.kwargs["timeout"] == 15.0

    def test_timeout_counts_as_available(self):
        with patch("mcpworkflow.installer._run_probe",
                   side_effect=subprocess.TimeoutExpired(cmd="npx", timeout=15)):
            assert probe_server("fetch", strategy="shell") is True


def test_install_and_test_writes_working_servers(tmp_path):
    def fake_run(argv, **kwargs):
        if "@modelcontextprotocol/server-github" in argv:
            return _completed(returncode=1, stderr="boom")
        return _completed(stdout="help text")

    with patch("mcpworkflow.installer._run_probe", side_effect=fake_run):
        results = install_and_test(tmp_path)

    assert not results["github"].available
    assert results["memory"].available
    working = json.loads((tmp_path / "working-servers.json").read_text())
    assert "github" not in working
    assert working["memory"] == {
        "command": "npx",
        "args": ["-y", "@modelcontextprotocol/server-memory"],
        "env": {},
    }


def test_install_and_test_records_unexpected_errors(tmp_path):
    catalog = {"memory": CatalogEntry(args=["-y", "x"])}
    with patch("mcpworkflow.installer.probe_server", side_effect=RuntimeError("kaput")):
        results = install_and_test(tmp_path, catalog=catalog)
    assert results["memory"].error == "kaput"
    assert not results["memory"].available


def test_generate_cursor_config_adds_credential_placeholders(tmp_path):
    catalog = build_catalog()
    results = {
        "github": ProbeResult(available=True, config=catalog["github"]),
        "brave-search": ProbeResult(available=True, config=catalog["brave-search"]),
        "sqlite": ProbeResult(available=False, config=catalog["sqlite"]),
    }
    config = generate_cursor_config(results, tmp_path)

    servers = config["mcp.servers"]
    assert set(servers) == {"github", "brave-search"}
    assert servers["github"]["env"] == {"GITHUB_PERSONAL_ACCESS_TOKEN": ""}
    assert servers["brave-search"]["env"] == {"BRAVE_API_KEY": ""}
    assert json.loads((tmp_path / "cursor-settings.json").read_text()) == config


def test_create_basic_config(tmp_path):
    config = create_basic_config(tmp_path)
    servers = config["mcp.servers"]
    assert list(servers) == ["filesystem", "memory", "fetch", "sequential-thinking"]
    assert servers["filesystem"]["args"][2:] == [str(Path.home()), Path.home().anchor]
    assert (tmp_path / "basic-cursor-settings.json").exists()


class TestRealChildren:
    """Python children stand in for package runners; nothing is patched."""

    SLEEPS = ["-c", "import time; time.sleep(30)"]

    def _entry(self, args):
        return {"slow": CatalogEntry(command=sys.executable, args=args, test_args=[])}

    def test_spawn_timeout_kills_child_and_is_unavailable(self):
        began = time.monotonic()
        assert probe_server("slow", self._entry(self.SLEEPS), strategy="spawn", timeout=0.5) is False
        assert time.monotonic() - began < 10

    def test_shell_timeout_kills_tree_and_is_available(self):
        began = time.monotonic()
        assert probe_server("slow", self._entry(self.SLEEPS), strategy="shell", timeout=0.5) is True
        assert time.monotonic() - began < 10

    def test_stdin_is_closed(self):
        reads_stdin = "import sys; print('eof' if sys.stdin.read() == '' else 'input')"
        proc = _run_probe([sys.executable, "-c", reads_stdin], timeout=5)
        assert proc.stdout.strip() == "eof"
