"""Tests for the click CLI."""

import json
import subprocess
import sys
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from conftest import server_file
from mcpworkflow.cli.main import cli
from mcpworkflow.supervisor import ServerSupervisor


@pytest.fixture
def runner(monkeypatch):
    monkeypatch.setenv("MCPWORKFLOW_STARTUP_SECONDS", "0.3")
    monkeypatch.setenv("MCPWORKFLOW_STOP_GRACE_SECONDS", "0.5")
    return CliRunner()


def test_init(runner, master_config_path):
    result = runner.invoke(cli, ["init", "-c", str(master_config_path)])
    assert result.exit_code == 0, result.output
    assert "initialized successfully" in result.output


def test_init_with_missing_config_fails(runner, tmp_path):
    result = runner.invoke(cli, ["init", "-c", str(tmp_path / "missing.json")])
    assert result.exit_code == 1
    assert "Failed to initialize" in result.output


def test_status(runner, master_config_path):
    result = runner.invoke(cli, ["status", "-c", str(master_config_path)])
    assert result.exit_code == 0, result.output
    assert "Running Servers: 0/2" in result.output
    assert "STOPPED" in result.output


def test_stop_server_not_running_succeeds(runner, master_config_path):
    result = runner.invoke(cli, ["stop-server", "memory", "-c", str(master_config_path)])
    assert result.exit_code == 0, result.output
    assert "stopped successfully" in result.output


def test_start_disabled_server_fails(runner, master_config_path):
    result = runner.invoke(cli, ["start-server", "fetch", "-c", str(master_config_path)])
    assert result.exit_code == 1
    assert "Failed to start server fetch" in result.output


def test_start_unknown_workflow_fails(runner, master_config_path):
    result = runner.invoke(cli, ["start-workflow", "ghost", "-c", str(master_config_path)])
    assert result.exit_code == 1
    assert "not found" in result.output


@pytest.mark.skipif(sys.platform == "win32", reason="relies on POSIX signals")
def test_start_workflow_with_disabled_member_fails(runner, master_config_path):
    result = runner.invoke(cli, ["start-workflow", "research", "-c", str(master_config_path)])
    assert result.exit_code == 1
    assert "Failed servers: fetch" in result.output


@pytest.mark.skipif(sys.platform == "win32", reason="relies on POSIX signals")
def test_start_server_holds_then_stops(runner, master_config_path):
    held = []

    async def fake_hold(self):
        held.append([m.name for m in self.owned()])
        await self.shutdown()
        return []

    with patch.object(ServerSupervisor, "hold", fake_hold):
        result = runner.invoke(cli, ["start-server", "memory", "-c", str(master_config_path)])

    assert result.exit_code == 0, result.output
    assert held == [["memory"]]
    assert result.output.index("Server memory started successfully") < result.output.index("Running:")


@pytest.mark.skipif(sys.platform == "win32", reason="relies on POSIX signals")
def test_start_server_exits_nonzero_when_server_dies_while_held(runner, make_workspace):
    ws = make_workspace(servers={
        "memory": ({"enabled": True}, server_file(["-c", "import sys, time; time.sleep(1); sys.exit(2)"])),
    })

    result = runner.invoke(cli, ["start-server", "memory", "-c", str(ws.config_path)])

    assert result.exit_code == 1
    assert "Server memory started successfully" in result.output
    assert "Servers exited unexpectedly: memory" in result.output


def test_stop_all_with_nothing_running(runner, master_config_path):
    result = runner.invoke(cli, ["stop-all", "-c", str(master_config_path)])
    assert result.exit_code == 0, result.output


def test_backup(runner, master_config_path):
    result = runner.invoke(cli, ["backup", "-c", str(master_config_path)])
    assert result.exit_code == 0, result.output
    assert "Backup created successfully" in result.output


def test_setup_cursor(runner, master_config_path, tmp_path):
    settings = tmp_path / "settings.json"
    settings.write_text(json.dumps({"workbench.colorTheme": "Default Dark+"}))

    result = runner.invoke(cli, [
        "setup-cursor", "-c", str(master_config_path), "--settings", str(settings),
    ])

    assert result.exit_code == 0, result.output
    updated = json.loads(settings.read_text())
    assert list(updated["mcp.servers"]) == ["memory"]
    assert updated["workbench.colorTheme"] == "Default Dark+"


def test_setup_cursor_without_settings_file_fails(runner, master_config_path, tmp_path):
    result = runner.invoke(cli, [
        "setup-cursor", "-c", str(master_config_path), "--settings", str(tmp_path / "nope.json"),
    ])
    assert result.exit_code == 1
    assert "Failed to update Cursor settings" in result.output


def test_install_shell_strategy_writes_all_files(runner, tmp_path):
    done = subprocess.CompletedProcess(args=[], returncode=0, stdout="", stderr="")
    with patch("mcpworkflow.installer._run_probe", return_value=done):
        result = runner.invoke(cli, ["install", "--strategy", "shell", "--output-dir", str(tmp_path)])

    assert result.exit_code == 0, result.output
    assert "9/9 servers available" in result.output
    for name in ("working-servers.json", "cursor-settings.json", "basic-cursor-settings.json"):
        assert (tmp_path / name).exists(), name
