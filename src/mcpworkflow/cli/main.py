"""mcpworkflow CLI: the primary user interface.

Usage:
    mcpworkflow init                  # Load master config, create directories
    mcpworkflow start-server NAME     # Start one server and supervise it
    mcpworkflow stop-server NAME      # Stop one server
    mcpworkflow start-workflow KEY    # Start every server of a workflow
    mcpworkflow stop-workflow KEY     # Stop every server of a workflow
    mcpworkflow start-autostart       # Start autostart servers by priority
    mcpworkflow stop-all              # Stop every running server
    mcpworkflow status                # Show servers and workflows
    mcpworkflow backup                # Back up configs and resources
    mcpworkflow setup-cursor          # Write servers into Cursor settings
    mcpworkflow install               # Probe MCP server packages via npx

Start commands stay in the foreground while their servers run; Ctrl+C stops
them with the usual grace period.
"""

from __future__ import annotations

import asyncio
import sys
from typing import Awaitable, Callable

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from mcpworkflow.config import MCPWorkflowConfig, configure_logging, load_config
from mcpworkflow.exceptions import MCPWorkflowError
from mcpworkflow.models import BatchResult, StatusReport
from mcpworkflow.supervisor import ServerSupervisor
from mcpworkflow.workspace import Workspace, load_workspace

console = Console()

config_option = click.option(
    "-c",
    "--config",
    "config_path",
    default=None,
    help="Path to the master configuration file (default: $MCPWORKFLOW_CONFIG or ./configs/master-config.json)",
)


@click.group()
@click.version_option(package_name="mcpworkflow")
def cli() -> None:
    """mcpworkflow: launch, monitor and stop local MCP servers as workflows."""
    configure_logging(load_config().log_level)


# ── INIT ──────────────────────────────────────────────────────


@cli.command()
@config_option
def init(config_path: str | None) -> None:
    """Initialize the workflow root from the master configuration."""
    console.print("Initializing MCP workflow manager...")
    _, workspace = _open_workspace(config_path)
    console.print(f"[green]MCP workflow manager initialized successfully[/green] ({workspace.root})")


# ── SERVERS ───────────────────────────────────────────────────


@cli.command("start-server")
@click.argument("server_name")
@config_option
def start_server(server_name: str, config_path: str | None) -> None:
    """Start a specific MCP server."""
    console.print(f"Starting server: {server_name}")

    async def _start(sup: ServerSupervisor) -> bool:
        return await sup.start_server(server_name)

    _run_start(
        config_path, _start,
        f"Server {server_name} started successfully", f"Failed to start server {server_name}",
    )


@cli.command("stop-server")
@click.argument("server_name")
@config_option
def stop_server(server_name: str, config_path: str | None) -> None:
    """Stop a specific MCP server."""
    config, workspace = _open_workspace(config_path)
    console.print(f"Stopping server: {server_name}")
    sup = _supervisor(workspace, config)
    ok = _run(lambda: sup.stop_server(server_name))
    _finish(ok, f"Server {server_name} stopped successfully", f"Failed to stop server {server_name}")


# ── WORKFLOWS ─────────────────────────────────────────────────


@cli.command("start-workflow")
@click.argument("workflow_name")
@config_option
def start_workflow(workflow_name: str, config_path: str | None) -> None:
    """Start all servers for a specific workflow."""
    console.print(f"Starting workflow: {workflow_name}")

    async def _start(sup: ServerSupervisor) -> bool:
        result = await sup.start_workflow(workflow_name)
        _print_failures(result)
        return result.ok

    _run_start(
        config_path, _start,
        f"Workflow {workflow_name} started successfully", f"Failed to start workflow {workflow_name}",
    )


@cli.command("stop-workflow")
@click.argument("workflow_name")
@config_option
def stop_workflow(workflow_name: str, config_path: str | None) -> None:
    """Stop all servers for a specific workflow."""
    config, workspace = _open_workspace(config_path)
    console.print(f"Stopping workflow: {workflow_name}")
    sup = _supervisor(workspace, config)
    result = _run(lambda: sup.stop_workflow(workflow_name))
    _print_failures(result)
    _finish(result.ok, f"Workflow {workflow_name} stopped successfully", f"Failed to stop workflow {workflow_name}")


@cli.command("start-autostart")
@config_option
def start_autostart(config_path: str | None) -> None:
    """Start all configured autostart servers, highest priority first."""
    console.print("Starting autostart servers...")

    async def _start(sup: ServerSupervisor) -> bool:
        result = await sup.start_autostart()
        _print_failures(result)
        return result.ok

    _run_start(
        config_path, _start,
        "Autostart servers started successfully", "Failed to start some autostart servers",
    )


@cli.command("stop-all")
@config_option
def stop_all(config_path: str | None) -> None:
    """Stop all running servers."""
    config, workspace = _open_workspace(config_path)
    console.print("Stopping all servers...")
    sup = _supervisor(workspace, config)
    result = _run(sup.stop_all)
    _print_failures(result)
    _finish(result.ok, "All servers stopped successfully", "Failed to stop some servers")


# ── STATUS ────────────────────────────────────────────────────


@cli.command()
@config_option
def status(config_path: str | None) -> None:
    """Show status of all configured servers and workflows."""
    config, workspace = _open_workspace(config_path)
    report = _supervisor(workspace, config).get_status()
    _show_status(report)


# ── BACKUP ────────────────────────────────────────────────────


@cli.command()
@config_option
def backup(config_path: str | None) -> None:
    """Create a backup of the workflow configuration and resources."""
    from mcpworkflow.backup import create_backup

    _, workspace = _open_workspace(config_path)
    console.print("Creating backup...")
    try:
        path = create_backup(workspace)
    except (MCPWorkflowError, OSError) as e:
        console.print(f"[red]Failed to create backup: {escape(str(e))}[/red]")
        sys.exit(1)
    console.print(f"[green]Backup created successfully[/green] ({path})")


# ── CURSOR ────────────────────────────────────────────────────


@cli.command("setup-cursor")
@config_option
@click.option("--settings", "settings_path", default=None, help="Cursor settings.json to update")
def setup_cursor(config_path: str | None, settings_path: str | None) -> None:
    """Set up MCP servers in Cursor settings.json."""
    from mcpworkflow.editor import setup_cursor as write_cursor_settings

    config, workspace = _open_workspace(config_path)
    target = settings_path or config.cursor_settings_path
    try:
        backup_path = write_cursor_settings(workspace, target)
    except (MCPWorkflowError, OSError) as e:
        console.print(f"[red]Failed to update Cursor settings: {escape(str(e))}[/red]")
        sys.exit(1)
    console.print(f"Backup of original settings created: {backup_path}")
    console.print("[green]Cursor settings updated successfully with MCP server configurations[/green]")


# ── INSTALL ───────────────────────────────────────────────────


@cli.command()
@click.option("--strategy", type=click.Choice(["spawn", "shell"]), default="spawn",
              help="spawn: judge by output; shell: judge by exit status with PATH extended")
@click.option("--output-dir", default="./configs", help="Where generated JSON files go")
@click.option("--basic/--no-basic", default=None,
              help="Also write basic-cursor-settings.json (default: on for --strategy shell)")
def install(strategy: str, output_dir: str, basic: bool | None) -> None:
    """Install and test the known MCP server packages."""
    from mcpworkflow.installer import (
        build_catalog,
        create_basic_config,
        generate_cursor_config,
        install_and_test,
    )

    config = load_config()
    console.print("\n[bold]MCP Server Installation and Testing[/bold]\n")

    if basic is None:
        basic = strategy == "shell"
    if basic:
        create_basic_config(output_dir, runner=config.package_runner)

    catalog = build_catalog(config.package_runner)
    results = install_and_test(
        output_dir,
        catalog=catalog,
        strategy=strategy,  # type: ignore[arg-type]
        timeout=config.probe_timeout_seconds,
        extra_path=config.extra_path,
    )
    generate_cursor_config(results, output_dir)

    table = Table(title="Installation Summary")
    table.add_column("Server", style="cyan")
    table.add_column("Status")
    table.add_column("Description", style="white")
    for name, result in results.items():
        mark = "[green]✓ Available[/green]" if result.available else "[red]✗ Unavailable[/red]"
        detail = result.config.description + (f" [dim]({escape(result.error)})[/dim]" if result.error else "")
        table.add_row(name, mark, detail)
    console.print(table)

    available = sum(1 for r in results.values() if r.available)
    console.print(f"\n[bold]{available}/{len(results)} servers available[/bold]")
    console.print("\nNext steps:")
    console.print(f"  1. Copy {output_dir}/cursor-settings.json into your Cursor settings.json")
    console.print("  2. Add any required API keys (GitHub, Brave Search)")
    console.print("  3. Restart Cursor to load the MCP servers")


# ── HELPERS ───────────────────────────────────────────────────


def _open_workspace(config_path: str | None) -> tuple[MCPWorkflowConfig, Workspace]:
    config = load_config()
    try:
        workspace = load_workspace(config_path or config.master_config)
    except MCPWorkflowError as e:
        console.print(f"[red]Failed to initialize MCP workflow manager: {escape(str(e))}[/red]")
        sys.exit(1)
    return config, workspace


def _supervisor(workspace: Workspace, config: MCPWorkflowConfig) -> ServerSupervisor:
    return ServerSupervisor(
        workspace,
        startup_check_seconds=config.startup_check_seconds,
        stop_grace_seconds=config.stop_grace_seconds,
    )


def _run(factory: Callable[[], Awaitable]):
    """Run one supervisor coroutine, reporting config errors instead of tracebacks."""
    async def _main():
        return await factory()

    try:
        return asyncio.run(_main())
    except MCPWorkflowError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        sys.exit(1)


def _run_start(
    config_path: str | None,
    start: Callable[[ServerSupervisor], Awaitable[bool]],
    success: str,
    failure: str,
) -> None:
    """Start servers, then supervise them in the foreground until interrupted.

    On failure, whatever this invocation managed to start is stopped again.
    Exits 1 if the start fails or a held server exits on its own.
    """
    config, workspace = _open_workspace(config_path)
    sup = _supervisor(workspace, config)

    async def _main() -> bool:
        try:
            ok = await start(sup)
        except BaseException:
            await sup.shutdown()
            raise
        if not ok:
            await sup.shutdown()
            console.print(f"[red]{failure}[/red]")
            return False

        console.print(f"[green]{success}[/green]")
        if sup.owned():
            names = ", ".join(m.name for m in sup.owned())
            console.print(f"[green]Running:[/green] {names}  [dim](Ctrl+C to stop)[/dim]")
            exited = await sup.hold()
            if exited:
                console.print(f"[red]Servers exited unexpectedly: {', '.join(exited)}[/red]")
                return False
        return True

    if not _run(_main):
        sys.exit(1)


def _finish(ok: bool, success: str, failure: str) -> None:
    if ok:
        console.print(f"[green]{success}[/green]")
    else:
        console.print(f"[red]{failure}[/red]")
        sys.exit(1)


def _print_failures(result: BatchResult) -> None:
    if not result.ok:
        console.print(f"[red]Failed servers: {', '.join(result.failed)}[/red]")


def _show_status(report: StatusReport) -> None:
    """Display servers and workflows as Rich tables."""
    console.print("\n[bold]MCP WORKFLOW STATUS[/bold]")
    console.print(f"Timestamp: {report.timestamp.isoformat(timespec='seconds')}")
    console.print(f"Running Servers: {report.running_server_count}/{report.total_server_count}\n")

    servers = Table(title="Servers")
    servers.add_column("Server", style="cyan")
    servers.add_column("Status")
    servers.add_column("Enabled")
    servers.add_column("Start")
    servers.add_column("Priority", justify="right")
    servers.add_column("PID", justify="right")
    for name, s in report.servers.items():
        servers.add_row(
            name,
            "[green]✓ RUNNING[/green]" if s.running else "[red]✗ STOPPED[/red]",
            "Enabled" if s.enabled else "[dim]Disabled[/dim]",
            "Autostart" if s.autostart else "Manual",
            str(s.priority),
            str(s.pid) if s.pid is not None else "[dim]--[/dim]",
        )
    console.print(servers)

    workflows = Table(title="Workflows")
    workflows.add_column("Workflow", style="cyan")
    workflows.add_column("State")
    workflows.add_column("Servers", justify="right")
    workflows.add_column("Required", style="white", max_width=40)
    workflows.add_column("Description", style="white", max_width=40)
    for key, w in report.workflows.items():
        workflows.add_row(
            f"{w.name} ({key})",
            "[green]✓ READY[/green]" if w.ready else "[yellow]⚠ INCOMPLETE[/yellow]",
            f"{w.running_servers}/{w.total_servers} running",
            ", ".join(w.required_servers),
            w.description,
        )
    console.print(workflows)


if __name__ == "__main__":
    cli()
