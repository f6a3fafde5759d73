"""Server supervisor: spawns, watches and stops MCP server processes.

Everything is sequential: batch operations (workflows, autostart, stop-all)
act on one server at a time, in order, and report all-or-nothing.

Termination policy: SIGTERM, wait ``stop_grace_seconds``, then SIGKILL.
A start counts as successful only if the process is still alive after
``startup_check_seconds``.

Servers launched by an earlier invocation are known through the runtime
store (PID file) and can be stopped and reported on, but their output is
only in their log file.
"""

from __future__ import annotations

import asyncio
import os
import signal
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import IO, Awaitable, Callable

import structlog

from mcpworkflow.exceptions import ConfigError, UnknownServerError
from mcpworkflow.models import (
    BatchResult,
    RuntimeRecord,
    ServerStatus,
    StatusReport,
    WorkflowStatus,
)
from mcpworkflow.storage import RuntimeStore, is_record_live, process_create_time
from mcpworkflow.workspace import Workspace

logger = structlog.get_logger()

SIGKILL = getattr(signal, "SIGKILL", signal.SIGTERM)
FORCE_KILL_WAIT_SECONDS = 5.0
EXTERNAL_POLL_SECONDS = 0.1


@dataclass
class ManagedServer:
    """A server process owned by this supervisor."""

    name: str
    process: asyncio.subprocess.Process
    log_path: Path
    started_at: datetime = field(default_factory=datetime.now)
    stopping: bool = False
    _log_file: IO[bytes] | None = field(default=None, repr=False)
    _readers: list[asyncio.Task[None]] = field(default_factory=list, repr=False)
    _waiter: asyncio.Task[int] | None = field(default=None, repr=False)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def alive(self) -> bool:
        return self.process.returncode is None


def autostart_order(workspace: Workspace) -> list[str]:
    """Enabled autostart servers, highest priority first, ties in config order."""
    candidates = [
        (name, entry)
        for name, entry in workspace.config.servers.items()
        if entry.enabled and entry.autostart
    ]
    candidates.sort(key=lambda item: item[1].priority, reverse=True)
    return [name for name, _ in candidates]


def send_signal(pid: int, sig: int) -> None:
    """Signal a server and, on POSIX, the process group it leads."""
    if hasattr(os, "killpg"):
        try:
            os.killpg(pid, sig)
            return
        except (ProcessLookupError, PermissionError):
            pass
    os.kill(pid, sig)


class ServerSupervisor:
    """Starts and stops the servers declared in a workspace's master config."""

    def __init__(
        self,
        workspace: Workspace,
        store: RuntimeStore | None = None,
        startup_check_seconds: float = 2.0,
        stop_grace_seconds: float = 5.0,
    ) -> None:
        self.workspace = workspace
        self.store = store or RuntimeStore(workspace.runtime_state_path)
        self.startup_check_seconds = startup_check_seconds
        self.stop_grace_seconds = stop_grace_seconds
        self._servers: dict[str, ManagedServer] = {}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def owned(self) -> list[ManagedServer]:
        """Servers started by this supervisor that are still alive."""
        return [m for m in self._servers.values() if m.alive]

    def running_pid(self, name: str) -> int | None:
        managed = self._servers.get(name)
        if managed is not None and managed.alive:
            return managed.pid
        record = self.store.get(name)
        return record.pid if record else None

    def is_running(self, name: str) -> bool:
        return self.running_pid(name) is not None

    def running_servers(self) -> list[str]:
        names = [m.name for m in self.owned()]
        for name in self.store.load():
            if name not in names:
                names.append(name)
        return names

    # ------------------------------------------------------------------
    # Single server
    # ------------------------------------------------------------------

    async def start_server(self, name: str) -> bool:
        """Start one server. Returns True if it is running afterwards."""
        try:
            entry = self.workspace.server(name)
        except UnknownServerError as e:
            logger.error("server_unknown", server=name, error=str(e))
            return False

        if not entry.enabled:
            logger.warning("server_disabled", server=name)
            return False

        if self.is_running(name):
            logger.warning("server_already_running", server=name, pid=self.running_pid(name))
            return True

        try:
            spec = self.workspace.load_server_spec(name)
        except ConfigError as e:
            logger.error("server_config_error", server=name, error=str(e))
            return False

        log_path = self.workspace.log_path(name)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        logger.info("server_starting", server=name, command=spec.command, args=spec.args)

        try:
            process = await asyncio.create_subprocess_exec(
                spec.command,
                *spec.args,
                # stdio MCP servers exit on EOF, so stdin stays open
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.workspace.server_environment(spec),
                # Own process group so the whole tree can be signalled
                start_new_session=True,
            )
        except OSError as e:
            logger.error("server_spawn_failed", server=name, error=str(e))
            return False

        managed = ManagedServer(name=name, process=process, log_path=log_path)
        managed._log_file = open(log_path, "ab")
        managed._readers = [
            asyncio.create_task(self._pump(managed, process.stdout, is_stderr=False)),  # type: ignore[arg-type]
            asyncio.create_task(self._pump(managed, process.stderr, is_stderr=True)),  # type: ignore[arg-type]
        ]
        managed._waiter = asyncio.create_task(self._watch_exit(managed))
        self._servers[name] = managed

        done, _ = await asyncio.wait({managed._waiter}, timeout=self.startup_check_seconds)
        if done:
            logger.error(
                "server_failed_to_start",
                server=name,
                exit_code=process.returncode,
                log=str(log_path),
            )
            return False

        self.store.put(RuntimeRecord(
            name=name,
            pid=process.pid,
            command=spec.command,
            args=spec.args,
            started_at=managed.started_at,
            log_path=str(log_path),
            create_time=process_create_time(process.pid),
        ))
        logger.info("server_started", server=name, pid=process.pid)
        return True

    async def stop_server(self, name: str) -> bool:
        """Stop one server: SIGTERM, grace period, then SIGKILL."""
        managed = self._servers.get(name)
        if managed is not None and managed.alive:
            return await self._stop_owned(managed)

        record = self.store.get(name)
        if record is not None:
            return await self._stop_external(record)

        logger.warning("server_not_running", server=name)
        return True

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    async def start_workflow(self, key: str) -> BatchResult:
        """Start every server of a workflow, in listed order."""
        workflow = self.workspace.workflow(key)
        logger.info("workflow_starting", workflow=workflow.name or key)
        return await self._run_sequence(
            workflow.servers, self.start_server, f'workflow "{workflow.name or key}" start'
        )

    async def stop_workflow(self, key: str) -> BatchResult:
        """Stop every server of a workflow, in listed order."""
        workflow = self.workspace.workflow(key)
        logger.info("workflow_stopping", workflow=workflow.name or key)
        return await self._run_sequence(
            workflow.servers, self.stop_server, f'workflow "{workflow.name or key}" stop'
        )

    async def start_autostart(self) -> BatchResult:
        names = autostart_order(self.workspace)
        if not names:
            logger.info("no_autostart_servers")
            return BatchResult()
        logger.info("autostart_starting", servers=names)
        return await self._run_sequence(names, self.start_server, "autostart")

    async def stop_all(self) -> BatchResult:
        names = self.running_servers()
        if not names:
            logger.info("no_servers_running")
            return BatchResult()
        logger.info("stopping_all_servers", servers=names)
        return await self._run_sequence(names, self.stop_server, "stop all")

    async def hold(self) -> list[str]:
        """Block while owned servers run; on SIGINT/SIGTERM stop them all.

        Returns the names of held servers that exited on their own.
        """
        watched = self.owned()
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        installed = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
                installed.append(sig)
            except (NotImplementedError, RuntimeError):
                pass

        try:
            while not stop.is_set():
                waiters = [m._waiter for m in self.owned() if m._waiter is not None]
                if not waiters:
                    logger.info("no_owned_servers_left")
                    break
                stop_task = asyncio.create_task(stop.wait())
                await asyncio.wait([stop_task, *waiters], return_when=asyncio.FIRST_COMPLETED)
                stop_task.cancel()
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)
            await self.shutdown()

        exited = [m.name for m in watched if not m.stopping]
        if exited:
            logger.error("servers_exited_unexpectedly", servers=exited)
        return exited

    async def shutdown(self) -> BatchResult:
        """Stop the servers this supervisor owns."""
        names = [m.name for m in self.owned()]
        if not names:
            return BatchResult()
        return await self._run_sequence(names, self.stop_server, "shutdown")

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_status(self) -> StatusReport:
        servers = {}
        for name, entry in self.workspace.config.servers.items():
            pid = self.running_pid(name)
            servers[name] = ServerStatus(
                running=pid is not None,
                enabled=entry.enabled,
                autostart=entry.autostart,
                priority=entry.priority,
                pid=pid,
            )

        workflows = {}
        for key, workflow in self.workspace.config.workflows.items():
            required = list(workflow.servers)
            running = sum(1 for s in required if s in servers and servers[s].running)
            workflows[key] = WorkflowStatus(
                name=workflow.name,
                description=workflow.description,
                required_servers=required,
                running_servers=running,
                total_servers=len(required),
                ready=running == len(required),
            )

        return StatusReport(
            timestamp=datetime.now(),
            servers=servers,
            workflows=workflows,
            running_server_count=sum(1 for s in servers.values() if s.running),
            total_server_count=len(servers),
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _run_sequence(
        self,
        names: list[str],
        action: Callable[[str], Awaitable[bool]],
        label: str,
    ) -> BatchResult:
        result = BatchResult()
        for name in names:
            result.add(name, await action(name))

        if result.ok:
            logger.info("batch_succeeded", operation=label, servers=result.servers)
        else:
            logger.error("batch_failed", operation=label, failed=result.failed)
        return result

    async def _stop_owned(self, managed: ManagedServer) -> bool:
        logger.info("server_stopping", server=managed.name, pid=managed.pid)
        managed.stopping = True
        try:
            send_signal(managed.pid, signal.SIGTERM)
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.error("server_stop_failed", server=managed.name, error=str(e))
            managed.stopping = False
            return False

        try:
            await asyncio.wait_for(asyncio.shield(managed.process.wait()), self.stop_grace_seconds)
        except asyncio.TimeoutError:
            logger.warning("server_forced_termination", server=managed.name, pid=managed.pid)
            try:
                send_signal(managed.pid, SIGKILL)
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(managed.process.wait(), FORCE_KILL_WAIT_SECONDS)
            except asyncio.TimeoutError:
                logger.error("server_kill_timeout", server=managed.name, pid=managed.pid)

        if managed._waiter is not None:
            await asyncio.wait({managed._waiter}, timeout=FORCE_KILL_WAIT_SECONDS)
        self._forget(managed)
        logger.info("server_stopped", server=managed.name)
        return True

    async def _stop_external(self, record: RuntimeRecord) -> bool:
        # Re-checked before every signal: the PID may have been reused meanwhile
        if not is_record_live(record):
            self.store.remove(record.name, pid=record.pid)
            logger.warning("server_not_running", server=record.name)
            return True

        logger.info("server_stopping", server=record.name, pid=record.pid, owner="other_process")
        try:
            send_signal(record.pid, signal.SIGTERM)
        except ProcessLookupError:
            self.store.remove(record.name, pid=record.pid)
            return True
        except OSError as e:
            logger.error("server_stop_failed", server=record.name, error=str(e))
            return False

        deadline = time.monotonic() + self.stop_grace_seconds
        while is_record_live(record) and time.monotonic() < deadline:
            await asyncio.sleep(EXTERNAL_POLL_SECONDS)

        if is_record_live(record):
            logger.warning("server_forced_termination", server=record.name, pid=record.pid)
            try:
                send_signal(record.pid, SIGKILL)
            except ProcessLookupError:
                pass
            deadline = time.monotonic() + FORCE_KILL_WAIT_SECONDS
            while is_record_live(record) and time.monotonic() < deadline:
                await asyncio.sleep(EXTERNAL_POLL_SECONDS)

        self.store.remove(record.name, pid=record.pid)
        logger.info("server_stopped", server=record.name)
        return True

    def _forget(self, managed: ManagedServer) -> None:
        if self._servers.get(managed.name) is managed:
            del self._servers[managed.name]
        self.store.remove(managed.name, pid=managed.pid)

    async def _pump(
        self,
        managed: ManagedServer,
        stream: asyncio.StreamReader,
        is_stderr: bool,
    ) -> None:
        """Copy a child's output into its log file and the structured log."""
        while True:
            chunk = await stream.read(4096)
            if not chunk:
                break
            if managed._log_file is not None and not managed._log_file.closed:
                managed._log_file.write(chunk)
                managed._log_file.flush()
            text = chunk.decode("utf-8", errors="replace").strip()
            if not text:
                continue
            if is_stderr:
                logger.warning("server_error_output", server=managed.name, output=text)
            else:
                logger.info("server_output", server=managed.name, output=text)

    async def _watch_exit(self, managed: ManagedServer) -> int:
        code = await managed.process.wait()
        await asyncio.gather(*managed._readers, return_exceptions=True)
        if managed._log_file is not None:
            managed._log_file.close()

        if not managed.stopping:
            if code != 0:
                logger.error("server_exited", server=managed.name, exit_code=code)
            else:
                logger.info("server_exited", server=managed.name, exit_code=code)
            self._forget(managed)
        return code
