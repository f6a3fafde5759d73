"""Runtime state storage: which servers this tool launched, by PID.

Every CLI invocation is its own process, so the PIDs of launched servers are
kept in a JSON file under the workflow root's logs directory. That is what
lets ``status`` and the stop commands see servers started from another
terminal.

A PID alone does not identify a process once the original has exited, so each
record also carries the process creation time. Records whose PID is gone, or
now belongs to a process with a different creation time, are dropped on read.
"""

from __future__ import annotations

import json
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

import psutil
import structlog

from mcpworkflow.models import RuntimeRecord

logger = structlog.get_logger()

# psutil derives create_time from boot time plus ticks; allow for clock drift
CREATE_TIME_TOLERANCE_SECONDS = 1.0


def process_create_time(pid: int) -> float | None:
    """Creation time of a live process, or None if it is gone or a zombie."""
    try:
        proc = psutil.Process(pid)
        if proc.status() == psutil.STATUS_ZOMBIE:
            return None
        return proc.create_time()
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return None


def is_record_live(record: RuntimeRecord) -> bool:
    """True if the record's PID still belongs to the process that was launched."""
    if record.create_time is None:
        return False
    started = process_create_time(record.pid)
    if started is None:
        return False
    return abs(started - record.create_time) <= CREATE_TIME_TOLERANCE_SECONDS


class RuntimeStore:
    """JSON file of ``{server name: RuntimeRecord}``.

    Read-modify-write cycles hold an exclusive lock on a sibling ``.lock``
    file (POSIX only) and the file is replaced atomically, so concurrent
    invocations do not lose each other's records.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.lock_path = self.path.with_name(self.path.name + ".lock")

    def load(self) -> dict[str, RuntimeRecord]:
        """Load records for processes that are still alive."""
        with self._locked():
            return self._load_live()

    def get(self, name: str) -> RuntimeRecord | None:
        return self.load().get(name)

    def put(self, record: RuntimeRecord) -> None:
        with self._locked():
            records = self._load_live()
            records[record.name] = record
            self._save(records)

    def remove(self, name: str, pid: int | None = None) -> None:
        """Forget ``name``; with ``pid`` given, only if the record is for that PID."""
        with self._locked():
            records = self._load_live()
            record = records.get(name)
            if record is None or (pid is not None and record.pid != pid):
                return
            del records[name]
            self._save(records)

    # ── Helpers ────────────────────────────────────────────────

    @contextmanager
    def _locked(self) -> Iterator[None]:
        if os.name != "posix":
            yield
            return
        import fcntl

        with self.lock_path.open("w") as fh:
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(fh.fileno(), fcntl.LOCK_UN)

    def _load_live(self) -> dict[str, RuntimeRecord]:
        raw = self._load_json_dict(self.path)
        records: dict[str, RuntimeRecord] = {}
        stale = []
        for name, data in raw.items():
            try:
                record = RuntimeRecord.model_validate(data)
            except ValueError:
                stale.append(name)
                continue
            if is_record_live(record):
                records[name] = record
            else:
                stale.append(name)

        if stale:
            logger.debug("runtime_records_pruned", servers=stale)
            self._save(records)
        return records

    def _save(self, records: dict[str, RuntimeRecord]) -> None:
        data = {name: json.loads(r.model_dump_json()) for name, r in records.items()}
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        tmp_path.write_text(json.dumps(data, indent=2, default=str))
        os.replace(tmp_path, self.path)

    def _load_json_dict(self, path: Path) -> dict[str, Any]:
        if not path.exists():
            return {}
        try:
            data = json.loads(path.read_text())
            return data if isinstance(data, dict) else {}
        except (json.JSONDecodeError, OSError):
            return {}
