from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import re
import secrets
import signal
import subprocess
import sys
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from common.errors import JobNotFound, KeyNotFound, SpawnError
from common.kvstore import FileKeyValueStore
from common.runner import CommandRunner
from panel.sources import LaunchPlan

_ZIP_MARKER = r"^\s*(inflating|extracting|creating|linking):"
_ZIP_ADD_MARKER = r"^\s*(adding|updating):"
_ANY_LINE = r"\S"
_TAR_SUFFIXES = (".tar", ".tar.gz", ".tgz", ".tar.bz2", ".tbz2", ".tar.xz", ".txz", ".tar.zst")


class JobStatus(str, Enum):
    RUNNING = "running"
    DONE = "done"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_JOB_STATES = frozenset({JobStatus.DONE, JobStatus.CANCELLED, JobStatus.FAILED})


@dataclass(frozen=True, slots=True)
class JobSpec:
    kind: str
    command: str
    args: tuple[str, ...]
    marker: str
    probe_command: str | None = None
    probe_args: tuple[str, ...] = ()
    cwd: str | None = None
    ensure_dirs: tuple[str, ...] = ()


def extract_spec(archive: str, destination: str | None = None) -> JobSpec:
    archive = os.path.abspath(archive)
    dest = os.path.abspath(destination) if destination else os.path.dirname(archive)
    lower = archive.lower()
    if lower.endswith(".zip"):
        return JobSpec(
            kind="extract",
            command="unzip",
            args=("-o", archive, "-d", dest),
            marker=_ZIP_MARKER,
            probe_command="unzip",
            probe_args=("-Z1", archive),
        )
    if lower.endswith(_TAR_SUFFIXES):
        return JobSpec(
            kind="extract",
            command="tar",
            args=("-xvf", archive, "-C", dest),
            marker=_ANY_LINE,
            probe_command="tar",
            probe_args=("-tf", archive),
            ensure_dirs=(dest,),
        )
    raise ValueError(f"unsupported archive type: {os.path.basename(archive)}")


def compress_spec(paths: list[str], destination: str) -> JobSpec:
    if not paths:
        raise ValueError("at least one path is required")
    if not destination:
        raise ValueError("destination is required")
    abs_paths = [os.path.abspath(p) for p in paths]
    parent = os.path.dirname(abs_paths[0])
    names = tuple(os.path.basename(p) for p in abs_paths)
    return JobSpec(
        kind="compress",
        command="zip",
        args=("-r", os.path.abspath(destination), *names),
        marker=_ZIP_ADD_MARKER,
        probe_command="find",
        probe_args=tuple(abs_paths),
        cwd=parent,
    )


@dataclass(slots=True)
class JobRecord:
    id: str
    kind: str
    pid: int
    total_units: int
    completed_units: int
    status: JobStatus
    log_path: str
    marker: str
    command: list[str] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    error: str | None = None

    @property
    def progress(self) -> float:
        return round(100.0 * self.completed_units / max(1, self.total_units), 1)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["progress"] = self.progress
        return data

    def encode(self) -> bytes:
        data = asdict(self)
        data["status"] = self.status.value
        return json.dumps(data, separators=(",", ":")).encode("utf-8")

    @classmethod
    def decode(cls, blob: bytes) -> "JobRecord":
        data = json.loads(blob.decode("utf-8"))
        data["status"] = JobStatus(data["status"])
        total = max(1, int(data.get("total_units", 1)))
        data["total_units"] = total
        data["completed_units"] = min(total, max(0, int(data.get("completed_units", 0))))
        return cls(**data)


def pid_alive(pid: int) -> bool:
    # Signal 0 only checks existence; a recycled pid reads as alive.
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class JobTracker:
    """Detached long-running operations whose state lives in the durable store.

    Nothing kept in memory is authoritative: status comes from probing the
    recorded pid and progress from re-reading the worker's log artifact, so a
    restarted tracker picks up where the previous one left off.
    """

    def __init__(self, store: FileKeyValueStore, runner: CommandRunner, log_dir: str | Path):
        self.logger = logging.getLogger("panel.jobs")
        self.store = store
        self.runner = runner
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()
        self._workers: dict[str, asyncio.subprocess.Process] = {}
        self._reapers: set[asyncio.Task[None]] = set()

    @classmethod
    def from_config(cls, cfg: dict[str, Any]) -> "JobTracker":
        state_dir = Path(str(cfg.get("state_dir", "state"))).expanduser()
        return cls(
            FileKeyValueStore(state_dir / "jobs"),
            CommandRunner(default_timeout=float(cfg.get("probe_timeout_seconds", 30))),
            state_dir / "job_logs",
        )

    def _new_id(self) -> str:
        return f"{int(time.time() * 1000)}-{secrets.token_hex(3)}"

    def _load(self, job_id: str) -> JobRecord:
        try:
            return JobRecord.decode(self.store.get(job_id))
        except (KeyNotFound, KeyError, TypeError, ValueError) as exc:
            raise JobNotFound(job_id) from exc

    def _save(self, record: JobRecord) -> None:
        record.updated_at = time.time()
        self.store.put(record.id, record.encode())

    def _probe_total(self, spec: JobSpec) -> int:
        if not spec.probe_command:
            return 1
        result = self.runner.run(spec.probe_command, list(spec.probe_args))
        if not result.ok:
            self.logger.warning(
                "job probe failed cmd=%s code=%s err=%s",
                spec.probe_command,
                result.exit_code,
                result.stderr.decode("utf-8", errors="replace").strip()[:200],
            )
            return 1
        count = sum(1 for line in result.text().splitlines() if line.strip())
        return max(1, count)

    def _count_markers(self, record: JobRecord) -> int:
        pattern = re.compile(record.marker)
        count = 0
        try:
            with open(record.log_path, "rb") as f:
                for raw in f:
                    if pattern.search(raw.decode("utf-8", errors="replace")):
                        count += 1
        except FileNotFoundError:
            return record.completed_units
        return count

    async def start(self, spec: JobSpec) -> str:
        job_id = self._new_id()
        total = await asyncio.to_thread(self._probe_total, spec)
        log_path = self.log_dir / f"{job_id}.log"
        record = JobRecord(
            id=job_id,
            kind=spec.kind,
            pid=0,
            total_units=total,
            completed_units=0,
            status=JobStatus.RUNNING,
            log_path=str(log_path),
            marker=spec.marker,
            command=[spec.command, *spec.args],
        )
        try:
            for path in spec.ensure_dirs:
                os.makedirs(path, exist_ok=True)
            with open(log_path, "wb") as log_fh:
                proc = await asyncio.create_subprocess_exec(
                    spec.command,
                    *spec.args,
                    stdin=subprocess.DEVNULL,
                    stdout=log_fh,
                    stderr=subprocess.STDOUT,
                    cwd=spec.cwd,
                    start_new_session=True,
                )
        except OSError as exc:
            record.status = JobStatus.FAILED
            record.error = f"{type(exc).__name__}: {exc}"
            async with self._lock:
                self._save(record)
            self.logger.warning("job spawn failed id=%s cmd=%s err=%s", job_id, spec.command, record.error)
            raise SpawnError(spec.command, record.error) from exc
        record.pid = proc.pid
        async with self._lock:
            self._save(record)
        self._workers[job_id] = proc
        task = asyncio.create_task(self._release_worker(job_id, proc), name=f"job-worker-{job_id}")
        self._reapers.add(task)
        task.add_done_callback(self._reapers.discard)
        self.logger.info("job started id=%s kind=%s pid=%s total=%s", job_id, spec.kind, proc.pid, total)
        return job_id

    async def _release_worker(self, job_id: str, proc: asyncio.subprocess.Process) -> None:
        # Only reaps the child; status is decided by poll().
        try:
            code = await proc.wait()
            self.logger.debug("job worker exited id=%s pid=%s code=%s", job_id, proc.pid, code)
        finally:
            self._workers.pop(job_id, None)

    async def poll(self, job_id: str) -> JobRecord:
        async with self._lock:
            record = self._load(job_id)
            if record.status in TERMINAL_JOB_STATES:
                return record
            alive = pid_alive(record.pid)
            counted = await asyncio.to_thread(self._count_markers, record)
            record.completed_units = min(record.total_units, max(record.completed_units, counted))
            if not alive:
                record.status = JobStatus.DONE
                self.logger.info("job done id=%s completed=%s/%s", job_id, record.completed_units, record.total_units)
            self._save(record)
            return record

    async def cancel(self, job_id: str) -> JobRecord:
        async with self._lock:
            record = self._load(job_id)
            if record.status is not JobStatus.RUNNING:
                return record
            try:
                os.killpg(record.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            except PermissionError:
                with contextlib.suppress(ProcessLookupError, PermissionError):
                    os.kill(record.pid, signal.SIGKILL)
            record.status = JobStatus.CANCELLED
            self._save(record)
            self.logger.info("job cancelled id=%s pid=%s", job_id, record.pid)
            return record

    async def list_jobs(self) -> list[JobRecord]:
        records: list[JobRecord] = []
        for key in self.store.keys():
            with contextlib.suppress(JobNotFound):
                records.append(self._load(key))
        records.sort(key=lambda r: r.created_at, reverse=True)
        return records

    async def reap(self, job_id: str) -> None:
        async with self._lock:
            record = self._load(job_id)
            if record.status is JobStatus.RUNNING:
                raise ValueError(f"job {job_id} is still running")
            self.store.delete(job_id)
            with contextlib.suppress(FileNotFoundError):
                os.unlink(record.log_path)
        self.logger.info("job reaped id=%s", job_id)

    def stream_plan(self, job_id: str) -> LaunchPlan:
        record = self._load(job_id)
        source = f"job-{job_id}"
        notice = f"Following {record.kind} job {job_id}"
        if record.status is JobStatus.RUNNING and sys.platform.startswith("linux"):
            args: tuple[str, ...] = ("-n", "+1", "-F", f"--pid={record.pid}", record.log_path)
            return LaunchPlan(target=f"job:{job_id}", source=source, command="tail", args=args, notices=(notice,))
        if not os.path.isfile(record.log_path):
            return LaunchPlan(target=f"job:{job_id}", source=source, error=f"Job log not found: {record.log_path}")
        return LaunchPlan(target=f"job:{job_id}", source=source, command="cat", args=(record.log_path,), notices=(notice,))

    async def close(self) -> None:
        # Workers are detached on purpose; only the reaper tasks go away.
        for task in list(self._reapers):
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
