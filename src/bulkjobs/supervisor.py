from __future__ import annotations

import logging
import os
import shlex
import signal
import subprocess
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Protocol

from .app_logging import log_swallowed, log_with_fields
from .config import RunnerConfig, WorkersConfig, parse_positive_int
from .models import Job

WORKER_MIN = 1

ExitCallback = Callable[[str, int], None]


class ProcessHandle(Protocol):
    pid: int

    def poll(self) -> int | None: ...

    def wait(self, timeout: float | None = None) -> int: ...

    def terminate(self) -> None: ...


def parse_worker_count(value: object) -> int | None:
    return parse_positive_int(value)


def resolve_worker_count(
    item_count: int,
    requested: object = None,
    *,
    default: int = 1,
    maximum: int = 4,
) -> int:
    base = parse_worker_count(requested) or default
    capped = max(WORKER_MIN, min(base, max(maximum, WORKER_MIN)))
    if item_count > 0:
        return min(capped, item_count)
    return capped


class ProcessRegistry:
    """Live runner handles for this control-plane process, keyed by job id.

    Entries disappear as soon as the process exits and are never persisted;
    after a restart the registry starts empty and the ledger pid is all that remains.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._processes: dict[str, ProcessHandle] = {}
        self._watchers: dict[str, threading.Thread] = {}

    def register(self, job_id: str, handle: ProcessHandle, on_exit: ExitCallback | None = None) -> None:
        watcher = threading.Thread(
            target=self._watch,
            args=(job_id, handle, on_exit),
            name=f"bulkjob-{job_id}",
            daemon=True,
        )
        with self._lock:
            self._processes[job_id] = handle
            self._watchers[job_id] = watcher
        watcher.start()

    def _watch(self, job_id: str, handle: ProcessHandle, on_exit: ExitCallback | None) -> None:
        returncode = handle.wait()
        self._discard(job_id, handle)
        try:
            if on_exit is not None:
                on_exit(job_id, returncode)
        finally:
            self._forget_watcher(job_id, threading.current_thread())

    def _forget_watcher(self, job_id: str, watcher: threading.Thread) -> None:
        with self._lock:
            if self._watchers.get(job_id) is watcher:
                del self._watchers[job_id]

    def _discard(self, job_id: str, handle: ProcessHandle) -> None:
        with self._lock:
            if self._processes.get(job_id) is handle:
                del self._processes[job_id]

    def get(self, job_id: str) -> ProcessHandle | None:
        with self._lock:
            handle = self._processes.get(job_id)
        if handle is None:
            return None
        if handle.poll() is not None:
            self._discard(job_id, handle)
            return None
        return handle

    def remove(self, job_id: str) -> None:
        with self._lock:
            self._processes.pop(job_id, None)

    def wait(self, job_id: str, timeout: float | None = None) -> bool:
        """Block until the job's watcher has run its exit callback."""
        with self._lock:
            watcher = self._watchers.get(job_id)
        if watcher is None:
            return True
        watcher.join(timeout)
        if watcher.is_alive():
            return False
        self._forget_watcher(job_id, watcher)
        return True

    def job_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._processes)

    def watched_job_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._watchers)


class WorkerSupervisor:
    def __init__(
        self,
        workers: WorkersConfig,
        runner: RunnerConfig,
        registry: ProcessRegistry,
        logger: logging.Logger,
        *,
        drafts_root: Path,
    ) -> None:
        self.workers = workers
        self.runner = runner
        self.registry = registry
        self.logger = logger
        self.drafts_root = drafts_root

    def resolve_worker_count(self, item_count: int, requested: object = None) -> int:
        return resolve_worker_count(
            item_count,
            requested,
            default=self.workers.default,
            maximum=self.workers.max,
        )

    def build_command(self, job: Job) -> list[str]:
        if not job.run_stamp or not job.parallel_log_path or not job.worker_log_dir:
            raise ValueError(f"job {job.job_id} has no run stamp or log paths")
        values = {
            "job_id": job.job_id,
            "input_path": job.input_path,
            "item_count": job.item_count,
            "worker_count": job.worker_count,
            "run_stamp": job.run_stamp,
            "log_dir": job.worker_log_dir,
            "parallel_log": job.parallel_log_path,
            "drafts_root": str(self.drafts_root),
        }
        return [token.format(**values) for token in shlex.split(self.runner.command_template)]

    def spawn(self, job: Job, on_exit: ExitCallback | None = None) -> subprocess.Popen:
        cmd = self.build_command(job)
        log_path = Path(job.parallel_log_path or "")
        log_path.parent.mkdir(parents=True, exist_ok=True)

        env = dict(os.environ)
        env.update(
            {
                "BULK_JOB_ID": job.job_id,
                "BULK_JOB_RUN_STAMP": job.run_stamp or "",
                "BULK_JOB_WORKERS": str(job.worker_count),
                "BULK_JOB_LOG_DIR": job.worker_log_dir or "",
            }
        )
        with open(log_path, "ab") as log_handle:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=log_handle,
                stderr=subprocess.STDOUT,
                env=env,
                start_new_session=True,
            )
        self.registry.register(job.job_id, process, on_exit)
        log_with_fields(
            self.logger,
            logging.INFO,
            "runner_spawned",
            job_id=job.job_id,
            pid=process.pid,
            workers=job.worker_count,
            run_stamp=job.run_stamp,
            cmd=cmd,
        )
        return process

    def terminate(self, job: Job) -> bool:
        """Send SIGTERM to the job's runner without waiting for it to exit."""
        handle = self.registry.get(job.job_id)
        if handle is not None:
            try:
                handle.terminate()
            except OSError as exc:
                log_swallowed(self.logger, "runner_terminate_failed", exc, job_id=job.job_id, pid=handle.pid)
                return False
            finally:
                self.registry.remove(job.job_id)
            log_with_fields(self.logger, logging.INFO, "runner_terminated", job_id=job.job_id, pid=handle.pid)
            return True

        if job.pid:
            try:
                os.kill(job.pid, signal.SIGTERM)
            except OSError as exc:
                log_swallowed(self.logger, "runner_signal_failed", exc, job_id=job.job_id, pid=job.pid)
                return False
            log_with_fields(self.logger, logging.INFO, "runner_signalled", job_id=job.job_id, pid=job.pid)
            return True
        return False
