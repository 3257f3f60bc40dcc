from __future__ import annotations

import json
import logging
from pathlib import Path

from .app_logging import log_with_fields
from .artifacts import RunArtifactResolver
from .cleanup import CleanupCoordinator
from .codes import count_items
from .config import AppConfig
from .logtail import read_new_lines
from .models import Job, JobStatus
from .store import JobLedger
from .supervisor import ProcessRegistry, WorkerSupervisor
from .utils import new_job_id, new_run_stamp, pid_alive, utc_now_iso

PARALLEL_LOG = "parallel"


class InvalidUploadError(ValueError):
    pass


class JobStateError(RuntimeError):
    pass


class BulkJobService:
    """Operations behind the bulk processing screens: upload, start, stop, poll, logs."""

    def __init__(
        self,
        config: AppConfig,
        ledger: JobLedger,
        supervisor: WorkerSupervisor,
        resolver: RunArtifactResolver,
        cleanup: CleanupCoordinator,
        logger: logging.Logger,
    ) -> None:
        self.config = config
        self.ledger = ledger
        self.supervisor = supervisor
        self.resolver = resolver
        self.cleanup = cleanup
        self.logger = logger

    @property
    def registry(self) -> ProcessRegistry:
        return self.supervisor.registry

    def upload(
        self,
        source: Path | bytes,
        *,
        name: str | None = None,
        requested_workers: object = None,
    ) -> Job:
        if isinstance(source, Path):
            raw = source.read_bytes()
            name = name or source.name
        else:
            raw = source
        try:
            payload = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise InvalidUploadError("Invalid JSON file.") from exc

        item_count = count_items(payload)
        if item_count == 0:
            raise InvalidUploadError("No items found in JSON.")

        job_id = new_job_id()
        uploads = self.config.paths.uploads
        uploads.mkdir(parents=True, exist_ok=True)
        input_path = uploads / f"{job_id}.json"
        input_path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")

        job = Job(
            job_id=job_id,
            status=JobStatus.QUEUED,
            input_path=str(input_path),
            input_name=name or f"{job_id}.json",
            item_count=item_count,
            worker_count=self.supervisor.resolve_worker_count(item_count, requested_workers),
            created_at=utc_now_iso(),
        )
        self.ledger.upsert(job)
        log_with_fields(
            self.logger,
            logging.INFO,
            "job_uploaded",
            job_id=job_id,
            input_name=job.input_name,
            items=item_count,
            workers=job.worker_count,
        )
        return job

    def start(self, job_id: str) -> Job | None:
        job = self.ledger.get(job_id)
        if job is None:
            return None
        if job.status is JobStatus.RUNNING:
            return job
        if job.status.is_terminal:
            raise JobStateError(f"job {job_id} is {job.status.value} and cannot be started")

        if not Path(job.input_path).is_file():
            log_with_fields(self.logger, logging.ERROR, "job_input_missing", job_id=job_id, path=job.input_path)
            return self._finish(job_id, JobStatus.FAILED, error="Input file missing.") or job

        run_stamp = new_run_stamp()
        started_at = utc_now_iso()

        def prepare(current: Job) -> Job:
            current.run_stamp = run_stamp
            current.worker_log_dir = str(self.resolver.log_dir)
            current.parallel_log_path = str(self.resolver.build_parallel_log_path(run_stamp))
            current.started_at = started_at
            current.finished_at = None
            current.summary = None
            current.error = None
            return current

        prepared = self.ledger.update(job_id, prepare)
        if prepared is None:
            return None

        try:
            process = self.supervisor.spawn(prepared, on_exit=self._on_runner_exit)
        except OSError as exc:
            log_with_fields(self.logger, logging.ERROR, "runner_spawn_failed", job_id=job_id, error=str(exc))
            return self._finish(job_id, JobStatus.FAILED, error=str(exc)) or prepared

        def mark_running(current: Job) -> Job:
            if current.status is JobStatus.QUEUED:
                current.status = JobStatus.RUNNING
                current.pid = process.pid
            return current

        running = self.ledger.update(job_id, mark_running)
        log_with_fields(self.logger, logging.INFO, "job_started", job_id=job_id, pid=process.pid, run_stamp=run_stamp)
        return running or prepared

    def _on_runner_exit(self, job_id: str, returncode: int) -> None:
        if returncode == 0:
            job = self._finish(job_id, JobStatus.COMPLETED)
        else:
            job = self._finish(job_id, JobStatus.FAILED, error=f"Runner exited with code {returncode}.")
        log_with_fields(
            self.logger,
            logging.INFO if returncode == 0 else logging.WARNING,
            "runner_exited",
            job_id=job_id,
            returncode=returncode,
            status=job.status.value if job else None,
        )

    def _finish(self, job_id: str, status: JobStatus, *, error: str | None = None) -> Job | None:
        """Move a non-terminal job to ``status``; terminal jobs are left untouched."""

        def apply(current: Job) -> Job:
            if current.status.is_terminal:
                return current
            current.status = status
            current.finished_at = utc_now_iso()
            current.pid = None
            current.error = error
            if status is JobStatus.COMPLETED:
                self._attach_outputs(current)
            return current

        return self.ledger.update(job_id, apply)

    def _attach_outputs(self, job: Job) -> None:
        run_stamp = self.resolver.find_run_stamp(job)
        if run_stamp:
            job.run_stamp = run_stamp
            outputs = self.resolver.build_output_paths(job, run_stamp)
            job.output_folder = str(outputs.final_folder)
            job.output_excel_path = str(outputs.output_excel)
            job.output_zip_path = str(outputs.output_zip)
        job.summary = self.resolver.build_summary(job)

    def get(self, job_id: str) -> Job | None:
        job = self.ledger.get(job_id)
        if job is None:
            return None

        if job.status is JobStatus.RUNNING and self.registry.get(job_id) is None:
            if job.pid and pid_alive(job.pid):
                return job
            if self.resolver.has_outputs(job):
                refreshed = self._finish(job_id, JobStatus.COMPLETED)
            else:
                refreshed = self._finish(job_id, JobStatus.FAILED, error="Process not running.")
            log_with_fields(
                self.logger,
                logging.INFO,
                "job_reconciled",
                job_id=job_id,
                status=refreshed.status.value if refreshed else None,
            )
            return refreshed or job

        if job.status is JobStatus.COMPLETED and job.summary is None:

            def summarize(current: Job) -> Job:
                self._attach_outputs(current)
                return current

            return self.ledger.update(job_id, summarize) or job
        return job

    def list_jobs(self) -> list[Job]:
        return self.ledger.load()

    def stop(self, job_id: str) -> Job | None:
        job = self.ledger.get(job_id)
        if job is None:
            return None
        log_with_fields(self.logger, logging.INFO, "job_stop_requested", job_id=job_id, status=job.status.value)
        return self.cleanup.run(job)

    def wait(self, job_id: str, timeout: float | None = None) -> bool:
        return self.registry.wait(job_id, timeout)

    def log_path(self, job: Job, source: str | int = PARALLEL_LOG) -> Path | None:
        if str(source) == PARALLEL_LOG:
            return Path(job.parallel_log_path) if job.parallel_log_path else None
        worker_id = int(str(source).lstrip("w"))
        if worker_id < 1 or worker_id > job.worker_count:
            raise ValueError(f"worker {worker_id} out of range 1..{job.worker_count}")
        run_stamp = self.resolver.find_run_stamp(job)
        if not run_stamp:
            return None
        return self.resolver.build_worker_log_path(run_stamp, worker_id)

    def tail_log(self, job_id: str, source: str | int = PARALLEL_LOG, offset: int = 0) -> tuple[list[str], int] | None:
        job = self.ledger.get(job_id)
        if job is None:
            return None
        return read_new_lines(self.log_path(job, source), offset)

    def output_path(self, job_id: str, kind: str) -> Path | None:
        """Generated zip or excel file for a job, if it exists on disk."""
        job = self.get(job_id)
        if job is None:
            return None
        if kind == "zip":
            target = job.output_zip_path
        elif kind == "excel":
            target = job.output_excel_path
        else:
            raise ValueError(f"unknown output type: {kind}")
        if not target or not Path(target).is_file():
            return None
        return Path(target)
