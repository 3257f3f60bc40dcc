from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from .app_logging import log_swallowed, log_with_fields
from .artifacts import RunArtifactResolver
from .codes import load_job_codes
from .config import DatabaseConfig
from .drafts_db import DraftRowStore
from .models import Job, JobStatus
from .store import JobLedger
from .supervisor import WorkerSupervisor
from .utils import safe_remove, utc_now_iso

STOP_REASON = "Stopped by user."


@dataclass(slots=True)
class CleanupReport:
    job_id: str
    codes: list[str] = field(default_factory=list)
    signalled: bool = False
    run_stamp: str | None = None
    removed_paths: list[str] = field(default_factory=list)
    failed_paths: list[str] = field(default_factory=list)
    deleted_batches: int = 0
    failed_batches: int = 0


class CleanupCoordinator:
    """Tears down everything a job left behind, then marks it killed.

    Steps run in a fixed order (signal, input, run outputs, coordinator log,
    per-code folders, database rows, ledger). Every step before the ledger
    update logs its failures and carries on; the ledger update is the only
    error that reaches the caller.
    """

    def __init__(
        self,
        ledger: JobLedger,
        supervisor: WorkerSupervisor,
        resolver: RunArtifactResolver,
        draft_store: DraftRowStore | None,
        database: DatabaseConfig,
        logger: logging.Logger,
    ) -> None:
        self.ledger = ledger
        self.supervisor = supervisor
        self.resolver = resolver
        self.draft_store = draft_store
        self.database = database
        self.logger = logger

    def run(self, job: Job) -> Job:
        report = CleanupReport(job_id=job.job_id)
        report.codes = load_job_codes(job.input_path)
        report.signalled = self.supervisor.terminate(job)

        if job.input_path:
            self._remove(report, Path(job.input_path), "input")

        report.run_stamp = self.resolver.find_run_stamp(job)
        if report.run_stamp:
            outputs = self.resolver.build_output_paths(job, report.run_stamp)
            self._remove(report, outputs.output_excel, "output_excel")
            self._remove(report, outputs.output_zip, "output_zip")
            self._remove(report, outputs.final_folder, "final_folder")
            self._remove(report, outputs.temp_folder, "temp_folder")

        if job.parallel_log_path:
            self._remove(report, Path(job.parallel_log_path), "parallel_log")

        self._remove_code_folders(report)
        self._delete_draft_rows(report)

        updated = self.ledger.update(job.job_id, self._mark_killed)
        log_with_fields(
            self.logger,
            logging.INFO,
            "job_cleanup_finished",
            job_id=job.job_id,
            codes=len(report.codes),
            signalled=report.signalled,
            run_stamp=report.run_stamp,
            removed=report.removed_paths,
            failed=report.failed_paths,
            deleted_batches=report.deleted_batches,
            failed_batches=report.failed_batches,
            ledger_updated=updated is not None,
        )
        return updated or job

    @staticmethod
    def _mark_killed(current: Job) -> Job:
        if current.status is not JobStatus.KILLED or not current.finished_at:
            current.finished_at = utc_now_iso()
        current.status = JobStatus.KILLED
        current.error = STOP_REASON
        current.pid = None
        return current

    def _remove(self, report: CleanupReport, path: Path, step: str) -> None:
        try:
            removed = safe_remove(path)
        except OSError as exc:
            report.failed_paths.append(str(path))
            log_swallowed(self.logger, "cleanup_remove_failed", exc, job_id=report.job_id, step=step, path=str(path))
            return
        if removed:
            report.removed_paths.append(str(path))

    def _remove_code_folders(self, report: CleanupReport) -> None:
        if not report.codes:
            return
        drafts_root = self.resolver.drafts_root
        try:
            run_dirs = sorted(entry for entry in drafts_root.iterdir() if entry.is_dir())
        except OSError as exc:
            log_swallowed(self.logger, "cleanup_scan_failed", exc, job_id=report.job_id, path=str(drafts_root))
            return
        for run_dir in run_dirs:
            for code in report.codes:
                candidate = run_dir / code
                if candidate.exists():
                    self._remove(report, candidate, "code_folder")

    def _delete_draft_rows(self, report: CleanupReport) -> None:
        if not report.codes:
            return
        if self.draft_store is None:
            log_with_fields(
                self.logger,
                logging.WARNING,
                "cleanup_rows_skipped",
                job_id=report.job_id,
                codes=len(report.codes),
            )
            return
        size = self.database.chunk_size
        for start in range(0, len(report.codes), size):
            chunk = report.codes[start : start + size]
            try:
                self.draft_store.delete_rows(self.database.variants_table, self.database.code_column, chunk)
                self.draft_store.delete_rows(self.database.products_table, self.database.code_column, chunk)
            except Exception as exc:
                report.failed_batches += 1
                log_swallowed(
                    self.logger,
                    "cleanup_rows_failed",
                    exc,
                    job_id=report.job_id,
                    batch_start=start,
                    batch_size=len(chunk),
                )
                continue
            report.deleted_batches += 1
