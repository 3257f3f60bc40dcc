from __future__ import annotations

import logging
import re
from pathlib import Path

from .app_logging import log_with_fields
from .models import Job, JobSummary, OutputPaths
from .utils import parse_iso

WORKER_LOG_REGEX = re.compile(r"^run-(.+)-w(\d+)\.([A-Za-z0-9]+)$")


class RunArtifactResolver:
    """Maps a job onto the logs and output folders its runner produced."""

    def __init__(
        self,
        log_dir: Path,
        drafts_root: Path,
        *,
        worker_log_ext: str = "csv",
        tolerance_seconds: float = 60.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self.log_dir = log_dir
        self.drafts_root = drafts_root
        self.worker_log_ext = worker_log_ext
        self.tolerance_seconds = tolerance_seconds
        self.logger = logger or logging.getLogger("bulkjobs.artifacts")

    def find_run_stamp(self, job: Job) -> str | None:
        """Return the job's run stamp, recovering it from worker log mtimes if unrecorded.

        Recovery is a best-effort guess: the newest stamp whose latest worker log
        was touched no earlier than ``tolerance_seconds`` before the job started.
        """
        if job.run_stamp:
            return job.run_stamp
        if not job.started_at:
            return None

        try:
            entries = list(self.log_dir.iterdir())
        except OSError:
            return None

        started_at = parse_iso(job.started_at)
        cutoff = started_at.timestamp() - self.tolerance_seconds if started_at else 0.0

        newest_by_stamp: dict[str, float] = {}
        for entry in entries:
            match = WORKER_LOG_REGEX.match(entry.name)
            if not match:
                continue
            try:
                mtime = entry.stat().st_mtime
            except OSError:
                continue
            stamp = match.group(1)
            newest_by_stamp[stamp] = max(newest_by_stamp.get(stamp, 0.0), mtime)

        candidates = [(mtime, stamp) for stamp, mtime in newest_by_stamp.items() if mtime >= cutoff]
        if not candidates:
            return None
        # ties broken by stamp so repeated calls agree
        _, stamp = max(candidates)
        log_with_fields(self.logger, logging.INFO, "run_stamp_recovered", job_id=job.job_id, run_stamp=stamp)
        return stamp

    def build_worker_log_path(self, run_stamp: str, worker_id: int) -> Path:
        return self.log_dir / f"run-{run_stamp}-w{worker_id}.{self.worker_log_ext}"

    def build_parallel_log_path(self, run_stamp: str) -> Path:
        return self.log_dir / f"run-{run_stamp}-parallel.log"

    def build_output_paths(self, job: Job, run_stamp: str) -> OutputPaths:
        count_tag = f"{job.item_count}-spu"
        final_name = f"Drafted-Products-{count_tag}-{run_stamp}"
        temp_name = f"Drafted-Products-currently_running-{count_tag}-{run_stamp}"
        final_folder = self.drafts_root / final_name
        return OutputPaths(
            final_folder=final_folder,
            temp_folder=self.drafts_root / temp_name,
            output_excel=final_folder / f"output-product_texts-{count_tag}-{run_stamp}.xlsx",
            output_zip=self.drafts_root / f"{final_name}.zip",
        )

    def has_outputs(self, job: Job) -> bool:
        run_stamp = self.find_run_stamp(job)
        if not run_stamp:
            return False
        outputs = self.build_output_paths(job, run_stamp)
        return outputs.final_folder.is_dir() or outputs.output_zip.is_file()

    def build_summary(self, job: Job) -> JobSummary:
        run_stamp = self.find_run_stamp(job)
        if not run_stamp:
            return JobSummary(
                spu_count=job.item_count,
                image_folder_count=None,
                output_excel_path=None,
                output_zip_path=None,
            )
        outputs = self.build_output_paths(job, run_stamp)
        return JobSummary(
            spu_count=job.item_count,
            image_folder_count=count_image_folders(outputs.final_folder),
            output_excel_path=str(outputs.output_excel) if outputs.output_excel.is_file() else None,
            output_zip_path=str(outputs.output_zip) if outputs.output_zip.is_file() else None,
        )


def count_image_folders(folder: Path) -> int | None:
    try:
        return sum(1 for entry in folder.iterdir() if entry.is_dir() and not entry.name.startswith("_"))
    except OSError:
        return None
