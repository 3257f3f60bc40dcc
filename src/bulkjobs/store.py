from __future__ import annotations

import json
import logging
import os
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any

from .app_logging import log_with_fields
from .models import Job


class JobLedger:
    """Flat JSON table of every job, most recent first.

    Every mutation rewrites the whole file. Writers inside this process are
    serialised by ``self.lock``; separate processes sharing the file are not,
    and the last writer wins.
    """

    def __init__(self, path: Path, logger: logging.Logger | None = None) -> None:
        self.path = path
        self.logger = logger or logging.getLogger("bulkjobs.store")
        self.lock = threading.RLock()

    def _ensure_dir(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def _read_entries(self) -> list[Job | Any]:
        """Every ledger entry in file order; entries that do not parse stay raw."""
        self._ensure_dir()
        if not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            log_with_fields(self.logger, logging.WARNING, "ledger_unreadable", path=str(self.path), error=str(exc))
            return []
        if not isinstance(raw, list):
            log_with_fields(self.logger, logging.WARNING, "ledger_not_a_list", path=str(self.path))
            return []
        entries: list[Job | Any] = []
        for index, entry in enumerate(raw):
            try:
                entries.append(Job.from_dict(entry))
            except (KeyError, TypeError, ValueError) as exc:
                log_with_fields(
                    self.logger,
                    logging.WARNING,
                    "ledger_entry_unparsed",
                    index=index,
                    error=str(exc),
                )
                entries.append(entry)
        return entries

    def load(self) -> list[Job]:
        return [entry for entry in self._read_entries() if isinstance(entry, Job)]

    def save(self, entries: list[Job | Any]) -> None:
        """Rewrite the file; raw entries are written back exactly as read."""
        self._ensure_dir()
        payload = json.dumps(
            [entry.to_dict() if isinstance(entry, Job) else entry for entry in entries],
            indent=2,
        )
        temp_path = self.path.with_name(f".{self.path.name}.{os.getpid()}.tmp")
        temp_path.write_text(payload, encoding="utf-8")
        os.replace(temp_path, self.path)

    def get(self, job_id: str) -> Job | None:
        for job in self.load():
            if job.job_id == job_id:
                return job
        return None

    def upsert(self, job: Job) -> Job:
        with self.lock:
            entries = self._read_entries()
            for index, entry in enumerate(entries):
                if _entry_id(entry) == job.job_id:
                    entries[index] = job
                    break
            else:
                entries.insert(0, job)
            self.save(entries)
        return job

    def update(self, job_id: str, updater: Callable[[Job], Job]) -> Job | None:
        """Apply ``updater`` to the stored job; unparsed entries are never rewritten."""
        with self.lock:
            entries = self._read_entries()
            for index, entry in enumerate(entries):
                if isinstance(entry, Job) and entry.job_id == job_id:
                    updated = updater(entry)
                    entries[index] = updated
                    self.save(entries)
                    return updated
        return None


def _entry_id(entry: Job | Any) -> str | None:
    if isinstance(entry, Job):
        return entry.job_id
    if isinstance(entry, dict) and entry.get("jobId") is not None:
        return str(entry["jobId"])
    return None
