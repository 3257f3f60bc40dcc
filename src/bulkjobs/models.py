from __future__ import annotations

from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Any


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    KILLED = "killed"

    @property
    def is_terminal(self) -> bool:
        return self in {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.KILLED}


@dataclass(slots=True)
class JobSummary:
    spu_count: int
    image_folder_count: int | None
    output_excel_path: str | None
    output_zip_path: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "spuCount": self.spu_count,
            "imageFolderCount": self.image_folder_count,
            "outputExcelPath": self.output_excel_path,
            "outputZipPath": self.output_zip_path,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> JobSummary:
        image_folders = raw.get("imageFolderCount")
        return cls(
            spu_count=int(raw.get("spuCount") or 0),
            image_folder_count=int(image_folders) if image_folders is not None else None,
            output_excel_path=raw.get("outputExcelPath"),
            output_zip_path=raw.get("outputZipPath"),
        )


@dataclass(slots=True)
class OutputPaths:
    final_folder: Path
    temp_folder: Path
    output_excel: Path
    output_zip: Path


# attribute name -> ledger key
_JSON_KEYS = {
    "job_id": "jobId",
    "status": "status",
    "input_path": "inputPath",
    "input_name": "inputName",
    "item_count": "itemCount",
    "worker_count": "workerCount",
    "created_at": "createdAt",
    "started_at": "startedAt",
    "finished_at": "finishedAt",
    "pid": "pid",
    "run_stamp": "runStamp",
    "parallel_log_path": "parallelLogPath",
    "worker_log_dir": "workerLogDir",
    "output_folder": "outputFolder",
    "output_excel_path": "outputExcelPath",
    "output_zip_path": "outputZipPath",
    "summary": "summary",
    "error": "error",
}
_KNOWN_KEYS = frozenset(_JSON_KEYS.values())


@dataclass(slots=True)
class Job:
    job_id: str
    status: JobStatus
    input_path: str
    item_count: int
    worker_count: int
    created_at: str
    input_name: str | None = None
    started_at: str | None = None
    finished_at: str | None = None
    pid: int | None = None
    run_stamp: str | None = None
    parallel_log_path: str | None = None
    worker_log_dir: str | None = None
    output_folder: str | None = None
    output_excel_path: str | None = None
    output_zip_path: str | None = None
    summary: JobSummary | None = None
    error: str | None = None
    # ledger keys this model does not know, written back untouched
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = dict(self.extra)
        for item in fields(self):
            if item.name == "extra":
                continue
            value = getattr(self, item.name)
            if value is None:
                continue
            if isinstance(value, JobStatus):
                value = value.value
            elif isinstance(value, JobSummary):
                value = value.to_dict()
            payload[_JSON_KEYS[item.name]] = value
        return payload

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Job:
        values: dict[str, Any] = {}
        for attr, key in _JSON_KEYS.items():
            if key in raw and raw[key] is not None:
                values[attr] = raw[key]
        summary = values.get("summary")
        if isinstance(summary, dict):
            values["summary"] = JobSummary.from_dict(summary)
        else:
            values.pop("summary", None)
        pid = values.get("pid")
        if pid is not None:
            values["pid"] = int(pid)
        return cls(
            **{
                **values,
                "job_id": str(raw["jobId"]),
                "status": JobStatus(raw["status"]),
                "input_path": str(raw.get("inputPath") or ""),
                "item_count": int(raw.get("itemCount") or 0),
                "worker_count": int(raw.get("workerCount") or 1),
                "created_at": str(raw.get("createdAt") or ""),
                "extra": {key: value for key, value in raw.items() if key not in _KNOWN_KEYS},
            }
        )
