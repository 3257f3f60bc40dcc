from __future__ import annotations

import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

import yaml

DEFAULT_RUNNER_COMMAND = (
    "node /srv/node-tools/product-processor/run-parallel-1688.js"
    " --input {input_path} --workers {worker_count} --run-stamp {run_stamp}"
    " --log-dir {log_dir} --output-root {drafts_root}"
)

LEADING_INT_REGEX = re.compile(r"^\s*([+-]?\d+)")


@dataclass(slots=True)
class PathsConfig:
    uploads: Path
    ledger: Path
    logs: Path
    drafts: Path
    app_log: Path


@dataclass(slots=True)
class WorkersConfig:
    max: int = 4
    default: int = 1


@dataclass(slots=True)
class RunnerConfig:
    command_template: str = DEFAULT_RUNNER_COMMAND
    worker_log_ext: str = "csv"
    stamp_tolerance_seconds: float = 60.0


@dataclass(slots=True)
class DatabaseConfig:
    url: str | None = None
    service_role_key: str | None = None
    variants_table: str = "draft_variants"
    products_table: str = "draft_products"
    code_column: str = "draft_spu"
    chunk_size: int = 100

    @property
    def configured(self) -> bool:
        return bool(self.url and self.service_role_key)


@dataclass(slots=True)
class AppConfig:
    paths: PathsConfig
    workers: WorkersConfig = field(default_factory=WorkersConfig)
    runner: RunnerConfig = field(default_factory=RunnerConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)


def _require(mapping: dict, key: str, section: str) -> object:
    if key not in mapping:
        raise ValueError(f"Missing `{section}.{key}` in config")
    return mapping[key]


def _section(raw: dict, key: str) -> dict:
    value = raw.get(key, {})
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"`{key}` must be a mapping")
    return value


def parse_positive_int(value: object) -> int | None:
    """Leading integer of ``value`` ("2.5" and 2.7 give 2), or None unless positive."""
    if value is None or isinstance(value, bool):
        return None
    match = LEADING_INT_REGEX.match(str(value))
    if match is None:
        return None
    parsed = int(match.group(1))
    return parsed if parsed > 0 else None


def load_config(path: str | Path, env: Mapping[str, str] | None = None) -> AppConfig:
    environ = os.environ if env is None else env
    config_path = Path(path).expanduser().resolve()
    raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ValueError("Config root must be a mapping")

    paths_raw = _require(raw, "paths", "root")
    if not isinstance(paths_raw, dict):
        raise ValueError("`paths` must be a mapping")
    workers_raw = _section(raw, "workers")
    runner_raw = _section(raw, "runner")
    database_raw = _section(raw, "database")

    def to_path(value: object) -> Path:
        output = Path(str(value)).expanduser()
        if not output.is_absolute():
            output = config_path.parent / output
        return output

    uploads = to_path(_require(paths_raw, "uploads", "paths"))
    paths = PathsConfig(
        uploads=uploads,
        ledger=to_path(paths_raw.get("ledger") or uploads / "bulk-jobs.json"),
        logs=to_path(_require(paths_raw, "logs", "paths")),
        drafts=to_path(_require(paths_raw, "drafts", "paths")),
        app_log=to_path(paths_raw.get("app_log") or uploads / "bulkjobs.log"),
    )

    worker_max = parse_positive_int(environ.get("BULK_JOB_MAX_WORKERS"))
    if worker_max is None:
        worker_max = parse_positive_int(workers_raw.get("max", 4))
    worker_default = parse_positive_int(environ.get("BULK_JOB_DEFAULT_WORKERS"))
    if worker_default is None:
        worker_default = parse_positive_int(workers_raw.get("default", 1))
    if worker_max is None:
        raise ValueError("`workers.max` must be a positive integer")
    if worker_default is None:
        raise ValueError("`workers.default` must be a positive integer")
    workers = WorkersConfig(max=worker_max, default=worker_default)

    runner = RunnerConfig(
        command_template=str(runner_raw.get("command_template", DEFAULT_RUNNER_COMMAND)),
        worker_log_ext=str(runner_raw.get("worker_log_ext", "csv")).lstrip("."),
        stamp_tolerance_seconds=float(runner_raw.get("stamp_tolerance_seconds", 60)),
    )
    if not runner.command_template.strip():
        raise ValueError("`runner.command_template` must not be empty")
    if not runner.worker_log_ext.isalnum():
        raise ValueError("`runner.worker_log_ext` must be alphanumeric")
    if runner.stamp_tolerance_seconds < 0:
        raise ValueError("`runner.stamp_tolerance_seconds` must be >= 0")

    database = DatabaseConfig(
        url=environ.get("SUPABASE_URL") or database_raw.get("url") or None,
        service_role_key=environ.get("SUPABASE_SERVICE_ROLE") or database_raw.get("service_role_key") or None,
        variants_table=str(database_raw.get("variants_table", "draft_variants")),
        products_table=str(database_raw.get("products_table", "draft_products")),
        code_column=str(database_raw.get("code_column", "draft_spu")),
        chunk_size=int(database_raw.get("chunk_size", 100)),
    )
    if database.chunk_size < 1:
        raise ValueError("`database.chunk_size` must be >= 1")

    return AppConfig(paths=paths, workers=workers, runner=runner, database=database)


def ensure_local_paths(config: AppConfig) -> None:
    config.paths.uploads.mkdir(parents=True, exist_ok=True)
    config.paths.logs.mkdir(parents=True, exist_ok=True)
    config.paths.drafts.mkdir(parents=True, exist_ok=True)
    config.paths.ledger.parent.mkdir(parents=True, exist_ok=True)
    config.paths.app_log.parent.mkdir(parents=True, exist_ok=True)
