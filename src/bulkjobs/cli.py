from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from .app_logging import log_with_fields, setup_logger
from .artifacts import RunArtifactResolver
from .cleanup import CleanupCoordinator
from .config import AppConfig, ensure_local_paths, load_config
from .drafts_db import build_draft_store
from .logtail import follow
from .models import Job
from .service import PARALLEL_LOG, BulkJobService, InvalidUploadError, JobStateError
from .store import JobLedger
from .supervisor import ProcessRegistry, WorkerSupervisor


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="bulkjobs", description="Bulk draft product job orchestrator")
    parser.add_argument("--config", required=True, help="Path to bulkjobs YAML config")
    subparsers = parser.add_subparsers(dest="command", required=True)

    upload = subparsers.add_parser("upload", help="Register a JSON work-item file as a queued job")
    upload.add_argument("file", help="JSON list of items, or an object with an `items` list")
    upload.add_argument("--workers", help="Requested parallel worker count")
    upload.add_argument("--name", help="Display name for the input (defaults to the file name)")

    start = subparsers.add_parser("start", help="Start a queued job")
    start.add_argument("--job-id", required=True)
    start.add_argument("--wait", action="store_true", help="Block until the runner exits")

    stop = subparsers.add_parser("stop", help="Stop a job and remove everything it produced")
    stop.add_argument("--job-id", required=True)

    show = subparsers.add_parser("show", help="Show one job, refreshing its state")
    show.add_argument("--job-id", required=True)

    subparsers.add_parser("list", help="List all jobs, most recent first")

    logs = subparsers.add_parser("logs", help="Print a job's coordinator or worker log")
    logs.add_argument("--job-id", required=True)
    logs.add_argument("--worker", help="Worker number; omit for the coordinator log")
    logs.add_argument("--follow", action="store_true", help="Keep printing new lines")

    output = subparsers.add_parser("output", help="Print the path of a finished job's zip or excel file")
    output.add_argument("--job-id", required=True)
    output.add_argument("--type", choices=["zip", "excel"], default="zip")
    return parser


def _open_runtime(config: AppConfig) -> BulkJobService:
    ensure_local_paths(config)
    logger = setup_logger(config.paths.app_log)
    ledger = JobLedger(config.paths.ledger, logger)
    registry = ProcessRegistry()
    supervisor = WorkerSupervisor(
        config.workers,
        config.runner,
        registry,
        logger,
        drafts_root=config.paths.drafts,
    )
    resolver = RunArtifactResolver(
        config.paths.logs,
        config.paths.drafts,
        worker_log_ext=config.runner.worker_log_ext,
        tolerance_seconds=config.runner.stamp_tolerance_seconds,
        logger=logger,
    )
    cleanup = CleanupCoordinator(
        ledger,
        supervisor,
        resolver,
        build_draft_store(config.database, logger),
        config.database,
        logger,
    )
    return BulkJobService(config, ledger, supervisor, resolver, cleanup, logger)


def _print_job(job: Job) -> None:
    print(json.dumps(job.to_dict(), indent=2))


def _not_found(job_id: str) -> int:
    print(f"job not found: {job_id}", file=sys.stderr)
    return 2


def cmd_upload(service: BulkJobService, file: str, *, workers: str | None, name: str | None) -> int:
    source = Path(file).expanduser()
    if not source.is_file():
        print(f"input file not found: {source}", file=sys.stderr)
        return 2
    try:
        job = service.upload(source, name=name, requested_workers=workers)
    except InvalidUploadError as exc:
        print(str(exc), file=sys.stderr)
        return 2
    _print_job(job)
    return 0


def cmd_start(service: BulkJobService, job_id: str, *, wait: bool = False) -> int:
    try:
        job = service.start(job_id)
    except JobStateError as exc:
        print(str(exc), file=sys.stderr)
        return 2
    if job is None:
        return _not_found(job_id)
    if wait:
        try:
            service.wait(job_id)
        except KeyboardInterrupt:
            log_with_fields(logging.getLogger("bulkjobs"), logging.INFO, "wait_interrupted", job_id=job_id)
        job = service.get(job_id) or job
    _print_job(job)
    return 0


def cmd_stop(service: BulkJobService, job_id: str) -> int:
    job = service.stop(job_id)
    if job is None:
        return _not_found(job_id)
    _print_job(job)
    return 0


def cmd_show(service: BulkJobService, job_id: str) -> int:
    job = service.get(job_id)
    if job is None:
        return _not_found(job_id)
    _print_job(job)
    return 0


def cmd_list(service: BulkJobService) -> int:
    jobs = service.list_jobs()
    if not jobs:
        print("(no jobs yet)")
    for job in jobs:
        error = f" error={job.error}" if job.error else ""
        print(
            f"{job.job_id}  {job.status.value:10} items={job.item_count} "
            f"workers={job.worker_count} created={job.created_at}{error}"
        )
    return 0


def cmd_logs(service: BulkJobService, job_id: str, *, worker: str | None, follow_log: bool) -> int:
    job = service.ledger.get(job_id)
    if job is None:
        return _not_found(job_id)
    source = worker or PARALLEL_LOG
    try:
        path = service.log_path(job, source)
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return 2
    if not follow_log:
        result = service.tail_log(job_id, source)
        for line in result[0] if result else []:
            print(line)
        return 0
    try:
        for line in follow(lambda: path):
            print(line, flush=True)
    except KeyboardInterrupt:
        return 0
    return 0


def cmd_output(service: BulkJobService, job_id: str, kind: str) -> int:
    if service.ledger.get(job_id) is None:
        return _not_found(job_id)
    path = service.output_path(job_id, kind)
    if path is None:
        print("File not found.", file=sys.stderr)
        return 2
    print(path)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    config = load_config(args.config)
    service = _open_runtime(config)

    if args.command == "upload":
        return cmd_upload(service, args.file, workers=args.workers, name=args.name)
    if args.command == "start":
        return cmd_start(service, args.job_id, wait=bool(args.wait))
    if args.command == "stop":
        return cmd_stop(service, args.job_id)
    if args.command == "show":
        return cmd_show(service, args.job_id)
    if args.command == "list":
        return cmd_list(service)
    if args.command == "logs":
        return cmd_logs(service, args.job_id, worker=args.worker, follow_log=bool(args.follow))
    if args.command == "output":
        return cmd_output(service, args.job_id, args.type)
    parser.error(f"Unknown command: {args.command}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
