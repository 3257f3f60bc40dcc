from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from tempfile import TemporaryDirectory
import unittest

from bulkjobs.artifacts import RunArtifactResolver
from bulkjobs.cleanup import STOP_REASON, CleanupCoordinator
from bulkjobs.config import DatabaseConfig, RunnerConfig, WorkersConfig
from bulkjobs.models import Job, JobStatus
from bulkjobs.store import JobLedger
from bulkjobs.supervisor import ProcessRegistry, WorkerSupervisor


class FakeDraftStore:
    def __init__(self, fail_on_call: int | None = None) -> None:
        self.calls: list[tuple[str, str, list[str]]] = []
        self.fail_on_call = fail_on_call

    def delete_rows(self, table: str, column: str, values: list[str]) -> None:
        self.calls.append((table, column, list(values)))
        if self.fail_on_call is not None and len(self.calls) == self.fail_on_call:
            raise RuntimeError("connection reset")


class FakeHandle:
    def __init__(self) -> None:
        self.pid = 515151
        self.returncode: int | None = None
        self.terminated = False
        self._exited = threading.Event()

    def poll(self) -> int | None:
        return self.returncode

    def wait(self, timeout: float | None = None) -> int:
        self._exited.wait(timeout)
        return self.returncode if self.returncode is not None else 0

    def terminate(self) -> None:
        self.terminated = True
        self.returncode = -15
        self._exited.set()


class FailingLedger(JobLedger):
    def save(self, jobs: list[Job]) -> None:
        raise OSError("disk full")


class CleanupCoordinatorTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp = TemporaryDirectory()
        self.root = Path(self._temp.name)
        self.uploads = self.root / "uploads"
        self.logs = self.root / "logs"
        self.drafts = self.root / "drafts"
        for directory in (self.uploads, self.logs, self.drafts):
            directory.mkdir()
        self.logger = logging.getLogger("test_bulkjobs")
        self.logger.handlers.clear()
        self.logger.addHandler(logging.NullHandler())
        self.logger.propagate = False
        self.ledger = JobLedger(self.uploads / "bulk-jobs.json", self.logger)
        self.registry = ProcessRegistry()
        self.supervisor = WorkerSupervisor(
            WorkersConfig(),
            RunnerConfig(command_template="true"),
            self.registry,
            self.logger,
            drafts_root=self.drafts,
        )
        self.resolver = RunArtifactResolver(self.logs, self.drafts)
        self.database = DatabaseConfig(chunk_size=100)

    def tearDown(self) -> None:
        self._temp.cleanup()

    def _coordinator(self, draft_store: FakeDraftStore | None, ledger: JobLedger | None = None) -> CleanupCoordinator:
        return CleanupCoordinator(
            ledger or self.ledger,
            self.supervisor,
            self.resolver,
            draft_store,
            self.database,
            self.logger,
        )

    def _job(self, items: list[dict], **overrides: object) -> Job:
        input_path = self.uploads / "job-1.json"
        input_path.write_text(json.dumps(items), encoding="utf-8")
        values: dict[str, object] = {
            "job_id": "job-1",
            "status": JobStatus.RUNNING,
            "input_path": str(input_path),
            "item_count": len(items),
            "worker_count": 1,
            "created_at": "2026-01-01T00:00:00+00:00",
            "started_at": "2026-01-01T00:00:01+00:00",
        }
        values.update(overrides)
        job = Job(**values)  # type: ignore[arg-type]
        self.ledger.upsert(job)
        return job

    def test_removes_code_folders_across_runs_only_for_job_codes(self) -> None:
        for relative in ("RunA/ND-1", "RunB/ND-2", "RunB/ND-9"):
            (self.drafts / relative).mkdir(parents=True)
        (self.drafts / "loose-file.txt").write_text("x", encoding="utf-8")
        job = self._job([{"sku": "ND-1"}, {"spu": "nd-2"}])
        store = FakeDraftStore()

        result = self._coordinator(store).run(job)

        self.assertFalse((self.drafts / "RunA" / "ND-1").exists())
        self.assertFalse((self.drafts / "RunB" / "ND-2").exists())
        self.assertTrue((self.drafts / "RunB" / "ND-9").is_dir())
        self.assertTrue((self.drafts / "loose-file.txt").exists())
        self.assertFalse(Path(job.input_path).exists())
        self.assertEqual(result.status, JobStatus.KILLED)
        self.assertEqual(result.error, STOP_REASON)
        self.assertIsNotNone(result.finished_at)
        self.assertEqual(
            store.calls,
            [
                ("draft_variants", "draft_spu", ["ND-1", "ND-2"]),
                ("draft_products", "draft_spu", ["ND-1", "ND-2"]),
            ],
        )

    def test_removes_run_outputs_and_coordinator_log(self) -> None:
        job = self._job([{"sku": "ND-1"}], run_stamp="S1", parallel_log_path=str(self.logs / "run-S1-parallel.log"))
        outputs = self.resolver.build_output_paths(job, "S1")
        outputs.final_folder.mkdir()
        outputs.output_excel.write_bytes(b"xlsx")
        outputs.temp_folder.mkdir()
        outputs.output_zip.write_bytes(b"zip")
        Path(job.parallel_log_path or "").write_text("started\n", encoding="utf-8")
        unrelated = self.resolver.build_output_paths(job, "S0").final_folder
        unrelated.mkdir()

        self._coordinator(FakeDraftStore()).run(job)

        for path in (outputs.final_folder, outputs.temp_folder, outputs.output_zip, Path(job.parallel_log_path or "")):
            self.assertFalse(path.exists(), path)
        self.assertTrue(unrelated.is_dir())

    def test_recovers_unrecorded_run_stamp_from_worker_logs(self) -> None:
        job = self._job([{"sku": "ND-1"}], started_at="2000-01-01T00:00:00+00:00")
        (self.logs / "run-S7-w1.csv").write_text("row\n", encoding="utf-8")
        outputs = self.resolver.build_output_paths(job, "S7")
        outputs.temp_folder.mkdir()

        self._coordinator(None).run(job)

        self.assertFalse(outputs.temp_folder.exists())

    def test_deletes_rows_in_batches_and_survives_failed_batch(self) -> None:
        items = [{"sku": f"ND-{index}"} for index in range(250)]
        job = self._job(items)
        store = FakeDraftStore(fail_on_call=3)

        result = self._coordinator(store).run(job)

        batches = [call for call in store.calls if call[0] == "draft_variants"]
        self.assertEqual([len(call[2]) for call in batches], [100, 100, 50])
        # second batch failed on the variant delete, so its product delete never ran
        self.assertEqual([len(call[2]) for call in store.calls if call[0] == "draft_products"], [100, 50])
        self.assertEqual(result.status, JobStatus.KILLED)

    def test_terminates_registered_process(self) -> None:
        job = self._job([{"sku": "ND-1"}])
        handle = FakeHandle()
        self.registry.register(job.job_id, handle)

        self._coordinator(None).run(job)

        self.assertTrue(handle.terminated)
        self.assertIsNone(self.registry.get(job.job_id))

    def test_running_twice_is_idempotent(self) -> None:
        (self.drafts / "RunA" / "ND-1").mkdir(parents=True)
        job = self._job([{"sku": "ND-1"}], pid=None)
        coordinator = self._coordinator(FakeDraftStore())

        first = coordinator.run(job)
        second = coordinator.run(first)

        self.assertEqual(second.status, JobStatus.KILLED)
        self.assertEqual(second.error, STOP_REASON)
        self.assertEqual(second.finished_at, first.finished_at)
        stored = self.ledger.get(job.job_id)
        assert stored is not None
        self.assertEqual(stored.status, JobStatus.KILLED)

    def test_missing_ledger_entry_returns_given_job(self) -> None:
        job = self._job([{"sku": "ND-1"}])
        other_ledger = JobLedger(self.root / "other.json", self.logger)

        result = self._coordinator(None, other_ledger).run(job)

        self.assertIs(result, job)
        self.assertFalse(Path(job.input_path).exists())

    def test_ledger_write_failure_propagates(self) -> None:
        job = self._job([{"sku": "ND-1"}])
        failing = FailingLedger(self.uploads / "bulk-jobs.json", self.logger)

        with self.assertRaises(OSError):
            self._coordinator(None, failing).run(job)


if __name__ == "__main__":
    unittest.main()
