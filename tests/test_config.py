from pathlib import Path
from tempfile import TemporaryDirectory
import unittest

from bulkjobs.config import load_config

MINIMAL = """
paths:
  uploads: "./uploads"
  logs: "./logs"
  drafts: "./drafts"
""".strip()


class ConfigTest(unittest.TestCase):
    def _write(self, root: Path, text: str) -> Path:
        config_path = root / "bulkjobs.yaml"
        config_path.write_text(text, encoding="utf-8")
        return config_path

    def test_load_config_defaults(self) -> None:
        with TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            config = load_config(self._write(root, MINIMAL), env={})
            self.assertEqual(config.workers.max, 4)
            self.assertEqual(config.workers.default, 1)
            self.assertEqual(config.runner.worker_log_ext, "csv")
            self.assertEqual(config.runner.stamp_tolerance_seconds, 60.0)
            self.assertEqual(config.database.chunk_size, 100)
            self.assertEqual(config.database.variants_table, "draft_variants")
            self.assertFalse(config.database.configured)
            self.assertEqual(config.paths.uploads.resolve(), (root / "uploads").resolve())
            self.assertEqual(config.paths.ledger.resolve(), (root / "uploads" / "bulk-jobs.json").resolve())

    def test_environment_overrides_worker_limits_and_database(self) -> None:
        with TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            text = MINIMAL + "\nworkers:\n  max: 8\n  default: 2\n"
            config = load_config(
                self._write(root, text),
                env={
                    "BULK_JOB_MAX_WORKERS": "6",
                    "BULK_JOB_DEFAULT_WORKERS": "zero",
                    "SUPABASE_URL": "https://example.supabase.co",
                    "SUPABASE_SERVICE_ROLE": "service-key",
                },
            )
            self.assertEqual(config.workers.max, 6)
            self.assertEqual(config.workers.default, 2)
            self.assertTrue(config.database.configured)
            self.assertEqual(config.database.url, "https://example.supabase.co")

    def test_missing_paths_are_reported(self) -> None:
        with TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            with self.assertRaisesRegex(ValueError, "paths.drafts"):
                load_config(self._write(root, 'paths:\n  uploads: "./u"\n  logs: "./l"\n'), env={})
            with self.assertRaisesRegex(ValueError, "root.paths"):
                load_config(self._write(root, "workers:\n  max: 2\n"), env={})

    def test_invalid_worker_limit_is_rejected(self) -> None:
        with TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            with self.assertRaisesRegex(ValueError, "workers.max"):
                load_config(self._write(root, MINIMAL + "\nworkers:\n  max: 0\n"), env={})


if __name__ == "__main__":
    unittest.main()
