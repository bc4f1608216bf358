import io
import os
import tempfile
import unittest
from contextlib import redirect_stdout

from estimate_hub.cli.bootstrap import main


class BootstrapCliTests(unittest.TestCase):
    def setUp(self):
        self._tmpdir = tempfile.TemporaryDirectory()
        self.url = f"sqlite:///{os.path.join(self._tmpdir.name, 'data', 'cli.db')}"

    def tearDown(self):
        self._tmpdir.cleanup()

    def _run(self, *args):
        buffer = io.StringIO()
        with redirect_stdout(buffer):
            code = main(["--database-url", self.url, *args])
        return code, buffer.getvalue()

    def test_dry_run_reports_guard_and_counts(self):
        code, output = self._run("--dry-run")
        self.assertEqual(code, 0)
        self.assertIn("migration_needed=False", output)
        self.assertIn("estimates=0", output)

    def test_full_run_on_empty_store(self):
        code, output = self._run()
        self.assertEqual(code, 0)
        self.assertIn("skipped=True", output)
        self.assertIn("views=0", output)

    def test_skip_migration(self):
        code, output = self._run("--skip-migration")
        self.assertEqual(code, 0)
        self.assertIn("legacy view migration disabled", output)


if __name__ == "__main__":
    unittest.main()
