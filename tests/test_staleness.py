from __future__ import annotations

from pathlib import Path
import os
import tempfile
import time
import unittest

from distbuild.graph import Target
from distbuild.modes import BuildMode, ModeConfig
from distbuild.staleness import StalenessChecker, newest_mtime
from distbuild.template import TemplateResolver


class StalenessCheckerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.workspace = Path(self.temp_dir.name)
        (self.workspace / "src").mkdir()
        (self.workspace / "out").mkdir()
        self.now = time.time()
        resolver = TemplateResolver(
            {"mode": ModeConfig(mode=BuildMode.RELEASE).context(), "output": {"root": "out"}}
        )
        self.checker = StalenessChecker(workspace=self.workspace, resolver=resolver)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _write(self, relative: str, mtime: float) -> Path:
        path = self.workspace / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(relative)
        os.utime(path, (mtime, mtime))
        return path

    def test_target_without_outputs_is_always_due(self) -> None:
        target = Target(name="run", inputs=("src",))
        self.assertEqual(self.checker.reason(target), "no declared outputs")

    def test_missing_output_is_due(self) -> None:
        self._write("src/x.txt", self.now - 10)
        target = Target(name="x", inputs=("src/x.txt",), outputs=("out/x.bin",))
        self.assertTrue(self.checker.is_due(target))
        self.assertIn("missing output out/x.bin", self.checker.reason(target))

    def test_newer_input_is_due(self) -> None:
        self._write("out/x.bin", self.now - 20)
        self._write("src/x.txt", self.now - 10)
        target = Target(name="x", inputs=("src/x.txt",), outputs=("out/x.bin",))
        self.assertIn("src/x.txt is newer", self.checker.reason(target))

    def test_equal_timestamps_are_not_newer(self) -> None:
        self._write("out/x.bin", self.now - 10)
        self._write("src/x.txt", self.now - 10)
        target = Target(name="x", inputs=("src/x.txt",), outputs=("out/x.bin",))
        self.assertFalse(self.checker.is_due(target))

    def test_input_compared_against_oldest_output(self) -> None:
        self._write("out/a.bin", self.now - 30)
        self._write("out/b.bin", self.now - 5)
        self._write("src/x.txt", self.now - 20)
        target = Target(name="x", inputs=("src/x.txt",), outputs=("out/a.bin", "out/b.bin"))
        self.assertIn("newer than output out/a.bin", self.checker.reason(target))

    def test_force_makes_up_to_date_target_due(self) -> None:
        self._write("out/x.bin", self.now)
        self._write("src/x.txt", self.now - 10)
        target = Target(name="x", inputs=("src/x.txt",), outputs=("out/x.bin",))
        self.assertFalse(self.checker.is_due(target))
        self.checker.force = True
        self.assertEqual(self.checker.reason(target), "forced")

    def test_directory_input_uses_newest_file(self) -> None:
        self._write("out/x.bin", self.now - 10)
        self._write("src/html/a.rs", self.now - 20)
        nested = self._write("src/html/deep/b.rs", self.now - 20)
        target = Target(name="x", inputs=("src/html",), outputs=("out/x.bin",))
        os.utime(self.workspace / "src" / "html", (self.now - 20, self.now - 20))
        os.utime(self.workspace / "src" / "html" / "deep", (self.now - 20, self.now - 20))
        self.assertFalse(self.checker.is_due(target))
        os.utime(nested, (self.now - 1, self.now - 1))
        self.assertTrue(self.checker.is_due(target))

    def test_glob_inputs_expand(self) -> None:
        self._write("out/x.bin", self.now - 10)
        self._write("src/a.css", self.now - 20)
        self._write("src/b.css", self.now - 5)
        target = Target(name="x", inputs=("src/*.css",), outputs=("out/x.bin",))
        self.assertIn("src/b.css", self.checker.reason(target))

    def test_missing_input_is_ignored(self) -> None:
        self._write("out/x.bin", self.now - 10)
        target = Target(name="x", inputs=("src/generated.txt",), outputs=("out/x.bin",))
        self.assertIsNone(self.checker.reason(target))

    def test_paths_resolve_mode_placeholders(self) -> None:
        self._write("target/release/server", self.now - 10)
        target = Target(name="server", outputs=("target/{{mode.subpath}}/server",))
        self.assertFalse(self.checker.is_due(target))

    def test_verify_reports_missing_output(self) -> None:
        target = Target(name="x", outputs=("out/x.bin",))
        self.assertIn("was not produced", self.checker.verify(target))

    def test_verify_reports_output_older_than_input(self) -> None:
        self._write("out/x.bin", self.now - 20)
        self._write("src/x.txt", self.now - 10)
        target = Target(name="x", inputs=("src/x.txt",), outputs=("out/x.bin",))
        self.assertIn("older than input", self.checker.verify(target))
        os.utime(self.workspace / "out" / "x.bin", (self.now, self.now))
        self.assertIsNone(self.checker.verify(target))

    def test_newest_mtime_of_missing_path(self) -> None:
        self.assertIsNone(newest_mtime(self.workspace / "nope"))

    def test_file_in_place_of_parent_directory_counts_as_missing(self) -> None:
        self._write("out/app", self.now - 10)
        self.assertIsNone(newest_mtime(self.workspace / "out" / "app" / "bin"))
        target = Target(name="app", outputs=("out/app/bin",))
        self.assertIn("missing output out/app/bin", self.checker.reason(target))

    def test_newer_prerequisite_output_is_due(self) -> None:
        self._write("out/lib.a", self.now - 10)
        self._write("out/app", self.now - 20)
        library = Target(name="lib", outputs=("out/lib.a",))
        app = Target(name="app", deps=("lib",), outputs=("out/app",))

        self.assertIsNone(self.checker.reason(app))
        self.assertIn("of prerequisite 'lib'", self.checker.reason(app, [library]))

    def test_older_prerequisite_output_is_not_due(self) -> None:
        self._write("out/lib.a", self.now - 20)
        self._write("out/app", self.now - 10)
        library = Target(name="lib", outputs=("out/lib.a",))
        app = Target(name="app", deps=("lib",), outputs=("out/app",))
        self.assertFalse(self.checker.is_due(app, [library]))


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
