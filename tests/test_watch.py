from __future__ import annotations

from pathlib import Path
from typing import List
import os
import sys
import tempfile
import threading
import time
import unittest

from watchdog.events import DirModifiedEvent, FileCreatedEvent, FileModifiedEvent, FileMovedEvent

from distbuild.build import BuildReport, TargetReport, TargetStatus
from distbuild.command_runner import RecordingCommandRunner, SubprocessCommandRunner
from distbuild.console import Console
from distbuild.errors import ActionFailure
from distbuild.modes import BuildMode
from distbuild.watch import (
    ChangeHandler,
    Debouncer,
    IgnoreRules,
    ProcessSupervisor,
    RunSpec,
    WatchLoop,
    WatchState,
    new_session,
    resolve_watch_paths,
)


def _report(success: bool = True) -> BuildReport:
    report = BuildReport(requested="dist", mode=BuildMode.DEBUG)
    status = TargetStatus.SUCCEEDED if success else TargetStatus.FAILED
    report.record(TargetReport(name="dist", status=status))
    return report


class DebouncerTests(unittest.TestCase):
    def test_burst_collapses_into_one_trigger(self) -> None:
        debouncer = Debouncer(0.3)
        self.assertFalse(debouncer.pending)
        for now in (0.0, 0.05, 0.1, 0.15, 0.2):
            debouncer.notify(now)
            self.assertFalse(debouncer.ready(now))
        self.assertFalse(debouncer.ready(0.45))
        self.assertAlmostEqual(debouncer.remaining(0.45), 0.05)
        self.assertTrue(debouncer.ready(0.5))
        debouncer.reset()
        self.assertFalse(debouncer.pending)
        self.assertIsNone(debouncer.remaining(1.0))


class IgnoreRulesTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.workspace = Path(self.temp_dir.name).resolve()
        self.rules = IgnoreRules(self.workspace, ["makefile", "target", "*.md"], extra_paths=[self.workspace / "dist"])

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_ignored_paths(self) -> None:
        for relative in ("dist/server", "dist/www/index.html", "makefile", "target/debug/server", "README.md", ".git/HEAD"):
            self.assertTrue(self.rules.matches(self.workspace / relative), relative)

    def test_watched_paths(self) -> None:
        for relative in ("src/main.rs", "index/src/app.rs", "distribution.txt", "targets.rs"):
            self.assertFalse(self.rules.matches(self.workspace / relative), relative)


class ChangeHandlerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.workspace = Path(self.temp_dir.name).resolve()
        self.session = new_session(RecordingCommandRunner(), Console("none"), debounce_ms=300)
        self.handler = ChangeHandler(self.session, IgnoreRules(self.workspace, extra_paths=[self.workspace / "dist"]))

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _drain(self) -> List[str]:
        paths = []
        while not self.session.events.empty():
            paths.append(self.session.events.get_nowait())
        return paths

    def test_forwards_file_events(self) -> None:
        source = str(self.workspace / "src" / "main.rs")
        self.handler.dispatch(FileModifiedEvent(source))
        self.handler.dispatch(FileCreatedEvent(source))
        self.assertEqual(self._drain(), [source, source])

    def test_skips_directories_and_output_tree(self) -> None:
        self.handler.dispatch(DirModifiedEvent(str(self.workspace / "src")))
        self.handler.dispatch(FileModifiedEvent(str(self.workspace / "dist" / "server")))
        self.assertEqual(self._drain(), [])

    def test_moves_report_both_ends(self) -> None:
        src = str(self.workspace / "src" / "main.rs~")
        dest = str(self.workspace / "src" / "main.rs")
        self.handler.dispatch(FileMovedEvent(src, dest))
        self.assertEqual(self._drain(), [src, dest])

    def test_deleted_paths_leave_the_snapshot(self) -> None:
        source = self.workspace / "scratch.txt"
        source.write_text("draft")
        self.assertTrue(self.session.record_change(str(source)))
        self.assertFalse(self.session.record_change(str(source)))

        source.unlink()

        self.assertTrue(self.session.record_change(str(source)))
        self.assertNotIn(str(source), self.session.snapshot)
        self.assertEqual(self.session.snapshot, {})


class WatchLoopTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.workspace = Path(self.temp_dir.name).resolve()
        self.runner = RecordingCommandRunner()
        self.console = Console("none")
        self.builds: List[float] = []

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _loop(self, build, *, run_spec: RunSpec | None = None, debounce_ms: int = 300) -> WatchLoop:
        session = new_session(self.runner, self.console, debounce_ms=debounce_ms)
        return WatchLoop(
            build=build,
            session=session,
            console=self.console,
            ignore=IgnoreRules(self.workspace, extra_paths=[self.workspace / "dist"]),
            run_spec=run_spec,
            initial_build=False,
            observer_factory=None,
            poll_interval=0.01,
        )

    def _counting_build(self) -> BuildReport:
        self.builds.append(time.monotonic())
        return _report()

    def _start(self, loop: WatchLoop) -> tuple[threading.Thread, threading.Event]:
        stop = threading.Event()
        thread = threading.Thread(target=loop.run, args=(stop,), daemon=True)
        thread.start()
        return thread, stop

    def test_burst_of_changes_triggers_single_build(self) -> None:
        loop = self._loop(self._counting_build)
        thread, stop = self._start(loop)
        for index in range(5):
            loop.session.events.put(str(self.workspace / "src" / f"file{index}.rs"))
            time.sleep(0.02)
        time.sleep(0.9)
        stop.set()
        thread.join(timeout=5)

        self.assertFalse(thread.is_alive())
        self.assertEqual(len(self.builds), 1)
        self.assertEqual(loop.session.builds, 1)
        self.assertEqual(loop.session.state, WatchState.IDLE)

    def test_ignored_and_unchanged_paths_do_not_trigger(self) -> None:
        loop = self._loop(self._counting_build, debounce_ms=50)
        source = self.workspace / "main.rs"
        source.write_text("fn main() {}")
        loop.session.record_change(str(source))
        thread, stop = self._start(loop)
        loop.session.events.put(str(self.workspace / "dist" / "server"))
        loop.session.events.put(str(source))
        time.sleep(0.4)
        stop.set()
        thread.join(timeout=5)
        self.assertEqual(self.builds, [])

    def test_failed_build_keeps_watching(self) -> None:
        outcomes = [ActionFailure("boom"), _report(success=False), _report()]

        def build() -> BuildReport:
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        loop = self._loop(build)
        self.assertIsNone(loop.build_cycle())
        self.assertEqual(loop.session.state, WatchState.IDLE)
        self.assertFalse(loop.build_cycle().success)
        self.assertEqual(loop.session.state, WatchState.IDLE)
        self.assertTrue(loop.build_cycle().success)
        self.assertEqual(loop.session.builds, 3)

    def test_run_step_restarted_after_each_build(self) -> None:
        spec = RunSpec(command=["./server", "8000"], cwd=self.workspace / "dist")
        loop = self._loop(lambda: _report(), run_spec=spec)

        loop.build_cycle()
        self.assertEqual(loop.session.state, WatchState.RUNNING)
        first = self.runner.processes[0]
        self.assertFalse(first.terminated)

        loop.build_cycle()
        self.assertTrue(first.terminated)
        self.assertEqual(len(self.runner.processes), 2)
        self.assertFalse(self.runner.processes[1].terminated)
        self.assertEqual(self.runner.commands[-1].command, ["./server", "8000"])

    def test_run_step_not_started_after_failure(self) -> None:
        spec = RunSpec(command=["./server"], cwd=self.workspace)
        loop = self._loop(lambda: _report(success=False), run_spec=spec)
        loop.build_cycle()
        self.assertEqual(self.runner.processes, [])

    def test_stopping_loop_terminates_child(self) -> None:
        spec = RunSpec(command=["./server"], cwd=self.workspace)
        loop = self._loop(lambda: _report(), run_spec=spec)
        loop.initial_build = True
        thread, stop = self._start(loop)
        deadline = time.monotonic() + 5
        while not self.runner.processes and time.monotonic() < deadline:
            time.sleep(0.01)
        stop.set()
        thread.join(timeout=5)
        self.assertTrue(self.runner.processes[0].terminated)


class ProcessSupervisorTests(unittest.TestCase):
    def test_stop_terminates_real_child(self) -> None:
        supervisor = ProcessSupervisor(SubprocessCommandRunner(), Console("none"), grace_period=5)
        with tempfile.TemporaryDirectory() as tmp:
            process = supervisor.start(
                RunSpec(command=[sys.executable, "-c", "import time; time.sleep(30)"], cwd=Path(tmp))
            )
            self.assertTrue(supervisor.running)
            supervisor.stop()
        self.assertIsNotNone(process.poll())
        self.assertFalse(supervisor.running)

    def test_child_exiting_on_its_own(self) -> None:
        supervisor = ProcessSupervisor(SubprocessCommandRunner(), Console("none"))
        process = supervisor.start(RunSpec(command=[sys.executable, "-c", "raise SystemExit(4)"], cwd=Path(os.getcwd())))
        process.wait(timeout=10)
        self.assertFalse(supervisor.running)
        self.assertEqual(supervisor.stop(), 4)


class WatchPathTests(unittest.TestCase):
    def test_resolve_watch_paths_skips_missing(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            workspace = Path(tmp).resolve()
            (workspace / "src").mkdir()
            paths = resolve_watch_paths(workspace, [".", "src", "missing", "src"])
        self.assertEqual(paths, [workspace, workspace / "src"])


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
