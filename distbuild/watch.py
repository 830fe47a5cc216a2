"""Watch mode: rebuild (and optionally rerun) whenever sources change."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from fnmatch import fnmatch
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Sequence
import os
import queue
import subprocess
import threading
import time

from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from .build import BuildReport
from .command_runner import CommandRunner, ProcessHandle
from .console import Console
from .errors import DistbuildError


_RELEVANT_EVENTS = {EVENT_TYPE_CREATED, EVENT_TYPE_DELETED, EVENT_TYPE_MODIFIED, EVENT_TYPE_MOVED}
_GLOB_CHARS = frozenset("*?[")
_MISSING = object()

DEFAULT_IGNORES = (".git",)


class WatchState(str, Enum):
    IDLE = "idle"
    DEBOUNCING = "debouncing"
    BUILDING = "building"
    RUNNING = "running"


class Debouncer:
    """Collapses a burst of notifications into one trigger after a quiet period."""

    def __init__(self, window: float) -> None:
        self.window = window
        self._last: float | None = None

    @property
    def pending(self) -> bool:
        return self._last is not None

    def notify(self, now: float) -> None:
        self._last = now

    def remaining(self, now: float) -> float | None:
        if self._last is None:
            return None
        return max(0.0, self._last + self.window - now)

    def ready(self, now: float) -> bool:
        return self._last is not None and now - self._last >= self.window

    def reset(self) -> None:
        self._last = None


class IgnoreRules:
    """Paths whose changes never trigger a rebuild.

    Plain entries are workspace-relative (or absolute) paths and ignore
    everything beneath them; entries with glob characters are matched against
    the workspace-relative path and the file name.
    """

    def __init__(self, workspace: Path, entries: Iterable[str] = (), *, extra_paths: Iterable[Path] = ()) -> None:
        self.workspace = workspace.resolve()
        self.paths: List[Path] = [Path(path).resolve() for path in extra_paths]
        self.patterns: List[str] = []
        for entry in [*DEFAULT_IGNORES, *entries]:
            if _GLOB_CHARS.intersection(entry):
                self.patterns.append(entry)
                continue
            path = Path(entry).expanduser()
            self.paths.append((path if path.is_absolute() else self.workspace / path).resolve())

    def matches(self, path: "str | Path") -> bool:
        candidate = Path(os.path.abspath(path))
        for ignored in self.paths:
            if candidate == ignored or ignored in candidate.parents:
                return True
        if not self.patterns:
            return False
        try:
            relative = candidate.relative_to(self.workspace).as_posix()
        except ValueError:
            relative = candidate.as_posix()
        return any(fnmatch(relative, pattern) or fnmatch(candidate.name, pattern) for pattern in self.patterns)


@dataclass(slots=True)
class RunSpec:
    """The produced artefact to start after each successful build."""

    command: List[str]
    cwd: Path
    env: Dict[str, str] = field(default_factory=dict)


class ProcessSupervisor:
    """Keeps at most one child process alive and terminates it on request."""

    def __init__(self, runner: CommandRunner, console: Console, *, grace_period: float = 5.0) -> None:
        self.runner = runner
        self.console = console
        self.grace_period = grace_period
        self.process: ProcessHandle | None = None

    @property
    def running(self) -> bool:
        return self.process is not None and self.process.poll() is None

    def start(self, spec: RunSpec) -> ProcessHandle:
        self.stop()
        self.console.info(f"Running {self.runner.format_command(spec.command)} (cwd={spec.cwd})")
        self.process = self.runner.spawn(spec.command, cwd=spec.cwd, env=spec.env, note="run")
        return self.process

    def stop(self) -> int | None:
        process = self.process
        if process is None:
            return None
        self.process = None
        if process.poll() is not None:
            return process.poll()
        self.console.info(f"Stopping process {process.pid}")
        process.terminate()
        try:
            return process.wait(timeout=self.grace_period)
        except subprocess.TimeoutExpired:
            self.console.error(f"Process {process.pid} ignored SIGTERM; killing it")
            process.kill()
            return process.wait()


@dataclass
class WatchSession:
    """State owned by one watch loop; nothing here is process-global."""

    debouncer: Debouncer
    supervisor: ProcessSupervisor
    state: WatchState = WatchState.IDLE
    events: "queue.Queue[str]" = field(default_factory=queue.Queue)
    snapshot: Dict[str, float] = field(default_factory=dict)
    builds: int = 0
    last_report: BuildReport | None = None

    def record_change(self, path: str) -> bool:
        """Update the snapshot for ``path``; False when its mtime did not move.

        Deleted paths leave the snapshot so it only tracks files that exist.
        """

        try:
            mtime = os.stat(path).st_mtime
        except OSError:
            self.snapshot.pop(path, None)
            return True
        previous = self.snapshot.get(path, _MISSING)
        self.snapshot[path] = mtime
        return previous is _MISSING or previous != mtime


class ChangeHandler(FileSystemEventHandler):
    """Forwards relevant file events into the session queue."""

    def __init__(self, session: WatchSession, ignore: IgnoreRules) -> None:
        super().__init__()
        self.session = session
        self.ignore = ignore

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type not in _RELEVANT_EVENTS:
            return
        paths = [event.src_path]
        if event.event_type == EVENT_TYPE_MOVED:
            paths.append(getattr(event, "dest_path", ""))
        for raw in paths:
            if not raw:
                continue
            path = os.fsdecode(raw)
            if not self.ignore.matches(path):
                self.session.events.put(path)


class WatchLoop:
    """Idle -> Debouncing -> Building -> (Running) -> Idle, until stopped."""

    def __init__(
        self,
        *,
        build: Callable[[], BuildReport],
        session: WatchSession,
        console: Console,
        watch_paths: Sequence[Path] = (),
        ignore: IgnoreRules | None = None,
        run_spec: RunSpec | None = None,
        initial_build: bool = True,
        observer_factory: Callable[[], object] | None = Observer,
        clock: Callable[[], float] = time.monotonic,
        poll_interval: float = 0.1,
    ) -> None:
        self.build = build
        self.session = session
        self.console = console
        self.watch_paths = list(watch_paths)
        self.ignore = ignore
        self.run_spec = run_spec
        self.initial_build = initial_build
        self.observer_factory = observer_factory
        self.clock = clock
        self.poll_interval = poll_interval

    def _start_observer(self):
        if self.observer_factory is None or self.ignore is None:
            return None
        observer = self.observer_factory()
        handler = ChangeHandler(self.session, self.ignore)
        for path in self.watch_paths:
            observer.schedule(handler, str(path), recursive=True)
            self.console.debug(f"Watching: {path}")
        observer.start()
        return observer

    def run(self, stop_event: threading.Event) -> None:
        observer = self._start_observer()
        self.console.info("Watching for changes... (Ctrl+C to stop)")
        try:
            if self.initial_build:
                self.build_cycle()
            while not stop_event.is_set():
                if self.wait_for_change(stop_event):
                    self.build_cycle()
        finally:
            if observer is not None:
                observer.stop()
                observer.join()
            self.session.supervisor.stop()
            self.session.state = WatchState.IDLE
            self.console.info("Stopped watching")

    def _qualifies(self, path: str) -> bool:
        if self.ignore is not None and self.ignore.matches(path):
            return False
        return self.session.record_change(path)

    def wait_for_change(self, stop_event: threading.Event) -> bool:
        """Block until a burst of changes has gone quiet; False if stopped first."""

        session = self.session
        debouncer = session.debouncer
        while not debouncer.pending:
            if stop_event.is_set():
                return False
            self._check_child()
            try:
                path = session.events.get(timeout=self.poll_interval)
            except queue.Empty:
                continue
            if self._qualifies(path):
                self.console.debug(f"Change detected: {path}")
                session.state = WatchState.DEBOUNCING
                debouncer.notify(self.clock())

        while True:
            if stop_event.is_set():
                debouncer.reset()
                return False
            remaining = debouncer.remaining(self.clock())
            if remaining is None or remaining <= 0:
                break
            try:
                path = session.events.get(timeout=min(remaining, self.poll_interval))
            except queue.Empty:
                continue
            if self._qualifies(path):
                debouncer.notify(self.clock())
        debouncer.reset()
        return True

    def _check_child(self) -> None:
        supervisor = self.session.supervisor
        if self.session.state is WatchState.RUNNING and not supervisor.running:
            code = supervisor.stop()
            self.console.info(f"Run step exited with status {code}")
            self.session.state = WatchState.IDLE

    def build_cycle(self) -> BuildReport | None:
        session = self.session
        session.supervisor.stop()
        session.state = WatchState.BUILDING
        session.builds += 1
        report: BuildReport | None
        try:
            report = self.build()
        except DistbuildError as exc:
            self.console.error(f"Build failed: {exc}")
            report = None
        session.last_report = report

        if report is None or not report.success:
            self.console.error("Build failed; waiting for further changes")
            session.state = WatchState.IDLE
            return report
        if self.run_spec is not None:
            session.supervisor.start(self.run_spec)
            session.state = WatchState.RUNNING
        else:
            session.state = WatchState.IDLE
        return report


def new_session(
    runner: CommandRunner,
    console: Console,
    *,
    debounce_ms: int,
    grace_period: float = 5.0,
) -> WatchSession:
    return WatchSession(
        debouncer=Debouncer(debounce_ms / 1000.0),
        supervisor=ProcessSupervisor(runner, console, grace_period=grace_period),
    )


def resolve_watch_paths(workspace: Path, entries: Iterable[str]) -> List[Path]:
    paths: List[Path] = []
    for entry in entries:
        path = Path(entry).expanduser()
        path = (path if path.is_absolute() else workspace / path).resolve()
        if path.is_dir() and path not in paths:
            paths.append(path)
    return paths


def merge_env(*layers: Mapping[str, str]) -> Dict[str, str]:
    merged: Dict[str, str] = {}
    for layer in layers:
        merged.update(layer)
    return merged
