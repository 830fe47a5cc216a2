"""Command line interface for distbuild."""
from __future__ import annotations

from argparse import ArgumentParser, Namespace
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator, List
import signal
import sys
import threading

from .build import BuildEngine, BuildReport, TargetStatus
from .command_runner import CommandRunner, RecordingCommandRunner, SubprocessCommandRunner
from .config_loader import ConfigurationStore, resolve_config_directories
from .console import Console
from .directories import DirectoryLifecycle
from .errors import (
    EXIT_BUILD_FAILED,
    EXIT_INTERRUPTED,
    EXIT_IO_ERROR,
    EXIT_OK,
    ConfigError,
    DistbuildError,
)
from .modes import BuildMode
from .template import check_placeholders
from .watch import IgnoreRules, RunSpec, WatchLoop, merge_env, new_session, resolve_watch_paths


def _make_runner(dry_run: bool) -> SubprocessCommandRunner | RecordingCommandRunner:
    return RecordingCommandRunner() if dry_run else SubprocessCommandRunner()


def _emit_dry_run_output(runner: RecordingCommandRunner, *, workspace: Path) -> None:
    for line in runner.iter_formatted(workspace=workspace):
        print(line)


def _load_configuration_store(args: Namespace, workspace: Path) -> ConfigurationStore:
    directories = resolve_config_directories(workspace, getattr(args, "config_dirs", []) or [])
    return ConfigurationStore.from_directories(workspace, directories)


def _make_console(args: Namespace, store: ConfigurationStore | None = None, *, dry_run: bool = False) -> Console:
    level = getattr(args, "log_level", None)
    if level is None and getattr(args, "verbose", False):
        level = "debug"
    if level is None and getattr(args, "quiet", False):
        level = "error"
    if level is None:
        level = store.global_config.log_level if store else "info"
    try:
        return Console(level, dry_run=dry_run)
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc


def _select_mode(args: Namespace, store: ConfigurationStore) -> BuildMode:
    if getattr(args, "release", False):
        return BuildMode.RELEASE
    return BuildMode.parse(getattr(args, "mode", None) or store.global_config.default_mode)


def _make_engine(
    store: ConfigurationStore,
    workspace: Path,
    console: Console,
    *,
    runner: CommandRunner,
    out_dir: str | None = None,
    jobs: int | None = None,
) -> BuildEngine:
    output_root = store.output_root(out_dir)
    lifecycle = DirectoryLifecycle(output_root, store.output.directories, workspace=workspace)
    return BuildEngine(
        graph=store.build_graph(),
        runner=runner,
        workspace=workspace,
        console=console,
        lifecycle=lifecycle,
        modes=store.modes,
        base_context=store.template_context(output_root),
        jobs=jobs or store.global_config.jobs,
    )


def _apply_run_overrides(args: Namespace, store: ConfigurationStore) -> None:
    port = getattr(args, "port", None)
    if port is not None:
        store.run.port = port
    run_args: List[str] = getattr(args, "run_args", None) or []
    if run_args:
        store.run.args = [*store.run.args, *run_args]


def _run_spec(store: ConfigurationStore, engine: BuildEngine, mode: BuildMode) -> RunSpec:
    if not store.run.configured:
        raise ConfigError("No [run] command is configured")
    mode_config = engine.mode_config(mode)
    resolver = engine.executor().resolver_for(mode_config)
    command = resolver.expand_args(store.run.command)
    cwd = Path(resolver.resolve_text(store.run.cwd)).expanduser()
    if not cwd.is_absolute():
        cwd = engine.workspace / cwd
    env = merge_env(mode_config.env, {key: resolver.resolve_text(value) for key, value in store.run.env.items()})
    return RunSpec(command=command, cwd=cwd, env=env)


def report_exit_code(report: BuildReport) -> int:
    if report.success:
        return EXIT_OK
    if report.io_failure:
        return EXIT_IO_ERROR
    return EXIT_BUILD_FAILED


def _print_report(console: Console, report: BuildReport) -> None:
    for entry in report.entries.values():
        line = f"  {entry.name}: {entry.status.value}"
        if entry.status in (TargetStatus.SUCCEEDED, TargetStatus.FAILED):
            line = f"{line} ({entry.duration:.1f}s)"
        if entry.status in (TargetStatus.FAILED, TargetStatus.ABORTED) and entry.reason:
            line = f"{line} - {entry.reason}"
        console.info(line)
    for entry in report.failed():
        console.block(f"{entry.name} log", entry.log, error=True)
    aborted = report.aborted()
    if aborted:
        console.error(f"Not built because a prerequisite failed: {', '.join(entry.name for entry in aborted)}")
    if report.success:
        console.info(report.summary())
    else:
        console.error(report.summary())


@contextmanager
def _stop_on_signals(stop: threading.Event) -> Iterator[None]:
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _handler(signum: int, frame: object) -> None:
        stop.set()

    previous = {sig: signal.getsignal(sig) for sig in (signal.SIGINT, signal.SIGTERM)}
    for sig in previous:
        signal.signal(sig, _handler)
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def _add_mode_arguments(parser: ArgumentParser) -> None:
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--mode", choices=[mode.value for mode in BuildMode], help="Build mode (default from configuration)")
    group.add_argument("--release", action="store_true", help="Shorthand for --mode release")


def _add_run_arguments(parser: ArgumentParser) -> None:
    parser.add_argument("--port", type=int, help="Port passed to the run step (default from configuration)")
    parser.add_argument(
        "--run-arg",
        dest="run_args",
        action="append",
        default=[],
        metavar="ARG",
        help="Extra argument appended to the run step (repeatable)",
    )


def _parse_arguments(argv: Iterable[str]) -> Namespace:
    parser = ArgumentParser(prog="distbuild", description="Dependency-ordered build orchestrator with watch mode")
    parser.add_argument("-w", "--workspace", type=Path, help="Workspace root (default: current directory)")
    parser.add_argument(
        "-C",
        "--config-dir",
        dest="config_dirs",
        action="append",
        default=[],
        metavar="PATH",
        help="Additional configuration directory (repeat or separate with PATH separator)",
    )
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("--log-level", choices=list(Console.LEVELS), help="Console log level")
    verbosity.add_argument("-v", "--verbose", action="store_true", help="Enable debug output")
    verbosity.add_argument("-q", "--quiet", action="store_true", help="Only report errors")
    subparsers = parser.add_subparsers(dest="command", required=True)

    build_parser = subparsers.add_parser("build", help="Build a target and its prerequisites")
    build_parser.add_argument("target", nargs="?", help="Target to build (default from configuration)")
    _add_mode_arguments(build_parser)
    build_parser.add_argument("--clean", action="store_true", help="Recreate the whole output tree first")
    build_parser.add_argument("--force", action="store_true", help="Rebuild every target regardless of timestamps")
    build_parser.add_argument("-j", "--jobs", type=int, help="Maximum number of actions run in parallel")
    build_parser.add_argument("--dry-run", action="store_true", help="Print commands without executing them")
    build_parser.add_argument("--out-dir", help="Override the output root")

    watch_parser = subparsers.add_parser("watch", help="Rebuild whenever watched sources change")
    watch_parser.add_argument("target", nargs="?", help="Target to rebuild (default from configuration)")
    _add_mode_arguments(watch_parser)
    watch_parser.add_argument("--run", action="store_true", help="Run the produced artifact after each successful build")
    watch_parser.add_argument("--debounce-ms", type=int, help="Quiet period before a rebuild starts")
    watch_parser.add_argument("--ignore", action="append", default=[], metavar="PATH", help="Additional path or pattern to ignore")
    watch_parser.add_argument("--no-initial-build", action="store_true", help="Wait for the first change before building")
    watch_parser.add_argument("-j", "--jobs", type=int, help="Maximum number of actions run in parallel")
    watch_parser.add_argument("--out-dir", help="Override the output root")
    _add_run_arguments(watch_parser)

    run_parser = subparsers.add_parser("run", help="Build, then run the produced artifact in the foreground")
    run_parser.add_argument("target", nargs="?", help="Target to build first (default from configuration)")
    _add_mode_arguments(run_parser)
    run_parser.add_argument("-j", "--jobs", type=int, help="Maximum number of actions run in parallel")
    run_parser.add_argument("--out-dir", help="Override the output root")
    _add_run_arguments(run_parser)

    list_parser = subparsers.add_parser("list", help="List configured targets")
    list_parser.add_argument("--plan", metavar="TARGET", help="Show the resolved build order for TARGET")

    subparsers.add_parser("validate", help="Validate configuration files")

    return parser.parse_args(list(argv))


def main(argv: Iterable[str] | None = None) -> int:
    args = _parse_arguments(sys.argv[1:] if argv is None else argv)
    workspace = (args.workspace or Path.cwd()).resolve()

    handlers = {
        "build": _handle_build,
        "watch": _handle_watch,
        "run": _handle_run,
        "list": _handle_list,
        "validate": _handle_validate,
    }
    handler = handlers.get(args.command)
    if handler is None:
        raise ValueError(f"Unknown command: {args.command}")
    try:
        return handler(args, workspace)
    except DistbuildError as exc:
        print(f"[ERROR] {exc}", file=sys.stderr)
        return exc.exit_code
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return EXIT_INTERRUPTED


def _handle_build(args: Namespace, workspace: Path) -> int:
    store = _load_configuration_store(args, workspace)
    console = _make_console(args, store, dry_run=args.dry_run)
    runner = _make_runner(args.dry_run)
    engine = _make_engine(store, workspace, console, runner=runner, out_dir=args.out_dir, jobs=args.jobs)
    target = args.target or store.default_target()

    report = engine.build(target, _select_mode(args, store), clean=args.clean, force=args.force, dry_run=args.dry_run)
    _print_report(console, report)
    if args.dry_run and isinstance(runner, RecordingCommandRunner):
        _emit_dry_run_output(runner, workspace=workspace)
    return report_exit_code(report)


def _handle_watch(args: Namespace, workspace: Path) -> int:
    store = _load_configuration_store(args, workspace)
    console = _make_console(args, store)
    _apply_run_overrides(args, store)
    runner = SubprocessCommandRunner()
    engine = _make_engine(store, workspace, console, runner=runner, out_dir=args.out_dir, jobs=args.jobs)
    mode = _select_mode(args, store)
    target = args.target or store.default_target()
    # Graph errors end the command instead of every rebuild.
    engine.plan(target)

    run_spec = _run_spec(store, engine, mode) if args.run else None
    debounce_ms = args.debounce_ms if args.debounce_ms is not None else store.watch.debounce_ms
    session = new_session(runner, console, debounce_ms=debounce_ms)
    ignore = IgnoreRules(workspace, [*store.watch.ignore, *args.ignore], extra_paths=[engine.lifecycle.root])

    def build() -> BuildReport:
        report = engine.build(target, mode)
        _print_report(console, report)
        return report

    loop = WatchLoop(
        build=build,
        session=session,
        console=console,
        watch_paths=resolve_watch_paths(workspace, store.watch.paths),
        ignore=ignore,
        run_spec=run_spec,
        initial_build=store.watch.initial_build and not args.no_initial_build,
    )
    stop = threading.Event()
    with _stop_on_signals(stop):
        loop.run(stop)
    return EXIT_OK


def _handle_run(args: Namespace, workspace: Path) -> int:
    store = _load_configuration_store(args, workspace)
    console = _make_console(args, store)
    _apply_run_overrides(args, store)
    runner = SubprocessCommandRunner()
    engine = _make_engine(store, workspace, console, runner=runner, out_dir=args.out_dir, jobs=args.jobs)
    mode = _select_mode(args, store)
    target = args.target or store.default_target()
    run_spec = _run_spec(store, engine, mode)

    report = engine.build(target, mode)
    _print_report(console, report)
    if not report.success:
        return report_exit_code(report)

    session = new_session(runner, console, debounce_ms=store.watch.debounce_ms)
    supervisor = session.supervisor
    process = supervisor.start(run_spec)
    stop = threading.Event()
    with _stop_on_signals(stop):
        while not stop.is_set() and process.poll() is None:
            stop.wait(0.2)
    if process.poll() is None:
        supervisor.stop()
        return EXIT_OK
    code = process.poll() or 0
    console.info(f"Run step exited with status {code}")
    return code


def _handle_list(args: Namespace, workspace: Path) -> int:
    store = _load_configuration_store(args, workspace)
    graph = store.build_graph()
    if args.plan:
        plan = graph.resolve(args.plan)
        for index, wave in enumerate(plan.waves(), start=1):
            print(f"wave {index}: {', '.join(target.name for target in wave)}")
        return EXIT_OK

    default = store.global_config.default_target
    for target in graph:
        marker = " (default)" if target.name == default else ""
        deps = f" <- {', '.join(target.deps)}" if target.deps else ""
        print(f"{target.name}{marker}{deps}")
        if target.description:
            print(f"    {target.description}")
        if args.verbose and target.action is not None:
            for line in target.action.describe():
                print(f"    $ {line}")
    return EXIT_OK


def _handle_validate(args: Namespace, workspace: Path) -> int:
    store = _load_configuration_store(args, workspace)
    console = _make_console(args, store)
    graph = store.build_graph()
    graph.check()
    if store.global_config.default_target:
        graph.get(store.global_config.default_target)

    engine = _make_engine(store, workspace, console, runner=RecordingCommandRunner())
    problems: List[str] = []
    for mode in BuildMode:
        resolver = engine.executor().resolver_for(engine.mode_config(mode))
        for definition in store.targets.values():
            for problem in check_placeholders(resolver, definition.templates()):
                problems.append(f"[{mode.value}] targets.{definition.name}: {problem}")
        for problem in check_placeholders(resolver, [*store.run.command, store.run.cwd, *store.run.env.values()]):
            problems.append(f"[{mode.value}] run: {problem}")
    if problems:
        raise ConfigError("Invalid configuration:\n" + "\n".join(problems))
    print("Validation successful")
    return EXIT_OK


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
