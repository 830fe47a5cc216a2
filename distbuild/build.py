"""Build planning and wave-parallel execution."""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping
import os
import time

from .actions import ActionContext
from .command_runner import CommandRunner
from .console import Console
from .directories import DirectoryLifecycle
from .errors import ActionFailure, DirectoryError, DistbuildError
from .graph import ExecutionPlan, Target, TargetGraph
from .modes import BuildMode, ModeConfig, align_flag_sets, default_modes
from .staleness import StalenessChecker
from .template import TemplateResolver


class TargetStatus(str, Enum):
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"
    ABORTED = "aborted"


ERROR_ACTION = "action"
ERROR_IO = "io"


@dataclass(slots=True)
class TargetReport:
    name: str
    status: TargetStatus
    log: str = ""
    reason: str | None = None
    error_kind: str | None = None
    duration: float = 0.0


@dataclass(slots=True)
class BuildReport:
    requested: str
    mode: BuildMode
    entries: Dict[str, TargetReport] = field(default_factory=dict)

    def record(self, entry: TargetReport) -> None:
        self.entries[entry.name] = entry

    def status_of(self, name: str) -> TargetStatus | None:
        entry = self.entries.get(name)
        return entry.status if entry else None

    def failed(self) -> List[TargetReport]:
        return [entry for entry in self.entries.values() if entry.status is TargetStatus.FAILED]

    def aborted(self) -> List[TargetReport]:
        return [entry for entry in self.entries.values() if entry.status is TargetStatus.ABORTED]

    @property
    def success(self) -> bool:
        return not any(
            entry.status in (TargetStatus.FAILED, TargetStatus.ABORTED) for entry in self.entries.values()
        )

    @property
    def io_failure(self) -> bool:
        return any(entry.error_kind == ERROR_IO for entry in self.failed())

    def counts(self) -> Dict[TargetStatus, int]:
        counts = {status: 0 for status in TargetStatus}
        for entry in self.entries.values():
            counts[entry.status] += 1
        return counts

    def summary(self) -> str:
        counts = self.counts()
        parts = [f"{counts[status]} {status.value}" for status in TargetStatus if counts[status]]
        outcome = "succeeded" if self.success else "FAILED"
        return f"Build of '{self.requested}' ({self.mode.value}) {outcome}: {', '.join(parts) or 'nothing to do'}"


class Executor:
    """Runs an execution plan wave by wave.

    Targets within a wave share no dependency edge and run concurrently on a
    bounded thread pool; a wave is joined before the next one starts. A failed
    target aborts its not-yet-started dependents while unrelated work goes on.
    """

    def __init__(
        self,
        *,
        workspace: Path,
        runner: CommandRunner,
        console: Console,
        lifecycle: DirectoryLifecycle,
        base_context: Mapping[str, Any] | None = None,
        jobs: int | None = None,
        force: bool = False,
        dry_run: bool = False,
    ) -> None:
        self.workspace = workspace
        self.runner = runner
        self.console = console
        self.lifecycle = lifecycle
        self.base_context = dict(base_context or {})
        self.jobs = max(1, jobs or os.cpu_count() or 1)
        self.force = force
        self.dry_run = dry_run

    def resolver_for(self, mode: ModeConfig) -> TemplateResolver:
        context = dict(self.base_context)
        context.setdefault("workspace", str(self.workspace))
        context.setdefault("env", dict(os.environ))
        context["mode"] = mode.context()
        return TemplateResolver(context)

    def run(self, plan: ExecutionPlan, mode: ModeConfig) -> BuildReport:
        resolver = self.resolver_for(mode)
        checker = StalenessChecker(workspace=self.workspace, resolver=resolver, force=self.force)
        report = BuildReport(requested=plan.requested, mode=mode.mode)
        rebuilt: set[str] = set()
        by_name = {target.name: target for target in plan}

        with ThreadPoolExecutor(max_workers=self.jobs, thread_name_prefix="distbuild") as pool:
            for wave in plan.waves():
                runnable: List[Target] = []
                for target in wave:
                    blocker = self._blocking_dependency(target, report)
                    if blocker is not None:
                        report.record(
                            TargetReport(
                                name=target.name,
                                status=TargetStatus.ABORTED,
                                reason=f"prerequisite '{blocker}' {report.status_of(blocker).value}",
                            )
                        )
                        self.console.error(f"{target.name}: aborted (prerequisite '{blocker}' did not build)")
                        continue
                    runnable.append(target)

                futures = [
                    pool.submit(
                        self._execute,
                        target,
                        mode,
                        resolver,
                        checker,
                        self._prerequisite_targets(target, by_name),
                        self._rebuilt_dependency(target, rebuilt),
                    )
                    for target in runnable
                ]
                # Joining every future is the wave barrier.
                for target, future in zip(runnable, futures):
                    entry = future.result()
                    report.record(entry)
                    if entry.status is TargetStatus.SUCCEEDED and (target.outputs or target.is_group):
                        rebuilt.add(target.name)
                    elif entry.status is TargetStatus.FAILED:
                        blocked = plan.dependents(target.name)
                        if blocked:
                            self.console.error(f"{target.name}: not building dependents {', '.join(blocked)}")
        return report

    @staticmethod
    def _prerequisite_targets(target: Target, by_name: Mapping[str, Target]) -> List[Target]:
        """Prerequisites whose outputs act as implicit inputs, looking through group targets."""

        found: List[Target] = []
        pending = list(target.deps)
        seen: set[str] = set()
        while pending:
            name = pending.pop(0)
            if name in seen:
                continue
            seen.add(name)
            dep = by_name[name]
            if dep.is_group:
                pending.extend(dep.deps)
            elif dep.outputs:
                found.append(dep)
        return found

    @staticmethod
    def _blocking_dependency(target: Target, report: BuildReport) -> str | None:
        for dep in target.deps:
            if report.status_of(dep) in (TargetStatus.FAILED, TargetStatus.ABORTED):
                return dep
        return None

    @staticmethod
    def _rebuilt_dependency(target: Target, rebuilt: set[str]) -> str | None:
        for dep in target.deps:
            if dep in rebuilt:
                return dep
        return None

    def _target_directories(self, target: Target, checker: StalenessChecker) -> List[Path]:
        directories = [path.parent for path in checker.resolve_paths(target.outputs)]
        directories.extend(checker.resolve_paths(target.directories))
        unique: List[Path] = []
        for directory in directories:
            if directory not in unique:
                unique.append(directory)
        return unique

    def _execute(
        self,
        target: Target,
        mode: ModeConfig,
        resolver: TemplateResolver,
        checker: StalenessChecker,
        prerequisites: List[Target],
        rebuilt_dependency: str | None,
    ) -> TargetReport:
        started = time.monotonic()

        def finish(status: TargetStatus, **kwargs: Any) -> TargetReport:
            return TargetReport(name=target.name, status=status, duration=time.monotonic() - started, **kwargs)

        action = target.action
        if action is None:
            if rebuilt_dependency is None and not self.force:
                self.console.debug(f"{target.name}: up to date")
                return finish(TargetStatus.SKIPPED)
            return finish(TargetStatus.SUCCEEDED, reason="prerequisites rebuilt")

        try:
            reason = checker.reason(target, prerequisites)
        except DistbuildError as exc:
            self.console.error(f"{target.name}: {exc}")
            return finish(TargetStatus.FAILED, reason=str(exc), error_kind=ERROR_ACTION)
        except OSError as exc:
            self.console.error(f"{target.name}: cannot inspect paths: {exc}")
            return finish(TargetStatus.FAILED, reason=str(exc), error_kind=ERROR_IO)
        if reason is None and rebuilt_dependency is not None:
            reason = f"prerequisite '{rebuilt_dependency}' was rebuilt"
        if reason is None:
            self.console.debug(f"{target.name}: up to date")
            return finish(TargetStatus.SKIPPED)

        self.console.info(f"{target.name}: building ({reason})")
        if not self.dry_run:
            try:
                self.lifecycle.ensure(self._target_directories(target, checker))
            except DirectoryError as exc:
                self.console.error(f"{target.name}: {exc}")
                return finish(TargetStatus.FAILED, reason=str(exc), error_kind=ERROR_IO)

        context = ActionContext(
            target=target.name,
            workspace=self.workspace,
            mode=mode,
            resolver=resolver,
            runner=self.runner,
            console=self.console,
            env=target.env,
            dry_run=self.dry_run,
        )
        try:
            result = action.execute(context)
        except (DistbuildError, OSError) as exc:
            self.console.error(f"{target.name}: {exc}")
            log = exc.log if isinstance(exc, ActionFailure) else ""
            return finish(TargetStatus.FAILED, log=log, reason=str(exc), error_kind=ERROR_ACTION)

        if not result.success:
            self.console.error(f"{target.name}: failed ({result.message or 'action reported failure'})")
            return finish(TargetStatus.FAILED, log=result.log, reason=result.message, error_kind=ERROR_ACTION)

        if not self.dry_run:
            try:
                problem = checker.verify(target)
            except OSError as exc:
                self.console.error(f"{target.name}: cannot inspect outputs: {exc}")
                return finish(TargetStatus.FAILED, log=result.log, reason=str(exc), error_kind=ERROR_IO)
            if problem is not None:
                self.console.error(f"{target.name}: failed ({problem})")
                return finish(TargetStatus.FAILED, log=result.log, reason=problem, error_kind=ERROR_ACTION)

        if self.console.level >= Console.LEVELS["debug"]:
            self.console.block(f"{target.name} log", result.log)
        self.console.info(f"{target.name}: done")
        return finish(TargetStatus.SUCCEEDED, log=result.log, reason=reason)


class BuildEngine:
    """Resolves a requested target and executes it for one build mode."""

    def __init__(
        self,
        *,
        graph: TargetGraph,
        runner: CommandRunner,
        workspace: Path,
        console: Console,
        lifecycle: DirectoryLifecycle,
        modes: Mapping[BuildMode, ModeConfig] | None = None,
        base_context: Mapping[str, Any] | None = None,
        jobs: int | None = None,
    ) -> None:
        self.graph = graph
        self.runner = runner
        self.workspace = workspace
        self.console = console
        self.lifecycle = lifecycle
        self.modes = align_flag_sets(modes or default_modes())
        self.base_context = dict(base_context or {})
        self.jobs = jobs

    def mode_config(self, mode: "str | BuildMode") -> ModeConfig:
        build_mode = BuildMode.parse(mode)
        return self.modes.get(build_mode) or ModeConfig(mode=build_mode)

    def plan(self, target: str) -> ExecutionPlan:
        return self.graph.resolve(target)

    def executor(self, *, force: bool = False, dry_run: bool = False) -> Executor:
        return Executor(
            workspace=self.workspace,
            runner=self.runner,
            console=self.console,
            lifecycle=self.lifecycle,
            base_context=self.base_context,
            jobs=self.jobs,
            force=force,
            dry_run=dry_run,
        )

    def build(
        self,
        target: str,
        mode: "str | BuildMode" = BuildMode.DEBUG,
        *,
        clean: bool = False,
        force: bool = False,
        dry_run: bool = False,
    ) -> BuildReport:
        """Build ``target`` and its prerequisites.

        Graph errors and failures to prepare the output tree are raised before
        any action runs; per-target failures are recorded in the report.
        """

        plan = self.plan(target)
        mode_config = self.mode_config(mode)
        self.console.debug(f"Plan for '{target}' ({mode_config.name}): {', '.join(plan.names())}")
        if dry_run:
            if clean:
                self.console.dry(f"recreate output tree {self.lifecycle.root}")
        else:
            self.lifecycle.prepare(clean)
        return self.executor(force=force, dry_run=dry_run).run(plan, mode_config)
