"""Opaque build steps bound to targets."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Sequence
import shutil

from .command_runner import CommandRunner
from .console import Console
from .errors import ActionFailure
from .modes import ModeConfig
from .template import TemplateResolver


@dataclass(slots=True)
class ActionContext:
    """Everything an action may depend on for one execution."""

    target: str
    workspace: Path
    mode: ModeConfig
    resolver: TemplateResolver
    runner: CommandRunner
    console: Console
    env: Mapping[str, str] = field(default_factory=dict)
    dry_run: bool = False

    def path(self, value: str) -> Path:
        resolved = Path(self.resolver.resolve_text(value)).expanduser()
        if not resolved.is_absolute():
            resolved = self.workspace / resolved
        return resolved


@dataclass(slots=True)
class ActionResult:
    success: bool
    log: str = ""
    message: str = ""


class Action:
    """A unit of work producing a target's declared outputs."""

    def execute(self, context: ActionContext) -> ActionResult:
        raise NotImplementedError

    def describe(self) -> List[str]:
        return []


@dataclass(slots=True)
class CommandAction(Action):
    """Runs one external command; a non-zero exit status is a failure."""

    command: Sequence[str]
    cwd: str | None = None
    env: Mapping[str, str] = field(default_factory=dict)

    def execute(self, context: ActionContext) -> ActionResult:
        args = context.resolver.expand_args(self.command)
        if not args:
            return ActionResult(success=False, message="Empty command")
        cwd = context.path(self.cwd) if self.cwd else context.workspace
        env: Dict[str, str] = dict(context.mode.env)
        env.update(context.env)
        env.update({key: context.resolver.resolve_text(value) for key, value in self.env.items()})

        command_line = context.runner.format_command(args)
        context.console.debug(f"{context.target}: {command_line}")
        result = context.runner.run(args, cwd=cwd, env=env, check=False, note=context.target)
        log = f"$ {command_line}\n{result.output}"
        if result.returncode != 0:
            return ActionResult(
                success=False,
                log=log,
                message=f"'{args[0]}' exited with status {result.returncode}",
            )
        return ActionResult(success=True, log=log)

    def describe(self) -> List[str]:
        return [" ".join(self.command)]


@dataclass(slots=True)
class CopyAction(Action):
    """Copies a file or directory into the output tree."""

    source: str
    destination: str

    def execute(self, context: ActionContext) -> ActionResult:
        source = context.path(self.source)
        destination = context.path(self.destination)
        line = f"copy {source} -> {destination}"
        if context.dry_run:
            context.console.dry(f"{context.target}: {line}")
            return ActionResult(success=True, log=f"{line}\n")
        if not source.exists():
            return ActionResult(success=False, log=f"{line}\n", message=f"Source not found: {source}")
        if destination.is_dir() and source.is_file():
            destination = destination / source.name
        destination.parent.mkdir(parents=True, exist_ok=True)
        try:
            if source.is_dir():
                # copies must carry fresh mtimes, not the source ones
                shutil.copytree(source, destination, dirs_exist_ok=True, copy_function=shutil.copy)
            else:
                shutil.copy(source, destination)
        except OSError as exc:
            raise ActionFailure(f"Cannot copy {source} to {destination}: {exc}", log=f"{line}\n") from exc
        context.console.debug(f"{context.target}: {line}")
        return ActionResult(success=True, log=f"{line}\n")

    def describe(self) -> List[str]:
        return [f"copy {self.source} -> {self.destination}"]


@dataclass(slots=True)
class SequenceAction(Action):
    """Runs steps in order, stopping at the first failing one."""

    steps: Sequence[Action]

    def execute(self, context: ActionContext) -> ActionResult:
        logs: List[str] = []
        for step in self.steps:
            result = step.execute(context)
            logs.append(result.log)
            if not result.success:
                return ActionResult(success=False, log="".join(logs), message=result.message)
        return ActionResult(success=True, log="".join(logs))

    def describe(self) -> List[str]:
        lines: List[str] = []
        for step in self.steps:
            lines.extend(step.describe())
        return lines
