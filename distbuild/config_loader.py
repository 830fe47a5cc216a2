"""Configuration loading and validation logic."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Sequence
import json
import os
import shlex
import tomllib

import yaml

from .actions import Action, CommandAction, CopyAction, SequenceAction
from .errors import ConfigError, DuplicateTargetError
from .graph import Target, TargetGraph
from .modes import BuildMode, ModeConfig, align_flag_sets


ConfigLoader = Callable[[Any], Any]

FILE_LOADERS: Dict[str, ConfigLoader] = {
    ".toml": lambda stream: tomllib.load(stream),
    ".json": lambda stream: json.load(stream),
    ".yaml": lambda stream: yaml.safe_load(stream),
    ".yml": lambda stream: yaml.safe_load(stream),
}
"""Mapping of file suffixes to loader callables."""

CONFIG_DIR_ENV = "DISTBUILD_CONFIG_DIR"


def load_config_file(path: Path) -> Mapping[str, Any]:
    """Load and decode a configuration mapping from ``path``."""

    suffix = path.suffix.lower()
    loader = FILE_LOADERS.get(suffix)
    if loader is None:
        supported = ", ".join(sorted(FILE_LOADERS))
        raise ConfigError(f"Unsupported configuration file extension: {suffix}. Supported: {supported}")

    mode = "rb" if suffix == ".toml" else "r"
    kwargs: Dict[str, Any] = {}
    if mode == "r":
        kwargs["encoding"] = "utf-8"
    try:
        with path.open(mode, **kwargs) as handle:
            data = loader(handle)
    except (tomllib.TOMLDecodeError, json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ConfigError(f"Cannot parse configuration file '{path}': {exc}") from exc

    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigError(f"Configuration file '{path}' must contain a mapping at the root")
    return data


def collect_config_files(directory: Path) -> Dict[str, Path]:
    """Return a mapping of filename stems to configuration files within ``directory``."""

    files: Dict[str, Path] = {}
    for path in sorted(directory.iterdir()):
        if not path.is_file() or path.suffix.lower() not in FILE_LOADERS:
            continue
        stem = path.stem
        if stem in files:
            other = files[stem]
            raise ConfigError(
                f"Multiple configuration files found for '{stem}': '{other.name}' and '{path.name}'. "
                "Only one format per configuration entry is allowed."
            )
        files[stem] = path
    return files


def merge_mappings(base: Mapping[str, Any], overlay: Mapping[str, Any]) -> Dict[str, Any]:
    """Deep merge two mapping objects."""

    result: Dict[str, Any] = dict(base)
    for key, value in overlay.items():
        existing = result.get(key)
        if isinstance(existing, Mapping) and isinstance(value, Mapping):
            result[key] = merge_mappings(existing, value)
        else:
            result[key] = value
    return result


def normalize_string_list(value: Any, *, field_name: str) -> List[str]:
    """Coerce ``value`` into a list of trimmed strings."""

    if value is None:
        return []
    if isinstance(value, str):
        text = value.strip()
        return [text] if text else []
    if isinstance(value, Sequence):
        items: List[str] = []
        for item in value:
            if not isinstance(item, str):
                raise ConfigError(f"{field_name} entries must be strings")
            text = item.strip()
            if text:
                items.append(text)
        return items
    raise ConfigError(f"{field_name} must be a string or sequence of strings")


def _string_mapping(value: Any, *, field_name: str) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"{field_name} must be a table")
    return {str(key): str(item) for key, item in value.items()}


def _section(data: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    section = data.get(name, {})
    if section is None:
        return {}
    if not isinstance(section, Mapping):
        raise ConfigError(f"[{name}] must be a table")
    return section


def _positive_int(value: Any, *, field_name: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{field_name} must be an integer")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{field_name} must be an integer") from None
    if number < 0:
        raise ConfigError(f"{field_name} must not be negative")
    return number


@dataclass(slots=True)
class GlobalConfig:
    default_target: str | None = None
    default_mode: str = "debug"
    log_level: str = "info"
    jobs: int | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "GlobalConfig":
        section = _section(data, "global")
        jobs = section.get("jobs")
        if jobs is not None:
            jobs = _positive_int(jobs, field_name="global.jobs") or None
        default_mode = str(section.get("default_mode", "debug"))
        BuildMode.parse(default_mode)
        return cls(
            default_target=str(section["default_target"]) if section.get("default_target") else None,
            default_mode=default_mode,
            log_level=str(section.get("log_level", "info")),
            jobs=jobs,
        )


@dataclass(slots=True)
class OutputConfig:
    root: str = "dist"
    directories: List[str] = field(default_factory=list)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "OutputConfig":
        section = _section(data, "output")
        root = str(section.get("root", "dist")).strip()
        if not root:
            raise ConfigError("output.root must not be empty")
        return cls(
            root=root,
            directories=normalize_string_list(section.get("directories"), field_name="output.directories"),
        )


@dataclass(slots=True)
class WatchConfig:
    paths: List[str] = field(default_factory=lambda: ["."])
    ignore: List[str] = field(default_factory=list)
    debounce_ms: int = 300
    initial_build: bool = True

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "WatchConfig":
        section = _section(data, "watch")
        return cls(
            paths=normalize_string_list(section.get("paths"), field_name="watch.paths") or ["."],
            ignore=normalize_string_list(section.get("ignore"), field_name="watch.ignore"),
            debounce_ms=_positive_int(section.get("debounce_ms", 300), field_name="watch.debounce_ms"),
            initial_build=bool(section.get("initial_build", True)),
        )


@dataclass(slots=True)
class RunConfig:
    command: List[str] = field(default_factory=list)
    cwd: str = "{{output.root}}"
    port: int | None = 8000
    args: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)

    @property
    def configured(self) -> bool:
        return bool(self.command)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "RunConfig":
        section = _section(data, "run")
        command = section.get("command")
        if isinstance(command, str):
            command = shlex.split(command)
        port = section.get("port", 8000)
        return cls(
            command=normalize_string_list(command, field_name="run.command"),
            cwd=str(section.get("cwd", "{{output.root}}")),
            port=_positive_int(port, field_name="run.port") if port is not None else None,
            args=normalize_string_list(section.get("args"), field_name="run.args"),
            env=_string_mapping(section.get("env"), field_name="run.env"),
        )


def _parse_step(name: str, index: int, step: Any) -> Action:
    label = f"targets.{name}.steps[{index}]"
    if isinstance(step, (str, list)):
        step = {"run": step}
    if not isinstance(step, Mapping):
        raise ConfigError(f"{label} must be a table, string or list")
    if "run" in step:
        command = step["run"]
        if isinstance(command, str):
            command = shlex.split(command)
        args = normalize_string_list(command, field_name=f"{label}.run")
        if not args:
            raise ConfigError(f"{label}.run must not be empty")
        return CommandAction(
            command=args,
            cwd=str(step["cwd"]) if step.get("cwd") else None,
            env=_string_mapping(step.get("env"), field_name=f"{label}.env"),
        )
    if "copy" in step:
        destination = step.get("to")
        if not destination:
            raise ConfigError(f"{label} needs a 'to' destination for 'copy'")
        return CopyAction(source=str(step["copy"]), destination=str(destination))
    raise ConfigError(f"{label} must define 'run' or 'copy'")


@dataclass(slots=True)
class TargetDefinition:
    name: str
    deps: List[str] = field(default_factory=list)
    inputs: List[str] = field(default_factory=list)
    outputs: List[str] = field(default_factory=list)
    directories: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    description: str | None = None
    steps: List[Action] = field(default_factory=list)
    source: Path | None = None

    @classmethod
    def from_mapping(cls, name: str, data: Any, *, source: Path | None = None) -> "TargetDefinition":
        if not isinstance(data, Mapping):
            raise ConfigError(f"[targets.{name}] must be a table")
        raw_steps = data.get("steps", [])
        if not isinstance(raw_steps, list):
            raise ConfigError(f"targets.{name}.steps must be an array")
        description = data.get("description")
        return cls(
            name=name,
            deps=normalize_string_list(data.get("deps"), field_name=f"targets.{name}.deps"),
            inputs=normalize_string_list(data.get("inputs"), field_name=f"targets.{name}.inputs"),
            outputs=normalize_string_list(data.get("outputs"), field_name=f"targets.{name}.outputs"),
            directories=normalize_string_list(data.get("directories"), field_name=f"targets.{name}.directories"),
            env=_string_mapping(data.get("env"), field_name=f"targets.{name}.env"),
            description=str(description) if description else None,
            steps=[_parse_step(name, index, step) for index, step in enumerate(raw_steps)],
            source=source,
        )

    def to_target(self) -> Target:
        action: Action | None = None
        if len(self.steps) == 1:
            action = self.steps[0]
        elif self.steps:
            action = SequenceAction(steps=list(self.steps))
        return Target(
            name=self.name,
            deps=tuple(self.deps),
            action=action,
            outputs=tuple(self.outputs),
            inputs=tuple(self.inputs),
            directories=tuple(self.directories),
            env=dict(self.env),
            description=self.description,
        )

    def templates(self) -> List[Any]:
        values: List[Any] = [*self.inputs, *self.outputs, *self.directories, *self.env.values()]
        for step in self.steps:
            if isinstance(step, CommandAction):
                values.extend(step.command)
                values.extend(step.env.values())
                if step.cwd:
                    values.append(step.cwd)
            elif isinstance(step, CopyAction):
                values.extend([step.source, step.destination])
        return values


def _collect_targets(data: Mapping[str, Any], *, source: Path) -> Dict[str, TargetDefinition]:
    section = _section(data, "targets")
    return {
        str(name): TargetDefinition.from_mapping(str(name), value, source=source)
        for name, value in section.items()
    }


def _add_targets(layer: Dict[str, TargetDefinition], definitions: Mapping[str, TargetDefinition]) -> None:
    for name, definition in definitions.items():
        existing = layer.get(name)
        if existing is not None:
            sources = [str(existing.source), str(definition.source)]
            raise DuplicateTargetError(name, sources=sources)
        layer[name] = definition


@dataclass(slots=True)
class ConfigurationStore:
    root: Path
    directories: List[Path]
    global_config: GlobalConfig
    output: OutputConfig
    watch: WatchConfig
    run: RunConfig
    modes: Dict[BuildMode, ModeConfig]
    targets: Dict[str, TargetDefinition]

    @classmethod
    def from_directory(cls, root: Path) -> "ConfigurationStore":
        return cls.from_directories(root, [root / "config"])

    @classmethod
    def from_directories(cls, root: Path, directories: Iterable[Path]) -> "ConfigurationStore":
        existing = [directory for directory in directories if directory.is_dir()]
        if not existing:
            searched = ", ".join(str(directory) for directory in directories) or "<none>"
            raise ConfigError(f"Configuration directory not found: {searched}")

        settings: Dict[str, Any] = {}
        targets: Dict[str, TargetDefinition] = {}
        for directory in existing:
            # Within one directory a name is defined once; a later directory overrides.
            layer: Dict[str, TargetDefinition] = {}
            files = collect_config_files(directory)
            config_path = files.get("config")
            if config_path is not None:
                data = load_config_file(config_path)
                _add_targets(layer, _collect_targets(data, source=config_path))
                settings = merge_mappings(settings, {key: value for key, value in data.items() if key != "targets"})

            targets_dir = directory / "targets"
            if targets_dir.is_dir():
                for _, path in collect_config_files(targets_dir).items():
                    _add_targets(layer, _collect_targets(load_config_file(path), source=path))
            targets.update(layer)

        modes_section = _section(settings, "modes")
        unknown_modes = set(modes_section) - {mode.value for mode in BuildMode}
        if unknown_modes:
            raise ConfigError(f"Unknown build mode(s) in [modes]: {', '.join(sorted(unknown_modes))}")
        modes = align_flag_sets(
            {mode: ModeConfig.from_mapping(mode, modes_section.get(mode.value)) for mode in BuildMode}
        )

        return cls(
            root=root,
            directories=existing,
            global_config=GlobalConfig.from_mapping(settings),
            output=OutputConfig.from_mapping(settings),
            watch=WatchConfig.from_mapping(settings),
            run=RunConfig.from_mapping(settings),
            modes=modes,
            targets=targets,
        )

    def list_targets(self) -> Iterable[str]:
        return self.targets.keys()

    def build_graph(self) -> TargetGraph:
        return TargetGraph(definition.to_target() for definition in self.targets.values())

    def default_target(self) -> str:
        if self.global_config.default_target:
            return self.global_config.default_target
        if not self.targets:
            raise ConfigError("No targets are defined")
        return next(iter(self.targets))

    def output_root(self, override: str | None = None) -> Path:
        root = Path(override or self.output.root).expanduser()
        return root if root.is_absolute() else self.root / root

    def template_context(self, output_root: Path) -> Dict[str, Any]:
        output: Dict[str, Any] = {"root": str(output_root)}
        for name in self.output.directories:
            output[name] = str(output_root / name)
        return {
            "workspace": str(self.root),
            "output": output,
            "run": {
                "port": "" if self.run.port is None else str(self.run.port),
                "args": list(self.run.args),
            },
            "env": dict(os.environ),
        }


def resolve_config_directories(workspace: Path, cli_values: Iterable[str]) -> List[Path]:
    """Workspace ``config/`` followed by environment and command line directories."""

    candidates: List[str] = []
    env_value = os.environ.get(CONFIG_DIR_ENV)
    if env_value:
        candidates.extend(env_value.split(os.pathsep))
    for value in cli_values:
        candidates.extend(value.split(os.pathsep))

    ordered: List[Path] = [workspace / "config"]
    for entry in candidates:
        entry = entry.strip()
        if not entry:
            continue
        path = Path(entry).expanduser()
        if not path.is_absolute():
            path = workspace / path
        if path in ordered:
            ordered.remove(path)
        ordered.append(path)
    return ordered
