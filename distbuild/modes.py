"""Build modes and the flag sets they thread into actions."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Mapping

from .errors import ConfigError


class BuildMode(str, Enum):
    DEBUG = "debug"
    RELEASE = "release"

    @classmethod
    def parse(cls, value: "str | BuildMode") -> "BuildMode":
        if isinstance(value, BuildMode):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            choices = ", ".join(mode.value for mode in cls)
            raise ConfigError(f"Unknown build mode '{value}'. Choose from: {choices}") from None


@dataclass(frozen=True, slots=True)
class ModeConfig:
    """Flag sets and output subpath selected for one invocation.

    ``flags`` maps a tool name (``cargo``, ``trunk``...) to the arguments that
    mode adds to its command line; ``subpath`` is the directory segment the
    toolchain writes mode-specific artefacts to (``target/<subpath>/server``).
    """

    mode: BuildMode
    flags: Mapping[str, List[str]] = field(default_factory=dict)
    subpath: str = ""
    env: Mapping[str, str] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.mode.value

    @property
    def output_subpath(self) -> str:
        return self.subpath or self.mode.value

    def flag_set(self, tool: str) -> List[str]:
        return list(self.flags.get(tool, []))

    def context(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "subpath": self.output_subpath,
            "release": self.mode is BuildMode.RELEASE,
            "flags": {tool: list(values) for tool, values in self.flags.items()},
            "env": dict(self.env),
        }

    @classmethod
    def from_mapping(cls, mode: "str | BuildMode", data: Mapping[str, Any] | None) -> "ModeConfig":
        build_mode = BuildMode.parse(mode)
        data = data or {}
        if not isinstance(data, Mapping):
            raise ConfigError(f"[modes.{build_mode.value}] must be a table")

        flags: Dict[str, List[str]] = {}
        raw_flags = data.get("flags", {})
        if not isinstance(raw_flags, Mapping):
            raise ConfigError(f"modes.{build_mode.value}.flags must be a table of flag lists")
        for tool, values in raw_flags.items():
            if isinstance(values, str):
                values = values.split()
            if not isinstance(values, list) or not all(isinstance(item, str) for item in values):
                raise ConfigError(f"modes.{build_mode.value}.flags.{tool} must be a list of strings")
            flags[str(tool)] = list(values)

        env_section = data.get("env", {})
        if not isinstance(env_section, Mapping):
            raise ConfigError(f"modes.{build_mode.value}.env must be a table")

        return cls(
            mode=build_mode,
            flags=flags,
            subpath=str(data.get("subpath", "") or ""),
            env={str(key): str(value) for key, value in env_section.items()},
        )


def default_modes() -> Dict[BuildMode, ModeConfig]:
    return {mode: ModeConfig(mode=mode) for mode in BuildMode}


def align_flag_sets(modes: Mapping[BuildMode, ModeConfig]) -> Dict[BuildMode, ModeConfig]:
    """Give every mode an (empty) flag set for each tool any mode names.

    ``{{mode.flags.cargo}}`` then resolves in debug even when only release
    adds cargo flags.
    """

    tools: List[str] = []
    for config in modes.values():
        tools.extend(tool for tool in config.flags if tool not in tools)
    aligned: Dict[BuildMode, ModeConfig] = {}
    for mode, config in modes.items():
        flags = {tool: config.flag_set(tool) for tool in tools}
        aligned[mode] = replace(config, flags=flags)
    return aligned
