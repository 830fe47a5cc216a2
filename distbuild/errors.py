"""Error taxonomy shared by the build engine and the command line front end."""
from __future__ import annotations

from typing import Sequence


EXIT_OK = 0
EXIT_BUILD_FAILED = 1
EXIT_USAGE = 2
EXIT_GRAPH_ERROR = 3
EXIT_IO_ERROR = 4
EXIT_CONFIG_ERROR = 5
EXIT_INTERRUPTED = 130


class DistbuildError(Exception):
    """Base class for every error raised by distbuild."""

    exit_code = EXIT_BUILD_FAILED


class ConfigError(DistbuildError, ValueError):
    """Raised when configuration files are missing or malformed."""

    exit_code = EXIT_CONFIG_ERROR


class GraphError(DistbuildError):
    """Raised when a target cannot be resolved into an execution plan."""

    exit_code = EXIT_GRAPH_ERROR


class UnknownTargetError(GraphError):
    def __init__(self, name: str, *, referenced_by: str | None = None, available: Sequence[str] = ()) -> None:
        if referenced_by:
            message = f"Target '{name}' referenced by '{referenced_by}' was not found"
        else:
            choices = ", ".join(available) or "<none>"
            message = f"Target '{name}' not found. Available targets: {choices}"
        super().__init__(message)
        self.name = name
        self.referenced_by = referenced_by


class CyclicDependencyError(GraphError):
    def __init__(self, cycle: Sequence[str]) -> None:
        self.cycle = list(cycle)
        super().__init__(f"Dependency cycle detected: {' -> '.join(self.cycle)}")


class DuplicateTargetError(GraphError):
    def __init__(self, name: str, *, sources: Sequence[str] = ()) -> None:
        if sources:
            message = f"Target '{name}' is defined more than once: {', '.join(sources)}"
        else:
            message = f"Target '{name}' is already registered"
        super().__init__(message)
        self.name = name
        self.sources = list(sources)


class DirectoryError(DistbuildError):
    """Raised when the output tree cannot be created or removed."""

    exit_code = EXIT_IO_ERROR


class ActionFailure(DistbuildError):
    """Raised by an action whose step failed; carries the captured log."""

    def __init__(self, message: str, *, log: str = "") -> None:
        super().__init__(message)
        self.log = log
