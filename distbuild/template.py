"""Placeholder resolution for target definitions."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, List, Mapping, Sequence
import re

from .errors import ConfigError


_PLACEHOLDER_PATTERN = re.compile(r"\{\{([^{}]+)\}\}")
_SINGLE_PLACEHOLDER_PATTERN = re.compile(r"^\s*\{\{([^{}]+)\}\}\s*$")


class TemplateError(ConfigError):
    """Raised when template resolution fails."""


@dataclass(slots=True)
class TemplateResolver:
    """Resolves ``{{dotted.path}}`` placeholders using a nested mapping context."""

    context: Mapping[str, Any]
    _cache: dict[str, Any] = field(default_factory=dict, init=False, repr=False)

    def resolve(self, value: Any) -> Any:
        if isinstance(value, str):
            return self._resolve_string(value)
        if isinstance(value, list):
            return [self.resolve(item) for item in value]
        if isinstance(value, tuple):
            return tuple(self.resolve(item) for item in value)
        if isinstance(value, dict):
            return {key: self.resolve(val) for key, val in value.items()}
        return value

    def resolve_text(self, value: str) -> str:
        """Resolve ``value`` and always return a string."""

        resolved = self.resolve(value)
        if isinstance(resolved, (list, tuple)):
            return " ".join(str(item) for item in resolved)
        return str(resolved)

    def expand_args(self, args: Sequence[str]) -> List[str]:
        """Resolve a command line, splicing list-valued placeholders in place.

        An argument that is exactly one placeholder naming a list (such as a
        mode flag set) contributes each item as its own argument, so an empty
        flag set disappears from the command.
        """

        expanded: List[str] = []
        for arg in args:
            resolved = self.resolve(arg)
            if isinstance(resolved, (list, tuple)):
                expanded.extend(str(item) for item in resolved)
            elif resolved is None:
                continue
            else:
                expanded.append(str(resolved))
        return expanded

    def _resolve_string(self, value: str) -> Any:
        placeholder_match = _SINGLE_PLACEHOLDER_PATTERN.match(value)
        if placeholder_match:
            return self._resolve_path(placeholder_match.group(1).strip())
        if not _PLACEHOLDER_PATTERN.search(value):
            return value

        def replacement(match: re.Match[str]) -> str:
            result = self._resolve_path(match.group(1).strip())
            if isinstance(result, (list, tuple)):
                return " ".join(str(item) for item in result)
            return str(result)

        return _PLACEHOLDER_PATTERN.sub(replacement, value)

    def _resolve_path(self, path: str) -> Any:
        if path in self._cache:
            return self._cache[path]
        current: Any = self.context
        for part in path.split("."):
            if isinstance(current, Mapping) and part in current:
                current = current[part]
                continue
            if isinstance(current, (list, tuple)) and part.isdigit() and int(part) < len(current):
                current = current[int(part)]
                continue
            raise TemplateError(f"Cannot resolve path '{path}' in template context")
        self._cache[path] = current
        return current


def extract_placeholders(value: Any) -> set[str]:
    """Collect all template placeholder paths referenced within *value*."""

    placeholders: set[str] = set()

    def _collect(obj: Any) -> None:
        if isinstance(obj, str):
            for match in _PLACEHOLDER_PATTERN.finditer(obj):
                path = match.group(1).strip()
                if path:
                    placeholders.add(path)
            return
        if isinstance(obj, Mapping):
            for item in obj.values():
                _collect(item)
            return
        if isinstance(obj, (list, tuple)):
            for item in obj:
                _collect(item)

    _collect(value)
    return placeholders


def check_placeholders(resolver: TemplateResolver, values: Iterable[Any]) -> List[str]:
    """Return an error message for every placeholder ``resolver`` cannot resolve."""

    problems: List[str] = []
    for value in values:
        for path in sorted(extract_placeholders(value)):
            try:
                resolver.resolve("{{" + path + "}}")
            except TemplateError as exc:
                problems.append(str(exc))
    return problems
