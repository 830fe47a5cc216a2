"""Modification-time based decision of whether a target must rebuild.

Timestamps are compared at whatever resolution the filesystem offers and an
input whose mtime equals the oldest output's is *not* newer. On filesystems
with coarse timestamps an edit landing in the same tick as the previous build
is therefore missed; rerun with ``--force`` in that case.
"""
from __future__ import annotations

from pathlib import Path
from typing import Iterable, List, Sequence, Tuple
import glob
import os

from .graph import Target
from .template import TemplateResolver


_GLOB_CHARS = frozenset("*?[")


def newest_mtime(path: Path) -> float | None:
    """Modification time of ``path``; for a directory, the newest entry beneath it."""

    try:
        newest = path.stat().st_mtime
    except (FileNotFoundError, NotADirectoryError):
        # a file where a parent directory should be counts as missing
        return None
    if not path.is_dir():
        return newest
    for root, dirs, files in os.walk(path):
        for name in [*dirs, *files]:
            try:
                mtime = os.stat(os.path.join(root, name)).st_mtime
            except (FileNotFoundError, NotADirectoryError):
                # vanished between walk and stat
                continue
            if mtime > newest:
                newest = mtime
    return newest


class StalenessChecker:
    """Decides whether a target is due, resolving its paths for the active mode."""

    def __init__(self, *, workspace: Path, resolver: TemplateResolver, force: bool = False) -> None:
        self.workspace = workspace
        self.resolver = resolver
        self.force = force

    def resolve_paths(self, templates: Iterable[str]) -> List[Path]:
        paths: List[Path] = []
        for template in templates:
            text = self.resolver.resolve_text(template)
            if _GLOB_CHARS.intersection(text):
                pattern = text if os.path.isabs(text) else str(self.workspace / text)
                paths.extend(Path(match) for match in sorted(glob.glob(pattern, recursive=True)))
                continue
            path = Path(text).expanduser()
            paths.append(path if path.is_absolute() else self.workspace / path)
        return paths

    def _display(self, path: Path) -> str:
        try:
            return path.relative_to(self.workspace).as_posix()
        except ValueError:
            return str(path)

    def _oldest_output(self, target: Target) -> Tuple[Path | None, float | None, Path | None]:
        """Return (missing output, oldest mtime, oldest output path)."""

        oldest: float | None = None
        oldest_path: Path | None = None
        for path in self.resolve_paths(target.outputs):
            mtime = newest_mtime(path)
            if mtime is None:
                return path, None, None
            if oldest is None or mtime < oldest:
                oldest = mtime
                oldest_path = path
        return None, oldest, oldest_path

    def _newer_input(self, target: Target, reference: float) -> Path | None:
        for path in self.resolve_paths(target.inputs):
            mtime = newest_mtime(path)
            if mtime is not None and mtime > reference:
                return path
        return None

    def _newer_prerequisite_output(
        self, prerequisites: Sequence[Target], reference: float
    ) -> Tuple[Target, Path] | None:
        for prerequisite in prerequisites:
            for path in self.resolve_paths(prerequisite.outputs):
                mtime = newest_mtime(path)
                if mtime is not None and mtime > reference:
                    return prerequisite, path
        return None

    def reason(self, target: Target, prerequisites: Sequence[Target] = ()) -> str | None:
        """Why ``target`` must run, or ``None`` when it is up to date.

        Outputs of ``prerequisites`` count as implicit inputs, so a dependent
        stays due after its prerequisite was rebuilt by an earlier run.
        """

        if self.force:
            return "forced"
        if not target.outputs:
            return "no declared outputs"
        missing, oldest, oldest_path = self._oldest_output(target)
        if missing is not None:
            return f"missing output {self._display(missing)}"
        if oldest is None or oldest_path is None:
            # every output template matched nothing
            return "no declared outputs"
        newer = self._newer_input(target, oldest)
        if newer is not None:
            return f"input {self._display(newer)} is newer than output {self._display(oldest_path)}"
        found = self._newer_prerequisite_output(prerequisites, oldest)
        if found is not None:
            prerequisite, path = found
            return (
                f"output {self._display(path)} of prerequisite '{prerequisite.name}' "
                f"is newer than output {self._display(oldest_path)}"
            )
        return None

    def is_due(self, target: Target, prerequisites: Sequence[Target] = ()) -> bool:
        return self.reason(target, prerequisites) is not None

    def verify(self, target: Target) -> str | None:
        """Check a finished action left its outputs present and not older than its inputs."""

        if not target.outputs:
            return None
        missing, oldest, oldest_path = self._oldest_output(target)
        if missing is not None:
            return f"declared output {self._display(missing)} was not produced"
        if oldest is None or oldest_path is None:
            return "declared outputs were not produced"
        newer = self._newer_input(target, oldest)
        if newer is not None:
            return f"output {self._display(oldest_path)} is older than input {self._display(newer)}"
        return None
