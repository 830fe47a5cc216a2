"""Creation and recreation of the output tree."""
from __future__ import annotations

from pathlib import Path
from typing import ClassVar, Iterable, List, Sequence
import shutil
import threading

from .errors import DirectoryError


class DirectoryLifecycle:
    """Owns the output root and its fixed category subdirectories.

    ``prepare(clean=True)`` removes and recreates the whole tree so no stale
    artefact survives a release build; ``prepare(clean=False)`` and
    :meth:`ensure` only ever create what is missing.
    """

    _clean_lock: ClassVar[threading.Lock] = threading.Lock()

    def __init__(self, root: Path, subdirectories: Sequence[str] = (), *, workspace: Path | None = None) -> None:
        self.root = root
        self.subdirectories = list(subdirectories)
        self.workspace = workspace

    def required_directories(self) -> List[Path]:
        return [self.root, *(self.root / name for name in self.subdirectories)]

    def prepare(self, clean: bool) -> None:
        if not clean:
            self.ensure(self.required_directories())
            return
        with self._clean_lock:
            self._guard_removal()
            if self.root.exists() or self.root.is_symlink():
                if not self.root.is_dir():
                    raise DirectoryError(f"Output root {self.root} exists and is not a directory")
                try:
                    shutil.rmtree(self.root)
                except OSError as exc:
                    raise DirectoryError(f"Cannot remove output root {self.root}: {exc}") from exc
            self.ensure(self.required_directories())

    def ensure(self, directories: Iterable[Path]) -> None:
        for directory in directories:
            if directory.is_dir():
                continue
            try:
                directory.mkdir(parents=True, exist_ok=True)
            except FileExistsError as exc:
                raise DirectoryError(f"Cannot create directory {directory}: a file is in the way") from exc
            except OSError as exc:
                raise DirectoryError(f"Cannot create directory {directory}: {exc}") from exc

    def _guard_removal(self) -> None:
        root = self.root.resolve()
        if root == Path(root.anchor):
            raise DirectoryError(f"Refusing to remove filesystem root {root}")
        if self.workspace is not None:
            workspace = self.workspace.resolve()
            if root == workspace or root in workspace.parents:
                raise DirectoryError(f"Refusing to remove {root}: it contains the workspace")
