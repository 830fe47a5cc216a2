"""Console output handler with a configurable log level."""
from __future__ import annotations

from typing import TextIO
import sys
import threading


class Console:
    """Leveled console output safe to call from worker threads.

    Levels: none < error < info < debug
    """

    LEVELS = {
        "none": 0,
        "error": 1,
        "info": 2,
        "debug": 3,
    }

    def __init__(
        self,
        level: str = "info",
        dry_run: bool = False,
        *,
        stdout: TextIO | None = None,
        stderr: TextIO | None = None,
    ) -> None:
        if level not in self.LEVELS:
            raise ValueError(f"Unknown log level '{level}'. Choose from: {', '.join(self.LEVELS)}")
        self.level_name = level
        self.level = self.LEVELS[level]
        self.dry_run = dry_run
        self._stdout = stdout
        self._stderr = stderr
        self._lock = threading.Lock()

    def _write(self, text: str, *, error: bool = False) -> None:
        # Resolve the streams lazily so redirect_stdout in tests is honoured.
        stream = (self._stderr or sys.stderr) if error else (self._stdout or sys.stdout)
        with self._lock:
            print(text, file=stream, flush=True)

    def info(self, message: str) -> None:
        if self.level >= self.LEVELS["info"]:
            self._write(f"[INFO] {message}")

    def error(self, message: str) -> None:
        if self.level >= self.LEVELS["error"]:
            self._write(f"[ERROR] {message}", error=True)

    def dry(self, message: str) -> None:
        if self.dry_run:
            self._write(f"[DRY] {message}")

    def debug(self, message: str) -> None:
        if self.level >= self.LEVELS["debug"]:
            self._write(f"[DEBUG] {message}")

    def block(self, title: str, text: str, *, error: bool = False) -> None:
        """Print ``text`` in full under a header line."""

        threshold = self.LEVELS["error"] if error else self.LEVELS["info"]
        if self.level < threshold or not text.strip():
            return
        lines = [f"----- {title} -----", text.rstrip("\n"), "-" * (len(title) + 12)]
        self._write("\n".join(lines), error=error)
