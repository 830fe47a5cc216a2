"""Dependency-ordered build orchestrator with a watch mode."""
from __future__ import annotations

from .cli import main

__version__ = "0.1.0"

__all__ = ["main", "__version__"]
