"""
Store backends.

``create_store`` maps a URL to a backend:

    memory://              MemoryStore
    sqlite:///path/to.db   SQLiteStore
"""

from typing import Optional

from ..clock import Clock
from .base import UNSET, Store, advance_next_run
from .memory import MemoryStore
from .sqlite import SQLiteStore


def create_store(url: str, clock: Optional[Clock] = None) -> Store:
    """Build a store from its URL."""
    if not url:
        raise ValueError("Store URL cannot be empty")
    lowered = url.lower()
    if lowered.startswith("memory://") or url == ":memory:":
        return MemoryStore(clock=clock)
    if lowered.startswith("sqlite:///"):
        return SQLiteStore(url[len("sqlite:///"):], clock=clock)
    if lowered.startswith("sqlite://"):
        return SQLiteStore(url[len("sqlite://"):], clock=clock)
    raise ValueError(f"Unsupported store URL: {url}")


__all__ = ["Store", "MemoryStore", "SQLiteStore", "UNSET", "advance_next_run", "create_store"]
