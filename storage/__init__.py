"""Status store implementations."""

from storage.memory import MemoryStatusStore
from storage.sqlite import SQLiteStatusStore

__all__ = ["MemoryStatusStore", "SQLiteStatusStore"]
