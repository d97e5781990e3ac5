"""Storage backends for jobs, run history and workflow definitions.

Provides multiple storage implementations behind a common interface:
    - JobStore: Abstract interface
    - SqliteJobStore: SQLite-backed storage
    - InMemoryJobStore: In-memory storage for testing

Design: Adapter Pattern + Dependency Inversion
    Clients depend on JobStore, not on concrete implementations.
"""

from pytaxis.storage.base import JobStore, StorageError


def __getattr__(name: str):
    """Lazy import storage implementations (SQLite pulls in aiosqlite)."""
    if name == "InMemoryJobStore":
        from pytaxis.storage.memory import InMemoryJobStore

        return InMemoryJobStore
    elif name == "SqliteJobStore":
        from pytaxis.storage.sqlite import SqliteJobStore

        return SqliteJobStore
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "JobStore",
    "StorageError",
    "InMemoryJobStore",
    "SqliteJobStore",
]
