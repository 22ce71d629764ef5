"""Message persistence boundary.

Stores:
    - MessageStore: abstract append-only history interface.
    - InMemoryMessageStore: process-lifetime dictionaries (default).
    - DuckDBMessageStore: embedded DuckDB table, survives restarts.
"""
from .base import MessageStore
from .duckdb_store import DuckDBMessageStore
from .memory import InMemoryMessageStore

__all__ = ["MessageStore", "InMemoryMessageStore", "DuckDBMessageStore", "create_store"]


def create_store(backend: str, path: str = "chat_messages.duckdb") -> MessageStore:
    """Build the configured store (``memory`` or ``duckdb``)."""
    if backend == "duckdb":
        return DuckDBMessageStore(db_path=path)
    if backend == "memory":
        return InMemoryMessageStore()
    raise ValueError(f"Unknown storage backend: {backend}")
