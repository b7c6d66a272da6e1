"""Relayer persistence: policies, charge records, webhook outbox, checkpoints."""
from __future__ import annotations

from .base import RelayerStore
from .memory import InMemoryRelayerStore
from .postgres import SCHEMA_SQL, PostgresRelayerStore


def create_store(database_url: str) -> RelayerStore:
    """Pick a backend from the URL scheme (``memory://`` or PostgreSQL)."""
    if database_url.startswith("memory://"):
        return InMemoryRelayerStore()
    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgresRelayerStore(database_url)
    raise ValueError(f"Unsupported DATABASE_URL scheme: {database_url.split('://', 1)[0]}")


__all__ = [
    "RelayerStore",
    "InMemoryRelayerStore",
    "PostgresRelayerStore",
    "SCHEMA_SQL",
    "create_store",
]
