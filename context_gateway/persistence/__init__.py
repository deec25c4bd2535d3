"""Persistence collaborator — message and usage storage (in-memory or MongoDB)."""

from context_gateway.persistence.store import (
    InMemoryPersistence,
    MongoPersistence,
    PersistenceStore,
)

__all__ = ["InMemoryPersistence", "MongoPersistence", "PersistenceStore"]
