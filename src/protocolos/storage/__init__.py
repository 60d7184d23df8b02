"""Storage package for Protocol OS.

Provides the in-memory repository for handshakes, snapshots and run logs.
"""

from protocolos.storage.memory import COLLECTIONS, InMemoryRepository, RepositoryResult

__all__ = [
    "COLLECTIONS",
    "InMemoryRepository",
    "RepositoryResult",
]
