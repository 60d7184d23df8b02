"""In-memory repository for Protocol OS.

Stores plain dict records in named collections:
- platforms, resources: catalogue entries
- handshakes, saved_handshakes: handshake definitions and sanitized snapshots
- execution_logs: finished runs, sanitized

Every operation returns a RepositoryResult; failures never raise.
"""

import copy
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from protocolos.kernel.models import Handshake
from protocolos.tools.sanitizer import sanitize_object, sanitize_string

logger = logging.getLogger(__name__)

COLLECTIONS = ("platforms", "resources", "handshakes", "saved_handshakes", "execution_logs")


@dataclass
class RepositoryResult:
    """Outcome of a repository operation.

    Attributes:
        success: Whether the operation succeeded
        data: Record(s) returned by the operation
        error: Failure reason when success is False
    """

    success: bool
    data: Any = None
    error: Optional[str] = None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class InMemoryRepository:
    """Dict-backed repository. Records are copied in and out."""

    def __init__(self, collections: tuple = COLLECTIONS):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {name: {} for name in collections}

    @property
    def collections(self) -> List[str]:
        return list(self._data)

    def _collection(self, name: str) -> Optional[Dict[str, Dict[str, Any]]]:
        return self._data.get(name)

    def create(self, collection: str, data: Dict[str, Any]) -> RepositoryResult:
        """Insert a record; an ``id`` is generated when absent."""
        store = self._collection(collection)
        if store is None:
            return RepositoryResult(False, error=f"Unknown collection: {collection}")

        record = copy.deepcopy(data)
        record_id = str(record.get("id") or uuid.uuid4())
        if record_id in store:
            return RepositoryResult(False, error=f"Record already exists: {collection}/{record_id}")

        timestamp = _now()
        record["id"] = record_id
        record.setdefault("created_at", timestamp)
        record["updated_at"] = timestamp
        store[record_id] = record
        logger.debug("Created %s/%s", collection, record_id)
        return RepositoryResult(True, copy.deepcopy(record))

    def get(self, collection: str, record_id: str) -> RepositoryResult:
        store = self._collection(collection)
        if store is None:
            return RepositoryResult(False, error=f"Unknown collection: {collection}")
        record = store.get(record_id)
        if record is None:
            return RepositoryResult(False, error=f"Not found: {collection}/{record_id}")
        return RepositoryResult(True, copy.deepcopy(record))

    def list(self, collection: str, filters: Optional[Dict[str, Any]] = None) -> RepositoryResult:
        """Records whose fields equal every filter value, in insertion order."""
        store = self._collection(collection)
        if store is None:
            return RepositoryResult(False, error=f"Unknown collection: {collection}")
        filters = filters or {}
        matches = [
            copy.deepcopy(record)
            for record in store.values()
            if all(record.get(key) == value for key, value in filters.items())
        ]
        return RepositoryResult(True, matches)

    def update(self, collection: str, record_id: str, changes: Dict[str, Any]) -> RepositoryResult:
        """Merge ``changes`` into a record. The id cannot change."""
        store = self._collection(collection)
        if store is None:
            return RepositoryResult(False, error=f"Unknown collection: {collection}")
        record = store.get(record_id)
        if record is None:
            return RepositoryResult(False, error=f"Not found: {collection}/{record_id}")

        record.update({k: copy.deepcopy(v) for k, v in changes.items() if k != "id"})
        record["updated_at"] = _now()
        return RepositoryResult(True, copy.deepcopy(record))

    def delete(self, collection: str, record_id: str) -> RepositoryResult:
        store = self._collection(collection)
        if store is None:
            return RepositoryResult(False, error=f"Unknown collection: {collection}")
        if store.pop(record_id, None) is None:
            return RepositoryResult(False, error=f"Not found: {collection}/{record_id}")
        return RepositoryResult(True, {"id": record_id})

    def save_handshake_snapshot(self, handshake: Handshake) -> RepositoryResult:
        """Store a copy of a handshake with secrets masked.

        Authentication fields are sanitized individually so the config keeps
        its shape; request commands have inline credentials masked.
        """
        snapshot = handshake.model_dump(mode="json")
        auth = snapshot.get("authentication") or {}
        snapshot["authentication"] = sanitize_object(auth)
        for request in snapshot.get("requests", []):
            request["command"] = sanitize_string(request.get("command") or "")
            if request.get("test_data"):
                request["test_data"] = sanitize_string(request["test_data"])

        snapshot["handshake_id"] = snapshot.pop("id")
        snapshot["id"] = str(uuid.uuid4())
        snapshot["saved_at"] = _now()
        return self.create("saved_handshakes", snapshot)
