from __future__ import annotations

from datetime import datetime
from threading import Lock
from typing import List, Optional, Sequence, Tuple

from resilient_rag.errors import StorageQuotaExceeded
from resilient_rag.types import ReferenceDocument

from .base import StorageBackend, serialize_documents


class InMemoryBackend(StorageBackend):
    """Process-local storage. Nothing survives a restart.

    max_bytes emulates a storage quota: writes whose serialized size exceeds
    it are rejected with StorageQuotaExceeded.
    """

    name = "memory"

    def __init__(self, max_bytes: Optional[int] = None) -> None:
        self._max_bytes = max_bytes
        self._lock = Lock()
        self._state: Tuple[Tuple[ReferenceDocument, ...], Optional[datetime]] = ((), None)

    def write(self, documents: Sequence[ReferenceDocument], last_sync_at: datetime) -> None:
        docs = tuple(documents)
        if self._max_bytes is not None:
            size = len(serialize_documents(docs).encode("utf-8"))
            if size > self._max_bytes:
                raise StorageQuotaExceeded(f"{size} bytes exceeds quota of {self._max_bytes} bytes")
        with self._lock:
            self._state = (docs, last_sync_at)

    def read_documents(self) -> List[ReferenceDocument]:
        with self._lock:
            return list(self._state[0])

    def read_last_sync(self) -> Optional[datetime]:
        with self._lock:
            return self._state[1]

    def count(self) -> int:
        with self._lock:
            return len(self._state[0])

    def clear(self) -> None:
        with self._lock:
            self._state = ((), None)
