from __future__ import annotations

import json
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional, Sequence

from resilient_rag.types import ReferenceDocument


class StorageBackend(ABC):
    """Platform storage capability behind a DocumentStore.

    Implementations can be in-process (memory) or durable (JSONL on disk).
    A write replaces the whole stored corpus; readers never observe a
    partially written set.
    """

    name: str = "base"

    @abstractmethod
    def write(self, documents: Sequence[ReferenceDocument], last_sync_at: datetime) -> None:
        """Persist documents and sync metadata. Raises StorageQuotaExceeded when they do not fit."""

    @abstractmethod
    def read_documents(self) -> List[ReferenceDocument]:
        """Return every stored document (empty list when nothing is stored)."""

    @abstractmethod
    def read_last_sync(self) -> Optional[datetime]:
        """Return the sync timestamp recorded by the last successful write."""

    @abstractmethod
    def count(self) -> int:
        """Number of stored documents."""

    @abstractmethod
    def clear(self) -> None:
        """Drop all documents and metadata."""


def serialize_documents(documents: Sequence[ReferenceDocument]) -> str:
    return "".join(json.dumps(d.to_dict(), ensure_ascii=False) + "\n" for d in documents)


def deserialize_documents(payload: str) -> List[ReferenceDocument]:
    out: List[ReferenceDocument] = []
    for line in payload.splitlines():
        line = line.strip()
        if not line:
            continue
        out.append(ReferenceDocument.from_dict(json.loads(line)))
    return out
