from __future__ import annotations

from typing import Optional

from resilient_rag.settings import CacheSettings

from .base import StorageBackend
from .document_store import ESTIMATED_BYTES_PER_DOCUMENT, DocumentStore, merge_documents
from .jsonl import JsonlFileBackend
from .memory import InMemoryBackend


def make_storage_backend(settings: Optional[CacheSettings] = None) -> StorageBackend:
    """Factory for storage backends (plugin architecture).

    Backends are selected via settings.backend:
      - jsonl  (durable, files under cache_dir)
      - memory (process-local)
    """
    st = settings or CacheSettings()
    backend = (st.backend or "jsonl").lower().strip()

    if backend == "jsonl":
        return JsonlFileBackend(st.cache_dir, max_bytes=st.max_bytes)

    if backend == "memory":
        return InMemoryBackend(max_bytes=st.max_bytes)

    raise ValueError(f"Unknown cache backend: {backend}")


def make_document_store(
    settings: Optional[CacheSettings] = None,
    *,
    max_age_s: float = 86400.0,
) -> DocumentStore:
    st = settings or CacheSettings()
    return DocumentStore(
        make_storage_backend(st),
        max_age_s=max_age_s,
        quota_fallback_docs=st.quota_fallback_docs,
    )


__all__ = [
    "DocumentStore",
    "ESTIMATED_BYTES_PER_DOCUMENT",
    "StorageBackend",
    "JsonlFileBackend",
    "InMemoryBackend",
    "make_storage_backend",
    "make_document_store",
    "merge_documents",
]
