from __future__ import annotations

import logging
from datetime import datetime, timedelta
from threading import Lock
from typing import Callable, Iterable, List, Optional

from resilient_rag.errors import StorageQuotaExceeded
from resilient_rag.types import CacheStatus, ReferenceDocument, utcnow

from .base import StorageBackend

logger = logging.getLogger(__name__)

# rough estimate, not a measured size
ESTIMATED_BYTES_PER_DOCUMENT = 5000


def merge_documents(
    existing: Iterable[ReferenceDocument], updates: Iterable[ReferenceDocument]
) -> List[ReferenceDocument]:
    """Merge by id; an update replaces the cached copy, new ids are appended."""
    by_id = {doc.id: doc for doc in existing}
    for doc in updates:
        by_id[doc.id] = doc
    return list(by_id.values())


class DocumentStore:
    """Bounded offline cache of reference documents plus sync metadata.

    Caching is advisory: `store` logs and swallows backend failures instead of
    raising, so a full disk never breaks an answer.
    """

    def __init__(
        self,
        backend: StorageBackend,
        *,
        max_age_s: float = 86400.0,
        quota_fallback_docs: int = 50,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.backend = backend
        self.max_age = timedelta(seconds=max_age_s)
        self.quota_fallback_docs = quota_fallback_docs
        self._clock = clock
        self._lock = Lock()
        self._document_count = 0
        self._last_sync_at: Optional[datetime] = None
        self._load_metadata()

    def _load_metadata(self) -> None:
        try:
            count = self.backend.count()
            last_sync = self.backend.read_last_sync()
        except Exception as e:
            logger.warning("Could not read cache metadata from %s backend: %s", self.backend.name, e)
            return
        with self._lock:
            self._document_count = count
            self._last_sync_at = last_sync

    def store(self, documents: Iterable[ReferenceDocument]) -> None:
        """Replace the cached corpus.

        On a quota failure the most recently updated documents are kept (up to
        quota_fallback_docs) and the write is retried once.
        """
        docs = list(documents)
        now = self._clock()
        try:
            self.backend.write(docs, now)
        except StorageQuotaExceeded as e:
            limited = sorted(docs, key=lambda d: d.updated_at, reverse=True)[: self.quota_fallback_docs]
            logger.warning(
                "Cache quota exceeded storing %d document(s) (%s); retrying with the %d most recent",
                len(docs),
                e,
                len(limited),
            )
            try:
                self.backend.write(limited, now)
            except Exception as retry_err:
                logger.error("Cache write failed after truncation: %s", retry_err)
                return
            docs = limited
        except Exception as e:
            logger.error("Cache write failed: %s", e)
            return

        with self._lock:
            self._document_count = len(docs)
            self._last_sync_at = now

    def retrieve(self) -> List[ReferenceDocument]:
        """Every cached document; an unreadable cache reads as empty so a later store can repair it."""
        try:
            return self.backend.read_documents()
        except Exception as e:
            logger.error("Cache read failed from %s backend: %s", self.backend.name, e)
            return []

    def get_last_sync(self) -> Optional[datetime]:
        with self._lock:
            return self._last_sync_at

    def clear(self) -> None:
        try:
            self.backend.clear()
        except Exception as e:
            logger.error("Cache clear failed: %s", e)
        with self._lock:
            self._document_count = 0
            self._last_sync_at = None

    def get_status(self) -> CacheStatus:
        with self._lock:
            count = self._document_count
            last_sync = self._last_sync_at

        # no sync at all counts as infinitely old
        is_stale = last_sync is None or (self._clock() - last_sync) > self.max_age
        return CacheStatus(
            document_count=count,
            last_sync_at=last_sync,
            approximate_size_bytes=count * ESTIMATED_BYTES_PER_DOCUMENT,
            is_stale=is_stale,
        )
