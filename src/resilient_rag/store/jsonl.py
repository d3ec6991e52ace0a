from __future__ import annotations

import errno
import json
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from resilient_rag.errors import StorageQuotaExceeded
from resilient_rag.types import ReferenceDocument, parse_timestamp

from .base import StorageBackend, deserialize_documents, serialize_documents

_QUOTA_ERRNOS = {errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)}

HEADER_KEY = "_cache"


def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=path.stem + "_", suffix=path.suffix + ".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        os.replace(tmp_path, path)
    finally:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)


def _parse_header(line: str) -> Optional[Dict[str, Any]]:
    try:
        row = json.loads(line)
    except json.JSONDecodeError:
        return None
    if isinstance(row, dict) and isinstance(row.get(HEADER_KEY), dict):
        return row[HEADER_KEY]
    return None


class JsonlFileBackend(StorageBackend):
    """Durable storage: a single JSONL file whose first row holds the sync metadata.

    Header and documents go out in one temp file + os.replace, so the count
    and last-sync time on disk always describe the documents next to them.
    """

    name = "jsonl"
    documents_filename = "documents.jsonl"

    def __init__(self, cache_dir: Path, *, max_bytes: Optional[int] = None) -> None:
        self.cache_dir = Path(cache_dir)
        self._max_bytes = max_bytes

    @property
    def documents_path(self) -> Path:
        return self.cache_dir / self.documents_filename

    def _read_header(self) -> Dict[str, Any]:
        if not self.documents_path.exists():
            return {}
        with self.documents_path.open("r", encoding="utf-8") as f:
            first = f.readline()
        return _parse_header(first) or {}

    def write(self, documents: Sequence[ReferenceDocument], last_sync_at: datetime) -> None:
        payload = serialize_documents(documents)
        if self._max_bytes is not None:
            size = len(payload.encode("utf-8"))
            if size > self._max_bytes:
                raise StorageQuotaExceeded(f"{size} bytes exceeds quota of {self._max_bytes} bytes")

        header = {HEADER_KEY: {"documentCount": len(documents), "lastSyncAt": last_sync_at.isoformat()}}
        try:
            _atomic_write_text(self.documents_path, json.dumps(header) + "\n" + payload)
        except OSError as e:
            if e.errno in _QUOTA_ERRNOS:
                raise StorageQuotaExceeded(str(e)) from e
            raise

    def read_documents(self) -> List[ReferenceDocument]:
        if not self.documents_path.exists():
            return []
        text = self.documents_path.read_text(encoding="utf-8")
        first, _, rest = text.partition("\n")
        if _parse_header(first) is None:
            # headerless file: every row is a document
            return deserialize_documents(text)
        return deserialize_documents(rest)

    def read_last_sync(self) -> Optional[datetime]:
        try:
            return parse_timestamp(self._read_header().get("lastSyncAt"))
        except ValueError:
            return None

    def count(self) -> int:
        header = self._read_header()
        if "documentCount" in header:
            return int(header["documentCount"] or 0)
        if not self.documents_path.exists():
            return 0
        with self.documents_path.open("r", encoding="utf-8") as f:
            return sum(1 for line in f if line.strip())

    def clear(self) -> None:
        if self.documents_path.exists():
            self.documents_path.unlink()
