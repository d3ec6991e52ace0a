from __future__ import annotations

import hashlib
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from langchain_community.document_loaders import DirectoryLoader, TextLoader
from langchain_core.documents import Document

from resilient_rag.types import ReferenceDocument

logger = logging.getLogger(__name__)

DEFAULT_GLOB = "**/*.md"

_HEADING_RE = re.compile(r"^\s{0,3}#{1,6}\s+(.+?)\s*#*\s*$", re.MULTILINE)


def _hash_path(kb_relpath: str) -> str:
    # identity: stable across edits as long as the path stays stable
    h = hashlib.blake2b(digest_size=32)
    h.update(kb_relpath.encode("utf-8"))
    return h.hexdigest()


def _title_from(text: str, fallback: str) -> str:
    m = _HEADING_RE.search(text or "")
    return m.group(1).strip() if m else fallback


def _relpath(kb_dir: Path, source: str) -> Optional[Path]:
    if not source:
        return None
    source_path = Path(source).resolve()
    if kb_dir in source_path.parents:
        return source_path.relative_to(kb_dir)
    return None


def _to_reference(kb_dir: Path, d: Document) -> Optional[ReferenceDocument]:
    source = str(d.metadata.get("source") or "")
    relpath = _relpath(kb_dir, source)
    if relpath is None:
        logger.debug("Skipping document outside %s: %s", kb_dir, source)
        return None

    try:
        mtime = Path(source).stat().st_mtime
        updated_at = datetime.fromtimestamp(mtime, tz=timezone.utc)
    except OSError:
        updated_at = datetime.now(timezone.utc)

    text = d.page_content or ""
    return ReferenceDocument(
        id=_hash_path(relpath.as_posix()),  # consistent slashes across OSes
        title=_title_from(text, relpath.stem),
        content=text,
        updated_at=updated_at,
    )


def load_seed_documents(
    kb_dir: Path,
    glob: str = DEFAULT_GLOB,
    *,
    show_progress: bool = False,
) -> List[ReferenceDocument]:
    """
    Load a local knowledge-base directory as reference documents.

    Used to prime the offline cache without a backend round trip.

      - id         blake2b of the path relative to kb_dir
      - title      first markdown heading, else the file stem
      - updated_at file modification time (UTC)

    Ordered by source path so repeated loads are deterministic.
    """
    kb_dir = Path(kb_dir)
    if not kb_dir.exists():
        raise FileNotFoundError(f"kb_dir not found: {kb_dir}")
    if not kb_dir.is_dir():
        raise NotADirectoryError(f"kb_dir is not a directory: {kb_dir}")
    if not glob:
        raise ValueError("glob must be non-empty")

    kb_dir = kb_dir.resolve()
    logger.info("Loading seed documents from %s (%s)", kb_dir, glob)

    loader = DirectoryLoader(
        str(kb_dir),
        glob=glob,
        loader_cls=TextLoader,
        loader_kwargs={"encoding": "utf-8"},
        show_progress=show_progress,
    )

    documents: List[ReferenceDocument] = []
    for d in sorted(loader.load(), key=lambda d: str(d.metadata.get("source") or "")):
        ref = _to_reference(kb_dir, d)
        if ref is not None:
            documents.append(ref)

    logger.info("Loaded %d seed document(s)", len(documents))
    return documents
