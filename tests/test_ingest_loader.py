from __future__ import annotations

from pathlib import Path

import pytest

from resilient_rag.ingest.loader import load_seed_documents


def write(p: Path, text: str) -> None:
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(text, encoding="utf-8")


def test_load_seed_documents_titles_and_ids(tmp_path: Path) -> None:
    kb_dir = tmp_path / "knowledge-base"
    write(kb_dir / "policies" / "returns.md", "# Return Policy\nReturns are accepted within 30 days.")
    write(kb_dir / "faq.md", "No heading here, just text.")

    documents = load_seed_documents(kb_dir)

    assert len(documents) == 2
    by_title = {d.title: d for d in documents}
    assert set(by_title) == {"Return Policy", "faq"}
    assert "30 days" in by_title["Return Policy"].content

    # doc id is blake2b(digest_size=32) of the relative path => 64 hex chars
    assert all(len(d.id) == 64 for d in documents)
    assert by_title["faq"].updated_at.tzinfo is not None


def test_load_seed_documents_ids_are_stable(tmp_path: Path) -> None:
    kb_dir = tmp_path / "kb"
    write(kb_dir / "about.md", "# About\nFirst version.")
    first = load_seed_documents(kb_dir)

    write(kb_dir / "about.md", "# About\nSecond version.")
    second = load_seed_documents(kb_dir)

    assert first[0].id == second[0].id
    assert second[0].content.endswith("Second version.")


def test_load_seed_documents_respects_glob(tmp_path: Path) -> None:
    kb_dir = tmp_path / "kb"
    write(kb_dir / "a.md", "# A\nalpha")
    write(kb_dir / "b.txt", "beta")

    assert [d.title for d in load_seed_documents(kb_dir, glob="**/*.txt")] == ["b"]


def test_load_seed_documents_raises_if_missing_kb(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_seed_documents(tmp_path / "nonexistent-kb")


def test_load_seed_documents_raises_if_kb_is_file(tmp_path: Path) -> None:
    kb_file = tmp_path / "knowledge-base"
    kb_file.write_text("not a directory", encoding="utf-8")

    with pytest.raises(NotADirectoryError):
        load_seed_documents(kb_file)
