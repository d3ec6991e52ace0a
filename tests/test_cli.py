from __future__ import annotations

import json
from pathlib import Path

import pytest

from resilient_rag.cli import build_parser, main


def write(p: Path, text: str) -> None:
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(text, encoding="utf-8")


def test_parser_requires_subcommand():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_parser_ask_defaults():
    args = build_parser().parse_args(["ask", "How many days?"])

    assert args.message == "How many days?"
    assert args.stream is False
    assert args.no_fallback is False
    assert args.cache_backend == "jsonl"


def test_seed_then_search_then_clear(tmp_path: Path, capsys):
    kb_dir = tmp_path / "kb"
    cache_dir = tmp_path / "cache"
    write(kb_dir / "returns.md", "# Return Policy\nOur return policy allows returns within 30 days of purchase.")
    write(kb_dir / "shipping.md", "# Shipping\nOrders ship within two business days.")

    assert main(["seed", "--kb-dir", str(kb_dir), "--cache-dir", str(cache_dir)]) == 0
    status = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert status["document_count"] == 2
    assert status["is_stale"] is False

    assert main(["search", "--q", "How many days for returns?", "--cache-dir", str(cache_dir)]) == 0
    lines = [json.loads(line) for line in capsys.readouterr().out.strip().splitlines()]
    assert "30 days" in lines[0]["answer"]
    assert lines[1]["title"] == "Return Policy"

    assert main(["clear", "--cache-dir", str(cache_dir)]) == 0
    assert main(["search", "--q", "returns", "--cache-dir", str(cache_dir)]) == 0
    out = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert out["top_score"] == 0.0


def test_seed_missing_kb_returns_error_code(tmp_path: Path):
    assert main(["seed", "--kb-dir", str(tmp_path / "missing"), "--cache-dir", str(tmp_path / "c")]) == 1


def test_ask_without_credentials_fails_fast(tmp_path: Path, monkeypatch):
    monkeypatch.delenv("RESILIENT_RAG_API_URL", raising=False)
    monkeypatch.delenv("RESILIENT_RAG_API_KEY", raising=False)

    assert main(["ask", "hello", "--cache-dir", str(tmp_path)]) == 1


def test_seed_merges_into_existing_cache(tmp_path: Path, capsys):
    cache_dir = tmp_path / "cache"
    write(tmp_path / "kb" / "returns.md", "# Return Policy\nReturns within 30 days.")
    write(tmp_path / "more" / "shipping.md", "# Shipping\nOrders ship within two business days.")

    assert main(["seed", "--kb-dir", str(tmp_path / "kb"), "--cache-dir", str(cache_dir)]) == 0
    assert main(["seed", "--kb-dir", str(tmp_path / "more"), "--cache-dir", str(cache_dir)]) == 0
    assert json.loads(capsys.readouterr().out.strip().splitlines()[-1])["document_count"] == 2

    # re-seeding an edited file replaces it by id
    write(tmp_path / "kb" / "returns.md", "# Return Policy\nReturns within 60 days.")
    assert main(["seed", "--kb-dir", str(tmp_path / "kb"), "--cache-dir", str(cache_dir)]) == 0
    assert json.loads(capsys.readouterr().out.strip().splitlines()[-1])["document_count"] == 2
