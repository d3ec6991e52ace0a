from __future__ import annotations

import argparse
import asyncio
import json
import logging
from dataclasses import asdict, replace
from pathlib import Path
from typing import Any, List, Optional

from resilient_rag.client import AskOptions, ResilientClient, StreamCallbacks
from resilient_rag.ingest import DEFAULT_GLOB, load_seed_documents
from resilient_rag.search import LexicalSearchEngine
from resilient_rag.settings import CACHE_BACKENDS, CacheSettings, ClientSettings
from resilient_rag.store import DocumentStore, make_document_store, merge_documents
from resilient_rag.types import Answer, ClientError, ClientStatus

logger = logging.getLogger(__name__)
DEFAULTS = ClientSettings.from_env({})


# =============================================================================
# Helpers
# =============================================================================

def _dump(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, default=str)


def _cache_settings(args: argparse.Namespace) -> CacheSettings:
    cs = CacheSettings(backend=args.cache_backend, cache_dir=args.cache_dir)
    cs.validate()
    return cs


def _client_settings(args: argparse.Namespace) -> ClientSettings:
    env = ClientSettings.from_env()
    return replace(
        env,
        api_url=args.api_url or env.api_url,
        api_key=args.api_key or env.api_key,
        cache=_cache_settings(args),
    )


def _open_store(args: argparse.Namespace) -> DocumentStore:
    return make_document_store(_cache_settings(args))


def _print_answer(answer: Answer) -> None:
    print(_dump(asdict(answer)))


def _print_status(status: ClientStatus) -> None:
    # the original exception is not serializable
    if status.last_error is not None:
        status = replace(status, last_error=replace(status.last_error, original_error=None))
    print(_dump(asdict(status)))


# =============================================================================
# Handlers (online: need api url + key)
# =============================================================================

async def _ask(args: argparse.Namespace) -> int:
    options = AskOptions(session_id=args.session_id, skip_fallback=bool(args.no_fallback))
    async with ResilientClient(_client_settings(args)) as client:
        if not args.stream:
            _print_answer(await client.ask(args.message, options))
            return 0

        failures: List[ClientError] = []

        def _done(answer: Answer) -> None:
            print()
            _print_answer(answer)

        callbacks = StreamCallbacks(
            on_token=lambda t: print(t, end="", flush=True),
            on_complete=_done,
            on_error=failures.append,
        )
        await client.ask_stream(args.message, callbacks, options)
        for err in failures:
            logger.error("Stream failed (%s): %s", err.code.value, err.message)
        return 1 if failures else 0


async def _sync(args: argparse.Namespace) -> int:
    client = ResilientClient(_client_settings(args))
    try:
        await client.sync_cache()
        print(_dump(asdict(client.get_status().cache)))
    finally:
        await client.aclose()
    return 0


async def _status(args: argparse.Namespace) -> int:
    client = ResilientClient(_client_settings(args))
    try:
        await client.check_connection()
        await client.check_system_status()
        _print_status(client.get_status())
    finally:
        await client.aclose()
    return 0


def handle_ask(args: argparse.Namespace) -> int:
    return asyncio.run(_ask(args))


def handle_sync(args: argparse.Namespace) -> int:
    return asyncio.run(_sync(args))


def handle_status(args: argparse.Namespace) -> int:
    return asyncio.run(_status(args))


# =============================================================================
# Handlers (offline: cache only)
# =============================================================================

def handle_clear(args: argparse.Namespace) -> int:
    store = _open_store(args)
    store.clear()
    logger.info("Cleared cache at %s", args.cache_dir)
    return 0


def handle_seed(args: argparse.Namespace) -> int:
    # seeding counts as a sync: a later `sync` only asks for newer documents
    store = _open_store(args)
    docs = load_seed_documents(args.kb_dir, glob=args.glob)
    store.store(merge_documents(store.retrieve(), docs))
    print(_dump(asdict(store.get_status())))
    return 0


def handle_search(args: argparse.Namespace) -> int:
    store = _open_store(args)
    engine = LexicalSearchEngine()
    engine.index(store.retrieve())

    result = engine.ask(args.q)
    print(_dump({"answer": result.answer, "top_score": result.top_score}))
    for hit in result.sources:
        print(_dump(asdict(hit)))
    return 0


# =============================================================================
# Argument parsing
# =============================================================================

def _add_cache_args(p: argparse.ArgumentParser) -> None:
    d = DEFAULTS.cache
    g = p.add_argument_group("Cache options")
    g.add_argument("--cache-dir", type=Path, default=d.cache_dir, help="Cache directory (jsonl backend)")
    g.add_argument("--cache-backend", type=str, default=d.backend, choices=CACHE_BACKENDS)


def _add_api_args(p: argparse.ArgumentParser) -> None:
    g = p.add_argument_group("Backend options")
    g.add_argument("--api-url", type=str, default=None, help="Backend base URL (env: RESILIENT_RAG_API_URL)")
    g.add_argument("--api-key", type=str, default=None, help="API key, am_... (env: RESILIENT_RAG_API_KEY)")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="resilient-rag", description="Resilient RAG client CLI")
    p.add_argument("-v", "--verbose", action="count", default=0, help="-v for INFO, -vv for DEBUG")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_cache = argparse.ArgumentParser(add_help=False)
    _add_cache_args(p_cache)

    p_api = argparse.ArgumentParser(add_help=False)
    _add_api_args(p_api)

    # ask
    pa = sub.add_parser("ask", parents=[p_api, p_cache], help="Ask a question (falls back to the cache)")
    pa.add_argument("message", type=str, help="Question text")
    pa.add_argument("--session-id", type=str, default=None)
    pa.add_argument("--stream", action="store_true", help="Stream tokens as they arrive")
    pa.add_argument("--no-fallback", action="store_true", help="Do not answer from the cache")
    pa.set_defaults(func=handle_ask)

    # sync
    ps = sub.add_parser("sync", parents=[p_api, p_cache], help="Pull changed documents into the cache")
    ps.set_defaults(func=handle_sync)

    # status
    pt = sub.add_parser("status", parents=[p_api, p_cache], help="Connection, cache and system status")
    pt.set_defaults(func=handle_status)

    # clear
    pc = sub.add_parser("clear", parents=[p_cache], help="Delete all cached documents")
    pc.set_defaults(func=handle_clear)

    # seed
    pd = sub.add_parser("seed", parents=[p_cache], help="Load a local knowledge base into the cache")
    pd.add_argument("--kb-dir", type=Path, required=True, help="Knowledge base directory")
    pd.add_argument("--glob", type=str, default=DEFAULT_GLOB, help="File pattern to match")
    pd.set_defaults(func=handle_seed)

    # search
    pq = sub.add_parser("search", parents=[p_cache], help="Offline TF-IDF search over the cache")
    pq.add_argument("--q", type=str, required=True, help="Query text")
    pq.set_defaults(func=handle_search)

    return p


def _log_level(verbosity: int) -> int:
    if verbosity >= 2:
        return logging.DEBUG
    if verbosity == 1:
        return logging.INFO
    return logging.WARNING


def main(argv: Optional[List[str]] = None) -> int:
    try:
        args = build_parser().parse_args(argv)
        logging.basicConfig(level=_log_level(args.verbose), format="%(levelname)s: %(message)s")
        return int(args.func(args))
    except Exception as e:
        logger.error("Error: %s", e)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
