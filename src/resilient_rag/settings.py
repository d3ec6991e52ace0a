from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

CACHE_BACKENDS: tuple[str, ...] = ("jsonl", "memory")
API_KEY_PREFIX = "am_"

# server-side system settings are re-read at most this often
SETTINGS_CHECK_INTERVAL_S: float = 300.0
DEFAULT_CACHE_RETENTION_HOURS: float = 168.0


@dataclass(frozen=True, slots=True)
class FallbackSettings:
    enabled: bool = True
    cache_max_age_s: float = 86400.0
    cache_on_connect: bool = True

    def validate(self) -> None:
        if self.cache_max_age_s <= 0:
            raise ValueError("fallback.cache_max_age_s must be > 0")


@dataclass(frozen=True, slots=True)
class RetrySettings:
    max_retries: int = 2
    initial_delay_s: float = 1.0
    exponential_backoff: bool = True

    def validate(self) -> None:
        if self.max_retries < 0:
            raise ValueError("retry.max_retries must be >= 0")
        if self.initial_delay_s < 0:
            raise ValueError("retry.initial_delay_s must be >= 0")


@dataclass(frozen=True, slots=True)
class CacheSettings:
    backend: str = "jsonl"  # jsonl | memory
    cache_dir: Path = Path(".resilient-rag-cache")
    max_bytes: Optional[int] = None
    quota_fallback_docs: int = 50

    def validate(self) -> None:
        if self.backend not in set(CACHE_BACKENDS):
            raise ValueError(f"cache.backend must be one of: {', '.join(CACHE_BACKENDS)}")
        if self.max_bytes is not None and self.max_bytes <= 0:
            raise ValueError("cache.max_bytes must be > 0 when set")
        if self.quota_fallback_docs <= 0:
            raise ValueError("cache.quota_fallback_docs must be > 0")
        if self.backend == "jsonl" and self.cache_dir.exists() and not self.cache_dir.is_dir():
            raise ValueError(f"cache.cache_dir must be a directory: {self.cache_dir}")


@dataclass(frozen=True, slots=True)
class ClientSettings:
    """Top-level client configuration supplied by the host."""

    api_url: str = ""
    api_key: str = ""
    request_timeout_s: float = 30.0

    fallback: FallbackSettings = field(default_factory=FallbackSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    cache: CacheSettings = field(default_factory=CacheSettings)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ClientSettings":
        env = os.environ if environ is None else environ
        defaults = CacheSettings()
        cache = CacheSettings(
            backend=env.get("RESILIENT_RAG_CACHE_BACKEND", defaults.backend),
            cache_dir=Path(env.get("RESILIENT_RAG_CACHE_DIR", str(defaults.cache_dir))),
        )
        return cls(
            api_url=env.get("RESILIENT_RAG_API_URL", ""),
            api_key=env.get("RESILIENT_RAG_API_KEY", ""),
            cache=cache,
        )

    def validate(self) -> None:
        if not self.api_url or not self.api_url.strip():
            raise ValueError("api_url is required and must be a string")
        if not self.api_key or not self.api_key.strip():
            raise ValueError("api_key is required and must be a string")
        if not self.api_key.startswith(API_KEY_PREFIX):
            raise ValueError(f'api_key must start with "{API_KEY_PREFIX}"')
        if self.request_timeout_s <= 0:
            raise ValueError("request_timeout_s must be > 0")

        self.fallback.validate()
        self.retry.validate()
        self.cache.validate()
