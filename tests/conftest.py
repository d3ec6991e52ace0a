from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from resilient_rag.settings import CacheSettings, ClientSettings, RetrySettings
from resilient_rag.store import DocumentStore, InMemoryBackend
from resilient_rag.transport import ChatReply, StreamCompletion, Transport
from resilient_rag.types import ReferenceDocument, Source

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_doc(doc_id: str, title: str, content: str, *, minutes: int = 0) -> ReferenceDocument:
    return ReferenceDocument(id=doc_id, title=title, content=content, updated_at=BASE_TIME + timedelta(minutes=minutes))


RETURN_POLICY = make_doc(
    "return-policy",
    "Return Policy",
    "Our return policy allows returns within 30 days of purchase.",
)


class FakeTransport(Transport):
    """In-process transport; each knob controls one failure mode."""

    def __init__(self) -> None:
        self.chat_calls = 0
        self.stream_calls = 0
        self.status_calls = 0
        self.docs_calls: List[Optional[datetime]] = []
        self.closed = False

        # errors popped one per chat call, then chat_error (if set) forever
        self.chat_errors: List[BaseException] = []
        self.chat_error: Optional[BaseException] = None
        self.chat_reply = ChatReply(
            reply="Live answer",
            session_id="session-1",
            sources=[Source(title="Live doc", snippet="...", relevance=0.9)],
        )

        self.stream_tokens = ["Hel", "lo"]
        self.stream_error: Optional[BaseException] = None
        self.stream_mid_error: Optional[BaseException] = None

        self.status_payload: Dict[str, Any] = {"quota": {}, "systemSettings": {}}
        self.status_error: Optional[BaseException] = None

        self.docs: List[ReferenceDocument] = []
        self.docs_error: Optional[BaseException] = None

    async def chat(self, message, *, session_id=None, context=None) -> ChatReply:
        self.chat_calls += 1
        if self.chat_errors:
            raise self.chat_errors.pop(0)
        if self.chat_error is not None:
            raise self.chat_error
        return self.chat_reply

    async def chat_stream(
        self,
        message,
        *,
        session_id=None,
        context=None,
        on_token=None,
        on_sources=None,
        on_complete=None,
        on_error=None,
    ) -> None:
        self.stream_calls += 1
        if self.stream_error is not None:
            raise self.stream_error
        for token in self.stream_tokens:
            if on_token:
                on_token(token)
        if self.stream_mid_error is not None:
            if on_error:
                on_error(self.stream_mid_error)
            return
        if on_complete:
            on_complete(StreamCompletion(full_text="".join(self.stream_tokens), session_id="session-2"))

    async def get_general_docs(self, since=None) -> List[ReferenceDocument]:
        self.docs_calls.append(since)
        if self.docs_error is not None:
            raise self.docs_error
        return list(self.docs)

    async def get_status(self) -> Dict[str, Any]:
        self.status_calls += 1
        if self.status_error is not None:
            raise self.status_error
        return dict(self.status_payload)

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def settings() -> ClientSettings:
    return ClientSettings(
        api_url="http://backend.test",
        api_key="am_test_key",
        retry=RetrySettings(max_retries=2, initial_delay_s=0.0),
        cache=CacheSettings(backend="memory"),
    )


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def store() -> DocumentStore:
    return DocumentStore(InMemoryBackend())
