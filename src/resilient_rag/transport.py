"""Transport collaborator: the contract the client depends on and its HTTP/SSE implementation."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import httpx

from resilient_rag.errors import TransportError
from resilient_rag.types import ReferenceDocument, Source

logger = logging.getLogger(__name__)

CHAT_PATH = "/api/external/chat"
CHAT_STREAM_PATH = "/api/external/chat/stream"
DOCS_PATH = "/api/external/docs"
STATUS_PATH = "/api/external/status"
HEALTH_PATH = "/api/external/health"


@dataclass(frozen=True, slots=True)
class ChatReply:
    reply: str
    session_id: Optional[str] = None
    sources: List[Source] = field(default_factory=list)
    usage: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class StreamCompletion:
    full_text: str
    session_id: Optional[str] = None
    sources: List[Source] = field(default_factory=list)


TokenCallback = Callable[[str], None]
SourcesCallback = Callable[[List[Source]], None]
CompletionCallback = Callable[[StreamCompletion], None]
ErrorCallback = Callable[[BaseException], None]


class Transport(ABC):
    """What the client needs from the backend. Implementations raise on failure."""

    @abstractmethod
    async def chat(
        self,
        message: str,
        *,
        session_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> ChatReply:
        """Send a message and wait for the complete reply."""

    @abstractmethod
    async def chat_stream(
        self,
        message: str,
        *,
        session_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        on_token: Optional[TokenCallback] = None,
        on_sources: Optional[SourcesCallback] = None,
        on_complete: Optional[CompletionCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        """Stream a reply.

        Raises only if the stream cannot be opened; failures after that are
        delivered to on_error.
        """

    @abstractmethod
    async def get_general_docs(self, since: Optional[datetime] = None) -> List[ReferenceDocument]:
        """Documents updated since the given timestamp (all of them when None)."""

    @abstractmethod
    async def get_status(self) -> Dict[str, Any]:
        """Quota and system settings for the current API key."""

    async def health(self) -> Dict[str, Any]:
        return await self.get_status()

    async def aclose(self) -> None:
        return None


def _parse_sources(raw: Any) -> List[Source]:
    if not isinstance(raw, list):
        return []
    return [Source.from_dict(s) for s in raw if isinstance(s, dict)]


def _parse_retry_after(response: httpx.Response) -> Optional[int]:
    value = response.headers.get("Retry-After")
    if value and value.strip().isdigit():
        return int(value.strip())
    return None


def _error_from_response(response: httpx.Response) -> TransportError:
    message = ""
    try:
        body = response.json()
        if isinstance(body, dict):
            message = str(body.get("message") or "")
    except (json.JSONDecodeError, ValueError):
        pass
    if not message:
        message = f"HTTP {response.status_code}: {response.reason_phrase}"
    return TransportError(
        message,
        status_code=response.status_code,
        retry_after=_parse_retry_after(response),
    )


class HttpTransport(Transport):
    """HTTP/SSE transport on httpx.AsyncClient, authenticated with an X-API-Key header."""

    def __init__(
        self,
        api_url: str,
        api_key: str,
        *,
        timeout_s: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = api_url.rstrip("/")
        self.api_key = api_key
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"X-API-Key": api_key},
            timeout=timeout_s,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    @staticmethod
    def _payload(message: str, session_id: Optional[str], context: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        body: Dict[str, Any] = {"message": message}
        if session_id is not None:
            body["sessionId"] = session_id
        if context is not None:
            body["context"] = context
        return body

    async def chat(
        self,
        message: str,
        *,
        session_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> ChatReply:
        response = await self._client.post(CHAT_PATH, json=self._payload(message, session_id, context))
        if not response.is_success:
            raise _error_from_response(response)
        data = response.json()
        return ChatReply(
            reply=str(data.get("reply") or ""),
            session_id=data.get("sessionId"),
            sources=_parse_sources(data.get("sources")),
            usage=dict(data.get("usage") or {}),
        )

    async def chat_stream(
        self,
        message: str,
        *,
        session_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        on_token: Optional[TokenCallback] = None,
        on_sources: Optional[SourcesCallback] = None,
        on_complete: Optional[CompletionCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        payload = self._payload(message, session_id, context)
        async with self._client.stream("POST", CHAT_STREAM_PATH, json=payload) as response:
            if not response.is_success:
                await response.aread()
                raise _error_from_response(response)

            full_text: List[str] = []
            sources: List[Source] = []
            stream_session: Optional[str] = None
            try:
                async for line in response.aiter_lines():
                    # "event:" lines only name the event; the data line carries it
                    if not line.startswith("data: "):
                        continue
                    try:
                        data = json.loads(line[6:])
                    except json.JSONDecodeError:
                        logger.debug("Skipping malformed SSE data line: %r", line)
                        continue
                    if not isinstance(data, dict):
                        continue
                    if "text" in data:
                        token = str(data["text"])
                        full_text.append(token)
                        if on_token:
                            on_token(token)
                    elif "sources" in data:
                        sources = _parse_sources(data["sources"])
                        if on_sources:
                            on_sources(sources)
                    elif "sessionId" in data:
                        stream_session = data["sessionId"]
            except (httpx.HTTPError, OSError) as e:
                if on_error:
                    on_error(e)
                return

        if on_complete:
            on_complete(StreamCompletion(full_text="".join(full_text), session_id=stream_session, sources=sources))

    async def get_general_docs(self, since: Optional[datetime] = None) -> List[ReferenceDocument]:
        params = {"since": since.isoformat()} if since else None
        response = await self._client.get(DOCS_PATH, params=params)
        if not response.is_success:
            raise _error_from_response(response)
        raw = response.json().get("documents") or []
        return [ReferenceDocument.from_dict(d) for d in raw if isinstance(d, dict)]

    async def get_status(self) -> Dict[str, Any]:
        response = await self._client.get(STATUS_PATH)
        if not response.is_success:
            raise _error_from_response(response)
        return dict(response.json())

    async def health(self) -> Dict[str, Any]:
        # health is public, so the key is not sent
        request = self._client.build_request("GET", HEALTH_PATH)
        del request.headers["X-API-Key"]
        response = await self._client.send(request)
        if not response.is_success:
            raise _error_from_response(response)
        return dict(response.json())
