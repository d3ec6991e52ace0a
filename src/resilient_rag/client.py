from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Protocol

from resilient_rag.errors import classify_error
from resilient_rag.retry import call_with_retry
from resilient_rag.search import LexicalSearchEngine
from resilient_rag.settings import (
    DEFAULT_CACHE_RETENTION_HOURS,
    SETTINGS_CHECK_INTERVAL_S,
    ClientSettings,
)
from resilient_rag.store import DocumentStore, make_document_store, merge_documents
from resilient_rag.transport import HttpTransport, StreamCompletion, Transport
from resilient_rag.types import (
    ActionIntent,
    ActionResult,
    Answer,
    ClientError,
    ClientStatus,
    Confidence,
    ConnectionState,
    ErrorCode,
    ReferenceDocument,
    SmartAnswer,
    Source,
    SystemSettings,
    utcnow,
)

logger = logging.getLogger(__name__)

# below this top score an offline answer is reported as low confidence
LOW_CONFIDENCE_SCORE = 0.3

MESSAGE_REQUIRED_REPLY = "Message is required"
MAINTENANCE_REPLY = "The service is currently under maintenance. Please try again later."
RATE_LIMIT_REPLY = "I'm receiving too many requests right now. Please try again in a moment."
UNABLE_TO_CONNECT_REPLY = "Unable to connect to the chatbot service. Please try again later."
NO_CACHE_REPLY = (
    "I'm currently offline and don't have any cached information. "
    "Please check your connection and try again."
)
OFFLINE_FAILURE_REPLY = (
    "I'm having trouble processing your request offline. "
    "Please try again when you're back online."
)


class ActionPlanner(Protocol):
    """Maps a message to a UI action and carries it out.

    Intent classification and the actions themselves live outside this
    package; the client only routes between them and the answer path.
    """

    def classify(self, message: str) -> Optional[ActionIntent]:
        ...

    async def execute(self, intent: ActionIntent) -> ActionResult:
        ...


@dataclass(frozen=True, slots=True)
class AskOptions:
    session_id: Optional[str] = None
    context: Optional[Dict[str, Any]] = None
    skip_fallback: bool = False


@dataclass(slots=True)
class StreamCallbacks:
    on_token: Optional[Callable[[str], None]] = None
    on_sources: Optional[Callable[[List[Source]], None]] = None
    on_complete: Optional[Callable[[Answer], None]] = None
    on_error: Optional[Callable[[ClientError], None]] = None


@dataclass(slots=True)
class _ClientState:
    connection: ConnectionState = ConnectionState.CONNECTING
    last_error: Optional[ClientError] = None
    system_settings: Optional[SystemSettings] = None
    settings_checked_at: float = 0.0


def _error_answer(reply: str, *, retry_after: Optional[int] = None) -> Answer:
    return Answer(reply=reply, confidence=Confidence.NONE, sources=[], offline=False, retry_after=retry_after)


def _offline_failure_answer() -> Answer:
    return Answer(
        reply=OFFLINE_FAILURE_REPLY,
        confidence=Confidence.NONE,
        sources=[],
        offline=True,
        degraded_reason="Local search failed",
    )


class ResilientClient:
    """Answers questions from the live backend, degrading to local search over cached documents.

    Never raises from ask / ask_stream / smart_ask: every failure becomes an
    Answer (or an on_error callback for streams). Offline answers are capped
    at medium confidence.

    Connection state starts as `connecting`; successful backend calls move it
    to `online`, fallback use and failed connection checks to `offline`. on_status_change
    fires only when the value actually changes.
    """

    def __init__(
        self,
        settings: ClientSettings,
        *,
        transport: Optional[Transport] = None,
        store: Optional[DocumentStore] = None,
        engine: Optional[LexicalSearchEngine] = None,
        planner: Optional[ActionPlanner] = None,
        require_confirmation: bool = True,
        on_status_change: Optional[Callable[[ConnectionState], None]] = None,
        on_error: Optional[Callable[[ClientError], None]] = None,
        logger: Optional[logging.Logger] = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        settings.validate()
        self.settings = settings
        self.log = logger or logging.getLogger(__name__)

        if transport is None:
            transport = HttpTransport(settings.api_url, settings.api_key, timeout_s=settings.request_timeout_s)
        if store is None:
            store = make_document_store(settings.cache, max_age_s=settings.fallback.cache_max_age_s)

        self.transport = transport
        self.store = store
        # an empty engine is falsy (__len__), so test against None
        self.engine = engine if engine is not None else LexicalSearchEngine()
        self.planner = planner
        self.require_confirmation = require_confirmation

        self._on_status_change = on_status_change
        self._on_error = on_error
        self._clock = clock
        self._now = now

        self._state = _ClientState()
        self._settings_lock = asyncio.Lock()
        self._index_lock = asyncio.Lock()

    # ------------------------------------------------------------------ lifecycle

    async def start(self) -> None:
        """Initial cache sync, when enabled."""
        fb = self.settings.fallback
        if fb.enabled and fb.cache_on_connect:
            await self.sync_cache()

    async def aclose(self) -> None:
        await self.transport.aclose()

    async def __aenter__(self) -> "ResilientClient":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # ------------------------------------------------------------------ answering

    async def ask(self, message: str, options: Optional[AskOptions] = None) -> Answer:
        if not message or not isinstance(message, str):
            return _error_answer(MESSAGE_REQUIRED_REPLY)

        opts = options or AskOptions()
        system = await self.check_system_status()
        if system.maintenance_mode or system.force_offline_clients:
            return await self._maintenance_answer(message, system)

        try:
            reply = await call_with_retry(
                lambda: self.transport.chat(message, session_id=opts.session_id, context=opts.context),
                self.settings.retry,
                timeout_s=self.settings.request_timeout_s,
                log=self.log,
            )
        except Exception as exc:
            error = self._record_error(exc)

            # rate limiting means "slow down", not "offline"
            if error.code == ErrorCode.RATE_LIMIT:
                return Answer(
                    reply=RATE_LIMIT_REPLY,
                    confidence=Confidence.NONE,
                    sources=[],
                    offline=False,
                    retry_after=error.retry_after,
                )

            if self.settings.fallback.enabled and not opts.skip_fallback:
                return await self._fallback_ask(message)

            return _error_answer(UNABLE_TO_CONNECT_REPLY, retry_after=error.retry_after)

        self._set_state(ConnectionState.ONLINE)
        return Answer(
            reply=reply.reply,
            confidence=Confidence.HIGH,
            sources=list(reply.sources),
            offline=False,
            session_id=reply.session_id,
        )

    async def ask_stream(
        self,
        message: str,
        callbacks: StreamCallbacks,
        options: Optional[AskOptions] = None,
    ) -> None:
        """Stream a live answer; a degraded answer arrives through on_complete too.

        Callers tell the two apart only by Answer.offline.
        """
        if not message or not isinstance(message, str):
            error = ClientError(code=ErrorCode.LOCAL_RAG_ERROR, message=MESSAGE_REQUIRED_REPLY)
            self._invoke(callbacks.on_error, error)
            return

        opts = options or AskOptions()
        system = await self.check_system_status()
        if system.maintenance_mode or system.force_offline_clients:
            answer = await self._maintenance_answer(message, system)
            self._invoke(callbacks.on_complete, answer)
            return

        def _complete(data: StreamCompletion) -> None:
            self._set_state(ConnectionState.ONLINE)
            self._invoke(
                callbacks.on_complete,
                Answer(
                    reply=data.full_text,
                    confidence=Confidence.HIGH,
                    sources=list(data.sources),
                    offline=False,
                    session_id=data.session_id,
                ),
            )

        def _stream_error(exc: BaseException) -> None:
            self._invoke(callbacks.on_error, self._record_error(exc))

        try:
            await self.transport.chat_stream(
                message,
                session_id=opts.session_id,
                context=opts.context,
                on_token=lambda text: self._invoke(callbacks.on_token, text),
                on_sources=lambda sources: self._invoke(callbacks.on_sources, sources),
                on_complete=_complete,
                on_error=_stream_error,
            )
        except Exception as exc:
            error = self._record_error(exc)
            if error.code != ErrorCode.RATE_LIMIT and self.settings.fallback.enabled and not opts.skip_fallback:
                answer = await self._fallback_ask(message)
                self._invoke(callbacks.on_complete, answer)
            else:
                self._invoke(callbacks.on_error, error)

    async def smart_ask(self, message: str, options: Optional[AskOptions] = None) -> SmartAnswer:
        """Route to a UI action when the planner is confident, otherwise answer normally."""
        intent = self.classify_intent(message)
        if intent is not None and not intent.should_escalate:
            if self.require_confirmation:
                return SmartAnswer(action=intent)
            return SmartAnswer(action=intent, action_result=await self.execute_action(intent))

        return SmartAnswer(answer=await self.ask(message, options))

    def classify_intent(self, message: str) -> Optional[ActionIntent]:
        if self.planner is None or not message or not isinstance(message, str):
            return None
        try:
            return self.planner.classify(message)
        except Exception as exc:
            self.log.warning("Intent classification failed: %s", exc)
            return None

    async def execute_action(self, intent: ActionIntent) -> ActionResult:
        if self.planner is None:
            return ActionResult(success=False, message="Action planning is not configured")
        try:
            return await self.planner.execute(intent)
        except Exception as exc:
            self.log.warning("Action %s failed: %s", intent.id, exc)
            return ActionResult(success=False, message="Action failed", error=str(exc))

    # ------------------------------------------------------------------ cache

    async def sync_cache(self) -> None:
        """Pull documents changed since the last sync into the cache and re-index.

        Opportunistic: failures are logged, never raised.
        """
        try:
            since = self.store.get_last_sync()
            updates = await asyncio.wait_for(
                self.transport.get_general_docs(since),
                timeout=self.settings.request_timeout_s,
            )
            if updates:
                # an empty diff means "nothing changed", never "clear"
                self.store.store(merge_documents(self.store.retrieve(), updates))
                # index what was actually kept; a quota truncation may drop documents
                cached = self.store.retrieve()
                async with self._index_lock:
                    self.engine.index(cached)
                self.log.info("Cache synced: %d updated document(s), %d cached", len(updates), len(cached))
            self._set_state(ConnectionState.ONLINE)
        except Exception as exc:
            self.log.warning("Cache sync failed: %s", exc)

    async def clear_cache(self) -> None:
        self.store.clear()
        async with self._index_lock:
            self.engine.reset()

    def is_cache_valid(self) -> bool:
        last_sync = self.store.get_status().last_sync_at
        if last_sync is None:
            return False
        system = self._state.system_settings
        hours = (system.cache_retention_hours if system else 0) or DEFAULT_CACHE_RETENTION_HOURS
        return self._now() - last_sync < timedelta(hours=hours)

    # ------------------------------------------------------------------ status

    def get_status(self) -> ClientStatus:
        return ClientStatus(
            connection=self._state.connection,
            cache=self.store.get_status(),
            last_error=self._state.last_error,
            system_settings=self._state.system_settings,
        )

    async def check_connection(self) -> bool:
        try:
            await asyncio.wait_for(self.transport.get_status(), timeout=self.settings.request_timeout_s)
        except Exception as exc:
            self.log.debug("Connectivity check failed: %s", exc)
            self._set_state(ConnectionState.OFFLINE)
            return False
        self._set_state(ConnectionState.ONLINE)
        return True

    async def handle_connectivity_change(self, online: bool) -> None:
        """Host-reported network change: going offline flips state, coming back triggers a sync."""
        if online:
            await self.sync_cache()
        else:
            self._set_state(ConnectionState.OFFLINE)

    async def check_system_status(self, *, force: bool = False) -> SystemSettings:
        """Read-through cache of server system settings, refreshed every 5 minutes.

        A failed refresh keeps the previous value (or safe defaults) and is not
        cached, so the next call tries again.
        """
        if not force and self._settings_fresh():
            return self._state.system_settings  # type: ignore[return-value]

        async with self._settings_lock:
            # another caller may have refreshed while we waited
            if not force and self._settings_fresh():
                return self._state.system_settings  # type: ignore[return-value]

            try:
                status = await asyncio.wait_for(
                    self.transport.get_status(),
                    timeout=self.settings.request_timeout_s,
                )
                raw = status.get("systemSettings") if isinstance(status, dict) else None
                system = _system_settings_from(raw if raw is not None else {})
            except Exception as exc:
                self.log.debug("System status check failed: %s", exc)
                return self._state.system_settings or SystemSettings()

            self._state.system_settings = system
            self._state.settings_checked_at = self._clock()
            return system

    def is_maintenance_mode(self) -> bool:
        system = self._state.system_settings
        return bool(system and system.maintenance_mode)

    def get_maintenance_message(self) -> Optional[str]:
        system = self._state.system_settings
        return system.maintenance_message if system else None

    # ------------------------------------------------------------------ internals

    def _settings_fresh(self) -> bool:
        return (
            self._state.system_settings is not None
            and self._clock() - self._state.settings_checked_at < SETTINGS_CHECK_INTERVAL_S
        )

    async def _maintenance_answer(self, message: str, system: SystemSettings) -> Answer:
        self.log.info("Maintenance mode active, using cached data")
        if not self.is_cache_valid() or self.store.get_status().document_count == 0:
            return Answer(
                reply=system.maintenance_message or MAINTENANCE_REPLY,
                confidence=Confidence.NONE,
                sources=[],
                offline=True,
                degraded_reason="Maintenance mode active, no valid cache available",
            )
        return await self._fallback_ask(message)

    async def _fallback_ask(self, message: str) -> Answer:
        self._set_state(ConnectionState.OFFLINE)

        cache_status = self.store.get_status()
        if cache_status.document_count == 0:
            return Answer(
                reply=NO_CACHE_REPLY,
                confidence=Confidence.NONE,
                sources=[],
                offline=True,
                degraded_reason="No cached documents available",
            )

        # the store reports documents; an empty read means the cache is unreadable
        docs = self.store.retrieve()
        if not docs and not self.engine.is_indexed():
            self._notify_error(ClientError(code=ErrorCode.CACHE_ERROR, message="Cached documents could not be read"))
            return _offline_failure_answer()

        try:
            # lazy: an existing index is reused even if the cache changed since
            async with self._index_lock:
                if not self.engine.is_indexed():
                    self.engine.index(docs)
            result = self.engine.ask(message)
        except Exception as exc:
            self.log.error("Offline search failed: %s", exc)
            self._notify_error(ClientError(code=ErrorCode.LOCAL_RAG_ERROR, message=str(exc), original_error=exc))
            return _offline_failure_answer()

        confidence = Confidence.LOW if result.top_score < LOW_CONFIDENCE_SCORE else Confidence.MEDIUM
        return Answer(
            reply=result.answer,
            confidence=confidence,
            sources=[
                Source(title=h.title, snippet=h.snippet, relevance=h.score, document_id=h.document_id)
                for h in result.sources
            ],
            offline=True,
            degraded_reason="Using stale cached data" if cache_status.is_stale else "Processed locally without server",
        )

    def _record_error(self, exc: BaseException) -> ClientError:
        error = classify_error(exc)
        self._state.last_error = error
        self.log.warning("Backend call failed (%s): %s", error.code.value, exc)
        self._notify_error(error)
        return error

    def _invoke(self, callback: Optional[Callable[[Any], None]], payload: Any) -> None:
        # a failing caller callback is logged; it is never mistaken for a transport failure
        if callback is None:
            return
        try:
            callback(payload)
        except Exception:
            self.log.exception("Stream callback raised")

    def _notify_error(self, error: ClientError) -> None:
        if self._on_error is None:
            return
        try:
            self._on_error(error)
        except Exception:
            self.log.exception("on_error callback raised")

    def _set_state(self, state: ConnectionState) -> None:
        if self._state.connection == state:
            return
        self._state.connection = state
        if self._on_status_change is None:
            return
        try:
            self._on_status_change(state)
        except Exception:
            self.log.exception("on_status_change callback raised")


def _system_settings_from(raw: Any) -> SystemSettings:
    if not isinstance(raw, dict):
        raise TypeError(f"systemSettings must be an object, got {type(raw).__name__}")
    retention = raw.get("cacheRetentionHours")
    message = raw.get("maintenanceMessage")
    return SystemSettings(
        cache_retention_hours=float(retention) if retention is not None else DEFAULT_CACHE_RETENTION_HOURS,
        maintenance_mode=bool(raw.get("maintenanceMode") or False),
        maintenance_message=str(message) if message else None,
        force_offline_clients=bool(raw.get("forceOfflineClients") or False),
    )
