from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Best-effort ISO-8601 parse. Naive values are taken as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        ts = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        ts = datetime.fromisoformat(text)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    ONLINE = "online"
    OFFLINE = "offline"
    ERROR = "error"


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    NONE = "none"


class ErrorCode(str, Enum):
    NETWORK_ERROR = "NETWORK_ERROR"
    AUTH_ERROR = "AUTH_ERROR"
    RATE_LIMIT = "RATE_LIMIT"
    SERVER_ERROR = "SERVER_ERROR"
    CACHE_ERROR = "CACHE_ERROR"
    LOCAL_RAG_ERROR = "LOCAL_RAG_ERROR"


@dataclass(frozen=True, slots=True)
class ReferenceDocument:
    """A cached reference document. Replaced wholesale on re-sync."""

    id: str
    title: str
    content: str
    updated_at: datetime

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReferenceDocument":
        doc_id = str(data.get("id") or "")
        if not doc_id:
            raise ValueError("Document is missing 'id'")
        updated = parse_timestamp(data.get("updatedAt") or data.get("updated_at")) or utcnow()
        return cls(
            id=doc_id,
            title=str(data.get("title") or ""),
            content=str(data.get("content") or ""),
            updated_at=updated,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "content": self.content,
            "updatedAt": self.updated_at.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class Source:
    title: str
    snippet: str
    relevance: float
    document_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Source":
        return cls(
            title=str(data.get("title") or ""),
            snippet=str(data.get("snippet") or ""),
            relevance=float(data.get("relevance") or 0.0),
            document_id=data.get("documentId"),
        )


@dataclass(frozen=True, slots=True)
class Answer:
    """Result of every ask. Always produced, never raised."""

    reply: str
    confidence: Confidence
    sources: List[Source] = field(default_factory=list)
    offline: bool = False
    session_id: Optional[str] = None
    degraded_reason: Optional[str] = None
    retry_after: Optional[int] = None


@dataclass(frozen=True, slots=True)
class CacheStatus:
    document_count: int
    last_sync_at: Optional[datetime]
    approximate_size_bytes: int
    is_stale: bool


@dataclass(frozen=True, slots=True)
class SystemSettings:
    cache_retention_hours: float = 168.0
    maintenance_mode: bool = False
    maintenance_message: Optional[str] = None
    force_offline_clients: bool = False


@dataclass(frozen=True, slots=True)
class ClientError:
    code: ErrorCode
    message: str
    retry_after: Optional[int] = None
    original_error: Optional[BaseException] = None


@dataclass(frozen=True, slots=True)
class ClientStatus:
    connection: ConnectionState
    cache: CacheStatus
    last_error: Optional[ClientError]
    system_settings: Optional[SystemSettings]


@dataclass(frozen=True, slots=True)
class ActionIntent:
    """A UI action proposed by an ActionPlanner."""

    id: str
    type: str
    target: str
    confidence: float
    should_escalate: bool = False
    explanation: Optional[str] = None
    params: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ActionResult:
    success: bool
    message: str
    error: Optional[str] = None


@dataclass(frozen=True, slots=True)
class SmartAnswer:
    answer: Optional[Answer] = None
    action: Optional[ActionIntent] = None
    action_result: Optional[ActionResult] = None
