"""Transport failure type and the classifier that maps raw failures onto ErrorCode."""

from __future__ import annotations

import re
from typing import Optional

from resilient_rag.types import ClientError, ErrorCode

DEFAULT_RETRY_AFTER_S = 60

_RETRY_AFTER_RE = re.compile(r"retry after (\d+)", re.IGNORECASE)
_SERVER_STATUS_RE = re.compile(r"\b5\d\d\b")

# never retried: the answer will not change by asking again
NON_RETRYABLE_CODES: frozenset[ErrorCode] = frozenset({ErrorCode.AUTH_ERROR, ErrorCode.RATE_LIMIT})


class TransportError(Exception):
    """Raised by a transport on a non-2xx or unreadable response."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        retry_after: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after


class StorageQuotaExceeded(Exception):
    """Raised by a storage backend when a write does not fit."""


def get_status_code(exc: BaseException) -> Optional[int]:
    code = getattr(exc, "status_code", None)
    if isinstance(code, int) and code >= 100:
        return code
    response = getattr(exc, "response", None)
    if response is not None:
        code = getattr(response, "status_code", None)
        if isinstance(code, int) and code >= 100:
            return code
    return None


def _retry_after(exc: BaseException, message: str) -> int:
    hint = getattr(exc, "retry_after", None)
    if isinstance(hint, int) and hint >= 0:
        return hint
    match = _RETRY_AFTER_RE.search(message)
    return int(match.group(1)) if match else DEFAULT_RETRY_AFTER_S


def classify_error(exc: BaseException) -> ClientError:
    """Map any failure raised on the live path to a ClientError.

    A status code carried by the exception wins; otherwise the message is
    inspected. Anything unrecognised (timeouts, connection failures, bugs in
    a custom transport) is a NETWORK_ERROR.
    """
    message = str(exc)
    status = get_status_code(exc)

    if status == 401 or (status is None and ("401" in message or "Unauthorized" in message)):
        return ClientError(
            code=ErrorCode.AUTH_ERROR,
            message="Invalid or expired API key",
            original_error=exc,
        )

    if status == 429 or (status is None and ("429" in message or "rate limit" in message.lower())):
        return ClientError(
            code=ErrorCode.RATE_LIMIT,
            message="Rate limit exceeded",
            retry_after=_retry_after(exc, message),
            original_error=exc,
        )

    if (status is not None and status >= 500) or (
        status is None and (_SERVER_STATUS_RE.search(message) or "Server" in message)
    ):
        return ClientError(
            code=ErrorCode.SERVER_ERROR,
            message="Server error occurred",
            original_error=exc,
        )

    return ClientError(
        code=ErrorCode.NETWORK_ERROR,
        message=message or type(exc).__name__ or "Network error",
        original_error=exc,
    )


def is_retryable(exc: BaseException) -> bool:
    # cancellation and interpreter exits must propagate, never trigger another attempt
    if not isinstance(exc, Exception):
        return False
    return classify_error(exc).code not in NON_RETRYABLE_CODES
