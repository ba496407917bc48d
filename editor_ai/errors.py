"""
Error Taxonomy
==============
Classified errors for every AI request path.

Every failure that leaves this package is an AIError carrying:
- a code (the error kind)
- a human readable message
- optional structured details
- a retryable flag and an optional suggested retry-after (milliseconds)

Adapters classify transport failures where they happen; the service
manager's retry wrapper is the only place that decides to retry.
"""

import json
import logging
import re
from enum import Enum
from typing import Any

import httpx

logger = logging.getLogger(__name__)

MAX_RETRY_DELAY_MS = 30000
DEFAULT_RETRY_DELAY_MS = 1000


class AIErrorCode(str, Enum):
    """Error kinds understood by callers and the retry policy"""

    # Connection errors
    CONNECTION_FAILED = "CONNECTION_FAILED"
    TIMEOUT = "TIMEOUT"
    NETWORK_ERROR = "NETWORK_ERROR"

    # Authentication errors
    INVALID_API_KEY = "INVALID_API_KEY"
    AUTHENTICATION_FAILED = "AUTHENTICATION_FAILED"
    AUTHORIZATION_FAILED = "AUTHORIZATION_FAILED"

    # Model errors
    MODEL_NOT_FOUND = "MODEL_NOT_FOUND"
    MODEL_UNAVAILABLE = "MODEL_UNAVAILABLE"
    MODEL_OVERLOADED = "MODEL_OVERLOADED"

    # Request errors
    INVALID_REQUEST = "INVALID_REQUEST"
    CONTEXT_TOO_LARGE = "CONTEXT_TOO_LARGE"
    RATE_LIMITED = "RATE_LIMITED"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"

    # Response errors
    INVALID_RESPONSE = "INVALID_RESPONSE"
    PARSING_ERROR = "PARSING_ERROR"
    INCOMPLETE_RESPONSE = "INCOMPLETE_RESPONSE"

    # Service errors
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"

    # Feature specific errors
    REASONING_FAILED = "REASONING_FAILED"
    ACTION_FAILED = "ACTION_FAILED"
    RAG_SEARCH_FAILED = "RAG_SEARCH_FAILED"
    EMBEDDING_FAILED = "EMBEDDING_FAILED"


class AIError(Exception):
    """Classified AI failure"""

    def __init__(
        self,
        code: AIErrorCode,
        message: str,
        details: Any = None,
        retryable: bool = False,
        retry_after: int | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details
        self.retryable = retryable
        self.retry_after = retry_after

    def __repr__(self) -> str:
        return (
            f"AIError(code={self.code.value}, message={self.message!r}, "
            f"retryable={self.retryable})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Serializable form for events and logs (details are stringified)"""
        data: dict[str, Any] = {
            "code": self.code.value,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.details is not None:
            data["details"] = str(self.details)
        if self.retry_after is not None:
            data["retryAfter"] = self.retry_after
        return data

    @classmethod
    def connection_failed(cls, details: Any = None) -> "AIError":
        return cls(
            AIErrorCode.CONNECTION_FAILED,
            "Failed to connect to AI service",
            details,
            retryable=True,
            retry_after=5000,
        )

    @classmethod
    def timeout(cls, details: Any = None) -> "AIError":
        return cls(
            AIErrorCode.TIMEOUT,
            "Request timed out",
            details,
            retryable=True,
            retry_after=1000,
        )

    @classmethod
    def invalid_api_key(cls, details: Any = None) -> "AIError":
        return cls(AIErrorCode.INVALID_API_KEY, "Invalid API key provided", details)

    @classmethod
    def model_not_found(cls, model_id: str) -> "AIError":
        return cls(
            AIErrorCode.MODEL_NOT_FOUND,
            f"Model '{model_id}' not found",
            {"modelId": model_id},
        )

    @classmethod
    def context_too_large(cls, size: int, limit: int) -> "AIError":
        return cls(
            AIErrorCode.CONTEXT_TOO_LARGE,
            f"Context size ({size}) exceeds limit ({limit})",
            {"size": size, "limit": limit},
        )

    @classmethod
    def rate_limited(cls, retry_after: int | None = None) -> "AIError":
        return cls(
            AIErrorCode.RATE_LIMITED,
            "Rate limit exceeded",
            {"retryAfter": retry_after},
            retryable=True,
            retry_after=retry_after,
        )

    @classmethod
    def invalid_response(cls, details: Any = None) -> "AIError":
        return cls(
            AIErrorCode.INVALID_RESPONSE,
            "Invalid response from AI service",
            details,
            retryable=True,
            retry_after=1000,
        )

    @classmethod
    def reasoning_failed(cls, details: Any = None) -> "AIError":
        return cls(
            AIErrorCode.REASONING_FAILED,
            "Chain of thought reasoning failed",
            details,
            retryable=True,
            retry_after=2000,
        )

    @classmethod
    def action_failed(cls, action: str, details: Any = None) -> "AIError":
        return cls(
            AIErrorCode.ACTION_FAILED,
            f"Action '{action}' failed",
            details,
            retryable=True,
            retry_after=1000,
        )

    @classmethod
    def rag_search_failed(cls, details: Any = None) -> "AIError":
        return cls(
            AIErrorCode.RAG_SEARCH_FAILED,
            "RAG search failed",
            details,
            retryable=True,
            retry_after=1000,
        )

    @classmethod
    def embedding_failed(cls, details: Any = None) -> "AIError":
        return cls(
            AIErrorCode.EMBEDDING_FAILED,
            "Embedding generation failed",
            details,
            retryable=True,
            retry_after=2000,
        )

    @classmethod
    def configuration(cls, message: str, details: Any = None) -> "AIError":
        return cls(AIErrorCode.CONFIGURATION_ERROR, message, details)

    @classmethod
    def service_unavailable(cls, message: str, details: Any = None) -> "AIError":
        return cls(AIErrorCode.SERVICE_UNAVAILABLE, message, details)


class ErrorHandler:
    """Retry policy shared by every caller of execute_with_retry"""

    def should_retry(self, error: AIError) -> bool:
        return error.retryable

    def get_retry_delay(self, error: AIError, attempt: int) -> int:
        """Delay in milliseconds before the retry following `attempt` (0-based)"""
        base_delay = error.retry_after or DEFAULT_RETRY_DELAY_MS
        return min(base_delay * (2**attempt), MAX_RETRY_DELAY_MS)

    def handle(self, error: BaseException, target: str | None = None) -> AIError:
        ai_error = classify_exception(error, target)
        logger.error(
            f"AI error [{ai_error.code.value}]: "
            f"{sanitize_for_logging(ai_error.message, max_len=200)}"
        )
        return ai_error


def sanitize_for_logging(text: str, max_len: int = 100) -> str:
    """Sanitize text for safe logging (no sensitive data)"""
    if not text:
        return ""
    sanitized = text[:max_len]
    sanitized = re.sub(
        r"(sk-|api[_-]?key|bearer\s+)[a-zA-Z0-9\-_]{20,}",
        "[REDACTED]",
        sanitized,
        flags=re.IGNORECASE,
    )
    return sanitized + ("..." if len(text) > max_len else "")


def format_http_error(exc: httpx.HTTPStatusError) -> str:
    """Format detailed error message from HTTP exception."""
    response = exc.response
    status_code = response.status_code
    message = response.reason_phrase or str(exc)
    retry_after = response.headers.get("Retry-After")

    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_info = payload.get("error")
        if isinstance(error_info, dict):
            error_message = error_info.get("message")
            if error_message:
                message = error_message
        elif isinstance(error_info, str) and error_info:
            message = error_info

    if retry_after:
        message = f"{message} Retry-After: {retry_after}."

    return f"HTTP {status_code}: {message}"


def parse_retry_after(value: str | None) -> int | None:
    """Retry-After header (seconds) to milliseconds"""
    if not value:
        return None
    try:
        return int(float(value) * 1000)
    except ValueError:
        return None


def classify_status(
    status_code: int, message: str, retry_after: int | None = None
) -> AIError:
    """Map an HTTP status to an error kind"""
    if status_code == 401:
        return AIError(AIErrorCode.INVALID_API_KEY, message)
    if status_code == 403:
        return AIError(AIErrorCode.AUTHORIZATION_FAILED, message)
    if status_code == 404:
        return AIError(AIErrorCode.MODEL_NOT_FOUND, message)
    if status_code == 413:
        return AIError(AIErrorCode.CONTEXT_TOO_LARGE, message)
    if status_code == 429:
        error = AIError.rate_limited(retry_after)
        error.message = message
        return error
    if status_code == 529:
        return AIError(
            AIErrorCode.MODEL_OVERLOADED, message, retryable=True, retry_after=2000
        )
    if status_code >= 500:
        return AIError(
            AIErrorCode.SERVICE_UNAVAILABLE, message, retryable=True, retry_after=1000
        )
    if status_code == 400:
        return AIError(AIErrorCode.INVALID_REQUEST, message)
    return AIError(AIErrorCode.INVALID_RESPONSE, message)


def classify_exception(error: BaseException, target: str | None = None) -> AIError:
    """
    Convert any exception into a classified AIError.

    Args:
        error: The exception raised by a transport, SDK or parser
        target: Optional name of the service for the message

    Returns:
        AIError (the same object when it is already classified)
    """
    if isinstance(error, AIError):
        return error

    where = f" to {target}" if target else ""

    if isinstance(error, httpx.ConnectError):
        return AIError(
            AIErrorCode.CONNECTION_FAILED,
            f"Failed to connect{where}",
            error,
            retryable=True,
            retry_after=5000,
        )
    if isinstance(error, httpx.TimeoutException):
        return AIError(
            AIErrorCode.TIMEOUT,
            f"Request{where} timed out",
            error,
            retryable=True,
            retry_after=1000,
        )
    if isinstance(error, httpx.HTTPStatusError):
        return classify_status(
            error.response.status_code,
            format_http_error(error),
            parse_retry_after(error.response.headers.get("Retry-After")),
        )
    if isinstance(error, httpx.RequestError):
        return AIError(
            AIErrorCode.NETWORK_ERROR,
            f"Network error{where}: {error}",
            error,
            retryable=True,
            retry_after=1000,
        )
    if isinstance(error, json.JSONDecodeError):
        return AIError(
            AIErrorCode.PARSING_ERROR, f"Failed to parse response: {error}", error
        )
    if isinstance(error, (KeyError, IndexError, TypeError)):
        return AIError.invalid_response(f"Missing expected field: {error}")

    message = str(error) or type(error).__name__
    return AIError(
        AIErrorCode.INTERNAL_ERROR,
        f"Request{where} failed: {message}" if target else message,
        error,
        retryable=True,
    )
