"""
Tests for error classification and events
=========================================

Run with: pytest tests/test_errors.py -v
"""

import json

import httpx
import pytest

from editor_ai.errors import (
    MAX_RETRY_DELAY_MS,
    AIError,
    AIErrorCode,
    ErrorHandler,
    classify_exception,
    classify_status,
    format_http_error,
    parse_retry_after,
    sanitize_for_logging,
)
from editor_ai.events import CancellationTokenSource, Emitter, is_cancelled


def _status_error(status: int, body=None, headers=None) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "http://localhost:11434/api/chat")
    response = httpx.Response(status, json=body, headers=headers, request=request)
    return httpx.HTTPStatusError("error", request=request, response=response)


class TestAIError:
    """Test the error record and its factories"""

    def test_factories_set_retry_policy(self):
        """Transient factories are retryable with a suggested delay"""
        error = AIError.connection_failed()
        assert error.code == AIErrorCode.CONNECTION_FAILED
        assert error.retryable is True
        assert error.retry_after == 5000

        assert AIError.timeout().retry_after == 1000
        assert AIError.reasoning_failed().retry_after == 2000

    def test_permanent_factories_are_not_retryable(self):
        """Configuration and credential errors are never retried"""
        assert AIError.invalid_api_key().retryable is False
        assert AIError.configuration("bad").retryable is False
        assert AIError.model_not_found("gpt-x").retryable is False

    def test_model_not_found_details(self):
        """The missing id is carried in message and details"""
        error = AIError.model_not_found("gpt-x")
        assert "gpt-x" in error.message
        assert error.details == {"modelId": "gpt-x"}

    def test_to_dict_stringifies_details(self):
        """Details become strings so the payload stays serializable"""
        error = AIError(AIErrorCode.INTERNAL_ERROR, "boom", ValueError("inner"))
        data = error.to_dict()
        assert data["code"] == "INTERNAL_ERROR"
        assert data["details"] == "inner"
        json.dumps(data)

    def test_str_is_message(self):
        """str() of the exception is the message"""
        assert str(AIError.configuration("No active model")) == "No active model"


class TestRetryDelay:
    """Test exponential backoff"""

    def test_delay_doubles_per_attempt(self):
        """Delay is base * 2^attempt"""
        handler = ErrorHandler()
        error = AIError(AIErrorCode.TIMEOUT, "t", retryable=True, retry_after=1000)
        assert [handler.get_retry_delay(error, n) for n in range(4)] == [
            1000,
            2000,
            4000,
            8000,
        ]

    def test_delay_is_capped(self):
        """Delay never exceeds the maximum"""
        handler = ErrorHandler()
        error = AIError(AIErrorCode.TIMEOUT, "t", retryable=True, retry_after=5000)
        assert handler.get_retry_delay(error, 10) == MAX_RETRY_DELAY_MS

    def test_default_base_delay(self):
        """Errors without retry_after start at one second"""
        handler = ErrorHandler()
        error = AIError(AIErrorCode.INTERNAL_ERROR, "x", retryable=True)
        assert handler.get_retry_delay(error, 0) == 1000

    def test_should_retry_follows_flag(self):
        """Only retryable errors are retried"""
        handler = ErrorHandler()
        assert handler.should_retry(AIError.timeout()) is True
        assert handler.should_retry(AIError.invalid_api_key()) is False


class TestClassification:
    """Test mapping of transport failures"""

    def test_ai_error_passes_through(self):
        """Already classified errors are returned unchanged"""
        error = AIError.timeout()
        assert classify_exception(error) is error

    def test_connect_error(self):
        """Connection refusals are retryable connection failures"""
        error = classify_exception(httpx.ConnectError("refused"), "Ollama")
        assert error.code == AIErrorCode.CONNECTION_FAILED
        assert error.retryable is True
        assert "Ollama" in error.message

    def test_timeout(self):
        """httpx timeouts map to TIMEOUT"""
        error = classify_exception(httpx.ReadTimeout("slow"))
        assert error.code == AIErrorCode.TIMEOUT

    @pytest.mark.parametrize(
        "status,code",
        [
            (401, AIErrorCode.INVALID_API_KEY),
            (403, AIErrorCode.AUTHORIZATION_FAILED),
            (404, AIErrorCode.MODEL_NOT_FOUND),
            (413, AIErrorCode.CONTEXT_TOO_LARGE),
            (429, AIErrorCode.RATE_LIMITED),
            (529, AIErrorCode.MODEL_OVERLOADED),
            (503, AIErrorCode.SERVICE_UNAVAILABLE),
            (400, AIErrorCode.INVALID_REQUEST),
        ],
    )
    def test_status_codes(self, status, code):
        """HTTP statuses map to their error kinds"""
        assert classify_status(status, "msg").code == code

    def test_rate_limit_reads_retry_after(self):
        """Retry-After seconds become milliseconds on the error"""
        error = classify_exception(
            _status_error(429, {"error": {"message": "slow down"}}, {"Retry-After": "2"})
        )
        assert error.code == AIErrorCode.RATE_LIMITED
        assert error.retry_after == 2000
        assert "slow down" in error.message

    def test_json_decode_error(self):
        """Malformed JSON is a parsing error"""
        try:
            json.loads("{not json")
        except json.JSONDecodeError as e:
            error = classify_exception(e)
        assert error.code == AIErrorCode.PARSING_ERROR

    def test_missing_field(self):
        """Missing response fields are invalid responses"""
        error = classify_exception(KeyError("choices"))
        assert error.code == AIErrorCode.INVALID_RESPONSE

    def test_unknown_exception_is_internal(self):
        """Anything else is an internal error"""
        error = classify_exception(RuntimeError("weird"))
        assert error.code == AIErrorCode.INTERNAL_ERROR
        assert error.message == "weird"


class TestHttpHelpers:
    """Test HTTP error formatting helpers"""

    def test_format_uses_error_message(self):
        """The provider's error message replaces the reason phrase"""
        message = format_http_error(_status_error(400, {"error": "bad prompt"}))
        assert message == "HTTP 400: bad prompt"

    def test_parse_retry_after(self):
        """Seconds are converted; garbage is ignored"""
        assert parse_retry_after("1.5") == 1500
        assert parse_retry_after("soon") is None
        assert parse_retry_after(None) is None


class TestSanitize:
    """Test log sanitizing"""

    def test_redacts_api_keys(self):
        """API keys should be redacted in logs"""
        sanitized = sanitize_for_logging("My API key is sk-1234567890abcdefghij")
        assert "sk-1234567890" not in sanitized
        assert "[REDACTED]" in sanitized

    def test_truncates(self):
        """Long text should be truncated"""
        sanitized = sanitize_for_logging("x" * 200, max_len=50)
        assert len(sanitized) == 53
        assert sanitized.endswith("...")


class TestEvents:
    """Test emitters and cancellation"""

    def test_fire_in_subscription_order(self):
        """Listeners run in the order they subscribed"""
        emitter: Emitter[int] = Emitter("numbers")
        seen = []
        emitter.subscribe(lambda n: seen.append(("a", n)))
        emitter.subscribe(lambda n: seen.append(("b", n)))
        emitter.fire(1)
        assert seen == [("a", 1), ("b", 1)]

    def test_failing_listener_does_not_stop_delivery(self):
        """A raising listener is logged and skipped"""
        emitter: Emitter[int] = Emitter("numbers")
        seen = []

        def broken(_):
            raise RuntimeError("listener bug")

        emitter.subscribe(broken)
        emitter.subscribe(seen.append)
        emitter.fire(7)
        assert seen == [7]

    def test_disposable_unsubscribes(self):
        """Disposing a subscription removes the listener"""
        emitter: Emitter[int] = Emitter("numbers")
        seen = []
        subscription = emitter.subscribe(seen.append)
        subscription.dispose()
        emitter.fire(1)
        assert seen == []
        assert emitter.listener_count == 0

    def test_cancellation(self):
        """Cancelling a source flips its token once"""
        source = CancellationTokenSource()
        fired = []
        source.token.on_cancellation_requested.subscribe(fired.append)

        assert is_cancelled(source.token) is False
        source.cancel()
        source.cancel()
        assert is_cancelled(source.token) is True
        assert fired == [None]
        assert is_cancelled(None) is False
