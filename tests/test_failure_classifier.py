from __future__ import annotations

import allure
import httpx
import pytest

from coursegen.engine.circuit_breaker import CircuitOpenError
from coursegen.engine.content import ContentValidationError, InsufficientSourceError
from coursegen.engine.failure_classifier import (
    USER_MESSAGES,
    classify_failure,
    sanitize_error_details,
)
from coursegen.engine.models import ErrorCategory, ErrorSeverity

pytestmark = [
    allure.epic("Generation Engine"),
    allure.feature("Failure Classification"),
]


def _status_error(status_code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://content.example.com/generate")
    response = httpx.Response(status_code, request=request)
    return httpx.HTTPStatusError(f"HTTP {status_code}", request=request, response=response)


@pytest.mark.parametrize(
    ("status_code", "category"),
    [
        (429, ErrorCategory.RATE_LIMIT),
        (401, ErrorCategory.AUTH),
        (403, ErrorCategory.AUTH),
        (402, ErrorCategory.INSUFFICIENT_RESOURCES),
        (408, ErrorCategory.TIMEOUT),
        (504, ErrorCategory.TIMEOUT),
        (503, ErrorCategory.TEMPORARY),
        (500, ErrorCategory.TEMPORARY),
        (422, ErrorCategory.VALIDATION),
    ],
)
def test_http_status_mapping(status_code: int, category: ErrorCategory) -> None:
    classified = classify_failure(_status_error(status_code))

    assert classified.category == category
    assert classified.matched_rule == "http_status"
    assert classified.matched_pattern == str(status_code)


def test_transport_errors_are_network_and_count_toward_breaker() -> None:
    request = httpx.Request("POST", "https://content.example.com/generate")
    classified = classify_failure(httpx.ConnectError("refused", request=request))

    assert classified.category == ErrorCategory.NETWORK
    assert classified.retryable
    assert classified.counts_toward_breaker


def test_timeouts_are_retryable_dependency_failures() -> None:
    errors: tuple[BaseException, ...] = (
        TimeoutError("Task execution timeout after 300 seconds"),
        httpx.ReadTimeout("slow"),
    )
    for error in errors:
        classified = classify_failure(error)
        assert classified.category == ErrorCategory.TIMEOUT
        assert classified.retryable
        assert classified.counts_toward_breaker


def test_rate_limit_is_retryable_but_never_trips_breaker() -> None:
    classified = classify_failure(RuntimeError("HTTP 429 Too Many Requests"))

    assert classified.category == ErrorCategory.RATE_LIMIT
    assert classified.retryable
    assert not classified.counts_toward_breaker
    assert classified.severity == ErrorSeverity.LOW


def test_content_errors_carry_their_own_category() -> None:
    assert classify_failure(ContentValidationError("no questions")).category == (
        ErrorCategory.VALIDATION
    )
    insufficient = classify_failure(InsufficientSourceError("nothing to summarize"))
    assert insufficient.category == ErrorCategory.INSUFFICIENT_RESOURCES
    assert insufficient.severity == ErrorSeverity.CRITICAL
    assert not insufficient.retryable


def test_circuit_open_is_its_own_category() -> None:
    classified = classify_failure(CircuitOpenError("content-service", 12.0))

    assert classified.category == ErrorCategory.CIRCUIT_OPEN
    assert not classified.counts_toward_breaker


def test_message_patterns_prefer_quota_over_transient_wording() -> None:
    classified = classify_failure(RuntimeError("Service unavailable: quota exceeded"))

    assert classified.category == ErrorCategory.INSUFFICIENT_RESOURCES
    assert classified.matched_rule == "message_pattern"
    assert classified.matched_pattern == "quota exceeded"


def test_unmatched_errors_are_unknown_and_not_retryable() -> None:
    classified = classify_failure(KeyError("section"))

    assert classified.category == ErrorCategory.UNKNOWN
    assert classified.matched_rule == "fallback_unknown"
    assert not classified.retryable
    assert classified.user_message == USER_MESSAGES[ErrorCategory.UNKNOWN]
    assert classified.reason_code == "unknown_fallback_unknown"


def test_every_category_has_a_user_message() -> None:
    assert set(USER_MESSAGES) == set(ErrorCategory)


def test_sanitize_error_details_redacts_secrets_and_truncates() -> None:
    error = RuntimeError(
        "POST failed: Authorization: Bearer abcdefghijklmnop api_key=sk-secretvalue123 "
        "url=https://x.example.com/generate?token=zzz&page=2",
    )

    details = sanitize_error_details(error)

    assert details.startswith("RuntimeError: POST failed")
    assert "abcdefghijklmnop" not in details
    assert "sk-secretvalue123" not in details
    assert "token=zzz" not in details
    assert len(sanitize_error_details(RuntimeError("x" * 5_000))) == 1_000
