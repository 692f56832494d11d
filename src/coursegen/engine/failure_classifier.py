"""Deterministic failure classification for retry and circuit breaker policy."""

from __future__ import annotations

import re
from dataclasses import dataclass

import httpx

from coursegen.engine.circuit_breaker import CircuitOpenError
from coursegen.engine.content import ContentGenerationError
from coursegen.engine.models import ErrorCategory, ErrorSeverity

RETRYABLE_CATEGORIES = frozenset(
    {
        ErrorCategory.TIMEOUT,
        ErrorCategory.RATE_LIMIT,
        ErrorCategory.NETWORK,
        ErrorCategory.TEMPORARY,
    },
)
# Caller-side errors (bad payload, auth, quota) must never trip a breaker.
DEPENDENCY_FAILURE_CATEGORIES = frozenset(
    {ErrorCategory.TIMEOUT, ErrorCategory.NETWORK, ErrorCategory.TEMPORARY},
)

CATEGORY_SEVERITY: dict[ErrorCategory, ErrorSeverity] = {
    ErrorCategory.TIMEOUT: ErrorSeverity.MEDIUM,
    ErrorCategory.RATE_LIMIT: ErrorSeverity.LOW,
    ErrorCategory.NETWORK: ErrorSeverity.MEDIUM,
    ErrorCategory.TEMPORARY: ErrorSeverity.HIGH,
    ErrorCategory.VALIDATION: ErrorSeverity.LOW,
    ErrorCategory.AUTH: ErrorSeverity.CRITICAL,
    ErrorCategory.INSUFFICIENT_RESOURCES: ErrorSeverity.CRITICAL,
    ErrorCategory.CIRCUIT_OPEN: ErrorSeverity.MEDIUM,
    ErrorCategory.UNKNOWN: ErrorSeverity.MEDIUM,
}

USER_MESSAGES: dict[ErrorCategory, str] = {
    ErrorCategory.TIMEOUT: "Content generation took too long. It will be retried automatically.",
    ErrorCategory.RATE_LIMIT: (
        "The content service is busy. Generation will continue after a short pause."
    ),
    ErrorCategory.NETWORK: "The content service could not be reached. Retrying shortly.",
    ErrorCategory.TEMPORARY: (
        "The content service is temporarily unavailable. Retrying shortly."
    ),
    ErrorCategory.VALIDATION: (
        "The generated content did not pass validation. Try regenerating this item."
    ),
    ErrorCategory.AUTH: "The content service rejected our credentials. Contact support.",
    ErrorCategory.INSUFFICIENT_RESOURCES: (
        "Not enough source material or service quota to generate this item. Contact support."
    ),
    ErrorCategory.CIRCUIT_OPEN: (
        "The content service is recovering from errors. Generation is paused briefly."
    ),
    ErrorCategory.UNKNOWN: "An unexpected error occurred while generating this item.",
}

_INSUFFICIENT_RESOURCES_PATTERNS: tuple[str, ...] = (
    "insufficient funds",
    "insufficient_quota",
    "quota exceeded",
    "billing",
    "no documents found",
    "insufficient content",
    "out of memory",
)
_AUTH_PATTERNS: tuple[str, ...] = (
    "invalid api key",
    "unauthorized",
    "forbidden",
    "permission denied",
    "authentication",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "rate_limit",
    "too many requests",
    "429",
)
_TIMEOUT_PATTERNS: tuple[str, ...] = (
    "timeout",
    "timed out",
    "deadline exceeded",
)
_NETWORK_PATTERNS: tuple[str, ...] = (
    "network",
    "connection reset",
    "connection refused",
    "econnreset",
    "could not resolve host",
    "dns",
)
_TEMPORARY_PATTERNS: tuple[str, ...] = (
    "temporary",
    "temporarily unavailable",
    "service unavailable",
    "bad gateway",
    "503",
    "502",
)
_VALIDATION_PATTERNS: tuple[str, ...] = (
    "validation",
    "invalid json",
    "json parse",
    "unexpected token",
    "schema",
    "unique constraint",
)

_PATTERN_RULES: tuple[tuple[ErrorCategory, tuple[str, ...]], ...] = (
    (ErrorCategory.INSUFFICIENT_RESOURCES, _INSUFFICIENT_RESOURCES_PATTERNS),
    (ErrorCategory.AUTH, _AUTH_PATTERNS),
    (ErrorCategory.RATE_LIMIT, _RATE_LIMIT_PATTERNS),
    (ErrorCategory.TIMEOUT, _TIMEOUT_PATTERNS),
    (ErrorCategory.NETWORK, _NETWORK_PATTERNS),
    (ErrorCategory.TEMPORARY, _TEMPORARY_PATTERNS),
    (ErrorCategory.VALIDATION, _VALIDATION_PATTERNS),
)

_MAX_DETAILS_CHARS = 1_000
_REDACTIONS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"(?i)\b(bearer)\s+[a-z0-9._\-]{8,}"), r"\1 [redacted]"),
    (re.compile(r"(?i)\bsk-[a-z0-9\-]{8,}"), "[redacted]"),
    (re.compile(r"(?i)(api[_-]?key|x-api-key|token)\s*[:=]\s*['\"]?[^'\"\s,]+"), r"\1=[redacted]"),
    (re.compile(r"(?i)([?&](?:key|token|signature)=)[^&\s]+"), r"\1[redacted]"),
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    category: ErrorCategory
    severity: ErrorSeverity
    retryable: bool
    counts_toward_breaker: bool
    reason_code: str
    matched_rule: str
    matched_pattern: str | None = None

    @property
    def user_message(self) -> str:
        return USER_MESSAGES[self.category]


def classify_failure(error: BaseException) -> FailureClassification:
    """Classify a task execution error into a deterministic retry category."""

    if isinstance(error, CircuitOpenError):
        return _classification(ErrorCategory.CIRCUIT_OPEN, rule="circuit_open")
    if isinstance(error, ContentGenerationError):
        return _classification(error.category, rule="content_error")
    if isinstance(error, (TimeoutError, httpx.TimeoutException)):
        return _classification(ErrorCategory.TIMEOUT, rule="timeout_exception")
    if isinstance(error, httpx.HTTPStatusError):
        return _classify_http_status(error.response.status_code)
    if isinstance(error, (httpx.TransportError, ConnectionError)):
        return _classification(ErrorCategory.NETWORK, rule="transport_exception")

    haystack = str(error).lower()
    for category, patterns in _PATTERN_RULES:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return _classification(category, rule="message_pattern", pattern=pattern)

    return _classification(ErrorCategory.UNKNOWN, rule="fallback_unknown")


def sanitize_error_details(error: BaseException, *, max_chars: int = _MAX_DETAILS_CHARS) -> str:
    """Operator-facing error summary with obvious secrets redacted."""

    text = f"{type(error).__name__}: {error}".strip()
    for pattern, replacement in _REDACTIONS:
        text = pattern.sub(replacement, text)
    return text[:max_chars]


def _classify_http_status(status_code: int) -> FailureClassification:
    pattern = str(status_code)
    if status_code == 429:  # noqa: PLR2004
        return _classification(ErrorCategory.RATE_LIMIT, rule="http_status", pattern=pattern)
    if status_code in {401, 403}:
        return _classification(ErrorCategory.AUTH, rule="http_status", pattern=pattern)
    if status_code == 402:  # noqa: PLR2004
        return _classification(
            ErrorCategory.INSUFFICIENT_RESOURCES,
            rule="http_status",
            pattern=pattern,
        )
    if status_code in {408, 504}:
        return _classification(ErrorCategory.TIMEOUT, rule="http_status", pattern=pattern)
    if status_code >= 500:  # noqa: PLR2004
        return _classification(ErrorCategory.TEMPORARY, rule="http_status", pattern=pattern)
    return _classification(ErrorCategory.VALIDATION, rule="http_status", pattern=pattern)


def _classification(
    category: ErrorCategory,
    *,
    rule: str,
    pattern: str | None = None,
) -> FailureClassification:
    return FailureClassification(
        category=category,
        severity=CATEGORY_SEVERITY[category],
        retryable=category in RETRYABLE_CATEGORIES,
        counts_toward_breaker=category in DEPENDENCY_FAILURE_CATEGORIES,
        reason_code=f"{category.value}_{rule}",
        matched_rule=rule,
        matched_pattern=pattern,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
