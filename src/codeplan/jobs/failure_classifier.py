"""Deterministic failure classification for processor retry recommendations."""

from __future__ import annotations

from dataclasses import dataclass

import httpx

from codeplan.jobs.errors import ProcessorError, ProviderRequestError
from codeplan.jobs.models import FailureClass, is_retryable

FAILURE_CLASSIFIER_VERSION = 1

_RATE_LIMIT_STATUS_CODES = frozenset({429, 503, 529})
_AUTH_STATUS_CODES = frozenset({401, 403})

_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "rate_limit",
    "quota",
    "resource_exhausted",
    "overloaded",
    "capacity",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "model is not available",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "connection refused",
    "network error",
    "timed out",
)
_FILESYSTEM_ERRORS = (FileNotFoundError, PermissionError, IsADirectoryError, NotADirectoryError)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None = None

    @property
    def retryable(self) -> bool:
        return is_retryable(self.failure_class)

    @property
    def category(self) -> str:
        """Coarse bucket shown next to the status message."""

        if self.reason_code == "filesystem":
            return "filesystem"
        return _CATEGORY_BY_CLASS[self.failure_class]

    def to_event_details(self) -> dict[str, object]:
        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


_CATEGORY_BY_CLASS: dict[FailureClass, str] = {
    FailureClass.TRANSIENT_NETWORK: "api",
    FailureClass.RATE_LIMITED: "api",
    FailureClass.SERVER_ERROR: "api",
    FailureClass.AUTH_ERROR: "api",
    FailureClass.MODEL_NOT_AVAILABLE: "api",
    FailureClass.VALIDATION_ERROR: "validation",
    FailureClass.CONTENT_VALIDATION_ERROR: "validation",
    FailureClass.TIMEOUT: "timeout",
    FailureClass.CANCELED: "canceled",
    FailureClass.INTERNAL_ERROR: "code",
}


def classify_exception(error: BaseException) -> FailureClassification:
    """Classify an exception raised during processing into a deterministic failure class."""

    if isinstance(error, httpx.TimeoutException):
        return FailureClassification(
            failure_class=FailureClass.TRANSIENT_NETWORK,
            reason_code="http_timeout",
            matched_rule="httpx_timeout",
        )
    if isinstance(error, httpx.TransportError):
        return FailureClassification(
            failure_class=FailureClass.TRANSIENT_NETWORK,
            reason_code="http_transport",
            matched_rule="httpx_transport",
        )
    if isinstance(error, ProviderRequestError):
        return classify_http_failure(status_code=error.status_code, body=error.body)
    if isinstance(error, httpx.HTTPStatusError):
        return classify_http_failure(
            status_code=error.response.status_code,
            body=error.response.text,
        )
    if isinstance(error, ProcessorError):
        return FailureClassification(
            failure_class=error.failure_class,
            reason_code=error.failure_class.value,
            matched_rule="processor_error",
        )
    if isinstance(error, TimeoutError):
        return FailureClassification(
            failure_class=FailureClass.TIMEOUT,
            reason_code="timeout",
            matched_rule="timeout_error",
        )
    if isinstance(error, _FILESYSTEM_ERRORS):
        return FailureClassification(
            failure_class=FailureClass.VALIDATION_ERROR,
            reason_code="filesystem",
            matched_rule="filesystem_error",
        )
    return classify_message(str(error))


def classify_http_failure(*, status_code: int, body: str = "") -> FailureClassification:
    """Classify a non-success provider response."""

    if status_code in _RATE_LIMIT_STATUS_CODES:
        return FailureClassification(
            failure_class=FailureClass.RATE_LIMITED,
            reason_code=f"http_{status_code}",
            matched_rule="rate_limit_status",
        )
    if status_code in _AUTH_STATUS_CODES:
        return FailureClassification(
            failure_class=FailureClass.AUTH_ERROR,
            reason_code=f"http_{status_code}",
            matched_rule="auth_status",
        )
    if status_code >= 500:
        return FailureClassification(
            failure_class=FailureClass.SERVER_ERROR,
            reason_code=f"http_{status_code}",
            matched_rule="server_status",
        )

    haystack = body.lower()
    pattern = _first_match(haystack, _MODEL_NOT_AVAILABLE_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.MODEL_NOT_AVAILABLE,
            reason_code=f"http_{status_code}",
            matched_rule="model_not_available",
            matched_pattern=pattern,
        )
    pattern = _first_match(haystack, _RATE_LIMIT_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.RATE_LIMITED,
            reason_code=f"http_{status_code}",
            matched_rule="rate_limit_body",
            matched_pattern=pattern,
        )
    return FailureClassification(
        failure_class=FailureClass.VALIDATION_ERROR,
        reason_code=f"http_{status_code}",
        matched_rule="client_status",
    )


def classify_message(message: str) -> FailureClassification:
    """Fallback classification by message text for unexpected exceptions."""

    haystack = message.lower()
    for failure_class, rule, patterns in (
        (FailureClass.AUTH_ERROR, "access_or_auth", _ACCESS_OR_AUTH_PATTERNS),
        (FailureClass.MODEL_NOT_AVAILABLE, "model_not_available", _MODEL_NOT_AVAILABLE_PATTERNS),
        (FailureClass.RATE_LIMITED, "rate_limit", _RATE_LIMIT_PATTERNS),
        (FailureClass.TRANSIENT_NETWORK, "generic_transient", _GENERIC_TRANSIENT_PATTERNS),
    ):
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return FailureClassification(
                failure_class=failure_class,
                reason_code=rule,
                matched_rule=rule,
                matched_pattern=pattern,
            )
    return FailureClassification(
        failure_class=FailureClass.INTERNAL_ERROR,
        reason_code="internal_error",
        matched_rule="fallback_internal",
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
