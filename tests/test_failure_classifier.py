from __future__ import annotations

import allure
import httpx
import pytest

from codeplan.jobs.errors import (
    ContentValidationError,
    JobCanceledError,
    PayloadValidationError,
    ProviderRequestError,
)
from codeplan.jobs.failure_classifier import (
    FAILURE_CLASSIFIER_VERSION,
    classify_exception,
    classify_http_failure,
    classify_message,
)
from codeplan.jobs.models import FailureClass

pytestmark = [
    allure.epic("Job Runtime"),
    allure.feature("Failures and Retry Hints"),
]


@pytest.mark.parametrize(
    ("status_code", "body", "expected"),
    [
        (429, "", FailureClass.RATE_LIMITED),
        (503, "", FailureClass.RATE_LIMITED),
        (529, "overloaded", FailureClass.RATE_LIMITED),
        (401, "", FailureClass.AUTH_ERROR),
        (403, "", FailureClass.AUTH_ERROR),
        (500, "", FailureClass.SERVER_ERROR),
        (502, "", FailureClass.SERVER_ERROR),
        (404, '{"error": "The model `gpt-x` model not found"}', FailureClass.MODEL_NOT_AVAILABLE),
        (400, "You exceeded your current quota", FailureClass.RATE_LIMITED),
        (400, "max_tokens is too large", FailureClass.VALIDATION_ERROR),
    ],
)
def test_classify_http_failure(status_code: int, body: str, expected: FailureClass) -> None:
    assert classify_http_failure(status_code=status_code, body=body).failure_class == expected


def test_retryable_matches_failure_class() -> None:
    assert classify_http_failure(status_code=429).retryable is True
    assert classify_http_failure(status_code=500).retryable is True
    assert classify_http_failure(status_code=401).retryable is False
    assert classify_http_failure(status_code=400).retryable is False


def test_httpx_errors_are_transient_network() -> None:
    timeout = classify_exception(httpx.ReadTimeout("slow"))
    transport = classify_exception(httpx.ConnectError("refused"))

    assert timeout.failure_class == FailureClass.TRANSIENT_NETWORK
    assert timeout.reason_code == "http_timeout"
    assert transport.failure_class == FailureClass.TRANSIENT_NETWORK
    assert transport.reason_code == "http_transport"
    assert transport.category == "api"


def test_provider_request_error_uses_status_code() -> None:
    error = ProviderRequestError("HTTP 401", status_code=401, body="invalid api key")

    classification = classify_exception(error)

    assert classification.failure_class == FailureClass.AUTH_ERROR
    assert classification.reason_code == "http_401"


def test_processor_errors_keep_their_class() -> None:
    assert (
        classify_exception(ContentValidationError("bad plan")).failure_class
        == FailureClass.CONTENT_VALIDATION_ERROR
    )
    assert (
        classify_exception(PayloadValidationError("no prompt")).failure_class
        == FailureClass.VALIDATION_ERROR
    )
    canceled = classify_exception(JobCanceledError())
    assert canceled.failure_class == FailureClass.CANCELED
    assert canceled.category == "canceled"
    assert canceled.retryable is False


def test_builtin_timeout_and_filesystem_errors() -> None:
    assert classify_exception(TimeoutError("deadline")).failure_class == FailureClass.TIMEOUT

    missing = classify_exception(FileNotFoundError("/nowhere"))
    assert missing.failure_class == FailureClass.VALIDATION_ERROR
    assert missing.category == "filesystem"
    assert missing.retryable is False


def test_unknown_errors_fall_back_to_message_patterns() -> None:
    assert (
        classify_exception(RuntimeError("Connection reset by peer")).failure_class
        == FailureClass.TRANSIENT_NETWORK
    )
    assert classify_message("Permission denied for key").failure_class == FailureClass.AUTH_ERROR
    fallback = classify_exception(KeyError("choices"))
    assert fallback.failure_class == FailureClass.INTERNAL_ERROR
    assert fallback.category == "code"


def test_event_details_are_versioned() -> None:
    details = classify_http_failure(status_code=400, body="rate limit hit").to_event_details()

    assert details == {
        "classifier_version": FAILURE_CLASSIFIER_VERSION,
        "failure_class": "rate_limited",
        "reason_code": "http_400",
        "matched_rule": "rate_limit_body",
        "matched_pattern": "rate limit",
    }
