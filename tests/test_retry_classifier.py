from __future__ import annotations

import allure
import pytest

from build_factory.retry_classifier import (
    PROVIDER_CLASSIFIER_VERSION,
    ProviderFailureType,
    RateLimitedError,
    classify_provider_failure,
    compute_backoff_seconds,
    parse_duration,
    parse_retry_delay,
    raise_for_provider_failure,
)

pytestmark = [
    allure.epic("Provider Retry Classifier"),
    allure.feature("Rate Limit Detection"),
]


def test_structured_minutes_and_seconds_delay_is_buffered() -> None:
    classification = classify_provider_failure(
        'RESOURCE_EXHAUSTED {"retryDelay": "1m30s"}',
    )

    assert classification.failure_type == ProviderFailureType.RATE_LIMITED
    assert classification.matched_pattern == "resource_exhausted"
    assert classification.raw_delay_seconds == 90
    assert classification.next_retry_delay == "95s"


def test_ceiling_clamps_buffered_delay() -> None:
    classification = classify_provider_failure(
        'RESOURCE_EXHAUSTED {"retryDelay": "1m30s"}',
        ceiling_seconds=60,
    )

    assert classification.next_retry_delay == "60s"


def test_missing_delay_falls_back_to_default() -> None:
    classification = classify_provider_failure("HTTP 429 Too Many Requests")

    assert classification.failure_type == ProviderFailureType.RATE_LIMITED
    assert classification.raw_delay_seconds is None
    assert classification.next_retry_delay == "40s"


@pytest.mark.parametrize(
    "message",
    [
        "SyntaxError: invalid syntax",
        "tests failed: 3 errors",
        "FAILED tests/test_core.py:429 - AssertionError: assert 1 == 2",
        "  File \"pkg/api.py\", line 429, in handler",
        "processed 4290 records, id=429",
        "",
    ],
)
def test_ordinary_failures_carry_no_delay(message: str) -> None:
    classification = classify_provider_failure(message)

    assert classification.failure_type == ProviderFailureType.ORDINARY
    assert classification.matched_pattern is None
    assert classification.next_retry_delay is None


@pytest.mark.parametrize(
    "message",
    [
        "HTTP 429",
        "HTTP/1.1 429 Slow Down",
        "status: 429",
        '{"error": {"code": 429}}',
        "Error code: 429 - overloaded",
        "status_code=429",
    ],
)
def test_labelled_429_status_is_rate_limited(message: str) -> None:
    classification = classify_provider_failure(message)

    assert classification.failure_type == ProviderFailureType.RATE_LIMITED
    assert classification.matched_pattern == "429"


@pytest.mark.parametrize(
    ("message", "expected"),
    [
        ('"retryDelay": "31s"', 31),
        ("retry_delay=12", 12),
        ('"retryDelay": "2m"', 120),
        ("Please retry in 7.5 seconds", 7),
        ("no hint here", None),
    ],
)
def test_parse_retry_delay(message: str, expected: int | None) -> None:
    assert parse_retry_delay(message) == expected


@pytest.mark.parametrize(
    ("value", "expected"),
    [("31s", 31), ("31", 31), ("1m30s", 90), ("2m", 120), ("", None), ("soon", None)],
)
def test_parse_duration(value: str, expected: int | None) -> None:
    assert parse_duration(value) == expected


def test_compute_backoff_never_goes_negative() -> None:
    assert compute_backoff_seconds(-10, buffer_seconds=5) == 5
    assert compute_backoff_seconds(100, buffer_seconds=5, ceiling_seconds=30) == 30


def test_raise_for_provider_failure_raises_rate_limited() -> None:
    with pytest.raises(RateLimitedError) as error:
        raise_for_provider_failure("quota exceeded, retryDelay: 10s", agent="cli")

    assert error.value.delay_seconds == 15
    assert error.value.next_retry_delay == "15s"
    assert "cli rate limited" in str(error.value)


def test_raise_for_provider_failure_returns_ordinary_classification() -> None:
    classification = raise_for_provider_failure("segmentation fault")

    assert classification.failure_type == ProviderFailureType.ORDINARY


def test_event_details_record_classifier_version() -> None:
    details = classify_provider_failure("rate limit hit").to_event_details(agent="cli")

    assert details["classifier_version"] == PROVIDER_CLASSIFIER_VERSION == 1
    assert details["agent"] == "cli"
    assert details["failure_type"] == "RATE_LIMITED"
    assert details["next_retry_delay"] == "40s"
