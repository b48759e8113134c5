"""Deterministic provider failure classification and rate-limit backoff hints."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

PROVIDER_CLASSIFIER_VERSION = 1

DEFAULT_RETRY_DELAY_SECONDS = 35
RETRY_DELAY_BUFFER_SECONDS = 5


class ProviderFailureType(str, Enum):
    """Provider failure classes that drive rescheduling."""

    RATE_LIMITED = "RATE_LIMITED"
    ORDINARY = "ORDINARY"


_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "rate-limit",
    "ratelimit",
    "quota exceeded",
    "resource_exhausted",
)

# 429 counts only as a labelled status code, never as a bare number.
_STATUS_429 = re.compile(
    r'\b(?:http(?:/\d(?:\.\d)?)?|status(?:[ _]?code)?|code|error)"?\s*[:=]?\s*"?429\b',
    re.IGNORECASE,
)
STATUS_429_PATTERN = "429"

_STRUCTURED_SECONDS = re.compile(r'"?retry_?delay"?\s*[:=]\s*"?(\d+)s?"?(?![\dm])', re.IGNORECASE)
_STRUCTURED_MINUTES = re.compile(r'"?retry_?delay"?\s*[:=]\s*"?(\d+)m(?:(\d+)s?)?"?', re.IGNORECASE)
_RETRY_IN_TEXT = re.compile(r"retry (?:in|after) (\d+(?:\.\d+)?)\s*(?:s\b|sec|seconds)", re.IGNORECASE)
_DURATION = re.compile(r"^\s*(?:(\d+)m)?(?:(\d+)s?)?\s*$")


class RateLimitedError(RuntimeError):
    """Provider asked us to back off. Carries the delay for the scheduler."""

    failure_type = ProviderFailureType.RATE_LIMITED

    def __init__(self, message: str, *, delay_seconds: int) -> None:
        super().__init__(message)
        self.delay_seconds = delay_seconds
        self.next_retry_delay = f"{delay_seconds}s"


@dataclass(slots=True)
class ProviderFailureClassification:
    """Normalized classifier result."""

    failure_type: ProviderFailureType
    matched_pattern: str | None
    raw_delay_seconds: int | None
    delay_seconds: int | None

    @property
    def next_retry_delay(self) -> str | None:
        if self.delay_seconds is None:
            return None
        return f"{self.delay_seconds}s"

    def to_event_details(self, *, agent: str) -> dict[str, object]:
        return {
            "classifier_version": PROVIDER_CLASSIFIER_VERSION,
            "agent": agent,
            "failure_type": self.failure_type.value,
            "matched_pattern": self.matched_pattern,
            "raw_delay_seconds": self.raw_delay_seconds,
            "next_retry_delay": self.next_retry_delay,
        }


def parse_duration(value: str) -> int | None:
    """Parse ``31s``, ``31``, ``1m30s`` or ``2m`` into whole seconds."""

    match = _DURATION.match(value)
    if match is None or not any(match.groups()):
        return None
    minutes = int(match.group(1) or 0)
    seconds = int(match.group(2) or 0)
    return minutes * 60 + seconds


def parse_retry_delay(message: str) -> int | None:
    """Extract a provider-suggested delay in seconds, if the message carries one."""

    match = _STRUCTURED_SECONDS.search(message)
    if match is not None:
        return int(match.group(1))
    match = _STRUCTURED_MINUTES.search(message)
    if match is not None:
        return int(match.group(1)) * 60 + int(match.group(2) or 0)
    match = _RETRY_IN_TEXT.search(message)
    if match is not None:
        return int(float(match.group(1)))
    return None


def compute_backoff_seconds(
    raw_delay_seconds: int,
    *,
    buffer_seconds: int = RETRY_DELAY_BUFFER_SECONDS,
    ceiling_seconds: int | None = None,
) -> int:
    """Buffered delay, clamped to the ceiling when one is configured."""

    delay = max(0, raw_delay_seconds) + buffer_seconds
    if ceiling_seconds is not None:
        return min(delay, ceiling_seconds)
    return delay


def classify_provider_failure(
    message: str,
    *,
    default_delay_seconds: int = DEFAULT_RETRY_DELAY_SECONDS,
    buffer_seconds: int = RETRY_DELAY_BUFFER_SECONDS,
    ceiling_seconds: int | None = None,
) -> ProviderFailureClassification:
    """Classify provider output as rate-limited or ordinary."""

    pattern = _first_match(message.lower(), _RATE_LIMIT_PATTERNS)
    if pattern is None and _STATUS_429.search(message):
        pattern = STATUS_429_PATTERN
    if pattern is None:
        return ProviderFailureClassification(
            failure_type=ProviderFailureType.ORDINARY,
            matched_pattern=None,
            raw_delay_seconds=None,
            delay_seconds=None,
        )

    raw = parse_retry_delay(message)
    effective_raw = raw if raw is not None else default_delay_seconds
    return ProviderFailureClassification(
        failure_type=ProviderFailureType.RATE_LIMITED,
        matched_pattern=pattern,
        raw_delay_seconds=raw,
        delay_seconds=compute_backoff_seconds(
            effective_raw,
            buffer_seconds=buffer_seconds,
            ceiling_seconds=ceiling_seconds,
        ),
    )


def raise_for_provider_failure(
    message: str,
    *,
    agent: str = "agent",
    default_delay_seconds: int = DEFAULT_RETRY_DELAY_SECONDS,
    buffer_seconds: int = RETRY_DELAY_BUFFER_SECONDS,
    ceiling_seconds: int | None = None,
) -> ProviderFailureClassification:
    """Raise ``RateLimitedError`` for rate limits, otherwise return the classification."""

    classification = classify_provider_failure(
        message,
        default_delay_seconds=default_delay_seconds,
        buffer_seconds=buffer_seconds,
        ceiling_seconds=ceiling_seconds,
    )
    if classification.failure_type == ProviderFailureType.RATE_LIMITED:
        delay = classification.delay_seconds or 0
        raise RateLimitedError(
            f"{agent} rate limited. Will retry in {delay}s. Original: {_preview(message)}",
            delay_seconds=delay,
        )
    return classification


def _preview(message: str, *, limit: int = 300) -> str:
    text = " ".join(message.split())
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
