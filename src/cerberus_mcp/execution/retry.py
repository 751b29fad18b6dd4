"""Deterministic failure classification and bounded exponential backoff."""

from __future__ import annotations

import asyncio
import random
import re
import socket
from dataclasses import dataclass, field

from ..errors import ErrorKind, ExternalAgentError, OutputValidationError

FAILURE_CLASSIFIER_VERSION = 2

Pattern = tuple[str, re.Pattern]


def _phrases(*phrases: str) -> tuple[Pattern, ...]:
    # Underscores and punctuation count as separators; letters and digits do not.
    return tuple(
        (phrase, re.compile(rf"(?<![a-z0-9]){re.escape(phrase)}(?![a-z0-9])")) for phrase in phrases
    )


def _status_codes(*codes: str) -> tuple[Pattern, ...]:
    # A bare number is not enough: "GET /admin returned 403" or a port like 4010 must not match.
    context = r"(?:http(?:/\d(?:\.\d)?)?|status(?:[ _]code)?|error|code|response)"
    return tuple(
        (f"http {code}", re.compile(rf"(?<![a-z0-9]){context}\s*[:=]?\s*{code}(?![0-9])"))
        for code in codes
    )


# Ordered: the first rule whose pattern appears in the error text wins.
_RULES: tuple[tuple[str, ErrorKind, tuple[Pattern, ...]], ...] = (
    (
        "quota_exceeded",
        ErrorKind.QUOTA_EXCEEDED,
        _phrases(
            "quota",
            "usage limit",
            "session limit",
            "spending cap",
            "credit balance",
            "resource_exhausted",
            "billing",
        ),
    ),
    (
        "invalid_credential",
        ErrorKind.INVALID_CREDENTIAL,
        _phrases(
            "invalid api key",
            "invalid x-api-key",
            "invalid credential",
            "token expired",
            "expired token",
            "revoked",
        ),
    ),
    (
        "authentication",
        ErrorKind.AUTHENTICATION,
        _phrases("unauthorized", "authentication failed", "authentication_error", "forbidden")
        + _status_codes("401", "403"),
    ),
    (
        "validation",
        ErrorKind.VALIDATION,
        _phrases("invalid_request", "invalid request", "malformed request", "schema validation"),
    ),
    (
        "rate_limit",
        ErrorKind.RATE_LIMIT,
        _phrases("too many requests", "rate limit", "rate_limit", "try again later")
        + _status_codes("429"),
    ),
    (
        "server_error",
        ErrorKind.SERVER_ERROR,
        _phrases(
            "internal server error",
            "bad gateway",
            "service unavailable",
            "gateway timeout",
            "overloaded",
        )
        + _status_codes("500", "502", "503", "504", "529"),
    ),
    (
        "tool_failure",
        ErrorKind.TOOL_FAILURE,
        _phrases("mcp error", "mcp server", "tool execution failed", "tool error"),
    ),
    (
        "network",
        ErrorKind.NETWORK,
        _phrases(
            "connection reset",
            "connection refused",
            "network error",
            "econnreset",
            "econnrefused",
            "etimedout",
            "could not resolve host",
            "temporarily unavailable",
            "temporary failure",
            "dns",
        ),
    ),
)


@dataclass(slots=True, frozen=True)
class FailureClassification:
    """Normalized failure classification result."""

    kind: ErrorKind
    reason_code: str
    matched_rule: str
    matched_pattern: str | None = None

    @property
    def retryable(self) -> bool:
        return self.kind.retryable

    def to_event_details(self) -> dict[str, object]:
        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "error_kind": self.kind.value,
            "retryable": self.retryable,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify(error: BaseException | str) -> FailureClassification:
    """Map a raw failure to a retryable or non-retryable kind."""

    if isinstance(error, ExternalAgentError):
        return FailureClassification(
            kind=error.kind,
            reason_code=f"explicit_{error.kind.value}",
            matched_rule="explicit_kind",
        )
    if isinstance(error, OutputValidationError):
        return FailureClassification(
            kind=ErrorKind.OUTPUT_INVALID,
            reason_code="output_invalid",
            matched_rule="output_validation",
        )
    if isinstance(error, asyncio.TimeoutError):
        return FailureClassification(
            kind=ErrorKind.TIMEOUT,
            reason_code="attempt_timeout",
            matched_rule="timeout",
        )

    if isinstance(error, (ConnectionError, socket.gaierror)):
        return FailureClassification(
            kind=ErrorKind.NETWORK,
            reason_code="connection_error",
            matched_rule="connection_error",
        )

    haystack = _normalize_text(error)
    for rule, kind, patterns in _RULES:
        label = _first_match(haystack, patterns)
        if label is not None:
            return FailureClassification(
                kind=kind,
                reason_code=f"{rule}_{_slug(label)}",
                matched_rule=rule,
                matched_pattern=label,
            )

    return FailureClassification(
        kind=ErrorKind.UNKNOWN,
        reason_code="unclassified",
        matched_rule="fallback_non_retryable",
    )


@dataclass(slots=True)
class RetryPolicy:
    """Exponential backoff with jitter and a hard attempt ceiling."""

    max_attempts: int = 3
    base_delay: float = 5.0
    max_delay: float = 300.0
    jitter: float = 0.25
    rng: random.Random = field(default_factory=random.Random)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if not 0 <= self.jitter < 1:
            raise ValueError("jitter must be within [0, 1)")

    def next_delay(self, attempt: int) -> float:
        """Delay before the attempt following ``attempt`` (1-based)."""

        exponent = max(attempt, 1) - 1
        capped = min(self.max_delay, self.base_delay * (2 ** exponent))
        if self.jitter == 0:
            return capped
        return capped * self.rng.uniform(1 - self.jitter, 1)

    def should_retry(self, attempt: int, kind: ErrorKind) -> bool:
        if not kind.retryable:
            return False
        return attempt < self.max_attempts


def _normalize_text(error: BaseException | str) -> str:
    """Error message plus stderr. Agent stdout is its transcript about the target, so it is ignored."""

    if isinstance(error, str):
        return error.lower()
    parts = [str(error)]
    stderr = getattr(error, "stderr", None)
    if stderr:
        parts.append(str(stderr))
    return "\n".join(parts).lower()


def _first_match(haystack: str, patterns: tuple[Pattern, ...]) -> str | None:
    for label, regex in patterns:
        if regex.search(haystack):
            return label
    return None


def _slug(pattern: str) -> str:
    return "".join(char if char.isalnum() else "_" for char in pattern).strip("_")


__all__ = ["FAILURE_CLASSIFIER_VERSION", "FailureClassification", "RetryPolicy", "classify"]
