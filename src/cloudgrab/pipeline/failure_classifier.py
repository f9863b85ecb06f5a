"""Deterministic failure classification driving retry decisions."""

from __future__ import annotations

import errno
from dataclasses import dataclass
from enum import Enum

import httpx

from cloudgrab.remote.base import (
    RemoteError,
    RemoteNotFoundError,
    UnsupportedArchiveError,
    is_retryable_status,
)

FAILURE_CLASSIFIER_VERSION = 1


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    TRANSIENT = "transient"
    REMOTE_TERMINAL = "remote_terminal"
    CAPACITY = "capacity"
    PERMANENT = "permanent"


_TRANSIENT_ERRNOS: frozenset[int] = frozenset(
    {
        errno.ECONNRESET,
        errno.ECONNREFUSED,
        errno.ECONNABORTED,
        errno.ETIMEDOUT,
        errno.ENETUNREACH,
        errno.EHOSTUNREACH,
    },
)
_TRANSIENT_MESSAGE_PATTERNS: tuple[str, ...] = (
    "timeout",
    "timed out",
    "connection reset",
    "connection refused",
    "socket hang up",
    "socket disconnected",
    "network error",
    "temporarily unavailable",
    "econnreset",
)
_CAPACITY_MESSAGE_PATTERNS: tuple[str, ...] = (
    "not enough space",
    "insufficient storage",
    "storage limit",
    "quota exceeded",
    "no space left",
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None = None

    @property
    def retryable(self) -> bool:
        return self.failure_class == FailureClass.TRANSIENT


def classify_error(error: BaseException) -> FailureClassification:  # noqa: PLR0911
    """Classify an exception into a deterministic retry class."""

    if isinstance(error, RemoteError) and error.retryable is not None:
        if error.retryable:
            return FailureClassification(
                failure_class=FailureClass.TRANSIENT,
                reason_code=f"remote_{error.code}",
                matched_rule="remote_error_flag",
            )
        return _classify_permanent_remote(error)

    if isinstance(error, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)):
        return FailureClassification(
            failure_class=FailureClass.TRANSIENT,
            reason_code="http_transport",
            matched_rule="httpx_transport",
            matched_pattern=type(error).__name__,
        )

    status_code = _status_code(error)
    if status_code is not None:
        if is_retryable_status(status_code):
            return FailureClassification(
                failure_class=FailureClass.TRANSIENT,
                reason_code=f"http_{status_code}",
                matched_rule="retryable_status",
                matched_pattern=str(status_code),
            )
        return FailureClassification(
            failure_class=FailureClass.PERMANENT,
            reason_code=f"http_{status_code}",
            matched_rule="non_retryable_status",
            matched_pattern=str(status_code),
        )

    if isinstance(error, (ConnectionError, TimeoutError)):
        return FailureClassification(
            failure_class=FailureClass.TRANSIENT,
            reason_code="connection",
            matched_rule="connection_error",
            matched_pattern=type(error).__name__,
        )

    if isinstance(error, OSError) and error.errno in _TRANSIENT_ERRNOS:
        return FailureClassification(
            failure_class=FailureClass.TRANSIENT,
            reason_code="connection",
            matched_rule="transient_errno",
            matched_pattern=errno.errorcode.get(error.errno or 0),
        )

    pattern = _first_match(str(error).lower(), _TRANSIENT_MESSAGE_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.TRANSIENT,
            reason_code="message_transient",
            matched_rule="message_pattern",
            matched_pattern=pattern,
        )

    return FailureClassification(
        failure_class=FailureClass.PERMANENT,
        reason_code="non_retryable",
        matched_rule="fallback_non_retryable",
    )


def is_retryable_error(error: BaseException) -> bool:
    """Default retry predicate for the retry executor."""

    return classify_error(error).retryable


def _classify_permanent_remote(error: RemoteError) -> FailureClassification:
    reason_code = f"remote_{error.code}"
    if isinstance(error, (RemoteNotFoundError, UnsupportedArchiveError)):
        return FailureClassification(
            failure_class=FailureClass.REMOTE_TERMINAL,
            reason_code=reason_code,
            matched_rule="remote_terminal",
            matched_pattern=type(error).__name__,
        )
    pattern = _first_match(str(error).lower(), _CAPACITY_MESSAGE_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.CAPACITY,
            reason_code=reason_code,
            matched_rule="capacity_message",
            matched_pattern=pattern,
        )
    return FailureClassification(
        failure_class=FailureClass.PERMANENT,
        reason_code=reason_code,
        matched_rule="remote_error_flag",
    )


def _status_code(error: BaseException) -> int | None:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    if isinstance(error, RemoteError):
        return error.status_code
    return None


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
