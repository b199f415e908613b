"""Error classification and retry decisions.

ErrorClassifier turns whatever a fetch or extraction step raised into an
immutable CrawlError from the closed taxonomy; RetryPolicy decides whether a
step is attempted again and how long to back off first.
"""
from __future__ import annotations

import socket
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

import requests

from .backoff import BackoffStrategy
from .errors import CrawlException, HttpStatusError, TaskAborted
from .models import CrawlError, ErrorCategory, ErrorType, Severity

_SEVERITY = {
    ErrorType.NETWORK_ERROR: Severity.MEDIUM,
    ErrorType.TIMEOUT_ERROR: Severity.MEDIUM,
    ErrorType.CONNECTION_REFUSED: Severity.MEDIUM,
    ErrorType.DNS_ERROR: Severity.MEDIUM,
    ErrorType.RATE_LIMITED: Severity.MEDIUM,
    ErrorType.BLOCKED: Severity.HIGH,
    ErrorType.CAPTCHA_REQUIRED: Severity.HIGH,
    ErrorType.IP_BANNED: Severity.HIGH,
    ErrorType.PARSE_ERROR: Severity.MEDIUM,
    ErrorType.SELECTOR_MISS: Severity.MEDIUM,
    ErrorType.INVALID_MARKUP: Severity.MEDIUM,
    ErrorType.INVALID_RULE_CONFIG: Severity.HIGH,
    ErrorType.MISSING_SELECTOR: Severity.HIGH,
    ErrorType.INVALID_URL_TEMPLATE: Severity.HIGH,
    ErrorType.CANCELLED: Severity.LOW,
    ErrorType.UNKNOWN: Severity.LOW,
}

_NETWORK_TYPES = frozenset(
    (ErrorType.NETWORK_ERROR, ErrorType.TIMEOUT_ERROR, ErrorType.CONNECTION_REFUSED, ErrorType.DNS_ERROR)
)


def severity_of(error_type: ErrorType) -> Severity:
    return _SEVERITY.get(error_type, Severity.LOW)


def is_recoverable(error_type: ErrorType) -> bool:
    return error_type.category is not ErrorCategory.CONFIGURATION and error_type is not ErrorType.CANCELLED


def make_error(
    error_type: ErrorType,
    message: str,
    site_id: str,
    details: Optional[Dict[str, Any]] = None,
    severity: Optional[Severity] = None,
    recoverable: Optional[bool] = None,
) -> CrawlError:
    return CrawlError(
        type=error_type,
        message=message,
        severity=severity or severity_of(error_type),
        recoverable=is_recoverable(error_type) if recoverable is None else recoverable,
        site_id=site_id,
        details=dict(details or {}),
    )


class ErrorClassifier:
    """Maps raw exceptions and HTTP statuses into CrawlError records."""

    def classify(self, raw: BaseException, site_id: str, details: Optional[Dict[str, Any]] = None) -> CrawlError:
        error_type = self.error_type_of(raw)
        merged: Dict[str, Any] = {"exception": type(raw).__name__}
        if isinstance(raw, CrawlException):
            merged.update(raw.details)
        merged.update(details or {})
        return make_error(error_type, str(raw) or error_type.value, site_id, merged)

    def error_type_of(self, raw: BaseException) -> ErrorType:
        if isinstance(raw, HttpStatusError):
            return self.status_error_type(raw.status_code)
        if isinstance(raw, CrawlException):
            return raw.error_type
        if isinstance(raw, TaskAborted):
            return ErrorType.CANCELLED
        if isinstance(raw, requests.exceptions.Timeout):
            return ErrorType.TIMEOUT_ERROR
        if isinstance(raw, requests.exceptions.ConnectionError):
            return _connection_error_type(str(raw))
        if isinstance(raw, requests.exceptions.RequestException):
            return ErrorType.NETWORK_ERROR
        if isinstance(raw, (TimeoutError, socket.timeout)):
            return ErrorType.TIMEOUT_ERROR
        if isinstance(raw, ConnectionRefusedError):
            return ErrorType.CONNECTION_REFUSED
        if isinstance(raw, socket.gaierror):
            return ErrorType.DNS_ERROR
        if isinstance(raw, (ConnectionError, OSError)):
            return ErrorType.NETWORK_ERROR
        return ErrorType.UNKNOWN

    @staticmethod
    def status_error_type(status_code: int) -> ErrorType:
        if status_code == 429:
            return ErrorType.RATE_LIMITED
        if status_code == 403:
            return ErrorType.BLOCKED
        if status_code in (408, 504):
            return ErrorType.TIMEOUT_ERROR
        return ErrorType.NETWORK_ERROR


def _connection_error_type(message: str) -> ErrorType:
    text = message.lower()
    if "name or service not known" in text or "getaddrinfo" in text or "nameresolution" in text:
        return ErrorType.DNS_ERROR
    if "connection refused" in text or "errno 111" in text:
        return ErrorType.CONNECTION_REFUSED
    return ErrorType.NETWORK_ERROR


class RetryPolicy:
    """Type-aware retry decision plus exponential backoff.

    ``attempt`` is the number of retries already made for the step."""

    def __init__(self, max_attempts: int = 3, backoff: Optional[BackoffStrategy] = None) -> None:
        self.max_attempts = max_attempts
        self._backoff = backoff or BackoffStrategy(base_seconds=1.0, max_seconds=30.0)

    def should_retry(self, error: CrawlError, attempt: int, max_attempts: Optional[int] = None) -> bool:
        limit = self.max_attempts if max_attempts is None else max_attempts
        if attempt >= limit or not error.recoverable:
            return False
        if error.type in _NETWORK_TYPES:
            return True
        if error.type in (ErrorType.RATE_LIMITED, ErrorType.BLOCKED):
            return attempt < 2
        if error.type in (ErrorType.IP_BANNED, ErrorType.CAPTCHA_REQUIRED):
            return False
        if error.type.category is ErrorCategory.EXTRACTION:
            # the extractor owns retries for its own failures
            return False
        return attempt < 1

    def backoff(self, attempt: int) -> float:
        return self._backoff.get_sleep(attempt)


_SUGGESTIONS = {
    ErrorType.BLOCKED: ["increase the request interval", "enable proxy rotation", "rotate the User-Agent"],
    ErrorType.RATE_LIMITED: ["lower requests_per_second", "raise base_delay", "use a proxy pool"],
    ErrorType.CAPTCHA_REQUIRED: ["use an impersonating fetcher", "switch to residential proxies"],
    ErrorType.IP_BANNED: ["rotate proxies", "lengthen ip_ban_cooldown"],
    ErrorType.TIMEOUT_ERROR: ["increase request_timeout", "check connectivity", "reduce concurrency"],
    ErrorType.SELECTOR_MISS: ["check whether the page layout changed", "update the site rule selectors"],
}


@dataclass(frozen=True)
class ErrorSummary:
    most_common: Optional[ErrorType]
    total: int
    by_type: Dict[str, int] = field(default_factory=dict)
    suggestions: List[str] = field(default_factory=list)


def summarize_errors(errors: Iterable[CrawlError]) -> ErrorSummary:
    """Count errors by type and suggest mitigations for the most common one."""
    counts = Counter(e.type for e in errors)
    if not counts:
        return ErrorSummary(most_common=None, total=0)
    most_common, _ = counts.most_common(1)[0]
    return ErrorSummary(
        most_common=most_common,
        total=sum(counts.values()),
        by_type={t.value: n for t, n in counts.items()},
        suggestions=list(
            _SUGGESTIONS.get(most_common, ["check that the site is reachable", "validate the site rule"])
        ),
    )
