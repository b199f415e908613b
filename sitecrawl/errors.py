"""Exceptions raised inside the crawl core.

Every crawl failure carries an ``ErrorType`` so the classifier can map it
into the taxonomy without string matching. Fetchers translate library
exceptions (requests, curl_cffi) into these before they leave ``fetch()``.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

from .models import ErrorType


class CrawlException(Exception):
    error_type = ErrorType.UNKNOWN

    def __init__(self, message: str = "", details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message or self.error_type.value)
        self.details = dict(details or {})


class NetworkError(CrawlException):
    error_type = ErrorType.NETWORK_ERROR


class FetchTimeout(NetworkError):
    error_type = ErrorType.TIMEOUT_ERROR


class ConnectionRefused(NetworkError):
    error_type = ErrorType.CONNECTION_REFUSED


class DnsError(NetworkError):
    error_type = ErrorType.DNS_ERROR


class HttpStatusError(CrawlException):
    """Non-2xx response that did not match any anti-bot signature."""

    error_type = ErrorType.NETWORK_ERROR

    def __init__(self, status_code: int, url: str = "", retry_after: Optional[float] = None) -> None:
        super().__init__(f"HTTP {status_code} for {url}".strip(), {"status_code": status_code, "url": url})
        self.status_code = status_code
        self.retry_after = retry_after


class AntiBotError(CrawlException):
    def __init__(
        self,
        message: str = "",
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, details)
        self.status_code = status_code
        self.retry_after = retry_after
        if status_code is not None:
            self.details.setdefault("status_code", status_code)


class RateLimited(AntiBotError):
    error_type = ErrorType.RATE_LIMITED


class Blocked(AntiBotError):
    error_type = ErrorType.BLOCKED


class CaptchaRequired(AntiBotError):
    error_type = ErrorType.CAPTCHA_REQUIRED


class IpBanned(AntiBotError):
    error_type = ErrorType.IP_BANNED


class ExtractionError(CrawlException):
    error_type = ErrorType.PARSE_ERROR


class ParseError(ExtractionError):
    error_type = ErrorType.PARSE_ERROR


class SelectorMiss(ExtractionError):
    error_type = ErrorType.SELECTOR_MISS


class InvalidMarkup(ExtractionError):
    error_type = ErrorType.INVALID_MARKUP


class ConfigError(CrawlException, ValueError):
    """Malformed site or scheduler configuration; never retried."""

    error_type = ErrorType.INVALID_RULE_CONFIG

    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.INVALID_RULE_CONFIG,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, details)
        self.error_type = error_type


class QueueFullError(RuntimeError):
    def __init__(self, max_queue_size: int) -> None:
        super().__init__(f"task queue is full (max_queue_size={max_queue_size})")
        self.max_queue_size = max_queue_size


class TaskAborted(Exception):
    """Raised at a suspension point once the owning task is cancelled or timed out."""

    def __init__(self, reason: str = "cancelled") -> None:
        super().__init__(reason)
        self.reason = reason


SIGNAL_EXCEPTIONS = {
    ErrorType.RATE_LIMITED: RateLimited,
    ErrorType.BLOCKED: Blocked,
    ErrorType.CAPTCHA_REQUIRED: CaptchaRequired,
    ErrorType.IP_BANNED: IpBanned,
}
