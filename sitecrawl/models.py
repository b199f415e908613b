from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(str, Enum):
    NETWORK = "network"
    ANTI_BOT = "anti_bot"
    EXTRACTION = "extraction"
    CONFIGURATION = "configuration"
    SYSTEM = "system"


class ErrorType(str, Enum):
    """Closed taxonomy of crawl failures."""

    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    CONNECTION_REFUSED = "CONNECTION_REFUSED"
    DNS_ERROR = "DNS_ERROR"

    RATE_LIMITED = "RATE_LIMITED"
    BLOCKED = "BLOCKED"
    CAPTCHA_REQUIRED = "CAPTCHA_REQUIRED"
    IP_BANNED = "IP_BANNED"

    PARSE_ERROR = "PARSE_ERROR"
    SELECTOR_MISS = "SELECTOR_MISS"
    INVALID_MARKUP = "INVALID_MARKUP"

    INVALID_RULE_CONFIG = "INVALID_RULE_CONFIG"
    MISSING_SELECTOR = "MISSING_SELECTOR"
    INVALID_URL_TEMPLATE = "INVALID_URL_TEMPLATE"

    CANCELLED = "CANCELLED"
    UNKNOWN = "UNKNOWN"

    @property
    def category(self) -> ErrorCategory:
        return _CATEGORIES[self]


_CATEGORIES = {
    ErrorType.NETWORK_ERROR: ErrorCategory.NETWORK,
    ErrorType.TIMEOUT_ERROR: ErrorCategory.NETWORK,
    ErrorType.CONNECTION_REFUSED: ErrorCategory.NETWORK,
    ErrorType.DNS_ERROR: ErrorCategory.NETWORK,
    ErrorType.RATE_LIMITED: ErrorCategory.ANTI_BOT,
    ErrorType.BLOCKED: ErrorCategory.ANTI_BOT,
    ErrorType.CAPTCHA_REQUIRED: ErrorCategory.ANTI_BOT,
    ErrorType.IP_BANNED: ErrorCategory.ANTI_BOT,
    ErrorType.PARSE_ERROR: ErrorCategory.EXTRACTION,
    ErrorType.SELECTOR_MISS: ErrorCategory.EXTRACTION,
    ErrorType.INVALID_MARKUP: ErrorCategory.EXTRACTION,
    ErrorType.INVALID_RULE_CONFIG: ErrorCategory.CONFIGURATION,
    ErrorType.MISSING_SELECTOR: ErrorCategory.CONFIGURATION,
    ErrorType.INVALID_URL_TEMPLATE: ErrorCategory.CONFIGURATION,
    ErrorType.CANCELLED: ErrorCategory.SYSTEM,
    ErrorType.UNKNOWN: ErrorCategory.SYSTEM,
}


@dataclass(frozen=True)
class CrawlError:
    type: ErrorType
    message: str
    severity: Severity
    recoverable: bool
    site_id: str
    timestamp: float = field(default_factory=time.time)
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TaskProgress:
    total: int
    completed: int = 0
    failed: int = 0

    @property
    def finished(self) -> int:
        return self.completed + self.failed

    @property
    def remaining(self) -> int:
        return self.total - self.finished


@dataclass(frozen=True)
class TaskOptions:
    max_results: Optional[int] = None
    priority: int = 0
    timeout_ms: Optional[int] = None
    retry_attempts: Optional[int] = None


@dataclass
class Task:
    id: str
    query: str
    site_ids: List[str]
    status: TaskStatus
    progress: TaskProgress
    start_time: float
    options: TaskOptions = field(default_factory=TaskOptions)
    submitted_at: Optional[float] = None
    estimated_end_time: Optional[float] = None
    end_time: Optional[float] = None
    results: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[CrawlError] = field(default_factory=list)

    def snapshot(self) -> "Task":
        """Return a copy that does not share mutable state with the live task."""
        return replace(
            self,
            site_ids=list(self.site_ids),
            progress=replace(self.progress),
            results=[dict(r) for r in self.results],
            errors=list(self.errors),
        )

    @property
    def duration_ms(self) -> Optional[int]:
        if self.end_time is None:
            return None
        return int((self.end_time - self.start_time) * 1000)


@dataclass
class SiteJob:
    task_id: str
    site_id: str
    attempts: int = 0
    last_error: Optional[CrawlError] = None
    results: int = 0
    links: int = 0
    link_failures: List[CrawlError] = field(default_factory=list)

    @property
    def key(self) -> tuple[str, str]:
        return self.task_id, self.site_id


@dataclass(frozen=True)
class Proxy:
    host: str
    port: int
    protocol: str = "http"
    username: Optional[str] = None
    password: Optional[str] = None

    @property
    def key(self) -> str:
        return f"{self.protocol}://{self.host}:{self.port}"

    @property
    def url(self) -> str:
        auth = f"{self.username}:{self.password}@" if self.username and self.password else ""
        return f"{self.protocol}://{auth}{self.host}:{self.port}"


@dataclass
class ProxyStatus:
    proxy: Proxy
    health_score: float = 100.0
    success_count: int = 0
    failure_count: int = 0
    consecutive_failures: int = 0
    avg_response_ms: float = 0.0
    cooldown_until: float = 0.0
    last_used: float = 0.0
    last_error: Optional[str] = None


@dataclass(frozen=True)
class ProxyCheckResult:
    success: bool
    response_ms: float = 0.0
    ip: Optional[str] = None
    error: Optional[str] = None


@dataclass
class RateLimitState:
    tokens: float
    window_start: float
    current_delay: float
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    retry_after_until: float = 0.0
    last_request: float = 0.0


@dataclass(frozen=True)
class RequestProfile:
    headers: Dict[str, str]
    proxy: Optional[Proxy]
    delay: float
    retry_after: float = 0.0


@dataclass(frozen=True)
class PageResponse:
    url: str
    status_code: int
    text: str
    headers: Dict[str, str] = field(default_factory=dict)
    elapsed_ms: int = 0

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def retry_after(self) -> Optional[float]:
        """Seconds requested by a ``Retry-After`` header, if any."""
        raw = None
        for k, v in self.headers.items():
            if k.lower() == "retry-after":
                raw = str(v).strip()
                break
        if not raw:
            return None
        try:
            return max(0.0, float(raw))
        except ValueError:
            pass
        try:
            when = parsedate_to_datetime(raw)
        except (TypeError, ValueError):
            return None
        return max(0.0, when.timestamp() - time.time())


class EventType(str, Enum):
    TASK_STARTED = "task_started"
    TASK_PROGRESS = "task_progress"
    TASK_RESULT = "task_result"
    TASK_ERROR = "task_error"
    TASK_COMPLETED = "task_completed"


@dataclass(frozen=True)
class Event:
    type: EventType
    task_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class SchedulerStats:
    queued: int
    active: int
    archived: int
    total_processed: int
    average_completion_ms: float


@dataclass(frozen=True)
class RequestOutcome:
    site_id: str
    success: bool
    response_ms: int
    status_code: Optional[int]
    signal: Optional[str] = None


@dataclass(frozen=True)
class MetricsSnapshot:
    window_secs: int
    total_requests: int
    success_count: int
    http_429_count: int
    http_403_count: int
    captcha_count: int
    ip_ban_count: int
    block_count: int
    avg_latency_ms: float
    timestamp: float
