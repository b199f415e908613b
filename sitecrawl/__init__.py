"""Crawl orchestration core.

Schedules multi-site search tasks, crawls every site concurrently under
per-site throttling and anti-bot supervision, and streams task events.

Key modules:
    scheduler       -- TaskScheduler: admission, deadlines, pause/resume/cancel
    registry        -- TaskRegistry holding queued, running and archived tasks
    coordinator     -- SiteCrawlCoordinator: per-site fetch/extract pipeline
    supervisor      -- AntiDetectionSupervisor: request profiles and escalation
    strategies      -- SignalDetector and the escalation ladder strategies
    rate_limiter    -- RateLimiter: per-site token bucket with adaptive delay
    proxy           -- ProxyRotator: health-scored round-robin proxy pool
    retry           -- ErrorClassifier and RetryPolicy
    backoff         -- BackoffStrategy for exponential retry delays
    cancellation    -- CancellationToken shared by cancel and timeout
    base            -- BaseFetcher abstract class
    fetchers        -- RequestsFetcher, CurlFetcher concrete implementations
    factory         -- FetcherFactory for creating fetchers
    extractors      -- Extractor interface and RegexExtractor
    notifier        -- Notifier sinks and the background EventDispatcher
    metrics         -- MetricsCollector for request outcome statistics
    config          -- validated, immutable configuration records
    models          -- Task, CrawlError, Proxy and other dataclasses
    errors          -- exception hierarchy mapped onto the error taxonomy
"""
from .config import SchedulerConfig, SiteConfig, SupervisorConfig, load_site_configs
from .errors import ConfigError, QueueFullError
from .models import CrawlError, ErrorType, Task, TaskOptions, TaskStatus
from .scheduler import TaskScheduler
from .supervisor import AntiDetectionSupervisor

__all__ = [
    "AntiDetectionSupervisor",
    "ConfigError",
    "CrawlError",
    "ErrorType",
    "QueueFullError",
    "SchedulerConfig",
    "SiteConfig",
    "SupervisorConfig",
    "Task",
    "TaskOptions",
    "TaskScheduler",
    "TaskStatus",
    "load_site_configs",
]
