"""Validated, immutable configuration records.

Site rules are static input data. They are checked when constructed so a
malformed rule is rejected with ``ConfigError`` before any request is made.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional
from urllib.parse import quote_plus, urlsplit

from .errors import ConfigError
from .models import ErrorType, Proxy

KEYWORD_PLACEHOLDER = "{keyword}"

DEFAULT_USER_AGENTS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.2 Safari/605.1.15",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Ubuntu; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0",
)

DEFAULT_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
    "Accept-Language": "zh-CN,zh;q=0.9,en;q=0.8",
    "Accept-Encoding": "gzip, deflate",
    "DNT": "1",
    "Connection": "keep-alive",
    "Upgrade-Insecure-Requests": "1",
}


def _require(condition: bool, message: str, error_type: ErrorType = ErrorType.INVALID_RULE_CONFIG) -> None:
    if not condition:
        raise ConfigError(message, error_type)


@dataclass(frozen=True)
class RateLimitConfig:
    requests_per_second: float = 1.0
    requests_per_minute: int = 30
    requests_per_hour: int = 1000
    burst_size: int = 3
    adaptive_delay: bool = True
    respect_retry_after: bool = True
    base_delay: float = 0.0
    growth_factor: float = 1.5
    max_delay: float = 30.0
    # first delay applied when growing from a zero baseline
    failure_floor: float = 1.0
    decay_after: int = 5
    decay_factor: float = 0.5

    def __post_init__(self) -> None:
        _require(self.requests_per_second > 0, "requests_per_second must be > 0")
        _require(self.requests_per_minute > 0, "requests_per_minute must be > 0")
        _require(self.requests_per_hour > 0, "requests_per_hour must be > 0")
        _require(self.burst_size >= 1, "burst_size must be >= 1")
        _require(self.growth_factor >= 1.0, "growth_factor must be >= 1.0")
        _require(0 <= self.base_delay <= self.max_delay, "base_delay must be within [0, max_delay]")
        _require(0 < self.decay_factor <= 1.0, "decay_factor must be within (0, 1]")
        _require(self.decay_after >= 1, "decay_after must be >= 1")

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "RateLimitConfig":
        return cls(**_known_fields(cls, raw, "rate_limit"))


@dataclass(frozen=True)
class SiteConfig:
    site_id: str
    name: str
    base_url: str
    search_url_template: str
    method: str = "GET"
    headers: Mapping[str, str] = field(default_factory=dict)
    params: Mapping[str, str] = field(default_factory=dict)
    max_links: int = 20
    max_retries: Optional[int] = None
    request_timeout: float = 20.0
    impersonate: Optional[str] = None
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    active: bool = True
    extra: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        _require(bool(self.site_id), "site_id is required")
        _require(bool(self.base_url), f"{self.site_id}: base_url is required")
        _require(
            urlsplit(self.base_url).scheme in ("http", "https"),
            f"{self.site_id}: base_url must be http(s)",
        )
        template = self.search_url_template or ""
        _require(
            KEYWORD_PLACEHOLDER in template,
            f"{self.site_id}: search_url_template must contain {KEYWORD_PLACEHOLDER}",
            ErrorType.INVALID_URL_TEMPLATE,
        )
        _require(
            urlsplit(template).scheme in ("http", "https"),
            f"{self.site_id}: search_url_template must be an absolute http(s) URL",
            ErrorType.INVALID_URL_TEMPLATE,
        )
        _require(self.method.upper() in ("GET", "POST"), f"{self.site_id}: method must be GET or POST")
        _require(self.max_links >= 1, f"{self.site_id}: max_links must be >= 1")
        _require(self.max_retries is None or self.max_retries >= 0, f"{self.site_id}: max_retries must be >= 0")
        _require(self.request_timeout > 0, f"{self.site_id}: request_timeout must be > 0")
        selectors = self.extra.get("selectors")
        if selectors is not None:
            _require(
                isinstance(selectors, Mapping) and bool(selectors.get("link")),
                f"{self.site_id}: selectors.link is required when selectors are given",
                ErrorType.MISSING_SELECTOR,
            )

    def build_search_url(self, query: str) -> str:
        return self.search_url_template.replace(KEYWORD_PLACEHOLDER, quote_plus(query))

    def absolute_url(self, href: str) -> str:
        if href.startswith(("http://", "https://")):
            return href
        base = self.base_url.rstrip("/")
        if href.startswith("./"):
            href = href[1:]
        if not href.startswith("/"):
            href = "/" + href
        return base + href

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "SiteConfig":
        if not isinstance(raw, Mapping):
            raise ConfigError(f"site rule must be an object, got {type(raw).__name__}")
        data = _known_fields(cls, raw, raw.get("site_id") or raw.get("id") or "site")
        if "site_id" not in data and "id" in raw:
            data["site_id"] = raw["id"]
        data.setdefault("name", data.get("site_id", ""))
        for key in ("site_id", "base_url"):
            if key not in data:
                raise ConfigError(f"site rule is missing {key!r}")
        if "search_url_template" not in data:
            raise ConfigError(
                f"{data['site_id']}: site rule is missing 'search_url_template'",
                ErrorType.INVALID_URL_TEMPLATE,
            )
        if isinstance(data.get("rate_limit"), Mapping):
            data["rate_limit"] = RateLimitConfig.from_dict(data["rate_limit"])
        return cls(**data)


@dataclass(frozen=True)
class SchedulerConfig:
    max_concurrent_tasks: int = 3
    max_queue_size: int = 50
    task_timeout: float = 300.0
    retry_attempts: int = 3
    archive_retention_hours: float = 24.0

    def __post_init__(self) -> None:
        _require(self.max_concurrent_tasks >= 1, "max_concurrent_tasks must be >= 1")
        _require(self.max_queue_size >= 0, "max_queue_size must be >= 0")
        _require(self.task_timeout > 0, "task_timeout must be > 0")
        _require(self.retry_attempts >= 0, "retry_attempts must be >= 0")


@dataclass(frozen=True)
class DetectionSignatures:
    """Keyword and markup fragments that classify a response.

    Matching is case-insensitive substring search over the page content."""

    captcha_markup: tuple = (
        'src="/captcha',
        "/captcha?",
        'class="captcha',
        'id="captcha',
        "g-recaptcha",
        "h-captcha",
        "geetest",
        "cf-turnstile",
    )
    captcha_keywords: tuple = ("验证码", "verify you are human", "complete the captcha")
    ip_ban_keywords: tuple = (
        "ip banned",
        "ip被封",
        "your ip has been blocked",
        "您的ip已被封禁",
        "your ip address has been banned",
    )
    block_keywords: tuple = (
        "访问被拒绝",
        "access denied",
        "403 forbidden",
        "您的访问过于频繁",
        "too many requests",
        "请稍后再试",
        "please try again later",
        "rate limit exceeded",
        "请求过于频繁",
    )
    rate_limit_statuses: tuple = (429,)
    block_statuses: tuple = (403,)


@dataclass(frozen=True)
class SupervisorConfig:
    captcha_cooldown: float = 30.0
    ip_ban_cooldown: float = 60.0
    block_cooldown: float = 120.0
    block_switch_after: int = 2
    failure_threshold: int = 3
    # rotate proxies for a site even when healthy after this many seconds
    proxy_rotation_interval: float = 30 * 60.0
    signatures: DetectionSignatures = field(default_factory=DetectionSignatures)
    user_agents: tuple = DEFAULT_USER_AGENTS
    default_headers: Mapping[str, str] = field(default_factory=lambda: dict(DEFAULT_HEADERS))

    def __post_init__(self) -> None:
        _require(self.captcha_cooldown >= 0, "captcha_cooldown must be >= 0")
        _require(self.ip_ban_cooldown >= 0, "ip_ban_cooldown must be >= 0")
        _require(self.block_cooldown >= 0, "block_cooldown must be >= 0")
        _require(self.block_switch_after >= 1, "block_switch_after must be >= 1")
        _require(self.failure_threshold >= 1, "failure_threshold must be >= 1")
        _require(len(self.user_agents) > 0, "at least one user agent is required")


@dataclass(frozen=True)
class ProxyPoolConfig:
    health_threshold: float = 40.0
    ema_alpha: float = 0.3
    failure_threshold: int = 3
    cooldown: float = 60.0
    recovery_health: float = 50.0
    check_url: str = "http://httpbin.org/ip"
    check_timeout: float = 10.0
    check_interval: float = 5 * 60.0

    def __post_init__(self) -> None:
        _require(0 <= self.health_threshold < 100, "health_threshold must be within [0, 100)")
        _require(
            self.health_threshold < self.recovery_health <= 100,
            "recovery_health must be above health_threshold and at most 100",
        )
        _require(self.check_timeout > 0, "check_timeout must be > 0")
        _require(self.check_interval > 0, "check_interval must be > 0")
        _require(0 < self.ema_alpha <= 1, "ema_alpha must be within (0, 1]")
        _require(self.failure_threshold >= 1, "failure_threshold must be >= 1")
        _require(self.cooldown >= 0, "cooldown must be >= 0")


def _known_fields(cls: type, raw: Mapping[str, Any], label: str) -> Dict[str, Any]:
    names = set(cls.__dataclass_fields__)
    unknown = sorted(k for k in raw if k not in names and k != "id")
    if unknown:
        raise ConfigError(f"{label}: unknown keys {unknown}")
    return {k: v for k, v in raw.items() if k in names}


def load_site_configs(path: str) -> Dict[str, SiteConfig]:
    """Load a JSON list of site rules keyed by site id."""
    with open(path, "r", encoding="utf-8") as f:
        try:
            raw = json.load(f)
        except json.JSONDecodeError as exc:
            raise ConfigError(f"{path}: invalid JSON ({exc})") from exc
    if isinstance(raw, Mapping):
        raw = raw.get("sites", [])
    if not isinstance(raw, list):
        raise ConfigError(f"{path}: expected a list of site rules")
    sites: Dict[str, SiteConfig] = {}
    for entry in raw:
        site = SiteConfig.from_dict(entry)
        if site.site_id in sites:
            raise ConfigError(f"{path}: duplicate site id {site.site_id!r}")
        sites[site.site_id] = site
    return sites


def parse_proxy(raw: str) -> Proxy:
    """Parse ``protocol://[user:pass@]host:port`` or bare ``host:port``."""
    text = raw.strip()
    if "://" in text:
        parts = urlsplit(text)
        if not parts.hostname or not parts.port:
            raise ConfigError(f"invalid proxy {raw!r}")
        protocol = parts.scheme.lower()
        if protocol not in ("http", "https", "socks4", "socks5"):
            raise ConfigError(f"unsupported proxy protocol {protocol!r}")
        return Proxy(
            host=parts.hostname,
            port=parts.port,
            protocol=protocol,
            username=parts.username or None,
            password=parts.password or None,
        )
    host, sep, port = text.rpartition(":")
    if not sep or not host or not port.isdigit():
        raise ConfigError(f"invalid proxy {raw!r}")
    return Proxy(host=host, port=int(port))


def load_proxies(path: str) -> List[Proxy]:
    with open(path, "r", encoding="utf-8") as f:
        return parse_proxy_lines(f)


def parse_proxy_lines(lines: Iterable[str]) -> List[Proxy]:
    proxies: List[Proxy] = []
    for line in lines:
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        proxies.append(parse_proxy(line))
    return proxies
