from __future__ import annotations

import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Mapping, Optional

from .errors import CrawlException
from .models import PageResponse, RequestProfile


class BaseFetcher(ABC):
    """Abstract base class defining a common fetch pipeline.

    - Any status code is returned as a PageResponse; judging it is the
      caller's job (anti-bot detection needs the body of 403/429 pages).
    - Transport failures are translated into the crawl exception hierarchy
      so retry decisions never depend on which HTTP library was used.
    - Unknown exceptions (programming errors) propagate unchanged.
    """

    def fetch(
        self,
        url: str,
        profile: RequestProfile,
        timeout: float,
        method: str = "GET",
        params: Optional[Mapping[str, str]] = None,
    ) -> PageResponse:
        self.validate(url)
        start_ms = self._now_ms()
        try:
            raw = self.send(url, profile, timeout, method.upper(), dict(params or {}))
        except CrawlException:
            raise
        except Exception as exc:  # noqa: BLE001
            translated = self.translate(exc, url)
            if translated is None:
                raise
            raise translated from exc
        elapsed_ms = self._now_ms() - start_ms
        return PageResponse(
            url=str(getattr(raw, "url", url) or url),
            status_code=int(getattr(raw, "status_code", 0) or 0),
            text=getattr(raw, "text", "") or "",
            headers=dict(getattr(raw, "headers", {}) or {}),
            elapsed_ms=elapsed_ms,
        )

    def validate(self, url: str) -> None:
        if not url:
            raise ValueError("url is required")

    @abstractmethod
    def send(self, url: str, profile: RequestProfile, timeout: float, method: str, params: Dict[str, str]) -> Any:
        ...

    @abstractmethod
    def translate(self, exc: Exception, url: str) -> Optional[CrawlException]:
        ...

    def close(self) -> None:
        """Release pooled connections, if any."""

    @staticmethod
    def proxies_for(profile: RequestProfile) -> Optional[Dict[str, str]]:
        if profile.proxy is None:
            return None
        return {"http": profile.proxy.url, "https": profile.proxy.url}

    @staticmethod
    def _now_ms() -> int:
        return int(time.time() * 1000)
