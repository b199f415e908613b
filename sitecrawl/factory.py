from __future__ import annotations

import threading
from typing import Dict

from .base import BaseFetcher
from .config import SiteConfig
from .fetchers import CurlFetcher, RequestsFetcher


class FetcherFactory:
    """Factory for creating fetchers based on site configuration.

    - Sites with ``impersonate`` set get a curl_cffi fetcher for that browser
      profile; everything else shares one requests-based fetcher.
    - Instances are cached per kind to avoid per-request construction.
    """

    def __init__(self, cache_curl: bool = True, cache_requests: bool = True) -> None:
        self._cache_curl = cache_curl
        self._cache_requests = cache_requests
        self._cache: Dict[str, BaseFetcher] = {}
        self._lock = threading.Lock()

    def create_fetcher(self, site: SiteConfig) -> BaseFetcher:
        kind = f"curl:{site.impersonate}" if site.impersonate else "requests"
        cache_allowed = self._cache_curl if site.impersonate else self._cache_requests

        with self._lock:
            if cache_allowed and kind in self._cache:
                return self._cache[kind]

            if site.impersonate:
                fetcher: BaseFetcher = CurlFetcher(impersonate=site.impersonate)
            else:
                fetcher = RequestsFetcher()

            if cache_allowed:
                self._cache[kind] = fetcher
            return fetcher

    def close(self) -> None:
        with self._lock:
            fetchers = list(self._cache.values())
            self._cache.clear()
        for fetcher in fetchers:
            fetcher.close()
