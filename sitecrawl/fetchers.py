from __future__ import annotations

import threading
from typing import Any, Dict, Optional

import requests
from curl_cffi import CurlError
from curl_cffi import requests as curl_requests

from .base import BaseFetcher
from .errors import ConnectionRefused, CrawlException, DnsError, FetchTimeout, NetworkError
from .models import RequestProfile

# libcurl error codes
_CURLE_COULDNT_RESOLVE_PROXY = 5
_CURLE_COULDNT_RESOLVE_HOST = 6
_CURLE_COULDNT_CONNECT = 7
_CURLE_OPERATION_TIMEDOUT = 28


class RequestsFetcher(BaseFetcher):
    """Plain HTTP fetcher on a per-thread requests.Session."""

    def __init__(self) -> None:
        self._local = threading.local()

    def _session(self) -> requests.Session:
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            self._local.session = session
        return session

    def send(self, url: str, profile: RequestProfile, timeout: float, method: str, params: Dict[str, str]) -> Any:
        return self._session().request(
            method=method,
            url=url,
            params=params or None,
            headers=profile.headers,
            proxies=self.proxies_for(profile),
            timeout=timeout,
        )

    def translate(self, exc: Exception, url: str) -> Optional[CrawlException]:
        details = {"url": url}
        if isinstance(exc, requests.exceptions.Timeout):
            return FetchTimeout(str(exc), details)
        if isinstance(exc, requests.exceptions.ProxyError):
            return NetworkError(f"proxy failure: {exc}", details)
        if isinstance(exc, requests.exceptions.ConnectionError):
            text = str(exc).lower()
            if "name or service not known" in text or "getaddrinfo" in text or "nameresolution" in text:
                return DnsError(str(exc), details)
            if "connection refused" in text or "errno 111" in text:
                return ConnectionRefused(str(exc), details)
            return NetworkError(str(exc), details)
        if isinstance(exc, (requests.exceptions.RequestException, OSError)):
            return NetworkError(str(exc), details)
        return None

    def close(self) -> None:
        session = getattr(self._local, "session", None)
        if session is not None:
            session.close()
            self._local.session = None


class CurlFetcher(BaseFetcher):
    """Browser-impersonating fetcher built on curl_cffi.

    A fresh session is created per call to avoid sharing curl handles
    between worker threads."""

    def __init__(self, impersonate: str = "chrome120") -> None:
        self._impersonate = impersonate

    @property
    def impersonate(self) -> str:
        return self._impersonate

    def send(self, url: str, profile: RequestProfile, timeout: float, method: str, params: Dict[str, str]) -> Any:
        session = curl_requests.Session()
        try:
            return session.request(
                method=method,
                url=url,
                params=params or None,
                headers=profile.headers,
                proxies=self.proxies_for(profile),
                impersonate=self._impersonate,
                timeout=timeout,
            )
        finally:
            session.close()

    def translate(self, exc: Exception, url: str) -> Optional[CrawlException]:
        details = {"url": url, "impersonate": self._impersonate}
        if isinstance(exc, CurlError):
            code = getattr(exc, "code", None)
            code = int(code) if code is not None else None
            details["curl_code"] = code
            if code == _CURLE_OPERATION_TIMEDOUT:
                return FetchTimeout(str(exc), details)
            if code == _CURLE_COULDNT_RESOLVE_HOST:
                return DnsError(str(exc), details)
            if code == _CURLE_COULDNT_CONNECT:
                return ConnectionRefused(str(exc), details)
            if code == _CURLE_COULDNT_RESOLVE_PROXY:
                return NetworkError(f"proxy failure: {exc}", details)
            return NetworkError(str(exc), details)
        if isinstance(exc, OSError):
            return NetworkError(str(exc), details)
        return None
