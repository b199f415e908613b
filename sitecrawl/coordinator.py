from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional, Protocol

from .base import BaseFetcher
from .cancellation import CancellationToken
from .config import SiteConfig
from .errors import SIGNAL_EXCEPTIONS, CrawlException, HttpStatusError, TaskAborted
from .extractors import Extractor
from .models import CrawlError, ErrorCategory, PageResponse, SiteJob
from .retry import ErrorClassifier, RetryPolicy, make_error
from .strategies import Signal
from .supervisor import AntiDetectionSupervisor

logger = logging.getLogger(__name__)


class TaskSink(Protocol):
    """What a coordinator reports into; implemented by the scheduler."""

    def add_result(self, task_id: str, site_id: str, result: Dict[str, Any]) -> bool:
        ...

    def add_error(self, task_id: str, error: CrawlError) -> None:
        ...

    def site_finished(self, task_id: str, site_id: str, success: bool, error: Optional[CrawlError] = None) -> None:
        ...


class _StepFailed(Exception):
    def __init__(self, error: CrawlError) -> None:
        super().__init__(error.message)
        self.error = error


class SiteCrawlCoordinator:
    """Crawls one site for one task.

    Fetches the search page, extracts candidate links, then fetches and
    extracts each detail page in discovery order. Every network step goes
    through the supervisor and is retried under the retry policy. The site
    reports exactly once to the sink: completed, or failed with a single
    error entry."""

    def __init__(
        self,
        task_id: str,
        query: str,
        site: SiteConfig,
        extractor: Extractor,
        supervisor: AntiDetectionSupervisor,
        fetcher: BaseFetcher,
        sink: TaskSink,
        token: CancellationToken,
        retry_policy: Optional[RetryPolicy] = None,
        classifier: Optional[ErrorClassifier] = None,
        max_results: Optional[int] = None,
        max_retries: Optional[int] = None,
    ) -> None:
        self._query = query
        self._site = site
        self._extractor = extractor
        self._supervisor = supervisor
        self._fetcher = fetcher
        self._sink = sink
        self._token = token
        self._policy = retry_policy or RetryPolicy()
        self._classifier = classifier or ErrorClassifier()
        self._max_results = max_results
        self._max_retries = max_retries
        self.job = SiteJob(task_id=task_id, site_id=site.site_id)

    @property
    def link_cap(self) -> int:
        if self._max_results is None:
            return self._site.max_links
        return max(0, min(self._site.max_links, self._max_results))

    def run(self) -> bool:
        """Run the whole site pipeline and report the outcome; returns success."""
        site_id = self._site.site_id
        try:
            success, error = self._crawl()
        except TaskAborted as exc:
            # the scheduler already terminated the task; nothing more to report
            logger.info("task %s site %s stopped: %s", self.job.task_id, site_id, exc.reason)
            return False
        except Exception as exc:  # noqa: BLE001
            logger.exception("task %s site %s crashed", self.job.task_id, site_id)
            success, error = False, self._classifier.classify(exc, site_id)
        self._sink.site_finished(self.job.task_id, site_id, success, error)
        return success

    def _crawl(self) -> tuple[bool, Optional[CrawlError]]:
        site = self._site
        search_url = site.build_search_url(self._query)
        try:
            page = self._fetch(search_url, paced=False, method=site.method, params=site.params)
        except _StepFailed as failed:
            return False, failed.error

        try:
            found = self._extractor.extract_links(site, page.text)
        except Exception as exc:  # noqa: BLE001
            return False, self._classifier.classify(exc, site.site_id, {"url": search_url})

        links = self._dedupe(found)[: self.link_cap]
        self.job.links = len(links)
        logger.info("task %s site %s: %d links", self.job.task_id, site.site_id, len(links))

        network_failures = 0
        for link in links:
            if self._max_results is not None and self.job.results >= self._max_results:
                break
            try:
                detail = self._fetch(link, paced=True)
            except _StepFailed as failed:
                self.job.link_failures.append(failed.error)
                if failed.error.type.category in (ErrorCategory.NETWORK, ErrorCategory.ANTI_BOT):
                    network_failures += 1
                continue
            try:
                data = self._extractor.extract_detail(site, detail.text)
            except Exception as exc:  # noqa: BLE001
                self.job.link_failures.append(self._classifier.classify(exc, site.site_id, {"url": link}))
                continue
            if not data:
                continue
            result = dict(data)
            result.setdefault("source_url", link)
            result.setdefault("source_website", site.site_id)
            if self._sink.add_result(self.job.task_id, site.site_id, result):
                self.job.results += 1

        if self.job.results > 0 or network_failures == 0:
            for error in self.job.link_failures:
                self._sink.add_error(self.job.task_id, error)
            return True, None

        last = self.job.link_failures[-1]
        return False, make_error(
            last.type,
            f"all {network_failures} detail pages failed: {last.message}",
            site.site_id,
            {**last.details, "failed_links": network_failures},
        )

    def _fetch(
        self,
        url: str,
        paced: bool,
        method: str = "GET",
        params: Optional[Dict[str, str]] = None,
    ) -> PageResponse:
        site_id = self._site.site_id
        attempt = 0
        while True:
            profile = self._supervisor.prepare(site_id, self._token)
            # retries are always paced; a first unpaced call still honours Retry-After
            pause = profile.delay if (paced or attempt > 0) else profile.retry_after
            if pause > 0:
                self._token.sleep(pause)
            self._token.checkpoint()

            start = time.monotonic()
            status: Optional[int] = None
            retry_after: Optional[float] = None
            signal = Signal.NONE
            try:
                response = self._fetcher.fetch(url, profile, self._site.request_timeout, method, params)
                status = response.status_code
                retry_after = response.retry_after
                signal = self._supervisor.detect(status, response.text)
                if signal is not Signal.NONE:
                    raise SIGNAL_EXCEPTIONS[signal.error_type](
                        f"{signal.value} detected on {url}",
                        status_code=status,
                        retry_after=retry_after,
                        details={"url": url},
                    )
                if not response.ok:
                    raise HttpStatusError(status, url, retry_after)
            except CrawlException as exc:
                elapsed = time.monotonic() - start
                self.job.attempts += 1
                error = self._classifier.classify(exc, site_id, {"url": url, "attempt": attempt + 1})
                self.job.last_error = error
                decision = self._supervisor.record_outcome(
                    site_id, False, elapsed, status, retry_after, signal, error.message
                )
                if not (decision.retry and self._policy.should_retry(error, attempt, self._max_retries)):
                    raise _StepFailed(error) from exc
                wait = self._policy.backoff(attempt)
                attempt += 1
                logger.info(
                    "site %s %s on %s, retry %d in %.2fs", site_id, error.type.value, url, attempt, wait
                )
                self._token.sleep(wait)
                continue

            self.job.attempts += 1
            self._supervisor.record_outcome(site_id, True, time.monotonic() - start, status)
            return response

    @staticmethod
    def _dedupe(links: List[str]) -> List[str]:
        seen = set()
        unique: List[str] = []
        for link in links:
            if link and link not in seen:
                seen.add(link)
                unique.append(link)
        return unique
