from __future__ import annotations

import html
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from .config import SiteConfig
from .errors import InvalidMarkup, ParseError, SelectorMiss


class Extractor(ABC):
    """Turns fetched pages into links and structured results.

    Implementations may raise ParseError (or another ExtractionError) for a
    page they cannot handle; the crawl records it and moves on."""

    @abstractmethod
    def extract_links(self, site: SiteConfig, content: str) -> List[str]:
        """Return candidate detail-page URLs found on a search/listing page."""

    @abstractmethod
    def extract_detail(self, site: SiteConfig, content: str) -> Optional[Dict[str, Any]]:
        """Return one structured result for a detail page, or None."""


class RegexExtractor(Extractor):
    """Pattern-driven extractor configured through ``SiteConfig.extra``.

    ``link_pattern`` must capture the href in group 1; ``title_pattern``
    defaults to the page <title>. Meant for simple sites and the CLI."""

    _DEFAULT_TITLE = r"<title[^>]*>(.*?)</title>"

    def extract_links(self, site: SiteConfig, content: str) -> List[str]:
        pattern = site.extra.get("link_pattern")
        if not pattern:
            raise SelectorMiss(f"{site.site_id}: no link_pattern configured")
        if "<" not in content:
            raise InvalidMarkup(f"{site.site_id}: search page is not markup")
        try:
            found = re.findall(pattern, content, flags=re.IGNORECASE | re.DOTALL)
        except re.error as exc:
            raise ParseError(f"{site.site_id}: bad link_pattern ({exc})") from exc
        links: List[str] = []
        for href in found:
            if isinstance(href, tuple):
                href = href[0]
            url = site.absolute_url(html.unescape(href.strip()))
            if url not in links:
                links.append(url)
        return links

    def extract_detail(self, site: SiteConfig, content: str) -> Optional[Dict[str, Any]]:
        pattern = site.extra.get("title_pattern", self._DEFAULT_TITLE)
        try:
            match = re.search(pattern, content, flags=re.IGNORECASE | re.DOTALL)
            raw = match.group(1) if match else None
        except re.error as exc:
            raise ParseError(f"{site.site_id}: bad title_pattern ({exc})") from exc
        except IndexError as exc:
            raise ParseError(f"{site.site_id}: title_pattern needs a capture group") from exc
        if not raw:
            return None
        title = html.unescape(re.sub(r"<[^>]+>", "", raw)).strip()
        if not title:
            return None
        return {"title": title, "source_website": site.site_id}
