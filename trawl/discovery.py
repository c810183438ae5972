"""Link discovery and content filtering.

The discovery stage works on raw fetched bytes and never executes
scripts. It answers two questions about a page:

1. Which links should be followed? Links are resolved, normalized and
   filtered by scheme, allowed hosts and maximum depth. Dropped links are
   counted, never raised.
2. Is the page worth a full extraction? The content filter is a cheap
   check (must-match / must-not-match patterns and a minimum size) so the
   coordinator can skip the expensive fetch and the extraction on
   irrelevant pages.

Links are discovered on irrelevant pages too: a hub page that carries no
data still leads to pages that do.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from urllib.parse import urljoin

from lxml import etree, html

from trawl.common.urls import (
    DEFAULT_TRACKING_PARAMS,
    FETCHABLE_SCHEMES,
    host_of,
    normalize_url,
)
from trawl.data_types import CandidateURL

logger = logging.getLogger(__name__)

# Elements whose href/src lead to other pages worth crawling.
LINK_XPATH = "//a[@href] | //area[@href] | //link[@rel='next' or @rel='prev'][@href]"


class ContentFilter:
    """Cheap relevance check on fetched content.

    A page is relevant when it is at least ``min_size`` bytes, matches
    every ``must_match`` pattern and none of the ``must_not_match``
    patterns. Patterns are regular expressions searched in the decoded
    text.

    Example::

        content_filter = ContentFilter(
            must_match=[r'itemprop="price"'],
            must_not_match=[r"Page not found"],
            min_size=512,
        )
        content_filter.accepts(page_bytes)
    """

    def __init__(
        self,
        must_match: Iterable[str | re.Pattern[str]] = (),
        must_not_match: Iterable[str | re.Pattern[str]] = (),
        min_size: int = 0,
    ) -> None:
        self.must_match = [re.compile(p) for p in must_match]
        self.must_not_match = [re.compile(p) for p in must_not_match]
        self.min_size = min_size

    def accepts(self, content: bytes) -> bool:
        if len(content) < self.min_size:
            return False
        if not self.must_match and not self.must_not_match:
            return True
        text = content.decode("utf-8", errors="replace")
        if any(pattern.search(text) is None for pattern in self.must_match):
            return False
        return not any(
            pattern.search(text) is not None
            for pattern in self.must_not_match
        )


@dataclass
class DiscoveryStats:
    """Counters for links seen by the discovery stage.

    Attributes:
        pages: Pages processed.
        relevant_pages: Pages accepted by the content filter.
        candidates: Links returned as candidates.
        dropped_depth: Links beyond max_depth.
        dropped_host: Links outside the allowed hosts.
        dropped_scheme: Links with non-http(s) schemes (mailto:, javascript:, ...).
        dropped_duplicate: Repeated links on the same page.
        dropped_malformed: Links that could not be resolved against the
            page URL.
    """

    pages: int = 0
    relevant_pages: int = 0
    candidates: int = 0
    dropped_depth: int = 0
    dropped_host: int = 0
    dropped_scheme: int = 0
    dropped_duplicate: int = 0
    dropped_malformed: int = 0

    def add(self, other: DiscoveryStats) -> None:
        for name in self.__dataclass_fields__:
            setattr(self, name, getattr(self, name) + getattr(other, name))


@dataclass
class DiscoveryResult:
    """Outcome of running discovery on one page.

    Attributes:
        candidates: Links to enqueue, normalized, in document order.
        relevant: Content filter verdict; False means skip extraction.
        stats: Counters for this page only.
    """

    candidates: list[CandidateURL] = field(default_factory=list)
    relevant: bool = True
    stats: DiscoveryStats = field(default_factory=DiscoveryStats)


class DiscoveryStage:
    """Extract candidate links from fetched content.

    Args:
        max_depth: Links that would be enqueued deeper than this are
            dropped. None means unlimited.
        allowed_hosts: Hosts links may point to. None allows every host.
        content_filter: Relevance check. None accepts every page.
        tracking_params: Query parameters stripped during normalization.
    """

    def __init__(
        self,
        max_depth: int | None = None,
        allowed_hosts: Iterable[str] | None = None,
        content_filter: ContentFilter | None = None,
        tracking_params: frozenset[str] = DEFAULT_TRACKING_PARAMS,
    ) -> None:
        self.max_depth = max_depth
        self.allowed_hosts = (
            {h.lower() for h in allowed_hosts}
            if allowed_hosts is not None
            else None
        )
        self.content_filter = content_filter or ContentFilter()
        self.tracking_params = tracking_params
        self.stats = DiscoveryStats()

    def is_relevant(self, content: bytes) -> bool:
        return self.content_filter.accepts(content)

    def discover(
        self, content: bytes, base_url: str, depth: int = 0
    ) -> DiscoveryResult:
        """Find links on a page and judge its relevance.

        Args:
            content: Raw page bytes.
            base_url: URL the content was fetched from, for resolving
                relative links (a ``<base href>`` in the page wins).
            depth: Depth of the page itself; candidates get ``depth + 1``.

        Returns:
            DiscoveryResult with candidates, relevance and counters.
        """
        result = DiscoveryResult(relevant=self.is_relevant(content))
        page_stats = result.stats
        page_stats.pages = 1
        page_stats.relevant_pages = 1 if result.relevant else 0

        child_depth = depth + 1
        seen: set[str] = set()
        for href in self._extract_hrefs(content, base_url, page_stats):
            url = normalize_url(href, self.tracking_params)
            scheme = url.split(":", 1)[0].lower() if ":" in url else ""
            if scheme not in FETCHABLE_SCHEMES:
                page_stats.dropped_scheme += 1
                continue
            if url in seen:
                page_stats.dropped_duplicate += 1
                continue
            seen.add(url)
            if self.max_depth is not None and child_depth > self.max_depth:
                page_stats.dropped_depth += 1
                continue
            if (
                self.allowed_hosts is not None
                and host_of(url) not in self.allowed_hosts
            ):
                page_stats.dropped_host += 1
                continue
            result.candidates.append(
                CandidateURL(url=url, depth=child_depth, parent_url=base_url)
            )

        page_stats.candidates = len(result.candidates)
        self.stats.add(page_stats)
        logger.debug(
            f"Discovered {page_stats.candidates} links on {base_url} "
            f"(relevant={result.relevant}, dropped depth/host/scheme: "
            f"{page_stats.dropped_depth}/{page_stats.dropped_host}/"
            f"{page_stats.dropped_scheme})"
        )
        return result

    def _extract_hrefs(
        self, content: bytes, base_url: str, page_stats: DiscoveryStats
    ) -> list[str]:
        if not content.strip():
            return []
        try:
            document = html.document_fromstring(content)
        except (etree.LxmlError, ValueError) as e:
            logger.debug(f"Could not parse {base_url} for links: {e}")
            return []

        base = base_url
        base_hrefs = document.xpath("//base/@href")
        if base_hrefs:
            try:
                base = urljoin(base_url, base_hrefs[0].strip())
            except ValueError as e:
                logger.debug(
                    f"Ignoring malformed <base href> on {base_url}: {e}"
                )

        hrefs: list[str] = []
        for element in document.xpath(LINK_XPATH):
            href = (element.get("href") or "").strip()
            if not href or href.startswith("#"):
                continue
            try:
                hrefs.append(urljoin(base, href))
            except ValueError as e:
                # e.g. "http://[oops/x": urljoin rejects the bracketed host
                page_stats.dropped_malformed += 1
                logger.debug(
                    f"Dropping malformed link {href!r} on {base_url}: {e}"
                )
        return hrefs
