"""Test utilities for the crawl engine tests.

This module provides a scripted in-memory fetch client, HTML page builders
and a small product schema used across the tests.
"""

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from trawl.common.data_models import CleanText, ExtractedData, Price
from trawl.common.urls import normalize_url
from trawl.data_types import FetchResult, ProxyHandle
from trawl.extraction import FieldSelector, SelectorExtractionStrategy

logger = logging.getLogger(__name__)


class Product(ExtractedData):
    """Schema used by most pipeline and coordinator tests."""

    name: CleanText
    price: Price


PRODUCT_FIELDS = {
    "name": FieldSelector("h1.name"),
    "price": FieldSelector(
        "//span[@itemprop='price']/text()", kind="xpath", strings=True
    ),
}


def product_strategy() -> SelectorExtractionStrategy:
    return SelectorExtractionStrategy(PRODUCT_FIELDS)


def html_page(
    links: Iterable[str] = (),
    name: str | None = "Widget",
    price: str | None = "$10.00",
    extra: str = "",
) -> bytes:
    """Build a small product page linking to ``links``."""
    parts = ["<html><head><title>Test</title></head><body>"]
    if name is not None:
        parts.append(f'<h1 class="name">{name}</h1>')
    if price is not None:
        parts.append(f'<span itemprop="price">{price}</span>')
    parts.append("<ul>")
    for link in links:
        parts.append(f'<li><a href="{link}">{link}</a></li>')
    parts.append("</ul>")
    parts.append(extra)
    parts.append("</body></html>")
    return "".join(parts).encode("utf-8")


@dataclass
class Scripted:
    """A scripted fetch outcome: a status/body pair or an exception."""

    status_code: int = 200
    content: bytes = b""
    error: Exception | None = None
    delay: float = 0.0


@dataclass
class FakeFetchClient:
    """In-memory FetchClient driven by a link graph and scripted outcomes.

    Attributes:
        pages: Normalized URL -> page bytes, served with status 200.
        scripts: Normalized URL -> outcomes consumed one per fetch before
            falling back to ``pages``.
        calls: (url, identity name) for every fetch, in order.
        delay: Seconds every fetch takes.
    """

    pages: dict[str, bytes] = field(default_factory=dict)
    scripts: dict[str, deque[Scripted]] = field(default_factory=dict)
    calls: list[tuple[str, str]] = field(default_factory=list)
    delay: float = 0.0
    closed: bool = False

    def __post_init__(self) -> None:
        self.pages = {normalize_url(u): c for u, c in self.pages.items()}
        self.scripts = {
            normalize_url(u): deque(s) for u, s in self.scripts.items()
        }

    def script(self, url: str, *outcomes: Scripted) -> None:
        self.scripts.setdefault(normalize_url(url), deque()).extend(outcomes)

    def fetched(self, url: str) -> int:
        """Number of fetches made for ``url``."""
        target = normalize_url(url)
        return sum(1 for called, _ in self.calls if called == target)

    @property
    def urls(self) -> list[str]:
        return [url for url, _ in self.calls]

    async def fetch(
        self, url: str, proxy: ProxyHandle, timeout: float | None
    ) -> FetchResult:
        key = normalize_url(url)
        self.calls.append((key, proxy.name))
        queue = self.scripts.get(key)
        if queue:
            outcome = queue.popleft()
            if outcome.delay:
                await asyncio.sleep(outcome.delay)
            if outcome.error is not None:
                raise outcome.error
            return FetchResult(
                url=url,
                status_code=outcome.status_code,
                content=outcome.content,
            )
        if self.delay:
            await asyncio.sleep(self.delay)
        if key in self.pages:
            return FetchResult(url=url, status_code=200, content=self.pages[key])
        return FetchResult(url=url, status_code=404, content=b"Not Found")

    async def close(self) -> None:
        self.closed = True


def link_graph(
    graph: dict[str, list[str]], **page_kwargs: Any
) -> FakeFetchClient:
    """Fetch client serving one product page per node of ``graph``."""
    return FakeFetchClient(
        pages={
            url: html_page(links, **page_kwargs) for url, links in graph.items()
        }
    )


def collect_results_async() -> tuple[
    Callable[[Any], Awaitable[None]], list[Any]
]:
    """Create an async callback that collects results in a list.

    Returns:
        A tuple of (async_callback_function, results_list).

    Example:
        callback, results = collect_results_async()
        coordinator = CrawlCoordinator(..., sink=CallbackSink(callback))
        await coordinator.run(seeds)
        assert len(results) > 0
    """
    results: list[Any] = []

    async def callback(data: Any) -> None:
        results.append(data)

    return callback, results
