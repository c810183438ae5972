"""Shared fixtures for the crawl engine tests."""

import random

import pytest

from trawl.coordinator import CrawlConfig
from trawl.extraction import ExtractionPipeline
from trawl.observability import CrawlStats
from trawl.policy import PolicyConfig, RateProxyPolicy
from trawl.sinks import ListSink
from tests.utils import Product, product_strategy


@pytest.fixture
def stats() -> CrawlStats:
    return CrawlStats()


@pytest.fixture
def pipeline(stats: CrawlStats) -> ExtractionPipeline:
    """Selector pipeline for the Product schema."""
    return ExtractionPipeline(product_strategy(), Product, sink=stats)


@pytest.fixture
def list_sink() -> ListSink:
    return ListSink()


@pytest.fixture
def fast_policy() -> RateProxyPolicy:
    """Policy with millisecond cooldowns so blocked retries stay fast."""
    return RateProxyPolicy(
        config=PolicyConfig(base_cooldown=0.001, max_cooldown=0.01),
        rng=random.Random(1234),
    )


@pytest.fixture
def crawl_config() -> CrawlConfig:
    """Single-worker config with checkpoint cadence driven by count only."""
    return CrawlConfig(
        num_workers=1,
        max_depth=3,
        fetch_timeout=5.0,
        checkpoint_every_n=1,
        checkpoint_every_seconds=None,
        crawl_timeout=10.0,
    )
