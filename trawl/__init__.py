"""
Resumable crawl-and-extract engine.

This package provides a concurrent crawler that discovers URLs, fetches them
under per-host rate and proxy constraints, validates extracted records
against a schema with bounded self-correcting retries, and checkpoints its
state so a crashed run resumes without redoing completed work.

The moving parts:

- Frontier: deduplicated, priority-ordered queue of pending URLs.
- RateProxyPolicy: per (identity, host) cooldown and request spacing.
- DiscoveryStage: link discovery and the content filter.
- ExtractionPipeline: schema validation with a retry budget.
- CheckpointManager: atomic, versioned snapshots of crawl state.
- CrawlCoordinator: the worker pool that drives all of the above.
"""

from __future__ import annotations

import logging


def configure_logging(verbose: bool = False) -> None:
    """Configure root logging for applications embedding the crawler.

    The library itself never configures logging on import; call this from
    an entry point.

    Args:
        verbose: If True, log at DEBUG level, otherwise INFO.
    """
    log_level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger("trawl").setLevel(log_level)
