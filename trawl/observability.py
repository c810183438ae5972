"""Crawl counters, per-host success rates and pattern-drift detection.

The coordinator and the extraction pipeline report events to an
ObservabilitySink. Nothing in the crawl depends on the sink for
correctness; it exists for external monitoring and for surfacing pattern
drift: a sustained drop in the valid-extraction rate for a source, which
usually means the site changed its layout.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from trawl.data_types import CrawlCounters, ExtractionState, utcnow

logger = logging.getLogger(__name__)


@runtime_checkable
class ObservabilitySink(Protocol):
    """Receiver of crawl events."""

    def increment(
        self, name: str, host: str | None = None, amount: int = 1
    ) -> None:
        """Bump the counter ``name`` (a CrawlCounters field)."""
        ...

    def record_fetch(self, host: str, success: bool) -> None: ...

    def record_extraction(self, host: str, state: ExtractionState) -> None:
        """Report one extraction state transition for a source host."""
        ...


# =============================================================================
# Drift detection
# =============================================================================


@dataclass
class DriftAlert:
    """A detected drop in valid-extraction rate for a source.

    Attributes:
        source: Source the alert is about (the host).
        valid_rate: Valid rate over the window when the alert fired.
        threshold: Threshold the rate fell below.
        window_size: Number of samples in the window.
        detected_at: When the alert fired.
    """

    source: str
    valid_rate: float
    threshold: float
    window_size: int
    detected_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "source": self.source,
            "valid_rate": self.valid_rate,
            "threshold": self.threshold,
            "window_size": self.window_size,
            "detected_at": self.detected_at.isoformat(),
        }


class DriftMonitor:
    """Sliding-window valid rate per source.

    A source is "healthy" once it has at least ``min_samples`` terminal
    extractions in the window and a valid rate at or above ``threshold``.
    When a healthy source falls below the threshold, a DriftAlert is
    recorded and a warning logged. The alert fires once per drop; the
    source has to recover above the threshold before it can fire again.

    Args:
        window: Number of most recent terminal extractions considered.
        min_samples: Samples required before a rate is trusted.
        threshold: Valid rate below which drift is reported.
    """

    def __init__(
        self, window: int = 50, min_samples: int = 20, threshold: float = 0.5
    ) -> None:
        if window < 1:
            raise ValueError("window must be at least 1")
        if not 0 < min_samples <= window:
            raise ValueError("min_samples must be between 1 and window")
        self.window = window
        self.min_samples = min_samples
        self.threshold = threshold
        self.alerts: list[DriftAlert] = []
        self._samples: dict[str, deque[bool]] = {}
        self._healthy: dict[str, bool] = {}

    def record(self, source: str, valid: bool) -> DriftAlert | None:
        """Add one terminal extraction outcome for ``source``.

        Returns:
            The new alert, if this sample triggered one.
        """
        samples = self._samples.get(source)
        if samples is None:
            samples = deque(maxlen=self.window)
            self._samples[source] = samples
        samples.append(valid)

        if len(samples) < self.min_samples:
            return None

        rate = self.valid_rate(source)
        assert rate is not None
        healthy = self._healthy.get(source, False)

        if rate >= self.threshold:
            if not healthy and source in self._healthy:
                logger.info(
                    f"Extraction valid rate for {source} recovered to "
                    f"{rate:.0%}",
                    extra={"source": source, "valid_rate": rate},
                )
            self._healthy[source] = True
            return None

        if healthy:
            alert = DriftAlert(
                source=source,
                valid_rate=rate,
                threshold=self.threshold,
                window_size=len(samples),
            )
            self.alerts.append(alert)
            logger.warning(
                f"Pattern drift on {source}: valid extraction rate fell to "
                f"{rate:.0%} (threshold {self.threshold:.0%}) over the last "
                f"{len(samples)} pages",
                extra=alert.to_dict(),
            )
            self._healthy[source] = False
            return alert
        return None

    def valid_rate(self, source: str) -> float | None:
        samples = self._samples.get(source)
        if not samples:
            return None
        return sum(samples) / len(samples)

    def valid_rates(self) -> dict[str, float | None]:
        return {source: self.valid_rate(source) for source in sorted(self._samples)}


# =============================================================================
# Default sink
# =============================================================================


@dataclass
class HostCounts:
    """Fetch and extraction counts for one host."""

    fetch_success: int = 0
    fetch_failure: int = 0
    extraction_valid: int = 0
    extraction_retried: int = 0
    extraction_failed: int = 0

    @property
    def fetch_success_rate(self) -> float | None:
        total = self.fetch_success + self.fetch_failure
        return self.fetch_success / total if total else None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "fetch_success": self.fetch_success,
            "fetch_failure": self.fetch_failure,
            "fetch_success_rate": self.fetch_success_rate,
            "extraction_valid": self.extraction_valid,
            "extraction_retried": self.extraction_retried,
            "extraction_failed": self.extraction_failed,
        }


class CrawlStats:
    """In-memory ObservabilitySink used by default.

    Attributes:
        counters: Crawl-wide counters (persisted with checkpoints).
        hosts: Per-host counts.
        drift: Drift monitor fed with terminal extraction outcomes.
    """

    def __init__(
        self,
        counters: CrawlCounters | None = None,
        drift: DriftMonitor | None = None,
    ) -> None:
        self.counters = counters or CrawlCounters()
        self.hosts: dict[str, HostCounts] = {}
        self.drift = drift or DriftMonitor()
        self._lock = threading.Lock()

    def increment(
        self, name: str, host: str | None = None, amount: int = 1
    ) -> None:
        if name not in CrawlCounters.model_fields:
            raise ValueError(f"Unknown counter '{name}'")
        with self._lock:
            setattr(self.counters, name, getattr(self.counters, name) + amount)

    def record_fetch(self, host: str, success: bool) -> None:
        with self._lock:
            counts = self._host(host)
            if success:
                counts.fetch_success += 1
            else:
                counts.fetch_failure += 1

    def record_extraction(self, host: str, state: ExtractionState) -> None:
        with self._lock:
            counts = self._host(host)
            match state:
                case ExtractionState.VALID:
                    counts.extraction_valid += 1
                    self.counters.extraction_valid += 1
                    self.drift.record(host, True)
                case ExtractionState.RETRY_PENDING:
                    counts.extraction_retried += 1
                    self.counters.extraction_retried += 1
                case ExtractionState.PERMANENTLY_FAILED:
                    counts.extraction_failed += 1
                    self.counters.extraction_failed += 1
                    self.drift.record(host, False)
                case ExtractionState.FETCHED | ExtractionState.EXTRACTING:
                    pass

    def fetch_success_rates(self) -> dict[str, float | None]:
        with self._lock:
            return {
                host: counts.fetch_success_rate
                for host, counts in sorted(self.hosts.items())
            }

    @property
    def alerts(self) -> list[DriftAlert]:
        return list(self.drift.alerts)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        with self._lock:
            return {
                "counters": self.counters.model_dump(),
                "hosts": {
                    host: counts.to_dict()
                    for host, counts in sorted(self.hosts.items())
                },
                "alerts": [alert.to_dict() for alert in self.drift.alerts],
            }

    def _host(self, host: str) -> HostCounts:
        counts = self.hosts.get(host)
        if counts is None:
            counts = HostCounts()
            self.hosts[host] = counts
        return counts
