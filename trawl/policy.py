"""Rate and proxy policy.

This module decides, for every request, which outbound identity (proxy) to
use and how long to wait before using it. It keeps per-host statistics,
split per identity, and reacts to server push-back:

- On rate limiting (429), forbidden (403) or an auth challenge (401/407),
  the (identity, host) pair enters a cooldown whose length doubles with
  each consecutive failure, up to ``max_cooldown``.
- On success, the consecutive-failure count resets, so the next cooldown
  starts again from ``base_cooldown``.

Identity selection is weighted random by historical success rate for the
host (unscored identities count as ``neutral_score``), never pure greedy, so
an identity that had a bad streak still gets traffic and can recover.

Workers reserve their time slot under the lock and sleep outside it, so
concurrent workers hitting the same host stagger by ``min_interval``
instead of bursting when a cooldown expires.
"""

from __future__ import annotations

import asyncio
import logging
import random
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from trawl.data_types import (
    DIRECT,
    FetchOutcome,
    HostStats,
    ProxyHandle,
)

logger = logging.getLogger(__name__)


@dataclass
class PolicyConfig:
    """Configuration for the rate and proxy policy.

    Attributes:
        base_cooldown: Cooldown after the first blocking failure, in seconds.
            Default: 1.0
        max_cooldown: Ceiling for the exponential cooldown. Default: 300.0
        min_interval: Minimum spacing between two requests from the same
            identity to the same host, in seconds. Default: 0.0
        neutral_score: Score given to identities with no history for a
            host. Default: 0.5
        min_weight: Floor for selection weights so an identity with a zero
            success rate is still picked occasionally. Default: 0.05
    """

    base_cooldown: float = 1.0
    max_cooldown: float = 300.0
    min_interval: float = 0.0
    neutral_score: float = 0.5
    min_weight: float = 0.05


class RateProxyPolicy:
    """Chooses identities per host and tracks their health.

    Example::

        policy = RateProxyPolicy(
            identities=[ProxyHandle("a", "http://proxy-a:8080"),
                        ProxyHandle("b", "http://proxy-b:8080")],
            config=PolicyConfig(min_interval=0.5),
        )
        identity = await policy.acquire("example.com")
        ...  # fetch
        policy.report_outcome(identity, "example.com", FetchOutcome.SUCCESS)
    """

    def __init__(
        self,
        identities: Iterable[ProxyHandle] | None = None,
        config: PolicyConfig | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the policy.

        Args:
            identities: Available outbound identities. Defaults to a single
                direct connection.
            config: Policy configuration.
            rng: Random source for weighted selection (seed it in tests).
            clock: Wall-clock function. Wall-clock time is used because
                cooldowns are persisted across restarts.
        """
        self.identities: list[ProxyHandle] = list(identities or [DIRECT])
        if not self.identities:
            raise ValueError("At least one identity is required")
        names = [identity.name for identity in self.identities]
        if len(set(names)) != len(names):
            raise ValueError(f"Identity names must be unique: {names}")
        self.config = config or PolicyConfig()
        self._rng = rng or random.Random()
        self._clock = clock
        self._lock = threading.Lock()
        self._host_stats: dict[str, HostStats] = {}

    # --- Cooldown ---

    def cooldown_duration(self, consecutive_failures: int) -> float:
        """Cooldown length for a given consecutive-failure count.

        ``base * 2^(n-1)`` capped at ``max_cooldown``; zero when there have
        been no failures.
        """
        if consecutive_failures <= 0:
            return 0.0
        # Cap the exponent; the ceiling is reached long before it matters.
        exponent = min(consecutive_failures - 1, 62)
        return min(
            self.config.max_cooldown,
            self.config.base_cooldown * (2**exponent),
        )

    # --- Selection ---

    def select_identity(self, host: str) -> ProxyHandle:
        """Choose an identity for the next request to ``host``.

        Identities in cooldown for this host are excluded. If every identity
        is cooling down, the one whose cooldown ends soonest is returned and
        the caller is expected to wait (see ``reserve``).
        """
        with self._lock:
            now = self._clock()
            host_stats = self._stats_for(host)
            available = [
                identity
                for identity in self.identities
                if host_stats.for_identity(identity.name).blocked_until <= now
            ]
            if not available:
                return min(
                    self.identities,
                    key=lambda i: host_stats.for_identity(i.name).blocked_until,
                )
            if len(available) == 1:
                return available[0]
            weights = [
                max(
                    self.config.min_weight,
                    self._score(host_stats, identity),
                )
                for identity in available
            ]
            return self._rng.choices(available, weights=weights, k=1)[0]

    def reserve(self, identity: ProxyHandle, host: str) -> float:
        """Reserve the next usable time slot for ``identity`` on ``host``.

        Returns:
            Seconds the caller must wait before sending the request.
        """
        with self._lock:
            now = self._clock()
            host_stats = self._stats_for(host)
            stats = host_stats.for_identity(identity.name)
            start = max(
                now,
                stats.blocked_until,
                stats.last_used + self.config.min_interval
                if stats.last_used
                else now,
            )
            stats.last_used = start
            host_stats.last_used = max(host_stats.last_used, start)
            return start - now

    async def acquire(self, host: str) -> ProxyHandle:
        """Select an identity, reserve its slot and wait for it."""
        identity = self.select_identity(host)
        wait_time = self.reserve(identity, host)
        if wait_time > 0:
            logger.debug(
                f"Waiting {wait_time:.2f}s before using identity "
                f"'{identity.name}' on {host}"
            )
            await asyncio.sleep(wait_time)
        return identity

    # --- Feedback ---

    def report_outcome(
        self, identity: ProxyHandle, host: str, outcome: FetchOutcome
    ) -> None:
        """Record the result of a fetch attempt.

        Args:
            identity: The identity that made the request.
            host: Target host.
            outcome: Classified result of the attempt.
        """
        with self._lock:
            now = self._clock()
            host_stats = self._stats_for(host)
            stats = host_stats.for_identity(identity.name)
            success = outcome == FetchOutcome.SUCCESS

            stats.record(success, now)
            host_stats.record(success, now)

            if outcome.is_blocking:
                duration = self.cooldown_duration(stats.consecutive_failures)
                stats.blocked_until = max(stats.blocked_until, now + duration)
                logger.warning(
                    f"Identity '{identity.name}' cooling down on {host} for "
                    f"{duration:.1f}s after {outcome.value} "
                    f"(consecutive failures: {stats.consecutive_failures})",
                    extra={
                        "identity": identity.name,
                        "host": host,
                        "outcome": outcome.value,
                        "cooldown": duration,
                        "consecutive_failures": stats.consecutive_failures,
                    },
                )
            host_stats.blocked_until = min(
                host_stats.for_identity(i.name).blocked_until
                for i in self.identities
            )

    # --- Inspection and persistence ---

    def host_stats(self, host: str) -> HostStats:
        """Copy of the statistics for ``host`` (created if missing)."""
        with self._lock:
            return self._stats_for(host).model_copy(deep=True)

    def success_rates(self) -> dict[str, float | None]:
        """Fetch success rate per host (None for hosts with no attempts)."""
        with self._lock:
            return {
                host: stats.success_rate
                for host, stats in sorted(self._host_stats.items())
            }

    def snapshot(self) -> dict[str, HostStats]:
        with self._lock:
            return {
                host: stats.model_copy(deep=True)
                for host, stats in sorted(self._host_stats.items())
            }

    def restore(self, host_stats: dict[str, HostStats]) -> None:
        """Replace statistics with checkpointed ones (before workers start)."""
        with self._lock:
            self._host_stats = {
                host: stats.model_copy(deep=True)
                for host, stats in host_stats.items()
            }

    # --- Internals (lock held) ---

    def _stats_for(self, host: str) -> HostStats:
        stats = self._host_stats.get(host)
        if stats is None:
            stats = HostStats()
            self._host_stats[host] = stats
        return stats

    def _score(self, host_stats: HostStats, identity: ProxyHandle) -> float:
        rate = host_stats.for_identity(identity.name).success_rate
        return self.config.neutral_score if rate is None else rate
