"""Crawl coordinator: a bounded pool of async workers over the frontier.

Each worker loops:

1. Dequeue the best pending URL. If nothing is pending, wait until new
   work arrives or the crawl is exhausted (nothing pending AND nothing in
   flight; a momentarily empty queue is not the end while another worker
   may still discover links).
2. Acquire an identity from the rate/proxy policy, fetch, and report the
   outcome back to the policy.
3. On success, run discovery (enqueue new links), then extraction when the
   content filter accepts the page, and emit one terminal record.
4. On failure, re-enqueue with a lower priority while under the retry
   ceiling, else mark the URL failed and emit a FAILED record.

Stopping (stop event, crawl timeout, SIGINT/SIGTERM) cancels the workers;
in-flight fetches abort and their URLs go back to pending. Only after every
worker has finished is the final checkpoint taken, so it reflects a
consistent stopping point.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import signal
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from typing_extensions import assert_never

from trawl.checkpoint import CheckpointManager, FileCheckpointStore
from trawl.common.exceptions import (
    BlockedResponseException,
    HTTPStatusException,
    PermanentRequestException,
    TransientException,
    TransientNetworkException,
)
from trawl.common.fetch_client import FetchClient, HttpxFetchClient
from trawl.common.urls import DEFAULT_TRACKING_PARAMS, ensure_fetchable, host_of
from trawl.data_types import (
    CrawlCounters,
    ExtractionRecord,
    FetchOutcome,
    FetchResult,
    RecordStatus,
    URLRecord,
    URLState,
)
from trawl.discovery import DiscoveryStage
from trawl.extraction import ExtractionPipeline
from trawl.frontier import Frontier
from trawl.observability import CrawlStats, DriftAlert
from trawl.policy import RateProxyPolicy
from trawl.sinks import OutputSink

logger = logging.getLogger(__name__)


@dataclass
class CrawlConfig:
    """Configuration for a crawl.

    Attributes:
        num_workers: Concurrent workers. Default: 4
        max_depth: Links deeper than this are not followed. None means
            unlimited. Default: 3
        allowed_hosts: Hosts links may lead to. None allows every host.
        fetch_timeout: Per-request timeout in seconds, passed to the fetch
            client. Default: 30.0
        max_fetch_retries: Fetch retries per URL before it is marked
            failed. Default: 3
        retry_priority_penalty: Priority decrease per retry. Default: 1
        checkpoint_every_n: Completed URLs between checkpoints. Default: 100
        checkpoint_every_seconds: Seconds between checkpoints. Default: 60.0
        crawl_timeout: Stop the crawl after this many seconds. None means
            run until the frontier is exhausted.
        seed_priority: Priority given to seed URLs. Default: 0
        tracking_params: Query parameters stripped during normalization.
    """

    num_workers: int = 4
    max_depth: int | None = 3
    allowed_hosts: list[str] | None = None
    fetch_timeout: float | None = 30.0
    max_fetch_retries: int = 3
    retry_priority_penalty: int = 1
    checkpoint_every_n: int | None = 100
    checkpoint_every_seconds: float | None = 60.0
    crawl_timeout: float | None = None
    seed_priority: int = 0
    tracking_params: frozenset[str] = DEFAULT_TRACKING_PARAMS

    def __post_init__(self) -> None:
        if self.num_workers < 1:
            raise ValueError("num_workers must be at least 1")
        if self.max_fetch_retries < 0:
            raise ValueError("max_fetch_retries must be >= 0")


@dataclass
class CrawlSummary:
    """What a finished (or stopped) crawl did.

    Attributes:
        stop_reason: "exhausted", "stopped", "timeout" or "cancelled".
        resumed: Whether the crawl resumed from a checkpoint.
        counters: Final crawl counters.
        visited: Number of distinct URL identities seen.
        pending: URLs left pending (non-zero after a stop or timeout).
        host_success_rates: Fetch success rate per host.
        drift_alerts: Pattern-drift alerts raised during the crawl.
        checkpoint_degraded: Whether checkpointing was disabled by a
            storage error.
    """

    stop_reason: str
    resumed: bool
    counters: CrawlCounters
    visited: int
    pending: int
    host_success_rates: dict[str, float | None] = field(default_factory=dict)
    drift_alerts: list[DriftAlert] = field(default_factory=list)
    checkpoint_degraded: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "stop_reason": self.stop_reason,
            "resumed": self.resumed,
            "counters": self.counters.model_dump(),
            "visited": self.visited,
            "pending": self.pending,
            "host_success_rates": self.host_success_rates,
            "drift_alerts": [alert.to_dict() for alert in self.drift_alerts],
            "checkpoint_degraded": self.checkpoint_degraded,
        }


class CrawlCoordinator:
    """Runs a crawl with a fixed pool of async workers.

    Example::

        coordinator = CrawlCoordinator(
            CrawlConfig(num_workers=8, allowed_hosts=["shop.test"]),
            fetch_client=HttpxFetchClient(max_bytes=64 * 1024),
            extraction_client=HttpxFetchClient(),
            pipeline=ExtractionPipeline(strategy, Product),
            sink=JsonlFileSink("products.jsonl"),
            checkpoint=FileCheckpointStore("checkpoints/"),
        )
        summary = await coordinator.run(["https://shop.test/"])
    """

    def __init__(
        self,
        config: CrawlConfig,
        fetch_client: FetchClient | None,
        pipeline: ExtractionPipeline,
        sink: OutputSink,
        policy: RateProxyPolicy | None = None,
        discovery: DiscoveryStage | None = None,
        checkpoint: FileCheckpointStore | None = None,
        extraction_client: FetchClient | None = None,
        stats: CrawlStats | None = None,
        stop_event: asyncio.Event | None = None,
        frontier: Frontier | None = None,
    ) -> None:
        """Initialize the coordinator.

        Args:
            config: Crawl configuration.
            fetch_client: Client for the discovery fetch. If None, an
                HttpxFetchClient is created and closed after the run.
            pipeline: Extraction pipeline for relevant pages.
            sink: Receives one terminal record per completed URL.
            policy: Rate/proxy policy. Defaults to a direct connection.
            discovery: Discovery stage. Defaults to one built from config.
            checkpoint: Checkpoint store. None disables checkpointing.
            extraction_client: Optional client for the second, full fetch
                of pages that pass the content filter. None reuses the
                discovery fetch.
            stats: Observability sink. Defaults to a fresh CrawlStats.
            stop_event: Event that stops the crawl when set.
            frontier: Frontier to crawl. Defaults to an empty one.
        """
        self.config = config
        self._owns_fetch_client = fetch_client is None
        self.fetch_client: FetchClient = fetch_client or HttpxFetchClient()
        self.extraction_client = extraction_client
        self.pipeline = pipeline
        self.sink = sink
        self.policy = policy or RateProxyPolicy()
        self.discovery = discovery or DiscoveryStage(
            max_depth=config.max_depth,
            allowed_hosts=config.allowed_hosts,
            tracking_params=config.tracking_params,
        )
        self.stats = stats or CrawlStats()
        if self.pipeline.sink is None:
            self.pipeline.sink = self.stats
        self.frontier = frontier or Frontier(config.tracking_params)
        self.checkpoint: CheckpointManager | None = None
        if checkpoint is not None:
            self.checkpoint = CheckpointManager(
                checkpoint,
                self.frontier,
                self.policy,
                self.stats.counters,
                every_n=config.checkpoint_every_n,
                every_seconds=config.checkpoint_every_seconds,
            )
        self.stop_event = stop_event or asyncio.Event()
        self._condition: asyncio.Condition | None = None
        self._stopping = False
        self._signals_installed: list[signal.Signals] = []

    # --- Control ---

    def stop(self) -> None:
        """Request a graceful stop."""
        self.stop_event.set()

    def install_signal_handlers(self) -> None:
        """Map SIGINT and SIGTERM to ``stop()`` on the running loop.

        Only works on Unix-like systems; elsewhere this is a no-op.
        """
        loop = asyncio.get_running_loop()

        def handle_signal(signum: signal.Signals) -> None:
            logger.info(
                f"Received {signum.name}, initiating graceful shutdown..."
            )
            self.stop()

        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, handle_signal, signum)
            except NotImplementedError:
                logger.debug(f"Cannot install a handler for {signum.name}")
                continue
            self._signals_installed.append(signum)

    def remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for signum in self._signals_installed:
            loop.remove_signal_handler(signum)
        self._signals_installed.clear()

    # --- Run ---

    async def run(
        self, seeds: Iterable[str] = (), setup_signal_handlers: bool = False
    ) -> CrawlSummary:
        """Crawl from ``seeds`` (or a checkpoint) until done or stopped.

        Args:
            seeds: Seed URLs. After a restore they are enqueued too; seeds
                already visited are no-ops.
            setup_signal_handlers: Install SIGINT/SIGTERM handlers for the
                duration of the run.

        Returns:
            Summary of the crawl.

        Raises:
            Exception: Anything a worker raised that is not part of the
                crawl error taxonomy. No final checkpoint is taken then,
                so the last periodic one stays the resume point.
        """
        self._condition = asyncio.Condition()
        self._stopping = False
        if setup_signal_handlers:
            self.install_signal_handlers()

        resumed = False
        if self.checkpoint is not None:
            _snapshot, resumed = self.checkpoint.restore()
        for seed in seeds:
            if self.frontier.enqueue(
                seed, depth=0, priority=self.config.seed_priority
            ):
                self.stats.increment("enqueued")

        logger.info(
            f"Starting crawl with {self.config.num_workers} workers, "
            f"{self.frontier.pending_count} pending"
            + (" (resumed from checkpoint)" if resumed else ""),
        )

        tasks = [
            asyncio.create_task(self._worker(i))
            for i in range(self.config.num_workers)
        ]
        if (
            self.checkpoint is not None
            and self.config.checkpoint_every_seconds is not None
        ):
            tasks.append(asyncio.create_task(self._checkpoint_ticker()))

        stop_reason = "cancelled"
        take_final_snapshot = True
        try:
            stop_reason = await self._supervise(tasks)
        except asyncio.CancelledError:
            raise
        except BaseException:
            take_final_snapshot = False
            raise
        finally:
            await self._shutdown(tasks)
            if take_final_snapshot and self.checkpoint is not None:
                await self.checkpoint.snapshot_async()
            if self._owns_fetch_client:
                await self.fetch_client.close()
            if setup_signal_handlers:
                self.remove_signal_handlers()

        summary = CrawlSummary(
            stop_reason=stop_reason,
            resumed=resumed,
            counters=self.stats.counters.model_copy(),
            visited=len(self.frontier.visited),
            pending=self.frontier.pending_count,
            host_success_rates=self.policy.success_rates(),
            drift_alerts=self.stats.alerts,
            checkpoint_degraded=bool(
                self.checkpoint and self.checkpoint.degraded
            ),
        )
        logger.info(
            f"Crawl finished ({stop_reason}): {summary.counters.done} done, "
            f"{summary.counters.failed} failed, {summary.pending} pending",
            extra={"summary": summary.to_dict()},
        )
        return summary

    async def _supervise(self, tasks: list[asyncio.Task[None]]) -> str:
        """Wait for exhaustion, a stop request, the timeout or a crash."""
        loop = asyncio.get_running_loop()
        exhausted = asyncio.create_task(self._wait_exhausted())
        stopped = asyncio.create_task(self.stop_event.wait())
        waiting: set[asyncio.Task[Any]] = {exhausted, stopped, *tasks}
        deadline = (
            loop.time() + self.config.crawl_timeout
            if self.config.crawl_timeout is not None
            else None
        )
        try:
            while True:
                timeout = (
                    max(0.0, deadline - loop.time())
                    if deadline is not None
                    else None
                )
                done, waiting = await asyncio.wait(
                    waiting,
                    timeout=timeout,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if not done:
                    logger.warning(
                        f"Crawl timeout of {self.config.crawl_timeout}s "
                        f"reached, stopping"
                    )
                    return "timeout"
                for task in done:
                    if task in tasks and not task.cancelled():
                        error = task.exception()
                        if error is not None:
                            raise error
                if stopped in done:
                    logger.info("Stop requested, cancelling workers")
                    return "stopped"
                if exhausted in done:
                    return "exhausted"
        finally:
            exhausted.cancel()
            stopped.cancel()

    async def _shutdown(self, tasks: list[asyncio.Task[None]]) -> None:
        self._stopping = True
        await self._notify()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _wait_exhausted(self) -> None:
        assert self._condition is not None
        async with self._condition:
            await self._condition.wait_for(self.frontier.is_exhausted)

    async def _notify(self) -> None:
        assert self._condition is not None
        async with self._condition:
            self._condition.notify_all()

    async def _checkpoint_ticker(self) -> None:
        assert self.checkpoint is not None
        interval = self.config.checkpoint_every_seconds
        assert interval is not None
        while True:
            await asyncio.sleep(interval)
            if self.checkpoint.is_due():
                await self.checkpoint.snapshot_async()

    # --- Workers ---

    async def _worker(self, worker_id: int) -> None:
        """Worker coroutine that processes URLs from the frontier.

        Args:
            worker_id: Identifier for this worker (for debugging).
        """
        assert self._condition is not None
        while not self._stopping:
            record = self.frontier.dequeue()
            if record is None:
                async with self._condition:
                    await self._condition.wait_for(
                        lambda: self._stopping
                        or self.frontier.has_pending()
                        or self.frontier.is_exhausted()
                    )
                if self.frontier.is_exhausted():
                    await self._notify()
                    return
                continue

            self.stats.increment("dequeued")
            logger.debug(
                f"Worker {worker_id} processing {record.url} "
                f"(depth={record.depth}, priority={record.priority}, "
                f"attempts={record.attempts})"
            )
            try:
                await self._process(record)
            except asyncio.CancelledError:
                current = self.frontier.get(record.url)
                if current is not None and current.state == URLState.IN_FLIGHT:
                    self.frontier.release(record.url)
                raise
            await self._notify()

    async def _process(self, record: URLRecord) -> None:
        url = record.url
        host = host_of(url)
        try:
            ensure_fetchable(url)
            result = await self._fetch(self.fetch_client, url, host)
        except PermanentRequestException as e:
            await self._fail(record, e.message)
            return
        except (TransientException, BlockedResponseException) as e:
            await self._retry_or_fail(record, str(e))
            return

        discovered = self.discovery.discover(
            result.content, result.url or url, record.depth
        )
        added = 0
        for candidate in discovered.candidates:
            if self.frontier.enqueue(
                candidate.url,
                depth=candidate.depth,
                priority=candidate.priority,
                parent_url=url,
            ):
                added += 1
        if added:
            self.stats.increment("enqueued", host, added)
            await self._notify()

        if not discovered.relevant:
            self.stats.increment("skipped", host)
            await self._complete(
                record,
                ExtractionRecord.skipped(
                    url, result.content, record.depth, record.attempts
                ),
            )
            return

        content = result.content
        if self.extraction_client is not None:
            try:
                full = await self._fetch(self.extraction_client, url, host)
            except PermanentRequestException as e:
                await self._fail(record, e.message)
                return
            except (TransientException, BlockedResponseException) as e:
                await self._retry_or_fail(record, str(e))
                return
            content = full.content

        extracted = await self.pipeline.run(
            url, content, depth=record.depth, fetch_retries=record.attempts
        )
        await self._complete(record, extracted)

    async def _fetch(
        self, client: FetchClient, url: str, host: str
    ) -> FetchResult:
        """Fetch through the policy and classify the result.

        Raises:
            BlockedResponseException: 429, 403, 401 or 407.
            HTTPStatusException: 5xx or 408.
            PermanentRequestException: Any other 4xx, or a bad URL.
            TransientException: Network failures from the client.
        """
        identity = await self.policy.acquire(host)
        try:
            result = await client.fetch(
                url, identity, self.config.fetch_timeout
            )
        except TransientException:
            self.policy.report_outcome(
                identity, host, FetchOutcome.TRANSIENT_NETWORK
            )
            self.stats.record_fetch(host, False)
            raise
        except PermanentRequestException:
            self.policy.report_outcome(
                identity, host, FetchOutcome.PERMANENT_CLIENT_ERROR
            )
            self.stats.record_fetch(host, False)
            raise

        outcome = result.outcome
        self.policy.report_outcome(identity, host, outcome)
        self.stats.record_fetch(host, outcome == FetchOutcome.SUCCESS)

        match outcome:
            case FetchOutcome.SUCCESS:
                return result
            case (
                FetchOutcome.RATE_LIMITED
                | FetchOutcome.FORBIDDEN
                | FetchOutcome.AUTH_CHALLENGE
            ):
                raise BlockedResponseException(
                    result.status_code, url, identity.name
                )
            case FetchOutcome.SERVER_ERROR:
                raise HTTPStatusException(result.status_code, url)
            case FetchOutcome.PERMANENT_CLIENT_ERROR:
                raise PermanentRequestException(
                    url,
                    f"HTTP {result.status_code}",
                    status_code=result.status_code,
                )
            case FetchOutcome.TRANSIENT_NETWORK:
                raise TransientNetworkException(url, "transient failure")
            case _:
                assert_never(outcome)

    # --- Completion ---

    async def _retry_or_fail(self, record: URLRecord, reason: str) -> None:
        if record.attempts >= self.config.max_fetch_retries:
            await self._fail(
                record,
                f"{reason} (gave up after {record.attempts + 1} attempts)",
            )
            return

        retried = self.frontier.retry(
            record.url, self.config.retry_priority_penalty
        )
        self.stats.increment("retried", host_of(record.url))
        logger.info(
            f"Retrying {record.url} ({retried.attempts}/"
            f"{self.config.max_fetch_retries}): {reason}",
            extra={
                "url": record.url,
                "attempt": retried.attempts,
                "priority": retried.priority,
                "reason": reason,
            },
        )
        await self._notify()

    async def _fail(self, record: URLRecord, reason: str) -> None:
        logger.warning(
            f"Giving up on {record.url}: {reason}",
            extra={"url": record.url, "reason": reason},
        )
        await self._complete(
            record,
            ExtractionRecord.failed(
                record.url, reason, record.depth, record.attempts
            ),
        )

    async def _complete(
        self, record: URLRecord, extracted: ExtractionRecord
    ) -> None:
        """Emit the terminal record, then finish the URL in the frontier.

        The record is emitted before the URL is marked, so a checkpoint
        never lists a URL as finished whose record was not delivered.
        """
        result = self.sink.emit(extracted)
        if inspect.isawaitable(result):
            await result

        host = host_of(record.url)
        if extracted.status == RecordStatus.FAILED:
            self.frontier.mark_failed(
                record.url, extracted.failure_reason or "failed"
            )
            self.stats.increment("failed", host)
        else:
            self.frontier.mark_done(record.url)
            self.stats.increment("done", host)

        if self.checkpoint is not None and self.checkpoint.note_completion():
            await self.checkpoint.snapshot_async()
