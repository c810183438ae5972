"""Deduplicated priority frontier.

The frontier owns the pending-work queue and the visited set. Both are
mutated under one lock so that the visited check and the queue insertion
form a single atomic step: two workers discovering the same link at the
same time cannot both enqueue it.

Queue ordering (a min-heap of ``URLRecord.sort_key()``):

1. Higher priority first.
2. Lower depth first on equal priority (breadth-first bias).
3. Insertion order (FIFO) on equal priority and depth.

Records moved back to pending by ``retry`` or ``release`` are pushed again
with their new key.
"""

from __future__ import annotations

import heapq
import logging
import threading
from collections.abc import Iterable

from trawl.common.urls import DEFAULT_TRACKING_PARAMS, normalize_url
from trawl.data_types import URLRecord, URLState

logger = logging.getLogger(__name__)


class Frontier:
    """Thread-safe priority queue of URLs with a visited set.

    None of the methods block: ``dequeue`` returns None when nothing is
    pending. Callers tell "temporarily empty" from "exhausted" with
    ``is_exhausted()``, which is only True when nothing is pending and
    nothing is in flight.

    Example::

        frontier = Frontier()
        frontier.enqueue("https://example.com/", depth=0)
        record = frontier.dequeue()
        ...
        frontier.mark_done(record.url)
    """

    def __init__(
        self, tracking_params: frozenset[str] = DEFAULT_TRACKING_PARAMS
    ) -> None:
        self._lock = threading.Lock()
        self._heap: list[tuple[tuple[int, int, int], str]] = []
        self._records: dict[str, URLRecord] = {}
        self._visited: set[str] = set()
        self._counter = 0
        self._in_flight = 0
        self._pending = 0
        self._tracking_params = tracking_params

    # --- Queue operations ---

    def enqueue(
        self,
        url: str,
        depth: int = 0,
        priority: int = 0,
        parent_url: str | None = None,
    ) -> bool:
        """Add a URL unless its normalized identity was already seen.

        Args:
            url: URL to add; normalized before the visited check.
            depth: Link distance from the seeds.
            priority: Higher values are dequeued first.
            parent_url: Page the URL was discovered on.

        Returns:
            True if the URL was added, False if it was already visited.
        """
        identity = normalize_url(url, self._tracking_params)
        with self._lock:
            if identity in self._visited:
                return False
            self._visited.add(identity)
            record = URLRecord(
                url=identity,
                depth=depth,
                priority=priority,
                sequence=self._counter,
                parent_url=parent_url,
            )
            self._counter += 1
            self._records[identity] = record
            self._push(record)
        return True

    def dequeue(self) -> URLRecord | None:
        """Pop the best pending record and mark it in flight.

        Returns:
            A copy of the record, or None if nothing is pending right now.
        """
        with self._lock:
            while self._heap:
                _key, identity = heapq.heappop(self._heap)
                record = self._records.get(identity)
                if record is None or record.state != URLState.PENDING:
                    continue
                record.state = URLState.IN_FLIGHT
                self._pending -= 1
                self._in_flight += 1
                return record.model_copy()
        return None

    def mark_done(self, url: str) -> None:
        """Transition an in-flight URL to DONE."""
        with self._lock:
            record = self._take_in_flight(url)
            record.state = URLState.DONE

    def mark_failed(self, url: str, reason: str) -> None:
        """Transition an in-flight URL to FAILED, recording the reason."""
        with self._lock:
            record = self._take_in_flight(url)
            record.state = URLState.FAILED
            record.failure_reason = reason

    def retry(self, url: str, priority_penalty: int = 1) -> URLRecord:
        """Return an in-flight URL to the queue after a failed fetch.

        The URL stays in the visited set; its priority drops by
        ``priority_penalty`` and its attempt count goes up by one.

        Returns:
            A copy of the re-queued record.
        """
        with self._lock:
            record = self._take_in_flight(url)
            record.state = URLState.PENDING
            record.priority -= priority_penalty
            record.attempts += 1
            self._push(record)
            return record.model_copy()

    def release(self, url: str) -> None:
        """Return an in-flight URL to the queue unchanged (cancelled work)."""
        with self._lock:
            record = self._take_in_flight(url)
            record.state = URLState.PENDING
            self._push(record)

    # --- Inspection ---

    def is_exhausted(self) -> bool:
        """True when nothing is pending and nothing is in flight."""
        with self._lock:
            return self._pending == 0 and self._in_flight == 0

    def has_pending(self) -> bool:
        with self._lock:
            return self._pending > 0

    @property
    def pending_count(self) -> int:
        return self._pending

    @property
    def in_flight_count(self) -> int:
        return self._in_flight

    @property
    def done_count(self) -> int:
        with self._lock:
            return sum(
                1 for r in self._records.values() if r.state == URLState.DONE
            )

    @property
    def failed_count(self) -> int:
        with self._lock:
            return sum(
                1
                for r in self._records.values()
                if r.state == URLState.FAILED
            )

    @property
    def visited(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._visited)

    def __contains__(self, url: str) -> bool:
        identity = normalize_url(url, self._tracking_params)
        with self._lock:
            return identity in self._visited

    def __len__(self) -> int:
        return self._pending

    def get(self, url: str) -> URLRecord | None:
        identity = normalize_url(url, self._tracking_params)
        with self._lock:
            record = self._records.get(identity)
            return record.model_copy() if record is not None else None

    # --- Checkpoint support ---

    def snapshot_state(self) -> tuple[list[URLRecord], list[str]]:
        """Copy frontier contents for a checkpoint.

        In-flight records are written as pending so a restore redoes them.
        Pending records come first in dequeue order, then finished records
        in insertion order.

        Returns:
            (records, sorted visited identities)
        """
        with self._lock:
            unfinished: list[URLRecord] = []
            finished: list[URLRecord] = []
            for record in self._records.values():
                copy = record.model_copy()
                if copy.state in (URLState.PENDING, URLState.IN_FLIGHT):
                    copy.state = URLState.PENDING
                    unfinished.append(copy)
                else:
                    finished.append(copy)
            unfinished.sort(key=URLRecord.sort_key)
            finished.sort(key=lambda r: r.sequence)
            return unfinished + finished, sorted(self._visited)

    def restore_state(
        self, records: Iterable[URLRecord], visited: Iterable[str]
    ) -> None:
        """Replace frontier contents with checkpointed state.

        Must only be called before workers start.
        """
        with self._lock:
            self._heap = []
            self._records = {}
            self._visited = set(visited)
            self._pending = 0
            self._in_flight = 0
            max_sequence = -1
            for record in records:
                record = record.model_copy()
                if record.state == URLState.IN_FLIGHT:
                    record.state = URLState.PENDING
                if record.url in self._records:
                    logger.warning(
                        f"Duplicate frontier record for {record.url} in "
                        f"checkpoint; keeping the first"
                    )
                    continue
                self._records[record.url] = record
                self._visited.add(record.url)
                max_sequence = max(max_sequence, record.sequence)
                if record.state == URLState.PENDING:
                    self._push(record)
            self._counter = max_sequence + 1

    # --- Internals (lock held) ---

    def _push(self, record: URLRecord) -> None:
        heapq.heappush(self._heap, (record.sort_key(), record.url))
        self._pending += 1

    def _take_in_flight(self, url: str) -> URLRecord:
        record = self._records.get(url)
        if record is None:
            raise KeyError(f"Unknown URL {url}")
        if record.state != URLState.IN_FLIGHT:
            raise ValueError(
                f"URL {url} is {record.state.value}, expected in_flight"
            )
        self._in_flight -= 1
        return record
