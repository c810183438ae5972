"""Data types shared by the crawl engine.

This module defines the records that flow between the frontier, the
rate/proxy policy, the discovery stage, the extraction pipeline and the
checkpoint manager. Types that are persisted in checkpoints or emitted to
output sinks are Pydantic models so they serialize deterministically;
short-lived values passed between components are plain dataclasses.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Frontier records
# =============================================================================


class URLState(str, Enum):
    """Lifecycle of a URL inside the frontier.

    Values:
        PENDING: Waiting in the queue.
        IN_FLIGHT: Handed to a worker, not yet finished.
        DONE: Fetched and processed; a record was emitted.
        FAILED: Permanently failed; a failure record was emitted.
    """

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    DONE = "done"
    FAILED = "failed"


class URLRecord(BaseModel):
    """A URL known to the frontier.

    Attributes:
        url: Normalized URL, the identity key used for deduplication.
        depth: Link distance from the seed that led here.
        priority: Higher values are dequeued first.
        discovered_at: When the URL first entered the frontier.
        state: Current lifecycle state.
        attempts: Failed fetch attempts so far (retries scheduled).
        sequence: Insertion order, used as the FIFO tie-break.
        parent_url: URL of the page the link was discovered on.
        failure_reason: Why the URL failed, when state is FAILED.
    """

    url: str
    depth: int = Field(default=0, ge=0)
    priority: int = 0
    discovered_at: datetime = Field(default_factory=utcnow)
    state: URLState = URLState.PENDING
    attempts: int = Field(default=0, ge=0)
    sequence: int = 0
    parent_url: str | None = None
    failure_reason: str | None = None

    def sort_key(self) -> tuple[int, int, int]:
        """Heap key: highest priority, then shallowest depth, then FIFO."""
        return (-self.priority, self.depth, self.sequence)


@dataclass(frozen=True)
class CandidateURL:
    """A link found by the discovery stage, already normalized.

    Attributes:
        url: Normalized absolute URL.
        depth: Depth the URL would be enqueued at.
        parent_url: The page the link was found on.
        priority: Suggested queue priority.
    """

    url: str
    depth: int
    parent_url: str | None = None
    priority: int = 0


# =============================================================================
# Fetching
# =============================================================================


@dataclass(frozen=True)
class ProxyHandle:
    """An outbound identity.

    Attributes:
        name: Stable name used as the key for per-host statistics.
        proxy_url: Proxy URL for the HTTP client, or None for a direct
            connection.
    """

    name: str
    proxy_url: str | None = None


DIRECT = ProxyHandle(name="direct")


class FetchOutcome(str, Enum):
    """Classification of a single fetch attempt.

    Values:
        SUCCESS: 2xx/3xx response.
        RATE_LIMITED: 429 Too Many Requests.
        FORBIDDEN: 403 Forbidden.
        AUTH_CHALLENGE: 401 or 407.
        SERVER_ERROR: 5xx or 408.
        TRANSIENT_NETWORK: Timeout, reset, refused connection.
        PERMANENT_CLIENT_ERROR: Any other 4xx, malformed URL, bad scheme.
    """

    SUCCESS = "success"
    RATE_LIMITED = "rate_limited"
    FORBIDDEN = "forbidden"
    AUTH_CHALLENGE = "auth_challenge"
    SERVER_ERROR = "server_error"
    TRANSIENT_NETWORK = "transient_network"
    PERMANENT_CLIENT_ERROR = "permanent_client_error"

    @property
    def is_blocking(self) -> bool:
        """True if the outcome puts the (identity, host) pair in cooldown."""
        return self in (
            FetchOutcome.RATE_LIMITED,
            FetchOutcome.FORBIDDEN,
            FetchOutcome.AUTH_CHALLENGE,
        )

    @classmethod
    def from_status(cls, status_code: int) -> FetchOutcome:
        if status_code == 429:
            return cls.RATE_LIMITED
        if status_code == 403:
            return cls.FORBIDDEN
        if status_code in (401, 407):
            return cls.AUTH_CHALLENGE
        if status_code == 408 or status_code >= 500:
            return cls.SERVER_ERROR
        if status_code >= 400:
            return cls.PERMANENT_CLIENT_ERROR
        return cls.SUCCESS


@dataclass
class FetchResult:
    """Raw result of one fetch.

    Modeled after httpx.Response so fetch clients backed by httpx or by a
    rendering engine can produce the same shape.

    Attributes:
        url: Final URL after any redirects.
        status_code: HTTP status code.
        content: Raw response bytes (possibly truncated).
        headers: Response headers.
        truncated: True if the client stopped reading early (cheap fetch).
    """

    url: str
    status_code: int
    content: bytes
    headers: dict[str, str] = field(default_factory=dict)
    truncated: bool = False

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")

    @property
    def outcome(self) -> FetchOutcome:
        return FetchOutcome.from_status(self.status_code)


# =============================================================================
# Host statistics
# =============================================================================


class IdentityStats(BaseModel):
    """Fetch history of one identity against one host."""

    success_count: int = 0
    failure_count: int = 0
    consecutive_failures: int = 0
    blocked_until: float = 0.0
    last_used: float = 0.0

    @property
    def success_rate(self) -> float | None:
        total = self.success_count + self.failure_count
        if total == 0:
            return None
        return self.success_count / total

    def record(self, success: bool, now: float) -> None:
        self.last_used = max(self.last_used, now)
        if success:
            self.success_count += 1
            self.consecutive_failures = 0
        else:
            self.failure_count += 1
            self.consecutive_failures += 1


class HostStats(IdentityStats):
    """Fetch history of one host, aggregated and per identity.

    Created lazily on first request to a host and never deleted during a
    session. Only the rate/proxy policy mutates it.

    Attributes:
        identities: Per-identity statistics keyed by identity name.
    """

    identities: dict[str, IdentityStats] = Field(default_factory=dict)

    def for_identity(self, name: str) -> IdentityStats:
        stats = self.identities.get(name)
        if stats is None:
            stats = IdentityStats()
            self.identities[name] = stats
        return stats


# =============================================================================
# Extraction records
# =============================================================================


class ExtractionState(str, Enum):
    """States of the per-record extraction state machine."""

    FETCHED = "fetched"
    EXTRACTING = "extracting"
    RETRY_PENDING = "retry_pending"
    VALID = "valid"
    PERMANENTLY_FAILED = "permanently_failed"


class RecordStatus(str, Enum):
    """Terminal status reported to the output sink.

    Values:
        VALID: Fields passed schema validation.
        FAILED: Fetch or extraction failed permanently; see failure_reason.
        SKIPPED: The content filter judged the page irrelevant.
    """

    VALID = "valid"
    FAILED = "failed"
    SKIPPED = "skipped"


class ValidationIssue(BaseModel):
    """One problem found while validating extracted fields.

    Attributes:
        field: Name of the offending field, or "__root__".
        message: Human-readable description.
        kind: Machine-readable category (e.g. "missing", "float_parsing",
            "structure").
    """

    field: str
    message: str
    kind: str = "value_error"

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"


def content_digest(content: bytes) -> str:
    """Reference to raw content: its sha256 hex digest."""
    return hashlib.sha256(content).hexdigest()


class ExtractionRecord(BaseModel):
    """Structured result for one URL.

    Attributes:
        source_url: The URL the content came from.
        content_ref: sha256 of the raw content the fields were extracted from.
        fields: Extracted field values (validated and coerced when VALID).
        state: Current extraction state.
        status: Terminal status, None while extraction is in progress.
        error_history: One list of issues per failed extraction attempt.
        retry_count: Number of corrective extraction retries performed.
        fetch_retries: Fetch retries that preceded the successful fetch.
        failure_reason: Reason for a FAILED status.
        depth: Crawl depth of the source URL.
        emitted_at: When the record reached a terminal status.
    """

    source_url: str
    content_ref: str | None = None
    fields: dict[str, Any] = Field(default_factory=dict)
    state: ExtractionState = ExtractionState.FETCHED
    status: RecordStatus | None = None
    error_history: list[list[ValidationIssue]] = Field(default_factory=list)
    retry_count: int = 0
    fetch_retries: int = 0
    failure_reason: str | None = None
    depth: int = 0
    emitted_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in (
            ExtractionState.VALID,
            ExtractionState.PERMANENTLY_FAILED,
        ) or self.status is not None

    @property
    def last_errors(self) -> list[ValidationIssue]:
        return self.error_history[-1] if self.error_history else []

    @classmethod
    def failed(
        cls,
        source_url: str,
        reason: str,
        depth: int = 0,
        fetch_retries: int = 0,
    ) -> ExtractionRecord:
        """Terminal record for a URL whose fetch failed permanently."""
        return cls(
            source_url=source_url,
            state=ExtractionState.PERMANENTLY_FAILED,
            status=RecordStatus.FAILED,
            failure_reason=reason,
            depth=depth,
            fetch_retries=fetch_retries,
            emitted_at=utcnow(),
        )

    @classmethod
    def skipped(
        cls,
        source_url: str,
        content: bytes,
        depth: int = 0,
        fetch_retries: int = 0,
    ) -> ExtractionRecord:
        """Terminal record for a page the content filter rejected."""
        return cls(
            source_url=source_url,
            content_ref=content_digest(content),
            status=RecordStatus.SKIPPED,
            failure_reason="rejected by content filter",
            depth=depth,
            fetch_retries=fetch_retries,
            emitted_at=utcnow(),
        )


# =============================================================================
# Progress and checkpoints
# =============================================================================


class CrawlCounters(BaseModel):
    """Crawl-wide counters, persisted with checkpoints.

    Attributes:
        enqueued: URLs accepted into the frontier.
        dequeued: URLs handed to workers (including retries).
        done: URLs completed with a VALID or SKIPPED record.
        failed: URLs that ended with a FAILED record.
        retried: Fetch retries scheduled.
        skipped: Pages rejected by the content filter.
        extraction_valid: Extractions that ended VALID.
        extraction_retried: Corrective extraction retries.
        extraction_failed: Extractions that exhausted the retry budget.
    """

    enqueued: int = 0
    dequeued: int = 0
    done: int = 0
    failed: int = 0
    retried: int = 0
    skipped: int = 0
    extraction_valid: int = 0
    extraction_retried: int = 0
    extraction_failed: int = 0


class CheckpointSnapshot(BaseModel):
    """Durable image of crawl state.

    A snapshot is internally consistent: every DONE URL has an emitted
    record, every FAILED URL a recorded failure, and no pending URL appears
    twice. In-flight URLs are stored as pending so they are redone after a
    restore.

    Attributes:
        schema_version: Encoding version; incompatible versions are rejected.
        sequence: Monotonic snapshot number.
        created_at: When the snapshot was taken.
        frontier: Every URL record known to the frontier, in dequeue order
            for pending records followed by finished ones.
        visited: Sorted normalized URL identities.
        host_stats: Rate/proxy policy statistics keyed by host.
        progress: Crawl counters.
    """

    schema_version: int
    sequence: int
    created_at: datetime = Field(default_factory=utcnow)
    frontier: list[URLRecord] = Field(default_factory=list)
    visited: list[str] = Field(default_factory=list)
    host_stats: dict[str, HostStats] = Field(default_factory=dict)
    progress: CrawlCounters = Field(default_factory=CrawlCounters)

    @property
    def done_urls(self) -> set[str]:
        return {r.url for r in self.frontier if r.state == URLState.DONE}

    @property
    def pending_urls(self) -> list[str]:
        return [r.url for r in self.frontier if r.state == URLState.PENDING]
