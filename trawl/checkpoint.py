"""Checkpoint storage and the checkpoint manager.

A checkpoint is a durable, versioned image of crawl state: the frontier
records, the visited set, the rate/proxy host statistics and the crawl
counters. It lets a crawl that crashed resume, redoing at most the work
done since the last successful snapshot.

Write protocol (FileCheckpointStore):

1. Encode the snapshot into a self-checking envelope::

       {"checksum": sha256(canonical payload), "payload": {...},
        "schema_version": 1, "sequence": N}

2. Write it to a temporary file in the checkpoint directory, flush and
   fsync.
3. ``os.replace`` the temporary file onto ``checkpoint-<N>.json``. The
   rename is atomic, so a reader sees the old snapshot or the new one and
   never a partial file. Temporary files are never listed as snapshots.
4. Prune all but the newest ``retain`` snapshots.

Restore walks snapshots newest first. A snapshot that fails to parse, has
a bad checksum or an unsupported schema version is rejected loudly and
the next older one is tried. If none is usable the crawl cold-starts from
its seeds, with a warning that progress was discarded.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import re
import tempfile
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

import zstandard as zstd
from pydantic import ValidationError

from trawl.common.exceptions import (
    CheckpointCorruptionException,
    CheckpointException,
    CheckpointStorageException,
    IncompatibleCheckpointException,
)
from trawl.data_types import CheckpointSnapshot, CrawlCounters, utcnow
from trawl.frontier import Frontier
from trawl.policy import RateProxyPolicy

logger = logging.getLogger(__name__)

CHECKPOINT_SCHEMA_VERSION = 1

_CHECKPOINT_NAME = re.compile(r"^checkpoint-(\d+)\.json(\.zst)?$")


# =============================================================================
# Storage
# =============================================================================


class FileCheckpointStore:
    """Directory of atomically written checkpoint files.

    Args:
        directory: Where checkpoints live. Created if missing.
        retain: Number of newest snapshots kept; older ones are deleted
            after each successful write. Keeping more than one is what
            makes fallback on corruption possible.
        compress: Write zstd-compressed ``.json.zst`` files.
        compression_level: zstd level when compressing.
    """

    def __init__(
        self,
        directory: str | Path,
        retain: int = 3,
        compress: bool = False,
        compression_level: int = 3,
    ) -> None:
        if retain < 1:
            raise ValueError("retain must be at least 1")
        self.directory = Path(directory)
        self.retain = retain
        self.compress = compress
        self.compression_level = compression_level

    def path_for(self, sequence: int) -> Path:
        suffix = ".json.zst" if self.compress else ".json"
        return self.directory / f"checkpoint-{sequence:08d}{suffix}"

    def write(self, sequence: int, payload: bytes) -> Path:
        """Atomically store ``payload`` as snapshot ``sequence``.

        Raises:
            CheckpointStorageException: If the file cannot be written.
        """
        if self.compress:
            payload = zstd.ZstdCompressor(
                level=self.compression_level
            ).compress(payload)
        final_path = self.path_for(sequence)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            fd, temp_name = tempfile.mkstemp(
                dir=self.directory, prefix=".checkpoint-", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(payload)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(temp_name, final_path)
            except BaseException:
                Path(temp_name).unlink(missing_ok=True)
                raise
            self._fsync_directory()
            self._prune()
        except OSError as e:
            raise CheckpointStorageException(
                f"Could not write checkpoint {sequence} to {final_path}: {e}"
            ) from e
        return final_path

    def list_sequences(self) -> list[int]:
        """Sequence numbers of stored snapshots, newest first.

        Raises:
            CheckpointStorageException: If the directory cannot be listed.
        """
        if not self.directory.is_dir():
            return []
        sequences = set()
        try:
            for path in self.directory.iterdir():
                match = _CHECKPOINT_NAME.match(path.name)
                if match:
                    sequences.add(int(match.group(1)))
        except OSError as e:
            raise CheckpointStorageException(
                f"Could not list checkpoints in {self.directory}: {e}"
            ) from e
        return sorted(sequences, reverse=True)

    def read(self, sequence: int) -> bytes:
        """Return the raw (decompressed) bytes of snapshot ``sequence``.

        Raises:
            CheckpointStorageException: If the snapshot cannot be read.
            CheckpointCorruptionException: If decompression fails.
        """
        path = self._find(sequence)
        if path is None:
            raise CheckpointStorageException(f"Checkpoint {sequence} not found")
        try:
            data = path.read_bytes()
        except OSError as e:
            raise CheckpointStorageException(
                f"Could not read checkpoint {path}: {e}"
            ) from e
        if path.suffix == ".zst":
            try:
                return zstd.ZstdDecompressor().decompressobj().decompress(data)
            except zstd.ZstdError as e:
                raise CheckpointCorruptionException(
                    sequence, f"zstd decompression failed: {e}"
                ) from e
        return data

    def delete(self, sequence: int) -> None:
        path = self._find(sequence)
        if path is not None:
            path.unlink(missing_ok=True)

    def _find(self, sequence: int) -> Path | None:
        for suffix in (".json", ".json.zst"):
            path = self.directory / f"checkpoint-{sequence:08d}{suffix}"
            if path.exists():
                return path
        return None

    def _prune(self) -> None:
        for sequence in self.list_sequences()[self.retain :]:
            try:
                self.delete(sequence)
            except OSError as e:
                logger.warning(f"Could not prune checkpoint {sequence}: {e}")

    def _fsync_directory(self) -> None:
        if not hasattr(os, "O_DIRECTORY"):
            return
        fd = os.open(self.directory, os.O_RDONLY | os.O_DIRECTORY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)


# =============================================================================
# Encoding
# =============================================================================


def _canonical(value: Any) -> bytes:
    return json.dumps(
        value, sort_keys=True, separators=(",", ":"), ensure_ascii=False
    ).encode("utf-8")


def encode_snapshot(snapshot: CheckpointSnapshot) -> bytes:
    """Serialize a snapshot into its checksummed envelope.

    Encoding is deterministic: the same snapshot always yields the same
    bytes.
    """
    payload = snapshot.model_dump(mode="json")
    return _canonical(
        {
            "schema_version": snapshot.schema_version,
            "sequence": snapshot.sequence,
            "checksum": hashlib.sha256(_canonical(payload)).hexdigest(),
            "payload": payload,
        }
    )


def decode_snapshot(raw: bytes, sequence: int) -> CheckpointSnapshot:
    """Parse and verify an envelope produced by ``encode_snapshot``.

    Args:
        raw: Envelope bytes.
        sequence: Sequence the envelope was stored under, for error reports
            and the consistency check.

    Raises:
        IncompatibleCheckpointException: Unsupported schema version.
        CheckpointCorruptionException: Anything else wrong with the data.
    """
    try:
        envelope = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise CheckpointCorruptionException(sequence, f"invalid JSON: {e}") from e
    if not isinstance(envelope, dict):
        raise CheckpointCorruptionException(sequence, "envelope is not an object")

    missing = {"schema_version", "sequence", "checksum", "payload"} - set(envelope)
    if missing:
        raise CheckpointCorruptionException(
            sequence, f"envelope is missing {sorted(missing)}"
        )
    if envelope["schema_version"] != CHECKPOINT_SCHEMA_VERSION:
        raise IncompatibleCheckpointException(
            sequence, envelope["schema_version"], CHECKPOINT_SCHEMA_VERSION
        )
    if envelope["sequence"] != sequence:
        raise CheckpointCorruptionException(
            sequence,
            f"envelope claims sequence {envelope['sequence']!r}",
        )

    payload = envelope["payload"]
    checksum = hashlib.sha256(_canonical(payload)).hexdigest()
    if checksum != envelope["checksum"]:
        raise CheckpointCorruptionException(sequence, "checksum mismatch")

    try:
        snapshot = CheckpointSnapshot.model_validate(payload)
    except ValidationError as e:
        raise CheckpointCorruptionException(
            sequence, f"payload does not match the snapshot schema: {e}"
        ) from e
    if snapshot.schema_version != CHECKPOINT_SCHEMA_VERSION:
        raise IncompatibleCheckpointException(
            sequence, snapshot.schema_version, CHECKPOINT_SCHEMA_VERSION
        )
    pending = snapshot.pending_urls
    if len(pending) != len(set(pending)):
        raise CheckpointCorruptionException(
            sequence, "a pending URL appears more than once"
        )
    return snapshot


# =============================================================================
# Manager
# =============================================================================


class CheckpointManager:
    """Takes snapshots of crawl state and restores the newest valid one.

    Snapshots are due every ``every_n`` completed URLs or every
    ``every_seconds`` seconds, whichever comes first; the coordinator also
    takes one on shutdown.

    A storage failure while writing puts the manager in degraded mode: no
    further snapshots are attempted, and the crawl carries on without them.

    Args:
        store: Where snapshots are written.
        frontier: Frontier to snapshot and rehydrate.
        policy: Rate/proxy policy whose host statistics are persisted.
        counters: Crawl counters, restored in place.
        every_n: Completed URLs between snapshots. None disables the count
            trigger.
        every_seconds: Seconds between snapshots. None disables the time
            trigger.
        clock: Monotonic clock for the time trigger.
    """

    def __init__(
        self,
        store: FileCheckpointStore,
        frontier: Frontier,
        policy: RateProxyPolicy | None = None,
        counters: CrawlCounters | None = None,
        every_n: int | None = 100,
        every_seconds: float | None = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.frontier = frontier
        self.policy = policy
        self.counters = counters if counters is not None else CrawlCounters()
        self.every_n = every_n
        self.every_seconds = every_seconds
        self.degraded = False
        self.last_snapshot: CheckpointSnapshot | None = None
        self._write_lock = asyncio.Lock()
        self._clock = clock
        self._sequence: int | None = None
        self._completed_since = 0
        self._last_time = clock()

    # --- Snapshot ---

    def build(self) -> CheckpointSnapshot:
        """Capture current state without writing it."""
        records, visited = self.frontier.snapshot_state()
        return CheckpointSnapshot(
            schema_version=CHECKPOINT_SCHEMA_VERSION,
            sequence=self._next_sequence(),
            created_at=utcnow(),
            frontier=records,
            visited=visited,
            host_stats=self.policy.snapshot() if self.policy else {},
            progress=self.counters.model_copy(),
        )

    def snapshot(self) -> CheckpointSnapshot | None:
        """Build and durably write a snapshot.

        Returns:
            The written snapshot, or None in degraded mode or when the
            write failed.
        """
        snapshot = self._capture()
        if snapshot is None or not self._write(snapshot):
            return None
        return self._commit(snapshot, self._completed_since)

    async def snapshot_async(self) -> CheckpointSnapshot | None:
        """Like ``snapshot``, with encoding and file I/O in a worker thread.

        State is captured on the calling thread, so the snapshot is
        consistent with the frontier at the moment of the call. Concurrent
        calls are serialized so sequence numbers stay in write order.
        """
        async with self._write_lock:
            completed = self._completed_since
            snapshot = self._capture()
            if snapshot is None:
                return None
            if not await asyncio.to_thread(self._write, snapshot):
                return None
            return self._commit(snapshot, completed)

    def _capture(self) -> CheckpointSnapshot | None:
        if self.degraded:
            logger.debug("Checkpointing is degraded; skipping snapshot")
            return None
        try:
            return self.build()
        except CheckpointStorageException as e:
            self._degrade(e)
            return None

    def _write(self, snapshot: CheckpointSnapshot) -> bool:
        try:
            self.store.write(snapshot.sequence, encode_snapshot(snapshot))
        except CheckpointStorageException as e:
            self._degrade(e)
            return False
        return True

    def _degrade(self, error: CheckpointStorageException) -> None:
        self.degraded = True
        logger.error(
            f"Checkpoint write failed, no further snapshots will be "
            f"taken this run: {error}",
            extra={"checkpoint_dir": str(self.store.directory)},
        )

    def _commit(
        self, snapshot: CheckpointSnapshot, completed: int
    ) -> CheckpointSnapshot:
        self._sequence = snapshot.sequence
        # Completions noted while the write was in progress still count.
        self._completed_since = max(0, self._completed_since - completed)
        self._last_time = self._clock()
        self.last_snapshot = snapshot
        logger.info(
            f"Wrote checkpoint {snapshot.sequence} "
            f"({len(snapshot.pending_urls)} pending, "
            f"{len(snapshot.visited)} visited)",
            extra={
                "checkpoint_sequence": snapshot.sequence,
                "pending": len(snapshot.pending_urls),
                "visited": len(snapshot.visited),
            },
        )
        return snapshot

    def note_completion(self) -> bool:
        """Count one completed URL; True if a snapshot is now due."""
        self._completed_since += 1
        return self.is_due()

    def is_due(self) -> bool:
        if self.degraded:
            return False
        if self.every_n is not None and self._completed_since >= self.every_n:
            return True
        return (
            self.every_seconds is not None
            and self._completed_since > 0
            and self._clock() - self._last_time >= self.every_seconds
        )

    # --- Restore ---

    def restore(self) -> tuple[CheckpointSnapshot | None, bool]:
        """Load the newest valid snapshot and rehydrate crawl state.

        Must be called before workers start.

        Returns:
            (snapshot, True) if a snapshot was restored, (None, False) for
            a cold start.
        """
        sequences = self.store.list_sequences()
        self._sequence = max(sequences, default=0)
        rejected: list[int] = []

        for sequence in sequences:
            try:
                snapshot = decode_snapshot(self.store.read(sequence), sequence)
            except CheckpointException as e:
                rejected.append(sequence)
                logger.error(
                    f"Rejecting checkpoint {sequence}: {e}",
                    extra={
                        "checkpoint_sequence": sequence,
                        "reason": str(e),
                    },
                )
                continue

            self._apply(snapshot)
            if rejected:
                logger.warning(
                    f"Resumed from older checkpoint {sequence} after "
                    f"rejecting {rejected}; work since then will be redone"
                )
            logger.info(
                f"Restored checkpoint {sequence}: "
                f"{len(snapshot.pending_urls)} pending, "
                f"{len(snapshot.done_urls)} done",
                extra={"checkpoint_sequence": sequence},
            )
            self.last_snapshot = snapshot
            return snapshot, True

        if rejected:
            logger.error(
                f"No usable checkpoint among {rejected}; discarding saved "
                f"progress and starting from the seeds",
                extra={"rejected": rejected},
            )
        else:
            logger.info("No checkpoint found; starting from the seeds")
        return None, False

    def _apply(self, snapshot: CheckpointSnapshot) -> None:
        self.frontier.restore_state(snapshot.frontier, snapshot.visited)
        if self.policy is not None:
            self.policy.restore(snapshot.host_stats)
        for name in CrawlCounters.model_fields:
            setattr(self.counters, name, getattr(snapshot.progress, name))
        self._completed_since = 0
        self._last_time = self._clock()

    def _next_sequence(self) -> int:
        if self._sequence is None:
            self._sequence = max(self.store.list_sequences(), default=0)
        return self._sequence + 1
