"""Tests for checkpoint storage and the checkpoint manager.

Key behaviors tested:
- Writes are atomic: temp files are never mistaken for snapshots
- Only the newest ``retain`` snapshots are kept
- snapshot -> restore -> snapshot is byte-identical for frontier/visited
- Corrupt or incompatible snapshots fall back to the next older one
- No usable snapshot means a cold start
- Storage errors put checkpointing in degraded mode
- The N-completions / T-seconds cadence
- Async snapshots write in a worker thread, in sequence order
"""

import asyncio
import json
import logging
import threading
from pathlib import Path

import pytest

from trawl.checkpoint import (
    CHECKPOINT_SCHEMA_VERSION,
    CheckpointManager,
    FileCheckpointStore,
    decode_snapshot,
    encode_snapshot,
)
from trawl.common.exceptions import (
    CheckpointCorruptionException,
    CheckpointStorageException,
    IncompatibleCheckpointException,
)
from trawl.data_types import CrawlCounters, FetchOutcome, ProxyHandle, URLState
from trawl.frontier import Frontier
from trawl.policy import RateProxyPolicy


def _populated_frontier() -> Frontier:
    frontier = Frontier()
    for i in range(5):
        frontier.enqueue(f"https://a.test/{i}", depth=i % 2, priority=i % 3)
    done = frontier.dequeue()
    assert done is not None
    frontier.mark_done(done.url)
    failed = frontier.dequeue()
    assert failed is not None
    frontier.mark_failed(failed.url, "HTTP 404")
    frontier.dequeue()  # left in flight
    return frontier


def _manager(
    directory: Path, frontier: Frontier | None = None, **kwargs
) -> CheckpointManager:
    policy = RateProxyPolicy(identities=[ProxyHandle("a")])
    policy.report_outcome(ProxyHandle("a"), "a.test", FetchOutcome.SUCCESS)
    return CheckpointManager(
        FileCheckpointStore(directory, **kwargs),
        frontier or _populated_frontier(),
        policy,
        CrawlCounters(done=1, failed=1),
    )


class SimulatedDiskFull(Exception):
    pass


class TestFileCheckpointStore:
    """Tests for FileCheckpointStore."""

    def test_write_read_and_list(self, tmp_path: Path) -> None:
        """Written snapshots shall be listed newest first and read back."""
        store = FileCheckpointStore(tmp_path)
        store.write(1, b"one")
        store.write(2, b"two")

        assert store.list_sequences() == [2, 1]
        assert store.read(1) == b"one"
        assert store.path_for(2).name == "checkpoint-00000002.json"

    def test_temp_files_ignored(self, tmp_path: Path) -> None:
        """Leftover temp files from a crashed write shall not be listed."""
        store = FileCheckpointStore(tmp_path)
        store.write(1, b"one")
        (tmp_path / ".checkpoint-abc.tmp").write_bytes(b'{"partial')

        assert store.list_sequences() == [1]

    def test_retain_prunes_old_snapshots(self, tmp_path: Path) -> None:
        """Only the newest ``retain`` snapshots shall be kept."""
        store = FileCheckpointStore(tmp_path, retain=2)
        for sequence in range(1, 5):
            store.write(sequence, b"x")
        assert store.list_sequences() == [4, 3]

    def test_compressed(self, tmp_path: Path) -> None:
        """Compressed snapshots shall round-trip through zstd."""
        store = FileCheckpointStore(tmp_path, compress=True)
        payload = b'{"k": "' + b"v" * 1000 + b'"}'
        path = store.write(1, payload)

        assert path.name.endswith(".json.zst")
        assert path.stat().st_size < len(payload)
        assert store.read(1) == payload

    def test_failed_write_leaves_previous_snapshot(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """A write that fails before the rename shall leave the old snapshot intact."""
        store = FileCheckpointStore(tmp_path)
        store.write(1, b"good")

        def broken_replace(src: str, dst: str) -> None:
            raise OSError("disk full")

        monkeypatch.setattr("trawl.checkpoint.os.replace", broken_replace)
        with pytest.raises(CheckpointStorageException):
            store.write(2, b"new")

        assert store.list_sequences() == [1]
        assert store.read(1) == b"good"
        assert [p.name for p in tmp_path.iterdir()] == [
            "checkpoint-00000001.json"
        ]

    def test_listing_error_is_storage_error(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """An unreadable directory shall raise CheckpointStorageException from list and prune."""
        store = FileCheckpointStore(tmp_path)
        store.write(1, b"good")

        def broken_iterdir(self: Path):
            raise PermissionError("listing denied")

        monkeypatch.setattr(Path, "iterdir", broken_iterdir)

        with pytest.raises(CheckpointStorageException):
            store.list_sequences()
        with pytest.raises(CheckpointStorageException):
            store.write(2, b"new")


class TestEncoding:
    """Tests for the snapshot envelope."""

    def test_checksum_mismatch_detected(self, tmp_path: Path) -> None:
        """A tampered payload shall fail the integrity check."""
        snapshot = _manager(tmp_path).build()
        envelope = json.loads(encode_snapshot(snapshot))
        envelope["payload"]["visited"].append("https://evil.test")

        with pytest.raises(CheckpointCorruptionException):
            decode_snapshot(json.dumps(envelope).encode(), snapshot.sequence)

    def test_incompatible_version_rejected(self, tmp_path: Path) -> None:
        """A snapshot with another schema version shall be rejected, not loaded."""
        snapshot = _manager(tmp_path).build()
        envelope = json.loads(encode_snapshot(snapshot))
        envelope["schema_version"] = CHECKPOINT_SCHEMA_VERSION + 1

        with pytest.raises(IncompatibleCheckpointException):
            decode_snapshot(json.dumps(envelope).encode(), snapshot.sequence)

    def test_truncated_file_rejected(self, tmp_path: Path) -> None:
        """A partially written envelope shall be rejected."""
        raw = encode_snapshot(_manager(tmp_path).build())
        with pytest.raises(CheckpointCorruptionException):
            decode_snapshot(raw[: len(raw) // 2], 1)

    def test_encoding_is_deterministic(self, tmp_path: Path) -> None:
        """Encoding the same snapshot twice shall give identical bytes."""
        snapshot = _manager(tmp_path).build()
        assert encode_snapshot(snapshot) == encode_snapshot(snapshot)


class TestCheckpointManager:
    """Tests for CheckpointManager."""

    def test_round_trip_byte_identical(self, tmp_path: Path) -> None:
        """snapshot -> restore -> snapshot shall give identical frontier and visited."""
        first = _manager(tmp_path)
        written = first.snapshot()
        assert written is not None

        second = _manager(tmp_path, frontier=Frontier())
        restored, found = second.restore()
        assert found and restored is not None
        again = second.snapshot()
        assert again is not None

        def content(sequence: int) -> tuple[str, str]:
            payload = json.loads(second.store.read(sequence))["payload"]
            return (
                json.dumps(payload["frontier"], sort_keys=True),
                json.dumps(payload["visited"], sort_keys=True),
            )

        assert again.sequence == written.sequence + 1
        assert content(written.sequence) == content(again.sequence)

    def test_restore_rehydrates_state(self, tmp_path: Path) -> None:
        """Restore shall rebuild frontier, host stats and counters."""
        _manager(tmp_path).snapshot()

        frontier = Frontier()
        policy = RateProxyPolicy(identities=[ProxyHandle("a")])
        counters = CrawlCounters()
        manager = CheckpointManager(
            FileCheckpointStore(tmp_path), frontier, policy, counters
        )
        snapshot, found = manager.restore()

        assert found and snapshot is not None
        assert frontier.done_count == 1
        assert frontier.failed_count == 1
        # The in-flight URL was saved as pending and is redone.
        assert frontier.pending_count == 3
        assert all(
            state == URLState.PENDING
            for state in (
                frontier.get(url).state  # type: ignore[union-attr]
                for url in snapshot.pending_urls
            )
        )
        assert policy.host_stats("a.test").success_count == 1
        assert counters.done == 1 and counters.failed == 1

    def test_corrupt_newest_falls_back(
        self, tmp_path: Path, caplog: pytest.LogCaptureFixture
    ) -> None:
        """A corrupt newest snapshot shall be rejected loudly and the older one used."""
        manager = _manager(tmp_path)
        older = manager.snapshot()
        newer = manager.snapshot()
        assert older is not None and newer is not None
        manager.store.path_for(newer.sequence).write_bytes(b"\x00garbage")

        restorer = _manager(tmp_path, frontier=Frontier())
        with caplog.at_level(logging.ERROR, logger="trawl.checkpoint"):
            snapshot, found = restorer.restore()

        assert found and snapshot is not None
        assert snapshot.sequence == older.sequence
        assert f"Rejecting checkpoint {newer.sequence}" in caplog.text
        # New snapshots never reuse the rejected sequence number.
        assert restorer.build().sequence == newer.sequence + 1

    def test_no_valid_snapshot_cold_starts(
        self, tmp_path: Path, caplog: pytest.LogCaptureFixture
    ) -> None:
        """With every snapshot unusable, restore shall report a cold start loudly."""
        manager = _manager(tmp_path)
        written = manager.snapshot()
        assert written is not None
        manager.store.path_for(written.sequence).write_text("{}")

        frontier = Frontier()
        restorer = _manager(tmp_path, frontier=frontier)
        with caplog.at_level(logging.ERROR, logger="trawl.checkpoint"):
            snapshot, found = restorer.restore()

        assert (snapshot, found) == (None, False)
        assert len(frontier) == 0
        assert "discarding saved progress" in caplog.text

    def test_no_snapshot_at_all(self, tmp_path: Path) -> None:
        """An empty directory shall mean a cold start."""
        assert _manager(tmp_path / "none", frontier=Frontier()).restore() == (
            None,
            False,
        )

    def test_storage_error_enters_degraded_mode(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """A storage error shall disable further snapshots without raising."""
        manager = _manager(tmp_path)
        calls = []

        def failing_write(sequence: int, payload: bytes) -> Path:
            calls.append(sequence)
            raise CheckpointStorageException("disk full")

        monkeypatch.setattr(manager.store, "write", failing_write)

        assert manager.snapshot() is None
        assert manager.degraded is True
        assert manager.snapshot() is None
        assert calls == [1]
        assert manager.note_completion() is False

    def test_other_errors_propagate(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Errors outside the storage layer shall not be swallowed."""
        manager = _manager(tmp_path)

        def failing_write(sequence: int, payload: bytes) -> Path:
            raise SimulatedDiskFull()

        monkeypatch.setattr(manager.store, "write", failing_write)
        with pytest.raises(SimulatedDiskFull):
            manager.snapshot()
        assert manager.degraded is False

    def test_cadence_by_count(self, tmp_path: Path) -> None:
        """A snapshot shall be due every ``every_n`` completions."""
        manager = CheckpointManager(
            FileCheckpointStore(tmp_path),
            Frontier(),
            every_n=3,
            every_seconds=None,
        )
        assert [manager.note_completion() for _ in range(3)] == [
            False,
            False,
            True,
        ]
        manager.snapshot()
        assert manager.note_completion() is False

    def test_cadence_by_time(self, tmp_path: Path) -> None:
        """A snapshot shall be due after ``every_seconds`` with progress made."""
        now = [0.0]
        manager = CheckpointManager(
            FileCheckpointStore(tmp_path),
            Frontier(),
            every_n=None,
            every_seconds=10.0,
            clock=lambda: now[0],
        )
        now[0] = 11.0
        assert manager.is_due() is False  # nothing completed yet
        assert manager.note_completion() is True

    def test_listing_error_enters_degraded_mode(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """A failure to list the checkpoint directory shall degrade, not raise."""
        manager = _manager(tmp_path)

        def broken_iterdir(self: Path):
            raise PermissionError("listing denied")

        monkeypatch.setattr(Path, "iterdir", broken_iterdir)

        assert manager.snapshot() is None
        assert manager.degraded is True

    @pytest.mark.asyncio
    async def test_async_snapshot_writes_off_the_event_loop(
        self, tmp_path: Path
    ) -> None:
        """snapshot_async shall hand the file write to a worker thread."""
        write_threads: list[int] = []

        class RecordingStore(FileCheckpointStore):
            def write(self, sequence: int, payload: bytes) -> Path:
                write_threads.append(threading.get_ident())
                return super().write(sequence, payload)

        manager = CheckpointManager(RecordingStore(tmp_path), _populated_frontier())
        first = await manager.snapshot_async()
        second = await manager.snapshot_async()

        assert first is not None and second is not None
        assert (first.sequence, second.sequence) == (1, 2)
        assert threading.get_ident() not in write_threads
        assert manager.store.list_sequences() == [2, 1]

    @pytest.mark.asyncio
    async def test_concurrent_async_snapshots_get_distinct_sequences(
        self, tmp_path: Path
    ) -> None:
        """Overlapping snapshot_async calls shall not reuse a sequence number."""
        manager = CheckpointManager(
            FileCheckpointStore(tmp_path, retain=5), _populated_frontier()
        )
        snapshots = await asyncio.gather(
            *(manager.snapshot_async() for _ in range(3))
        )
        assert sorted(s.sequence for s in snapshots if s) == [1, 2, 3]
        assert manager.store.list_sequences() == [3, 2, 1]

    @pytest.mark.asyncio
    async def test_async_storage_error_enters_degraded_mode(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """A storage error during an async snapshot shall degrade, not raise."""
        manager = _manager(tmp_path)

        def failing_write(sequence: int, payload: bytes) -> Path:
            raise CheckpointStorageException("disk full")

        monkeypatch.setattr(manager.store, "write", failing_write)

        assert await manager.snapshot_async() is None
        assert manager.degraded is True
