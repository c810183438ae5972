"""Tests for output sinks.

Key behaviors tested:
- JSONL sink writes one flushed line per record, readable back
- Callback sink supports sync and async callbacks
- Queue sink hands records to an asyncio consumer
"""

import asyncio
import os
import threading
from decimal import Decimal
from pathlib import Path

import pytest

from trawl.data_types import ExtractionRecord, RecordStatus
from trawl.sinks import CallbackSink, JsonlFileSink, ListSink, QueueSink
from tests.utils import collect_results_async


def _valid_record(url: str = "https://a.test/1") -> ExtractionRecord:
    return ExtractionRecord(
        source_url=url,
        fields={"name": "Kettle", "price": Decimal("12.50")},
        status=RecordStatus.VALID,
    )


class TestJsonlFileSink:
    """Tests for JsonlFileSink."""

    @pytest.mark.asyncio
    async def test_each_record_is_on_disk_after_emit(
        self, tmp_path: Path
    ) -> None:
        """A record shall be readable from the file as soon as emit returns."""
        path = tmp_path / "out" / "records.jsonl"
        sink = JsonlFileSink(path)
        await sink.emit(_valid_record("https://a.test/1"))

        assert len(path.read_text().splitlines()) == 1

        await sink.emit(
            ExtractionRecord.failed("https://a.test/2", "HTTP 404")
        )
        sink.close()

        records = JsonlFileSink.read(path)
        assert [r.source_url for r in records] == [
            "https://a.test/1",
            "https://a.test/2",
        ]
        assert records[0].fields["price"] == "12.50"
        assert records[1].status == RecordStatus.FAILED
        assert records[1].failure_reason == "HTTP 404"

    def test_appends_across_instances(self, tmp_path: Path) -> None:
        """Reopening the sink shall append, not truncate."""
        path = tmp_path / "records.jsonl"
        for i in range(2):
            sink = JsonlFileSink(path, fsync=False)
            sink.write(_valid_record(f"https://a.test/{i}"))
            sink.close()
        assert len(JsonlFileSink.read(path)) == 2

    @pytest.mark.asyncio
    async def test_emit_writes_off_the_event_loop(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """emit shall do its fsync in a worker thread, not on the event loop."""
        fsync_threads: list[int] = []
        real_fsync = os.fsync

        def recording_fsync(fd: int) -> None:
            fsync_threads.append(threading.get_ident())
            real_fsync(fd)

        monkeypatch.setattr("trawl.sinks.os.fsync", recording_fsync)
        sink = JsonlFileSink(tmp_path / "records.jsonl")
        await sink.emit(_valid_record())
        sink.close()

        assert fsync_threads
        assert threading.get_ident() not in fsync_threads

    @pytest.mark.asyncio
    async def test_emit_after_close_raises(self, tmp_path: Path) -> None:
        """Emitting to a closed sink shall raise rather than drop the record."""
        sink = JsonlFileSink(tmp_path / "records.jsonl")
        sink.close()
        with pytest.raises(ValueError):
            await sink.emit(_valid_record())


class TestOtherSinks:
    """Tests for the in-memory, callback and queue sinks."""

    def test_list_sink(self) -> None:
        """ListSink shall keep records in order and filter by status."""
        sink = ListSink()
        sink.emit(_valid_record("https://a.test/1"))
        sink.emit(ExtractionRecord.failed("https://a.test/2", "boom"))
        assert sink.urls == ["https://a.test/1", "https://a.test/2"]
        assert len(sink.by_status(RecordStatus.FAILED)) == 1

    @pytest.mark.asyncio
    async def test_callback_sink_sync_and_async(self) -> None:
        """CallbackSink shall call both plain and async callbacks."""
        plain: list[ExtractionRecord] = []
        await CallbackSink(plain.append).emit(_valid_record())

        callback, results = collect_results_async()
        await CallbackSink(callback).emit(_valid_record())

        assert len(plain) == 1
        assert len(results) == 1

    @pytest.mark.asyncio
    async def test_queue_sink(self) -> None:
        """QueueSink shall deliver records to the queue consumer."""
        queue: asyncio.Queue[ExtractionRecord] = asyncio.Queue(maxsize=1)
        sink = QueueSink(queue)
        await sink.emit(_valid_record())
        record = await queue.get()
        assert record.source_url == "https://a.test/1"
