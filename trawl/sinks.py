"""Output sinks for extraction records.

The coordinator emits exactly one terminal ExtractionRecord per completed
URL (VALID, FAILED or SKIPPED). Sinks must not hold records in an
unflushed batch: once ``emit`` returns the record is considered
delivered, and the URL may be recorded as done in the next checkpoint.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import os
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from trawl.data_types import ExtractionRecord, RecordStatus

logger = logging.getLogger(__name__)


@runtime_checkable
class OutputSink(Protocol):
    """Receiver of terminal extraction records.

    ``emit`` may be a coroutine function; the coordinator awaits it if so.
    """

    def emit(self, record: ExtractionRecord) -> Any: ...

    def close(self) -> Any: ...


class CallbackSink:
    """Calls a function (sync or async) with every record."""

    def __init__(self, callback: Callable[[ExtractionRecord], Any]) -> None:
        self.callback = callback

    async def emit(self, record: ExtractionRecord) -> None:
        result = self.callback(record)
        if inspect.isawaitable(result):
            await result

    def close(self) -> None:
        pass


class ListSink:
    """Keeps records in memory.

    Attributes:
        records: Every emitted record, in emission order.
    """

    def __init__(self) -> None:
        self.records: list[ExtractionRecord] = []
        self.closed = False

    def emit(self, record: ExtractionRecord) -> None:
        self.records.append(record)

    def close(self) -> None:
        self.closed = True

    def by_status(self, status: RecordStatus) -> list[ExtractionRecord]:
        return [r for r in self.records if r.status == status]

    @property
    def urls(self) -> list[str]:
        return [r.source_url for r in self.records]


class JsonlFileSink:
    """Appends one JSON line per record to a file.

    Every line is flushed, and fsynced unless ``fsync=False``, before
    ``emit`` returns. ``emit`` does the file I/O in a worker thread so the
    event loop keeps serving other workers; ``write`` is the blocking
    equivalent for synchronous callers.

    Example::

        sink = JsonlFileSink("records.jsonl")
        ...
        sink.close()
    """

    def __init__(self, path: str | Path, fsync: bool = True) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.fsync = fsync
        self._lock = threading.Lock()
        self._file = self.path.open("a", encoding="utf-8")

    async def emit(self, record: ExtractionRecord) -> None:
        await asyncio.to_thread(self.write, record)

    def write(self, record: ExtractionRecord) -> None:
        """Append ``record`` and flush it to disk before returning.

        Raises:
            ValueError: If the sink is closed.
        """
        line = record.model_dump_json()
        with self._lock:
            if self._file.closed:
                raise ValueError(f"Sink for {self.path} is closed")
            self._file.write(line + "\n")
            self._file.flush()
            if self.fsync:
                os.fsync(self._file.fileno())

    def close(self) -> None:
        with self._lock:
            if not self._file.closed:
                self._file.close()

    @staticmethod
    def read(path: str | Path) -> list[ExtractionRecord]:
        """Load records written by a JsonlFileSink."""
        with Path(path).open(encoding="utf-8") as f:
            return [
                ExtractionRecord.model_validate_json(line)
                for line in f
                if line.strip()
            ]


class QueueSink:
    """Puts records on an asyncio.Queue for a downstream consumer.

    ``emit`` waits when the queue is full, which applies backpressure to the
    crawl workers.
    """

    def __init__(self, queue: asyncio.Queue[ExtractionRecord]) -> None:
        self.queue = queue

    async def emit(self, record: ExtractionRecord) -> None:
        await self.queue.put(record)

    def close(self) -> None:
        pass
