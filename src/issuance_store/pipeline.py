from __future__ import annotations

import asyncio
import logging
import time
from contextlib import aclosing
from dataclasses import dataclass
from datetime import datetime, timezone
from itertools import islice
from typing import AsyncIterator, Iterable, Iterator, Protocol

from issuance_store.codec import INT16_MAX, INT16_MIN
from issuance_store.config import DEFAULT_CONCURRENCY, DEFAULT_PROGRESS_EVERY, EPOCH
from issuance_store.errors import DateOutOfRange, SourceFormatError
from issuance_store.source import SourceRecord
from issuance_store.store import MergeFn

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
DEFAULT_READ_BATCH = 256


def day_offset(timestamp: str, epoch: datetime = EPOCH, record: SourceRecord | None = None) -> int:
    """Whole calendar days between a UTC timestamp and the epoch, as an int16."""
    raw = record.raw if record is not None and record.raw else None
    try:
        parsed = datetime.strptime(timestamp, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError as exc:
        raise SourceFormatError(f"cannot parse timestamp {timestamp!r}: {exc}", raw) from exc
    days = (parsed.date() - epoch.date()).days
    if not INT16_MIN <= days <= INT16_MAX:
        raise DateOutOfRange(f"{timestamp!r} is {days} days from {epoch.date()}", raw)
    return days


@dataclass(frozen=True)
class ProgressSnapshot:
    records: int
    elapsed_seconds: float
    sample_name: str
    sample_offset: int

    @property
    def records_per_second(self) -> float:
        if self.elapsed_seconds <= 0:
            return 0.0
        return self.records / self.elapsed_seconds


class ProgressObserver(Protocol):
    def on_progress(self, snapshot: ProgressSnapshot) -> None: ...


class LoggingProgressObserver:
    """Reports ingestion throughput through the module logger."""

    def on_progress(self, snapshot: ProgressSnapshot) -> None:
        logger.info(
            "%d records %.1f/s sample=%s %d",
            snapshot.records,
            snapshot.records_per_second,
            snapshot.sample_name,
            snapshot.sample_offset,
        )


@dataclass
class IngestionStats:
    records: int = 0
    applied: int = 0
    skipped: int = 0
    failed: int = 0


class IngestionPipeline:
    """
    Drive source records through a merge function with bounded concurrency.

    At most `concurrency` merges are in flight and the source is read at most
    one `read_batch` ahead of dispatch. On the first failure the pipeline stops
    dispatching, lets in-flight merges finish, then raises that failure.
    """

    def __init__(
        self,
        merge: MergeFn,
        *,
        concurrency: int = DEFAULT_CONCURRENCY,
        epoch: datetime = EPOCH,
        observer: ProgressObserver | None = None,
        progress_every: int = DEFAULT_PROGRESS_EVERY,
        read_batch: int = DEFAULT_READ_BATCH,
    ) -> None:
        if concurrency <= 0:
            raise ValueError("concurrency must be positive")
        if read_batch <= 0:
            raise ValueError("read_batch must be positive")
        self.merge = merge
        self.concurrency = concurrency
        self.epoch = epoch
        self.observer = observer
        self.progress_every = progress_every
        self.read_batch = read_batch

    async def _read(self, records: Iterable[SourceRecord]) -> AsyncIterator[SourceRecord]:
        """Pull records in batches on a worker thread so decompression never stalls the loop."""
        iterator: Iterator[SourceRecord] = iter(records)
        while True:
            batch = await asyncio.to_thread(lambda: list(islice(iterator, self.read_batch)))
            if not batch:
                return
            for record in batch:
                yield record

    async def run(self, records: Iterable[SourceRecord]) -> IngestionStats:
        stats = IngestionStats()
        slots = asyncio.Semaphore(self.concurrency)
        in_flight: set[asyncio.Task[bool]] = set()
        failures: list[BaseException] = []
        begin = time.monotonic()

        def finished(task: asyncio.Task[bool], record: SourceRecord) -> None:
            in_flight.discard(task)
            slots.release()
            if task.cancelled():
                return
            exc = task.exception()
            if exc is not None:
                stats.failed += 1
                logger.error("merge failed for %s (line %d): %s", record.name, record.line_number, exc)
                failures.append(exc)
            elif task.result():
                stats.applied += 1
            else:
                stats.skipped += 1

        try:
            async with aclosing(self._read(records)) as source:
                async for record in source:
                    if failures:
                        break
                    offset = day_offset(record.timestamp, self.epoch, record)
                    if self.observer is not None and stats.records % self.progress_every == 0:
                        self.observer.on_progress(
                            ProgressSnapshot(
                                records=stats.records,
                                elapsed_seconds=time.monotonic() - begin,
                                sample_name=record.name,
                                sample_offset=offset,
                            )
                        )
                    stats.records += 1
                    await slots.acquire()
                    if failures:
                        slots.release()
                        break
                    task = asyncio.create_task(self.merge(record.name, offset))
                    in_flight.add(task)
                    task.add_done_callback(lambda t, r=record: finished(t, r))
        except SourceFormatError:
            stats.failed += 1
            raise
        finally:
            if in_flight:
                await asyncio.wait(set(in_flight))

        if failures:
            raise failures[0]
        return stats
