from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import AsyncIterator

from issuance_store import codec
from issuance_store.store import TimelineRecord


class MemoryTimelineStore:
    """In-process timeline store with the same merge guarantees as the SQL store."""

    def __init__(self, capacity_bytes: int = codec.DEFAULT_CAPACITY_BYTES) -> None:
        self.capacity_bytes = capacity_bytes
        self._timelines: dict[str, bytes] = {}
        self._row_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def put_raw(self, name: str, timeline: bytes) -> None:
        """Store bytes verbatim, bypassing the merge rules."""
        self._timelines[name] = bytes(timeline)

    async def get(self, name: str) -> TimelineRecord | None:
        timeline = self._timelines.get(name)
        if timeline is None:
            return None
        return TimelineRecord(name=name, timeline=timeline)

    async def merge_transactional(self, name: str, offset: int) -> bool:
        addition = codec.encode_one(offset)
        async with self._row_locks[name]:
            current = self._timelines.get(name, b"")
            if codec.contains(current, offset) or len(current) >= self.capacity_bytes:
                return False
            # Yield between read and write so unlocked callers would interleave here.
            await asyncio.sleep(0)
            self._timelines[name] = current + addition
        return True

    async def merge_atomic_append(self, name: str, offset: int) -> bool:
        addition = codec.encode_one(offset)
        current = self._timelines.get(name)
        if current is None:
            self._timelines[name] = addition
            return True
        if len(current) >= self.capacity_bytes:
            return False
        self._timelines[name] = current + addition
        return True

    async def scan_all(self) -> AsyncIterator[TimelineRecord]:
        for name in list(self._timelines):
            yield TimelineRecord(name=name, timeline=self._timelines[name])
            await asyncio.sleep(0)

    def __len__(self) -> int:
        return len(self._timelines)
