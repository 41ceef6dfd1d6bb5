from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, Protocol, Sequence

from issuance_store.config import DEFAULT_TIMELY_DAYS
from issuance_store.errors import MalformedTimeline
from issuance_store.store import TimelineStore

logger = logging.getLogger(__name__)

HISTOGRAM_BUCKETS = 200
HISTOGRAM_SNAPSHOT_EVERY = 100_000


class RenewalType(Enum):
    TIMELY = 0
    RESCUED = 1
    EXPIRED = 2


@dataclass(frozen=True)
class Thresholds:
    """Gap thresholds in days; a gap of exactly timely_days + 1 is a rescue."""

    timely_days: int = DEFAULT_TIMELY_DAYS
    min_timely: int = 2

    def classify(self, gap: int) -> RenewalType:
        if gap <= self.timely_days:
            return RenewalType.TIMELY
        if gap == self.timely_days + 1:
            return RenewalType.RESCUED
        return RenewalType.EXPIRED


def distinct_sorted(offsets: Iterable[int]) -> list[int]:
    return sorted(set(offsets))


def adjacent_gaps(offsets: Sequence[int]) -> list[int]:
    return [b - a for a, b in zip(offsets, offsets[1:])]


@dataclass(frozen=True)
class RenewalCounts:
    timely: int = 0
    rescued: int = 0
    expired: int = 0

    @classmethod
    def tally(cls, kinds: Iterable[RenewalType]) -> RenewalCounts:
        counts = [0, 0, 0]
        for kind in kinds:
            counts[kind.value] += 1
        return cls(*counts)

    def is_interesting(self, min_timely: int = 2) -> bool:
        """Mostly timely renewals, never expired, rescued at least once."""
        return self.timely > min_timely and self.expired == 0 and self.rescued > 0


@dataclass(frozen=True)
class EntityGaps:
    name: str
    gaps: tuple[int, ...]
    kinds: tuple[RenewalType, ...]

    @property
    def counts(self) -> RenewalCounts:
        return RenewalCounts.tally(self.kinds)


class GapAggregator(Protocol):
    def observe(self, entity: EntityGaps) -> None: ...


class InterestingEntities:
    """Keeps (name, timely, rescued) for entities that were rescued but never expired."""

    def __init__(self, thresholds: Thresholds | None = None) -> None:
        self.thresholds = thresholds or Thresholds()
        self.matches: list[tuple[str, int, int]] = []

    def observe(self, entity: EntityGaps) -> None:
        counts = entity.counts
        if counts.is_interesting(self.thresholds.min_timely):
            logger.info("%s: %d timely, %d rescued", entity.name, counts.timely, counts.rescued)
            self.matches.append((entity.name, counts.timely, counts.rescued))


SnapshotCallback = Callable[[int, Sequence[int]], None]


class GapHistogram:
    """Global gap-length histogram; the last bucket collects everything at or above it."""

    def __init__(
        self,
        buckets: int = HISTOGRAM_BUCKETS,
        *,
        snapshot_every: int = HISTOGRAM_SNAPSHOT_EVERY,
        on_snapshot: SnapshotCallback | None = None,
    ) -> None:
        if buckets <= 0:
            raise ValueError("buckets must be positive")
        self.counts = [0] * buckets
        self.snapshot_every = snapshot_every
        self.on_snapshot = on_snapshot
        self.entities_seen = 0

    def bucket(self, gap: int) -> int:
        return min(max(gap, 0), len(self.counts) - 1)

    def observe(self, entity: EntityGaps) -> None:
        for gap in entity.gaps:
            self.counts[self.bucket(gap)] += 1
        self.entities_seen += 1
        if self.on_snapshot is not None and self.entities_seen % self.snapshot_every == 0:
            self.on_snapshot(self.entities_seen, list(self.counts))


@dataclass
class AnalysisReport:
    entities: int = 0
    gaps: int = 0
    defects: list[tuple[str, str]] = field(default_factory=list)


def entity_gaps(name: str, offsets: Iterable[int], thresholds: Thresholds) -> EntityGaps:
    gaps = adjacent_gaps(distinct_sorted(offsets))
    return EntityGaps(
        name=name,
        gaps=tuple(gaps),
        kinds=tuple(thresholds.classify(gap) for gap in gaps),
    )


async def analyze(
    store: TimelineStore,
    aggregator: GapAggregator,
    thresholds: Thresholds | None = None,
) -> AnalysisReport:
    """
    Classify every stored timeline and feed the result to one aggregator.

    A timeline that fails to decode is recorded as a defect and skipped.
    """
    thresholds = thresholds or Thresholds()
    report = AnalysisReport()
    async for record in store.scan_all():
        try:
            offsets = record.offsets()
        except MalformedTimeline as exc:
            logger.warning("skipping %s: %s", record.name, exc)
            report.defects.append((record.name, str(exc)))
            continue
        entity = entity_gaps(record.name, offsets, thresholds)
        report.entities += 1
        report.gaps += len(entity.gaps)
        aggregator.observe(entity)
    return report
