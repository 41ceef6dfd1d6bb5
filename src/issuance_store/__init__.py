from issuance_store.analysis import (
    AnalysisReport,
    GapHistogram,
    InterestingEntities,
    RenewalType,
    Thresholds,
    analyze,
)
from issuance_store.codec import decode, encode
from issuance_store.config import EPOCH, Settings
from issuance_store.errors import (
    ConfigError,
    DateOutOfRange,
    MalformedTimeline,
    SourceFormatError,
    StoreError,
)
from issuance_store.memory import MemoryTimelineStore
from issuance_store.pipeline import IngestionPipeline, day_offset
from issuance_store.source import SourceRecord, iter_records
from issuance_store.store import SqlTimelineStore, TimelineRecord, merge_function

__all__ = [
    "AnalysisReport",
    "ConfigError",
    "DateOutOfRange",
    "EPOCH",
    "GapHistogram",
    "IngestionPipeline",
    "InterestingEntities",
    "MalformedTimeline",
    "MemoryTimelineStore",
    "RenewalType",
    "Settings",
    "SourceFormatError",
    "SourceRecord",
    "SqlTimelineStore",
    "StoreError",
    "Thresholds",
    "TimelineRecord",
    "analyze",
    "day_offset",
    "decode",
    "encode",
    "iter_records",
    "merge_function",
]
