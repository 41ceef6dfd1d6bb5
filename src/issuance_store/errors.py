from __future__ import annotations

from typing import Sequence


class IssuanceStoreError(Exception):
    """Base class for errors raised by issuance_store."""


class ConfigError(IssuanceStoreError):
    """Raised when required configuration is missing or invalid."""


class SourceFormatError(IssuanceStoreError):
    """Raised when a source record cannot be turned into a day-offset."""

    def __init__(self, message: str, record: Sequence[str] | None = None) -> None:
        if record is not None:
            message = f"{message} (record: {list(record)!r})"
        super().__init__(message)
        self.record = tuple(record) if record is not None else None


class DateOutOfRange(SourceFormatError):
    """Raised when a day-offset does not fit in a signed 16-bit integer."""


class StoreError(IssuanceStoreError):
    """Raised when the backing store fails a read or merge."""


class MalformedTimeline(ValueError):
    """Raised when stored timeline bytes are not a whole number of offsets."""
