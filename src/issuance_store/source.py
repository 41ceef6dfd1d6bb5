from __future__ import annotations

import csv
import gzip
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Iterator

from issuance_store.errors import SourceFormatError

logger = logging.getLogger(__name__)

NAME_COLUMN = 1
TIMESTAMP_COLUMN = 2


@dataclass(frozen=True)
class SourceRecord:
    """One (entity name, timestamp) row pulled from a snapshot extract."""

    name: str
    timestamp: str
    line_number: int = 0
    raw: tuple[str, ...] = ()


def _open_text(path: Path) -> IO[str]:
    # gzip transparently reads concatenated multi-member streams.
    if path.suffix == ".gz":
        return gzip.open(path, "rt", encoding="utf-8", newline="")
    return path.open("r", encoding="utf-8", newline="")


def iter_records(path: str | Path) -> Iterator[SourceRecord]:
    """Stream records from a tab-delimited extract, skipping its header row."""
    source = Path(path)
    try:
        opened = _open_text(source)
    except OSError as exc:
        raise SourceFormatError(f"{source}: cannot open: {exc}") from exc
    with opened as handle:
        reader = csv.reader(handle, delimiter="\t")
        try:
            header = next(reader, None)
            if header is None:
                logger.warning("%s is empty", source)
                return
            for row in reader:
                if len(row) <= TIMESTAMP_COLUMN:
                    raise SourceFormatError(
                        f"{source}:{reader.line_num}: expected at least {TIMESTAMP_COLUMN + 1} columns",
                        row,
                    )
                yield SourceRecord(
                    name=row[NAME_COLUMN],
                    timestamp=row[TIMESTAMP_COLUMN],
                    line_number=reader.line_num,
                    raw=tuple(row),
                )
        except (csv.Error, UnicodeDecodeError, EOFError, gzip.BadGzipFile) as exc:
            raise SourceFormatError(f"{source}: unreadable record near line {reader.line_num}: {exc}") from exc
