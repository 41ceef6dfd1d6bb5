from __future__ import annotations

import struct
from typing import Iterable

from issuance_store.errors import MalformedTimeline

OFFSET_WIDTH = 2
DEFAULT_CAPACITY_BYTES = 200
INT16_MIN = -(2**15)
INT16_MAX = 2**15 - 1

_OFFSET = struct.Struct(">h")


def encode(offsets: Iterable[int]) -> bytes:
    """Pack day-offsets as consecutive big-endian signed 16-bit integers."""
    values = list(offsets)
    for value in values:
        if not INT16_MIN <= value <= INT16_MAX:
            raise ValueError(f"offset {value} does not fit in a signed 16-bit integer")
    return struct.pack(f">{len(values)}h", *values)


def encode_one(offset: int) -> bytes:
    return encode((offset,))


def decode(data: bytes) -> list[int]:
    """Unpack a timeline, preserving on-disk order."""
    if len(data) % OFFSET_WIDTH:
        raise MalformedTimeline(
            f"timeline length {len(data)} is not a multiple of {OFFSET_WIDTH}"
        )
    return [value for (value,) in _OFFSET.iter_unpack(data)]


def contains(data: bytes, offset: int) -> bool:
    return offset in decode(data)


def capacity_in_offsets(capacity_bytes: int) -> int:
    return capacity_bytes // OFFSET_WIDTH
