from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal, Mapping

from issuance_store.codec import DEFAULT_CAPACITY_BYTES, OFFSET_WIDTH
from issuance_store.errors import ConfigError

MergeStrategy = Literal["transactional", "atomic"]
MERGE_STRATEGIES: tuple[str, ...] = ("transactional", "atomic")

EPOCH = datetime(2015, 9, 14, tzinfo=timezone.utc)
DEFAULT_CONCURRENCY = 50
DEFAULT_POOL_SIZE = 60
DEFAULT_TIMELY_DAYS = 70
DEFAULT_PROGRESS_EVERY = 1000

_ASYNC_DRIVERS = {
    "postgres": "postgresql+asyncpg",
    "postgresql": "postgresql+asyncpg",
    "sqlite": "sqlite+aiosqlite",
}


def normalize_dsn(dsn: str) -> str:
    """Map plain driver-less URLs onto the async SQLAlchemy driver for that backend."""
    scheme, sep, rest = dsn.partition("://")
    if not sep:
        raise ConfigError(f"DSN is not a URL: {dsn!r}")
    driver = _ASYNC_DRIVERS.get(scheme)
    if driver is None:
        return dsn
    return f"{driver}://{rest}"


def _env_int(environ: Mapping[str, str], name: str, default: int) -> int:
    value = environ.get(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from None


@dataclass(frozen=True)
class Settings:
    """Runtime configuration shared by ingestion and analysis."""

    dsn: str
    concurrency: int = DEFAULT_CONCURRENCY
    pool_size: int = DEFAULT_POOL_SIZE
    capacity_bytes: int = DEFAULT_CAPACITY_BYTES
    timely_days: int = DEFAULT_TIMELY_DAYS
    merge_strategy: MergeStrategy = "transactional"
    progress_every: int = DEFAULT_PROGRESS_EVERY

    def __post_init__(self) -> None:
        if not self.dsn:
            raise ConfigError("DSN is required")
        object.__setattr__(self, "dsn", normalize_dsn(self.dsn))
        for field_name in ("concurrency", "pool_size", "capacity_bytes", "progress_every"):
            if getattr(self, field_name) <= 0:
                raise ConfigError(f"{field_name} must be positive")
        if self.capacity_bytes % OFFSET_WIDTH:
            raise ConfigError(f"capacity_bytes must be a multiple of {OFFSET_WIDTH}")
        # Every in-flight merge holds one pooled connection.
        if self.concurrency > self.pool_size:
            raise ConfigError(
                f"concurrency ({self.concurrency}) exceeds pool_size ({self.pool_size})"
            )
        if self.merge_strategy not in MERGE_STRATEGIES:
            raise ConfigError(f"Unsupported merge strategy: {self.merge_strategy!r}")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        env = os.environ if environ is None else environ
        dsn = env.get("DSN")
        if not dsn:
            raise ConfigError("didn't find $DSN environment variable")
        return cls(
            dsn=dsn,
            concurrency=_env_int(env, "ISSUANCE_CONCURRENCY", DEFAULT_CONCURRENCY),
            pool_size=_env_int(env, "ISSUANCE_POOL_SIZE", DEFAULT_POOL_SIZE),
            capacity_bytes=_env_int(env, "ISSUANCE_CAPACITY_BYTES", DEFAULT_CAPACITY_BYTES),
            timely_days=_env_int(env, "ISSUANCE_TIMELY_DAYS", DEFAULT_TIMELY_DAYS),
            merge_strategy=env.get("ISSUANCE_MERGE_STRATEGY", "transactional"),  # type: ignore[arg-type]
            progress_every=_env_int(env, "ISSUANCE_PROGRESS_EVERY", DEFAULT_PROGRESS_EVERY),
        )
