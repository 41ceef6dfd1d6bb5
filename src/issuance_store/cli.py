from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from typing import Sequence

from issuance_store.analysis import GapHistogram, InterestingEntities, Thresholds, analyze
from issuance_store.codec import INT16_MAX, INT16_MIN
from issuance_store.config import Settings
from issuance_store.errors import IssuanceStoreError
from issuance_store.pipeline import IngestionPipeline, LoggingProgressObserver
from issuance_store.source import iter_records
from issuance_store.store import SqlTimelineStore, merge_function

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="issuance-store",
        description="Build and analyse per-name issuance timelines. Configuration comes from $DSN and ISSUANCE_* variables.",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    fill = commands.add_parser("fill", help="ingest gzip tab-delimited extracts")
    fill.add_argument("files", nargs="+")

    add = commands.add_parser("add", help="merge a single day-offset for one name")
    add.add_argument("name")
    add.add_argument("offset", type=int)

    look = commands.add_parser("look", help="classify renewal gaps across all names")
    look.add_argument("mode", nargs="?", choices=("interesting", "histogram"), default="interesting")

    commands.add_parser("init-db", help="create the issuance table")
    return parser


async def _fill(store: SqlTimelineStore, settings: Settings, files: Sequence[str]) -> None:
    pipeline = IngestionPipeline(
        merge_function(store, settings.merge_strategy),
        concurrency=settings.concurrency,
        observer=LoggingProgressObserver(),
        progress_every=settings.progress_every,
    )
    for filename in files:
        logger.info("ingesting %s with %s merges", filename, settings.merge_strategy)
        stats = await pipeline.run(iter_records(filename))
        logger.info(
            "%s: %d records, %d applied, %d skipped",
            filename,
            stats.records,
            stats.applied,
            stats.skipped,
        )


async def _add(store: SqlTimelineStore, settings: Settings, name: str, offset: int) -> None:
    if not INT16_MIN <= offset <= INT16_MAX:
        raise IssuanceStoreError(f"offset {offset} does not fit in a signed 16-bit integer")
    applied = await merge_function(store, settings.merge_strategy)(name, offset)
    logger.info("%s %d: %s", name, offset, "applied" if applied else "already present or full")


async def _look(store: SqlTimelineStore, settings: Settings, mode: str) -> None:
    thresholds = Thresholds(timely_days=settings.timely_days)
    if mode == "histogram":
        histogram = GapHistogram(
            on_snapshot=lambda seen, counts: logger.info("%d names: %s", seen, counts)
        )
        report = await analyze(store, histogram, thresholds)
        print(histogram.counts)
    else:
        interesting = InterestingEntities(thresholds)
        report = await analyze(store, interesting, thresholds)
        print(f"results: {interesting.matches}")
    logger.info("analysed %d names, %d gaps, %d defects", report.entities, report.gaps, len(report.defects))


async def run(args: argparse.Namespace, settings: Settings) -> None:
    store = SqlTimelineStore.from_settings(settings)
    try:
        if args.command == "fill":
            await _fill(store, settings, args.files)
        elif args.command == "add":
            await _add(store, settings, args.name, args.offset)
        elif args.command == "look":
            await _look(store, settings, args.mode)
        elif args.command == "init-db":
            await store.create_schema()
    finally:
        await store.close()


def main(argv: Sequence[str] | None = None) -> int:
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    args = build_parser().parse_args(argv)
    try:
        settings = Settings.from_env()
        asyncio.run(run(args, settings))
    except IssuanceStoreError as exc:
        logger.error("%s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
