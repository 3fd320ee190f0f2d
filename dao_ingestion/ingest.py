from __future__ import annotations

import argparse
import asyncio
import logging
from typing import List

from dotenv import load_dotenv

from .config import Settings, load_settings
from .cursors import CURSOR_TABLE
from .db import PostgresStore
from .errors import ConfigurationError, IngestionError
from .events import LoggingObserver, Observers
from .logging_utils import configure_logging, get_logger, log_json
from .manager import CrawlManager
from .registry import build_market_crawler
from .runs import last_run
from .storage import MemoryStore, Store

logger = get_logger()


def open_store(settings: Settings, dry_run: bool) -> Store:
    if dry_run:
        return MemoryStore()
    return PostgresStore(settings.require_database())


def build_manager(settings: Settings, store: Store) -> CrawlManager:
    observers = Observers()
    observers.register(LoggingObserver())
    return CrawlManager(settings, store, observers=observers)


async def cmd_run(settings: Settings, source: str, dry_run: bool) -> int:
    store = open_store(settings, dry_run)
    manager = build_manager(settings, store)
    try:
        async with manager.stall_checker():
            await manager.start_crawl(source)
    finally:
        await store.close()
    status = manager.get_status(source)
    log_json(logger, logging.INFO, "run_complete", dry_run=dry_run, **(status.to_dict() if status else {}))
    return 0


async def cmd_all(settings: Settings, dry_run: bool) -> int:
    store = open_store(settings, dry_run)
    manager = build_manager(settings, store)
    try:
        async with manager.stall_checker():
            results = await manager.crawl_all()
    finally:
        await store.close()
    for name, outcome in results.items():
        print(f"{name}  {outcome}")
    return 0 if all(r == "completed" for r in results.values()) else 1


async def cmd_status(settings: Settings, source: str | None) -> List[str]:
    store = open_store(settings, dry_run=False)
    names = [source] if source else [s.name for s in settings.sources]

    def read(tx):
        lines = []
        for name in names:
            run = last_run(tx, name)
            if run:
                lines.append(f"{name}  last_run={run.status}  started={run.started_at}  ended={run.ended_at}  error={run.error_text}")
            else:
                lines.append(f"{name}  last_run=never")
            for row in tx.select(CURSOR_TABLE, {"source_name": name}):
                lines.append(
                    f"  {row['sub_source_id']}  last_timestamp={row.get('last_timestamp')}  "
                    f"last_day={row.get('last_day')}  updated={row.get('updated_at')}"
                )
        return lines

    try:
        return await store.transaction(read)
    finally:
        await store.close()


async def cmd_schedule(settings: Settings) -> int:
    from .scheduler import run_forever

    store = open_store(settings, dry_run=False)
    try:
        await run_forever(build_manager(settings, store))
    finally:
        await store.close()
    return 0


async def cmd_market(settings: Settings, force: bool, dry_run: bool) -> int:
    if not settings.coingecko_api_key:
        raise ConfigurationError("Missing COINGECKO_PRO_API_KEY.")
    store = open_store(settings, dry_run)
    failures = 0
    try:
        for source in settings.sources:
            crawler = build_market_crawler(settings, source, store, force_refresh=force)
            if crawler is None:
                log_json(logger, logging.INFO, "market_skipped", source=source.name, reason="no coingecko id")
                continue
            async with crawler:
                await crawler.run()
            result = crawler.last_result
            if result is not None and result.error is not None:
                failures += 1
    finally:
        await store.close()
    return 1 if failures else 0


def main(argv=None):
    load_dotenv(override=False)
    settings = load_settings()
    configure_logging(settings.log_level)

    parser = argparse.ArgumentParser(prog="dao-ingest")
    sub = parser.add_subparsers(dest="cmd", required=True)

    crawl = sub.add_parser("crawl", help="Crawl commands")
    crawl_sub = crawl.add_subparsers(dest="crawl_cmd", required=True)

    runp = crawl_sub.add_parser("run", help="Crawl one source once")
    runp.add_argument("source", type=str)
    runp.add_argument("--dry-run", action="store_true", help="Use an in-memory store")

    allp = crawl_sub.add_parser("all", help="Crawl every configured source once")
    allp.add_argument("--dry-run", action="store_true", help="Use an in-memory store")

    statp = crawl_sub.add_parser("status", help="Show cursors and last run")
    statp.add_argument("source", type=str, nargs="?", default=None)

    crawl_sub.add_parser("schedule", help="Run the APScheduler loop")

    market = sub.add_parser("market", help="Token market data commands")
    market_sub = market.add_subparsers(dest="market_cmd", required=True)
    mrun = market_sub.add_parser("run", help="Backfill market data for every source")
    mrun.add_argument("--force", action="store_true", help="Ignore day cursors and refetch the whole window")
    mrun.add_argument("--dry-run", action="store_true", help="Use an in-memory store")

    args = parser.parse_args(argv)

    try:
        if args.cmd == "market":
            return asyncio.run(cmd_market(settings, args.force, args.dry_run))

        if args.crawl_cmd == "run":
            return asyncio.run(cmd_run(settings, args.source.upper(), args.dry_run))
        if args.crawl_cmd == "all":
            return asyncio.run(cmd_all(settings, args.dry_run))
        if args.crawl_cmd == "status":
            source = args.source.upper() if args.source else None
            for line in asyncio.run(cmd_status(settings, source)):
                print(line)
            return 0
        if args.crawl_cmd == "schedule":
            return asyncio.run(cmd_schedule(settings))
    except IngestionError as e:
        log_json(logger, logging.ERROR, "command_failed", cmd=args.cmd, error=str(e))
        return 1
    except KeyboardInterrupt:
        return 130

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
