from __future__ import annotations

import argparse
import asyncio
import json
from typing import Optional

from tablecrawl.config import Settings
from tablecrawl.crawlers import TablePageCrawler
from tablecrawl.log import configure_logging
from tablecrawl.models import FetchMode
from tablecrawl.orchestrator import CrawlOrchestrator
from tablecrawl.storage import JsonFileStorage


def _build_orchestrator(settings: Settings, args: argparse.Namespace) -> CrawlOrchestrator:
    orchestrator = CrawlOrchestrator(settings, storage=JsonFileStorage(settings.data_path))
    if args.url:
        orchestrator.register(
            TablePageCrawler(
                args.name,
                args.url,
                selector=args.selector,
                prefer=FetchMode.DIRECT if args.direct_first else FetchMode.RENDERED,
            )
        )
    return orchestrator


async def run_crawl(settings: Settings, args: argparse.Namespace) -> bool:
    orchestrator = _build_orchestrator(settings, args)
    try:
        await orchestrator.initialize()
        if args.crawler:
            ok = await orchestrator.run_one(args.crawler, force_historical=args.force_historical)
            print(json.dumps({"crawler": args.crawler, "success": ok}, ensure_ascii=False))
            return ok
        report = await orchestrator.run_all(force_historical=args.force_historical, parallel=args.parallel)
        print(json.dumps(report.to_dict(), ensure_ascii=False, indent=2))
        return report.success and report.stats.get("failed", 0) == 0
    finally:
        await orchestrator.shutdown()


async def show_status(settings: Settings, args: argparse.Namespace) -> None:
    orchestrator = _build_orchestrator(settings, args)
    try:
        status = await orchestrator.detailed_status()
        print(json.dumps(status, ensure_ascii=False, indent=2, default=str))
    finally:
        await orchestrator.shutdown()


def _settings_from_args(args: argparse.Namespace) -> Settings:
    settings = Settings.from_env(args.env_file)
    return settings.with_overrides(
        data_path=args.data_path,
        concurrency_limit=args.concurrency,
        log_level=args.log_level.upper() if args.log_level else None,
        headless=False if args.headed else None,
    )


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Paced table crawler")
    parser.add_argument("--run", action="store_true", help="Run registered crawlers")
    parser.add_argument("--status", action="store_true", help="Print crawler and storage status")

    parser.add_argument("--crawler", help="Run only this crawler")
    parser.add_argument("--force-historical", action="store_true", help="Run the historical phase even if data exists")
    parser.add_argument("--parallel", action="store_true", help="Run crawlers concurrently")

    parser.add_argument("--url", action="append", default=[], help="Page to crawl for tables (repeatable)")
    parser.add_argument("--name", default="table_page", help="Crawler name for --url pages")
    parser.add_argument("--selector", help="CSS selector for the tables to keep")
    parser.add_argument("--direct-first", action="store_true", help="Try a direct fetch before rendering")

    parser.add_argument("--env-file", help="Path to a .env file")
    parser.add_argument("--data-path", help="Data directory (overrides DATA_PATH)")
    parser.add_argument("--concurrency", type=int, help="Global fetch concurrency (overrides CONCURRENT_LIMIT)")
    parser.add_argument("--log-level", help="Log level (overrides LOG_LEVEL)")
    parser.add_argument("--headed", action="store_true", help="Show the browser window")

    args = parser.parse_args(argv)
    settings = _settings_from_args(args)
    configure_logging(settings.log_level)

    if args.run:
        ok = asyncio.run(run_crawl(settings, args))
        return 0 if ok else 1
    if args.status:
        asyncio.run(show_status(settings, args))
        return 0

    print("Nothing to do. Use --run or --status.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
