"""Ad Library 수집 CLI -- 검색어 또는 페이지 하나를 1회 수집.

사용법:
    python scripts/run_harvest.py --term "running shoes" --country US --limit 100 --tenant-id 1
    python scripts/run_harvest.py --page-id 123456789 --tenant-id 1
    python scripts/run_harvest.py --sink webhook --term "vpn" --tenant-id 1
    python scripts/run_harvest.py --sink webhook --ping
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from dotenv import load_dotenv  # noqa: E402
load_dotenv()

from loguru import logger  # noqa: E402

from crawler.config import crawler_settings  # noqa: E402
from crawler.meta_library import AdLibraryScraper  # noqa: E402
from crawler.retry import RetryEvent, format_retry_message  # noqa: E402
from database import async_session, init_db  # noqa: E402
from processor.job_recorder import JobRecorder  # noqa: E402
from processor.sinks import DatabaseSink, WebhookSink  # noqa: E402


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Meta Ad Library 수집")
    target = p.add_mutually_exclusive_group(required=True)
    target.add_argument("--term", help="검색어")
    target.add_argument("--page-id", help="광고주 페이지 ID")
    target.add_argument("--ping", action="store_true", help="싱크 연결만 확인")
    p.add_argument("--country", default=crawler_settings.default_country)
    p.add_argument("--limit", type=int, default=crawler_settings.default_limit)
    p.add_argument("--sink", default="db", choices=["db", "webhook"])
    p.add_argument("--tenant-id", type=int, default=None)
    args = p.parse_args(argv)

    if args.limit < 1:
        p.error("--limit must be positive")
    needs_tenant = not args.ping or args.sink == "db"
    if needs_tenant and args.tenant_id is None:
        p.error("--tenant-id is required")
    return args


def setup_logging():
    logger.remove()
    logger.add(sys.stderr, level="INFO", format="{time:HH:mm:ss} | {level:<7} | {message}")
    logs_dir = Path("logs")
    logs_dir.mkdir(exist_ok=True)
    logger.add(
        str(logs_dir / "harvest_{time:YYYY-MM-DD}.log"),
        rotation="1 day",
        retention="7 days",
        level="DEBUG",
        encoding="utf-8",
    )


def print_retry(event: RetryEvent):
    print(f"  ! {event.classification.category.value}: {format_retry_message(event)}")


async def main(args: argparse.Namespace) -> int:
    await init_db()

    if args.sink == "webhook":
        sink = WebhookSink(tenant_id=args.tenant_id)
    else:
        sink = DatabaseSink(async_session, args.tenant_id)

    recorder = JobRecorder(async_session)
    scraper = AdLibraryScraper(
        sink,
        recorder=recorder,
        tenant_id=args.tenant_id,
        schedule_type="manual",
        on_retry=print_retry,
    )

    if args.ping:
        ok = await scraper.ping()
        print("pong" if ok else "ping failed")
        return 0 if ok else 1

    async with scraper:
        if args.term:
            harvested = await scraper.scrape_by_term(args.term, args.country, args.limit)
        else:
            harvested = await scraper.scrape_by_page_id(args.page_id, args.limit)
    await recorder.drain()

    outcome = scraper.last_outcome
    result = outcome.import_result
    print(
        f"{outcome.state.value}: harvested={harvested} imported={result.imported} "
        f"updated={result.updated} errors={result.errors} rejected={outcome.rejected}"
    )
    if outcome.error:
        print(f"error: {outcome.error}")
    return 0 if outcome.ok else 1


if __name__ == "__main__":
    setup_logging()
    sys.exit(asyncio.run(main(parse_args())))
