import argparse
import asyncio
import json
import signal
import sys
from datetime import timedelta
from pathlib import Path
from typing import Optional, Sequence

from loguru import logger

# -------------------------------
# UVLOOP (used when installed)
# -------------------------------
try:
    import uvloop
except ImportError:
    uvloop = None

# -------------------------------
# INTERNAL IMPORTS
# -------------------------------
from catalog_crawler.errors import ExtractionFailure, PersistenceFailure
from catalog_crawler.fetcher import HttpFetcher
from catalog_crawler.models import RunState, RunSummary
from catalog_crawler.monitoring.metrics_server import start_metrics_server
from catalog_crawler.orchestrator import CrawlOrchestrator
from catalog_crawler.parsing.extractor import STRATEGIES, CatalogExtractor
from catalog_crawler.scheduler import Scheduler
from catalog_crawler.storage.catalog_repository import CatalogRepository, CatalogStore
from catalog_crawler.storage.postgres.postgres_init import close_db, init_db
from catalog_crawler.utils.config_loader import Config, load_config
from catalog_crawler.utils.logger import setup_logger
from catalog_crawler.utils.robots import AccessPolicyChecker


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="catalog-crawler",
        description="Politely crawl a paginated catalog into the relational store.",
    )
    parser.add_argument("--start-url", help="first listing page")
    parser.add_argument("--max-pages", type=int, help="listing pages to walk")
    parser.add_argument(
        "--skip-existing",
        dest="skip_existing",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="skip items already in the store",
    )
    parser.add_argument(
        "--ignore-robots",
        action="store_true",
        help="do not consult robots.txt",
    )
    parser.add_argument("--concurrency", type=int, help="simultaneous fetches")
    parser.add_argument("--strategy", choices=sorted(STRATEGIES), help="extractor selector strategy")
    parser.add_argument("--log-level", help="loguru level, e.g. DEBUG")
    parser.add_argument(
        "--test-mode",
        action="store_true",
        help="parse the bundled fixture pages and save the result; no network",
    )
    return parser


# -------------------------------
# OFFLINE TEST MODE
# -------------------------------
FIXTURES_DIR = Path(__file__).resolve().parent / "fixtures"
FIXTURE_LISTING_URL = "https://www.parfumo.com/s_perfumes_x.php?g_m=1&g_f=1&g_u=1"
FIXTURE_DETAIL_URL = "https://www.parfumo.com/Perfumes/Creed/Aventus"


def load_fixture(name: str) -> str:
    return (FIXTURES_DIR / name).read_text(encoding="utf-8")


async def run_test_mode(extractor: CatalogExtractor, store: CatalogStore) -> RunSummary:
    """Exercise the extractor and the store against bundled pages."""
    logger.info("Running in test mode with fixture pages")

    urls = extractor.parse_listing(load_fixture("listing.html"), FIXTURE_LISTING_URL)
    logger.info(f"Parsed {len(urls)} item URLs from the fixture listing page")
    for url in urls:
        logger.info(f"  - {url}")

    try:
        record = extractor.parse_detail(load_fixture("detail.html"), FIXTURE_DETAIL_URL)
        logger.info(
            f"Parsed {record.name} ({record.brand}, {record.release_year}): "
            f"rating {record.rating_value} from {record.rating_count} votes, "
            f"{len(record.attributes)} attributes"
        )
        await store.save(record)
    except (ExtractionFailure, PersistenceFailure) as exc:
        logger.error(f"Test mode failed: {exc}")
        return RunSummary(state=RunState.FAILED, discovered=len(urls), failed=1, error=str(exc))

    logger.info(f"Saved fixture item {record.item_id}")
    return RunSummary(state=RunState.DONE, discovered=len(urls), processed=1)


async def run_fixture_check(config: Config, args: argparse.Namespace) -> RunSummary:
    await init_db(config.database_url)
    try:
        return await run_test_mode(
            CatalogExtractor(args.strategy or config.extractor_strategy),
            CatalogRepository(),
        )
    finally:
        await close_db()


# -------------------------------
# MAIN APPLICATION
# -------------------------------
async def run_crawl(config: Config, args: argparse.Namespace) -> RunSummary:
    options = config.to_run_options(
        start_url=args.start_url,
        max_pages=args.max_pages,
        skip_existing=args.skip_existing,
        respect_access_policy=False if args.ignore_robots else None,
        concurrency_limit=args.concurrency,
        extractor_strategy=args.strategy,
    )

    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, cancel_event.set)

    metrics_runner = None
    if config.metrics_port:
        metrics_runner, _ = await start_metrics_server(port=config.metrics_port)

    await init_db(config.database_url)
    try:
        async with HttpFetcher(config.crawler_user_agent, timeout=config.request_timeout) as fetcher:
            policy = None
            if options.respect_access_policy:
                # robots.txt is not a catalog page; it bypasses the scheduler's quota
                policy = AccessPolicyChecker(
                    fetcher.client,
                    config.crawler_user_agent,
                    cache_ttl=timedelta(hours=config.robots_cache_ttl_hours),
                )

            scheduler = Scheduler.from_options(
                fetcher,
                options,
                crawl_delay_for=policy.crawl_delay_for if policy else None,
                cancel_event=cancel_event,
            )
            orchestrator = CrawlOrchestrator(
                options,
                scheduler,
                CatalogExtractor(options.extractor_strategy),
                CatalogRepository(),
                policy=policy,
                cancel_event=cancel_event,
            )
            return await orchestrator.run()
    finally:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)
        await close_db()
        if metrics_runner is not None:
            await metrics_runner.shutdown()
            await metrics_runner.cleanup()


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = load_config()

    setup_logger(args.log_level or config.log_level, config.log_path)
    if uvloop is not None:
        uvloop.install()
    else:
        logger.warning("uvloop not available, using default asyncio loop.")

    if args.test_mode:
        summary = asyncio.run(run_fixture_check(config, args))
    else:
        summary = asyncio.run(run_crawl(config, args))
    print(json.dumps(summary.to_dict(), indent=2))
    return 0 if summary.state is RunState.DONE else 1


def cli() -> None:
    sys.exit(main())


# -------------------------------
# ENTRYPOINT
# -------------------------------
if __name__ == "__main__":
    cli()
