from __future__ import annotations

import asyncio
import time
from typing import List, Optional, Set

from loguru import logger

from catalog_crawler.errors import CrawlCancelled, CrawlError, DiscoveryError, PolicyDenied
from catalog_crawler.models import (
    AuditOutcome,
    CrawlAuditRecord,
    CrawlTarget,
    RunOptions,
    RunState,
    RunSummary,
)
from catalog_crawler.monitoring.metrics_server import ITEMS_FAILED, ITEMS_PROCESSED, ITEMS_SKIPPED
from catalog_crawler.parsing.extractor import CatalogExtractor
from catalog_crawler.scheduler import Scheduler
from catalog_crawler.storage.catalog_repository import CatalogStore
from catalog_crawler.utils.robots import AccessPolicyChecker
from catalog_crawler.utils.url_utils import build_page_url, canonical_item_id, get_domain


class CrawlOrchestrator:
    """Runs one crawl: discover item URLs from listing pages, then extract them.

    ``processed``, ``failed`` and ``skipped`` hold canonical item ids and never
    overlap. Every listing fetch, item fetch and skip leaves an audit record.
    """

    def __init__(
        self,
        options: RunOptions,
        scheduler: Scheduler,
        extractor: CatalogExtractor,
        store: CatalogStore,
        policy: Optional[AccessPolicyChecker] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ):
        if options.respect_access_policy and policy is None:
            raise ValueError("an access policy checker is required when respect_access_policy is set")

        self.options = options
        self.scheduler = scheduler
        self.extractor = extractor
        self.store = store
        self.policy = policy
        self.cancel_event = cancel_event or scheduler.cancel_event

        self.state = RunState.IDLE
        self.discovered: List[str] = []
        self.processed: Set[str] = set()
        self.failed: Set[str] = set()
        self.skipped: Set[str] = set()
        self._claimed: Set[str] = set()

    # --------------------------
    #  Run
    # --------------------------
    async def run(self) -> RunSummary:
        if self.state is not RunState.IDLE:
            raise RuntimeError("a crawl orchestrator can only run once")

        logger.info(f"Starting crawl of {self.options.start_url} (max_pages={self.options.max_pages})")

        self._set_state(RunState.DISCOVERING)
        try:
            await self.discover()
        except DiscoveryError as exc:
            logger.error(f"Discovery failed: {exc}")
            self._set_state(RunState.FAILED)
            await self.store.flush_audit()
            return self.summary(error=str(exc))

        self._set_state(RunState.EXTRACTING)
        try:
            await self.extract()
            self._set_state(RunState.DRAINING)
            await self.scheduler.drain()
        finally:
            await self.store.flush_audit()

        self._set_state(RunState.DONE)
        summary = self.summary()
        logger.info(
            f"Crawl finished: processed={summary.processed} failed={summary.failed} "
            f"skipped={summary.skipped} fetches={summary.total_fetches} cancelled={summary.cancelled}"
        )
        return summary

    def summary(self, error: Optional[str] = None) -> RunSummary:
        return RunSummary(
            state=self.state,
            discovered=len(self.discovered),
            processed=len(self.processed),
            failed=len(self.failed),
            skipped=len(self.skipped),
            total_fetches=self.scheduler.total_fetches,
            cancelled=self._cancelled(),
            error=error,
        )

    # --------------------------
    #  Discovery
    # --------------------------
    async def discover(self) -> List[str]:
        seen: Set[str] = set(self.discovered)

        for page in range(1, self.options.max_pages + 1):
            if self._cancelled():
                logger.info("Cancellation requested; stopping discovery")
                break

            url = build_page_url(self.options.start_url, page, self.options.page_param)

            if not await self._allowed(url):
                await self._audit(url, AuditOutcome.SKIPPED, error_message="disallowed by robots.txt")
                if page == 1:
                    raise DiscoveryError("first listing page is disallowed by robots.txt", url=url)
                logger.info(f"Listing page {page} disallowed by robots.txt; stopping discovery")
                break

            if page == 1:
                self._log_sitemaps(url)

            started = time.perf_counter()
            try:
                result = await self.scheduler.admit(CrawlTarget.listing(url))
                urls = self.extractor.parse_listing(result.content, url)
            except CrawlCancelled as exc:
                if exc.attempted:
                    await self._audit(
                        url,
                        AuditOutcome.FAILED,
                        started=started,
                        http_status=exc.status_code,
                        error_message=str(exc),
                    )
                logger.info(f"Discovery cancelled at page {page}")
                break
            except CrawlError as exc:
                await self._audit(
                    url,
                    AuditOutcome.FAILED,
                    started=started,
                    http_status=exc.status_code,
                    error_message=str(exc),
                )
                if page == 1:
                    raise DiscoveryError(
                        f"first listing page failed: {exc}", url=url, status_code=exc.status_code
                    ) from exc
                logger.warning(f"Listing page {page} failed ({exc}); keeping {len(self.discovered)} URLs")
                break

            await self._audit(
                url,
                AuditOutcome.SUCCESS,
                started=started,
                http_status=result.status_code,
                items_extracted=len(urls),
            )
            logger.info(f"Listing page {page}: {len(urls)} item URLs")

            if not urls:
                break

            for item_url in urls:
                if item_url not in seen:
                    seen.add(item_url)
                    self.discovered.append(item_url)

        logger.info(f"Discovery complete: {len(self.discovered)} item URLs")
        return self.discovered

    # --------------------------
    #  Extraction
    # --------------------------
    async def extract(self) -> None:
        queue: asyncio.Queue = asyncio.Queue()
        for url in self.discovered:
            queue.put_nowait(url)

        workers = [
            asyncio.create_task(self._extraction_worker(queue, i))
            for i in range(self.options.concurrency_limit)
        ]
        try:
            await asyncio.gather(*workers)
        finally:
            for task in workers:
                if not task.done():
                    task.cancel()

    async def _extraction_worker(self, queue: asyncio.Queue, worker_id: int) -> None:
        while not self._cancelled():
            try:
                url = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            logger.debug(f"[extractor-{worker_id}] Dequeued: {url}")
            await self.process_item(url)

    async def process_item(self, url: str) -> None:
        item_id = canonical_item_id(url)
        if item_id in self._claimed:
            logger.debug(f"Already handled {item_id} this run: {url}")
            return
        self._claimed.add(item_id)

        started = time.perf_counter()
        http_status: Optional[int] = None
        try:
            if self.options.skip_existing and await self.store.exists(item_id):
                self.skipped.add(item_id)
                ITEMS_SKIPPED.labels(reason="exists").inc()
                logger.info(f"Skipping {url}: already stored")
                await self._audit(url, AuditOutcome.SKIPPED, error_message="already stored")
                return

            if not await self._allowed(url):
                raise PolicyDenied("disallowed by robots.txt", url=url)

            result = await self.scheduler.admit(CrawlTarget.detail(url))
            http_status = result.status_code
            record = self.extractor.parse_detail(result.content, url)
            await self.store.save(record)
        except CrawlCancelled as exc:
            if exc.attempted:
                self.failed.add(item_id)
                ITEMS_FAILED.labels(reason=type(exc).__name__).inc()
                logger.warning(f"Cancelled while retrying {url}: {exc}")
                await self._audit(
                    url,
                    AuditOutcome.FAILED,
                    started=started,
                    http_status=exc.status_code,
                    error_message=str(exc),
                )
                return
            # never fetched; leaves no trace in the run's sets
            self._claimed.discard(item_id)
            logger.info(f"Cancelled before fetching {url}")
            return
        except PolicyDenied as exc:
            self.skipped.add(item_id)
            ITEMS_SKIPPED.labels(reason="robots").inc()
            await self._audit(url, AuditOutcome.SKIPPED, started=started, error_message=str(exc))
            return
        except CrawlError as exc:
            self.failed.add(item_id)
            ITEMS_FAILED.labels(reason=type(exc).__name__).inc()
            logger.error(f"Error processing {url}: {exc}")
            await self._audit(
                url,
                AuditOutcome.FAILED,
                started=started,
                http_status=exc.status_code or http_status,
                error_message=str(exc),
            )
            return

        self.processed.add(item_id)
        ITEMS_PROCESSED.inc()
        logger.info(f"Processed {item_id}: {record.name} ({record.brand})")
        await self._audit(
            url,
            AuditOutcome.SUCCESS,
            started=started,
            http_status=http_status,
            items_extracted=1,
        )

    # --------------------------
    #  Helpers
    # --------------------------
    def _set_state(self, state: RunState) -> None:
        logger.debug(f"Orchestrator state {self.state.value} -> {state.value}")
        self.state = state

    def _cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    async def _allowed(self, url: str) -> bool:
        if not self.options.respect_access_policy or self.policy is None:
            return True
        return await self.policy.is_allowed(url)

    def _log_sitemaps(self, url: str) -> None:
        if self.policy is None:
            return
        sitemaps = self.policy.sitemaps_for(get_domain(url))
        if sitemaps:
            logger.info(f"robots.txt lists {len(sitemaps)} sitemap(s): {', '.join(sitemaps)}")

    async def _audit(
        self,
        url: str,
        outcome: AuditOutcome,
        *,
        started: Optional[float] = None,
        http_status: Optional[int] = None,
        error_message: Optional[str] = None,
        items_extracted: int = 0,
    ) -> None:
        duration_ms = int((time.perf_counter() - started) * 1000) if started is not None else 0
        record = CrawlAuditRecord(
            url=url,
            outcome=outcome,
            http_status=http_status,
            error_message=error_message,
            items_extracted=items_extracted,
            duration_ms=duration_ms,
        )
        try:
            await self.store.append_audit(record)
        except Exception as exc:
            logger.error(f"Failed to record audit for {url}: {exc}")
