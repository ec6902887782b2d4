from __future__ import annotations

import asyncio
import heapq
import itertools
import random
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Optional, Protocol

from loguru import logger

from catalog_crawler.errors import CrawlCancelled, RetriesExhausted, TerminalFetchError
from catalog_crawler.fetcher import FetchOutcome, FetchSuccess, TerminalFailure
from catalog_crawler.models import CrawlTarget, QuotaSpec, RunOptions
from catalog_crawler.monitoring.metrics_server import ADMISSIONS, IN_FLIGHT, QUOTA_WAITS, RETRIES
from catalog_crawler.utils.url_utils import get_domain


class Fetcher(Protocol):
    async def fetch(self, url: str) -> FetchOutcome: ...


@dataclass
class QuotaWindow:
    """Wall-clock request bucket: resets when its duration has elapsed since it started."""

    window_duration_ms: int
    capacity: int
    window_start: Optional[float] = None
    requests_this_window: int = 0

    @property
    def duration_seconds(self) -> float:
        return self.window_duration_ms / 1000

    def roll_over(self, now: float) -> bool:
        if self.window_start is None:
            self.window_start = now
            return False
        if now - self.window_start >= self.duration_seconds:
            self.window_start = now
            self.requests_this_window = 0
            return True
        return False

    def has_capacity(self) -> bool:
        return self.requests_this_window < self.capacity

    def seconds_until_reset(self, now: float) -> float:
        if self.window_start is None:
            return 0.0
        return max(0.0, self.window_start + self.duration_seconds - now)

    def record(self) -> None:
        self.requests_this_window += 1


class _PriorityGate:
    """Mutex handed to waiters by (priority, arrival order)."""

    def __init__(self) -> None:
        self._waiters: List[tuple] = []
        self._seq = itertools.count()
        self._busy = False

    @property
    def waiting(self) -> int:
        return sum(1 for *_, fut in self._waiters if not fut.done())

    @asynccontextmanager
    async def turn(self, priority: int) -> AsyncIterator[None]:
        if self._busy or self.waiting:
            fut = asyncio.get_running_loop().create_future()
            heapq.heappush(self._waiters, (priority, next(self._seq), fut))
            try:
                await fut
            except asyncio.CancelledError:
                if fut.done() and not fut.cancelled():
                    # granted and cancelled in the same tick: pass the turn on
                    self._release()
                raise
        else:
            self._busy = True
        try:
            yield
        finally:
            self._release()

    def _release(self) -> None:
        while self._waiters:
            _, _, fut = heapq.heappop(self._waiters)
            if not fut.done():
                fut.set_result(None)
                return
        self._busy = False


class Scheduler:
    """The single gate in front of every catalog fetch.

    Admission is serialized through a priority gate. A target is admitted once a
    concurrency slot is free, every quota window has capacity, and the minimum
    spacing (or the host's robots crawl-delay, when larger) has elapsed. Transient
    failures are retried here with capped exponential backoff plus jitter; the
    slot is released between attempts.
    """

    def __init__(
        self,
        fetcher: Fetcher,
        *,
        concurrency_limit: int = 2,
        min_spacing_ms: int = 2000,
        quota_windows: Iterable[QuotaSpec] = (),
        max_retries: int = 3,
        backoff_base_ms: int = 1000,
        backoff_cap_ms: int = 30_000,
        jitter_ms: int = 1000,
        crawl_delay_for: Optional[Callable[[str], Optional[float]]] = None,
        cancel_event: Optional[asyncio.Event] = None,
        clock: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        rng: Optional[random.Random] = None,
    ):
        if concurrency_limit < 1:
            raise ValueError("concurrency_limit must be >= 1")
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")

        self.fetcher = fetcher
        self.concurrency_limit = concurrency_limit
        self.min_spacing = min_spacing_ms / 1000
        self.quota_windows = [QuotaWindow(spec.window_ms, spec.capacity) for spec in quota_windows]
        self.max_retries = max_retries
        self.backoff_base = backoff_base_ms / 1000
        self.backoff_cap = backoff_cap_ms / 1000
        self.jitter = jitter_ms / 1000
        self.crawl_delay_for = crawl_delay_for
        self.cancel_event = cancel_event

        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep
        self._rng = rng or random.Random()

        self._slots = asyncio.Semaphore(concurrency_limit)
        self._gate = _PriorityGate()
        self._idle = asyncio.Event()
        self._idle.set()

        self._last_request_at: Optional[float] = None
        self._last_request_by_host: Dict[str, float] = {}

        self.in_flight = 0
        self.max_in_flight = 0
        self.total_fetches = 0
        self.retries = 0
        self.done = 0

    @classmethod
    def from_options(cls, fetcher: Fetcher, options: RunOptions, **kwargs) -> "Scheduler":
        return cls(
            fetcher,
            concurrency_limit=options.concurrency_limit,
            min_spacing_ms=options.min_spacing_ms,
            quota_windows=options.quota_windows,
            max_retries=options.max_retries,
            backoff_base_ms=options.backoff_base_ms,
            backoff_cap_ms=options.backoff_cap_ms,
            jitter_ms=options.jitter_ms,
            **kwargs,
        )

    # --------------------------
    #  Public API
    # --------------------------
    async def admit(self, target: CrawlTarget) -> FetchSuccess:
        """Fetch ``target`` under quota, retrying transient failures.

        Raises TerminalFetchError, RetriesExhausted or CrawlCancelled. A
        CrawlCancelled raised after a fetch went out carries ``attempts`` and the
        last status seen.
        """
        last_status: Optional[int] = None
        while True:
            try:
                outcome = await self._attempt(target)
            except CrawlCancelled as exc:
                raise self._cancelled_after(target, exc, last_status) from None

            if isinstance(outcome, FetchSuccess):
                return outcome

            if isinstance(outcome, TerminalFailure):
                raise TerminalFetchError(outcome.message, url=target.url, status_code=outcome.status_code)

            if target.attempt >= self.max_retries:
                raise RetriesExhausted(
                    f"{outcome.message} (gave up after {target.attempt + 1} attempts)",
                    url=target.url,
                    status_code=outcome.status_code,
                    attempts=target.attempt + 1,
                )

            if outcome.retry_after is not None:
                delay = outcome.retry_after
            else:
                delay = self.backoff_delay(target.attempt)

            self.retries += 1
            RETRIES.inc()
            logger.info(
                f"Retrying {target.url} in {delay:.2f}s "
                f"(attempt {target.attempt + 1}/{self.max_retries}): {outcome.message}"
            )
            target.attempt += 1
            last_status = outcome.status_code
            try:
                await self._pause(delay)
            except CrawlCancelled as exc:
                raise self._cancelled_after(target, exc, last_status) from None

    def backoff_delay(self, attempt: int) -> float:
        exponential = min(self.backoff_base * (2 ** attempt), self.backoff_cap)
        return exponential + self._rng.uniform(0, self.jitter)

    async def drain(self) -> None:
        """Wait until no fetch holds a concurrency slot."""
        await self._idle.wait()

    def stats(self) -> dict:
        return {
            "running": self.in_flight,
            "queued": self._gate.waiting,
            "done": self.done,
            "total_fetches": self.total_fetches,
            "retries": self.retries,
        }

    # --------------------------
    #  Admission
    # --------------------------
    async def _attempt(self, target: CrawlTarget) -> FetchOutcome:
        self._check_cancelled()
        host = get_domain(target.url)

        async with self._gate.turn(target.priority):
            self._check_cancelled()
            await self._wait_for_quota()
            await self._wait_for_spacing(host)
            await self._slots.acquire()
            if self._cancelled():
                self._slots.release()
                raise CrawlCancelled("crawl cancelled before admission", url=target.url)
            self._record_admission(target, host)

        try:
            return await self.fetcher.fetch(target.url)
        finally:
            self._release_slot()

    async def _wait_for_quota(self) -> None:
        while True:
            now = self._clock()
            waits = []
            for window in self.quota_windows:
                window.roll_over(now)
                if not window.has_capacity():
                    waits.append(window.seconds_until_reset(now))
            if not waits:
                return

            wait = max(max(waits), 0.001)
            QUOTA_WAITS.inc()
            logger.info(f"Quota window full, waiting {wait:.1f}s")
            await self._pause(wait)

    async def _wait_for_spacing(self, host: str) -> None:
        while True:
            now = self._clock()
            wait = 0.0
            if self._last_request_at is not None:
                wait = self._last_request_at + self.min_spacing - now

            crawl_delay = self.crawl_delay_for(host) if self.crawl_delay_for else None
            last_for_host = self._last_request_by_host.get(host)
            if crawl_delay and crawl_delay > self.min_spacing and last_for_host is not None:
                wait = max(wait, last_for_host + crawl_delay - now)

            if wait <= 0:
                return
            await self._pause(wait)

    def _record_admission(self, target: CrawlTarget, host: str) -> None:
        now = self._clock()
        for window in self.quota_windows:
            window.roll_over(now)
            window.record()
        self._last_request_at = now
        self._last_request_by_host[host] = now

        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        self.total_fetches += 1
        self._idle.clear()
        IN_FLIGHT.set(self.in_flight)
        ADMISSIONS.labels(kind=target.kind.value).inc()
        logger.debug(
            f"Admitted {target.kind.value} {target.url} "
            f"(attempt={target.attempt}, running={self.in_flight}, queued={self._gate.waiting})"
        )

    def _release_slot(self) -> None:
        self.in_flight -= 1
        self.done += 1
        self._slots.release()
        IN_FLIGHT.set(self.in_flight)
        if self.in_flight == 0:
            self._idle.set()

    # --------------------------
    #  Cancellation-aware waiting
    # --------------------------
    def _cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def _check_cancelled(self) -> None:
        if self._cancelled():
            raise CrawlCancelled("crawl cancelled; no new admissions")

    @staticmethod
    def _cancelled_after(target: CrawlTarget, exc: CrawlCancelled, last_status: Optional[int]) -> CrawlCancelled:
        if target.attempt == 0:
            exc.url = exc.url or target.url
            return exc
        return CrawlCancelled(
            f"crawl cancelled after {target.attempt} attempt(s)",
            url=target.url,
            status_code=last_status,
            attempts=target.attempt,
        )

    async def _pause(self, seconds: float) -> None:
        if seconds <= 0:
            return
        if self.cancel_event is None:
            await self._sleep(seconds)
            return

        self._check_cancelled()
        sleeper = asyncio.ensure_future(self._sleep(seconds))
        canceller = asyncio.ensure_future(self.cancel_event.wait())
        try:
            await asyncio.wait({sleeper, canceller}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, canceller):
                if not task.done():
                    task.cancel()
        self._check_cancelled()
