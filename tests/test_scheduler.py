import asyncio
import random

import pytest

from catalog_crawler.errors import CrawlCancelled, RetriesExhausted, TerminalFetchError
from catalog_crawler.fetcher import TransientFailure
from catalog_crawler.models import CrawlTarget, QuotaSpec
from catalog_crawler.scheduler import QuotaWindow, Scheduler


BASE = "https://shop.example"


def make_scheduler(fetcher, clock, **kwargs):
    kwargs.setdefault("min_spacing_ms", 0)
    kwargs.setdefault("jitter_ms", 0)
    return Scheduler(fetcher, clock=clock, sleep=clock.sleep, rng=random.Random(7), **kwargs)


def test_quota_window_rolls_over_once_per_duration():
    window = QuotaWindow(window_duration_ms=1000, capacity=2)

    assert window.roll_over(10.0) is False
    window.record()
    window.record()
    assert not window.has_capacity()
    assert window.seconds_until_reset(10.25) == pytest.approx(0.75)

    assert window.roll_over(10.5) is False
    assert window.roll_over(11.0) is True
    assert window.requests_this_window == 0
    assert window.window_start == 11.0
    assert window.roll_over(11.2) is False


@pytest.mark.asyncio
async def test_concurrency_limit_is_never_exceeded(stub_fetcher, fake_clock):
    urls = [f"{BASE}/Perfumes/Brand/Item-{i}" for i in range(8)]
    for url in urls:
        stub_fetcher.add(url, "<html></html>")
    scheduler = make_scheduler(stub_fetcher, fake_clock, concurrency_limit=2)

    await asyncio.gather(*(scheduler.admit(CrawlTarget.detail(u)) for u in urls))

    assert stub_fetcher.max_in_flight == 2
    assert scheduler.max_in_flight == 2
    assert sorted(stub_fetcher.calls) == sorted(urls)


@pytest.mark.asyncio
async def test_quota_window_blocks_until_roll_over(stub_fetcher, fake_clock):
    urls = [f"{BASE}/Perfumes/Brand/Item-{i}" for i in range(7)]
    for url in urls:
        stub_fetcher.add(url, "ok")
    scheduler = make_scheduler(
        stub_fetcher,
        fake_clock,
        concurrency_limit=1,
        quota_windows=[QuotaSpec(window_ms=1000, capacity=3)],
    )

    for url in urls:
        await scheduler.admit(CrawlTarget.detail(url))

    assert stub_fetcher.call_times == [0.0, 0.0, 0.0, 1.0, 1.0, 1.0, 2.0]


@pytest.mark.asyncio
async def test_every_quota_window_must_have_capacity(stub_fetcher, fake_clock):
    urls = [f"{BASE}/Perfumes/Brand/Item-{i}" for i in range(4)]
    for url in urls:
        stub_fetcher.add(url, "ok")
    scheduler = make_scheduler(
        stub_fetcher,
        fake_clock,
        quota_windows=[QuotaSpec(window_ms=1000, capacity=10), QuotaSpec(window_ms=60_000, capacity=3)],
    )

    for url in urls:
        await scheduler.admit(CrawlTarget.detail(url))

    assert stub_fetcher.call_times == [0.0, 0.0, 0.0, 60.0]


@pytest.mark.asyncio
async def test_min_spacing_between_admissions(stub_fetcher, fake_clock):
    urls = [f"{BASE}/Perfumes/Brand/Item-{i}" for i in range(3)]
    for url in urls:
        stub_fetcher.add(url, "ok")
    scheduler = make_scheduler(stub_fetcher, fake_clock, min_spacing_ms=2000)

    await asyncio.gather(*(scheduler.admit(CrawlTarget.detail(u)) for u in urls))

    assert stub_fetcher.call_times == [0.0, 2.0, 4.0]


@pytest.mark.asyncio
async def test_larger_crawl_delay_applies_per_host(stub_fetcher, fake_clock):
    first, second = f"{BASE}/Perfumes/A/One", f"{BASE}/Perfumes/A/Two"
    other = "https://other.example/Perfumes/B/Three"
    for url in (first, second, other):
        stub_fetcher.add(url, "ok")
    delays = {"shop.example": 5.0}
    scheduler = make_scheduler(stub_fetcher, fake_clock, min_spacing_ms=1000, crawl_delay_for=delays.get)

    await scheduler.admit(CrawlTarget.detail(first))
    await scheduler.admit(CrawlTarget.detail(other))
    await scheduler.admit(CrawlTarget.detail(second))

    assert stub_fetcher.call_times == [0.0, 1.0, 5.0]


@pytest.mark.asyncio
async def test_transient_failures_are_retried_with_backoff(stub_fetcher, fake_clock):
    url = f"{BASE}/Perfumes/Brand/Item"
    stub_fetcher.add(url, 500, 503, "<html>done</html>")
    scheduler = make_scheduler(stub_fetcher, fake_clock, backoff_base_ms=1000, backoff_cap_ms=30_000)

    result = await scheduler.admit(CrawlTarget.detail(url))

    assert result.content == "<html>done</html>"
    assert fake_clock.sleeps == [1.0, 2.0]
    assert scheduler.retries == 2
    assert scheduler.stats()["total_fetches"] == 3


@pytest.mark.asyncio
async def test_retry_after_overrides_backoff_for_one_attempt(stub_fetcher, fake_clock):
    url = f"{BASE}/Perfumes/Brand/Item"
    stub_fetcher.add(
        url,
        TransientFailure(url=url, message="HTTP 429", status_code=429, retry_after=7.0),
        500,
        "ok",
    )
    scheduler = make_scheduler(stub_fetcher, fake_clock)

    await scheduler.admit(CrawlTarget.detail(url))

    assert fake_clock.sleeps == [7.0, 2.0]


@pytest.mark.asyncio
async def test_retries_exhausted_after_max_retries(stub_fetcher, fake_clock):
    url = f"{BASE}/Perfumes/Brand/Item"
    stub_fetcher.add(url, 503)
    scheduler = make_scheduler(stub_fetcher, fake_clock, max_retries=2)

    with pytest.raises(RetriesExhausted) as excinfo:
        await scheduler.admit(CrawlTarget.detail(url))

    assert excinfo.value.attempts == 3
    assert excinfo.value.status_code == 503
    assert len(stub_fetcher.calls) == 3
    assert scheduler.in_flight == 0


@pytest.mark.asyncio
async def test_terminal_failure_is_not_retried(stub_fetcher, fake_clock):
    url = f"{BASE}/Perfumes/Brand/Gone"
    stub_fetcher.add(url, 404)
    scheduler = make_scheduler(stub_fetcher, fake_clock)

    with pytest.raises(TerminalFetchError) as excinfo:
        await scheduler.admit(CrawlTarget.detail(url))

    assert excinfo.value.status_code == 404
    assert stub_fetcher.calls == [url]
    assert scheduler.retries == 0


def test_backoff_delay_is_capped_and_non_decreasing(stub_fetcher, fake_clock):
    scheduler = Scheduler(
        stub_fetcher,
        backoff_base_ms=1000,
        backoff_cap_ms=30_000,
        jitter_ms=1000,
        rng=random.Random(3),
    )

    previous_floor = 0.0
    for attempt in range(12):
        delay = scheduler.backoff_delay(attempt)
        floor = min(1.0 * 2 ** attempt, 30.0)
        assert floor <= delay <= 30.0 + 1.0
        assert floor >= previous_floor
        previous_floor = floor


@pytest.mark.asyncio
async def test_lower_priority_number_is_admitted_first(stub_fetcher, fake_clock):
    release = asyncio.Event()
    order = []

    class BlockingFetcher:
        async def fetch(self, url):
            order.append(url)
            if url.endswith("first"):
                await release.wait()
            return await stub_fetcher.fetch(url)

    for name in ("first", "second", "listing", "detail"):
        stub_fetcher.add(f"{BASE}/{name}", "ok")
    scheduler = make_scheduler(BlockingFetcher(), fake_clock, concurrency_limit=1)

    tasks = [asyncio.create_task(scheduler.admit(CrawlTarget.detail(f"{BASE}/first")))]
    await asyncio.sleep(0)
    tasks.append(asyncio.create_task(scheduler.admit(CrawlTarget.detail(f"{BASE}/second"))))
    await asyncio.sleep(0)
    tasks.append(asyncio.create_task(scheduler.admit(CrawlTarget.listing(f"{BASE}/listing"))))
    tasks.append(asyncio.create_task(scheduler.admit(CrawlTarget.detail(f"{BASE}/detail"))))
    for _ in range(5):
        await asyncio.sleep(0)

    assert scheduler.stats()["queued"] == 2
    release.set()
    await asyncio.gather(*tasks)

    assert order == [f"{BASE}/first", f"{BASE}/second", f"{BASE}/detail", f"{BASE}/listing"]


@pytest.mark.asyncio
async def test_cancelled_scheduler_rejects_new_admissions(stub_fetcher, fake_clock):
    cancel = asyncio.Event()
    cancel.set()
    scheduler = make_scheduler(stub_fetcher, fake_clock, cancel_event=cancel)

    with pytest.raises(CrawlCancelled) as excinfo:
        await scheduler.admit(CrawlTarget.detail(f"{BASE}/Perfumes/Brand/Item"))

    assert stub_fetcher.calls == []
    assert not excinfo.value.attempted


@pytest.mark.asyncio
async def test_cancellation_interrupts_retry_delay(stub_fetcher):
    url = f"{BASE}/Perfumes/Brand/Item"
    stub_fetcher.add(url, TransientFailure(url=url, message="HTTP 429", status_code=429, retry_after=60.0))
    cancel = asyncio.Event()
    scheduler = Scheduler(stub_fetcher, min_spacing_ms=0, cancel_event=cancel)

    task = asyncio.create_task(scheduler.admit(CrawlTarget.detail(url)))
    await asyncio.sleep(0.05)
    cancel.set()

    with pytest.raises(CrawlCancelled) as excinfo:
        await asyncio.wait_for(task, timeout=1)
    assert scheduler.in_flight == 0
    assert excinfo.value.attempts == 1
    assert excinfo.value.status_code == 429
    assert excinfo.value.url == url


@pytest.mark.asyncio
async def test_drain_and_stats(stub_fetcher, fake_clock):
    urls = [f"{BASE}/Perfumes/Brand/Item-{i}" for i in range(4)]
    for url in urls:
        stub_fetcher.add(url, "ok")
    scheduler = make_scheduler(stub_fetcher, fake_clock, concurrency_limit=2)

    tasks = [asyncio.create_task(scheduler.admit(CrawlTarget.detail(u))) for u in urls]
    await asyncio.gather(*tasks)
    await asyncio.wait_for(scheduler.drain(), timeout=1)

    stats = scheduler.stats()
    assert stats == {"running": 0, "queued": 0, "done": 4, "total_fetches": 4, "retries": 0}
