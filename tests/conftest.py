import asyncio
import os
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Dict, List, Union

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from tortoise import Tortoise

from catalog_crawler.fetcher import FetchOutcome, FetchSuccess, TerminalFailure, TransientFailure
from catalog_crawler.models import CatalogRecord, CrawlAuditRecord
from catalog_crawler.storage.postgres.postgres_init import MODEL_MODULES
from catalog_crawler.utils.env_loader import load_environment


@pytest.fixture(autouse=True)
def load_dotenv_defaults(monkeypatch):
    """Ensure .env defaults are available for every test."""

    # Clear key variables so tests always use the .env baseline unless they
    # explicitly override values via monkeypatch or a custom env file.
    for key in [
        "DATABASE_URL",
        "POSTGRES_USER",
        "POSTGRES_PASSWORD",
        "POSTGRES_HOST",
        "POSTGRES_PORT",
        "POSTGRES_DB",
        "CRAWLER_USER_AGENT",
        "START_URL",
        "MAX_PAGES",
        "PAGE_PARAM",
        "LOG_LEVEL",
        "CATALOG_CRAWLER_CONFIG",
        "CATALOG_CRAWLER_ENV_FILE",
    ]:
        monkeypatch.delenv(key, raising=False)

    load_environment(override=True)

    yield

    # Clean up to avoid leaking state between tests.
    for key in list(os.environ.keys()):
        if key.startswith("TEST_"):
            monkeypatch.delenv(key, raising=False)


# -------------------------------------------------------
#  Deterministic time
# -------------------------------------------------------
class FakeClock:
    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


@pytest.fixture
def fake_clock():
    return FakeClock()


# -------------------------------------------------------
#  Scripted fetch layer
# -------------------------------------------------------
Scripted = Union[str, int, FetchOutcome]


class StubFetcher:
    """Replays scripted outcomes per URL; the last one repeats.

    A ``str`` is a 200 body, an ``int`` a bare status code.
    """

    def __init__(self, routes: Dict[str, List[Scripted]] = None, clock: FakeClock = None):
        self.routes = {url: list(outcomes) for url, outcomes in (routes or {}).items()}
        self.clock = clock
        self.calls: List[str] = []
        self.call_times: List[float] = []
        self.in_flight = 0
        self.max_in_flight = 0

    def add(self, url: str, *outcomes: Scripted) -> None:
        self.routes[url] = list(outcomes)

    async def fetch(self, url: str) -> FetchOutcome:
        self.calls.append(url)
        if self.clock is not None:
            self.call_times.append(self.clock())
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            for _ in range(3):
                await asyncio.sleep(0)
            return self._next(url)
        finally:
            self.in_flight -= 1

    def _next(self, url: str) -> FetchOutcome:
        script = self.routes.get(url)
        if not script:
            return TerminalFailure(url=url, message="HTTP 404", status_code=404)
        scripted = script.pop(0) if len(script) > 1 else script[0]

        if isinstance(scripted, str):
            return FetchSuccess(url=url, status_code=200, content=scripted)
        if isinstance(scripted, int):
            if scripted == 429 or scripted >= 500:
                return TransientFailure(url=url, message=f"HTTP {scripted}", status_code=scripted)
            return TerminalFailure(url=url, message=f"HTTP {scripted}", status_code=scripted)
        return scripted


@pytest.fixture
def stub_fetcher(fake_clock):
    return StubFetcher(clock=fake_clock)


# -------------------------------------------------------
#  In-memory catalog store
# -------------------------------------------------------
class MemoryStore:
    def __init__(self, existing=()):
        self.items: Dict[str, CatalogRecord] = {}
        self.existing = set(existing)
        self.audits: List[CrawlAuditRecord] = []
        self.flushes = 0

    async def exists(self, item_id: str) -> bool:
        return item_id in self.existing or item_id in self.items

    async def save(self, record: CatalogRecord) -> None:
        self.items[record.item_id] = record

    async def append_audit(self, record: CrawlAuditRecord) -> None:
        self.audits.append(record)

    async def flush_audit(self) -> None:
        self.flushes += 1

    def audits_for(self, url: str) -> List[CrawlAuditRecord]:
        return [a for a in self.audits if a.url == url]


@pytest.fixture
def memory_store():
    return MemoryStore()


# -------------------------------------------------------
#  robots.txt client double
# -------------------------------------------------------
class MockResponse:
    def __init__(self, status_code: int, text: str = ""):
        self.status_code = status_code
        self.text = text


class MockClient:
    def __init__(self, responses):
        self.responses = responses
        self.calls = 0
        self.urls: List[str] = []

    async def get(self, url, *_args, **_kwargs):
        self.urls.append(url)
        response = self.responses[min(self.calls, len(self.responses) - 1)]
        self.calls += 1
        if isinstance(response, Exception):
            raise response
        return response


# -------------------------------------------------------
#  Database
# -------------------------------------------------------
@asynccontextmanager
async def memory_db():
    await Tortoise.init(db_url="sqlite://:memory:", modules={"models": MODEL_MODULES})
    await Tortoise.generate_schemas()
    try:
        yield
    finally:
        await Tortoise.close_connections()
