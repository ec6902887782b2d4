from __future__ import annotations

import os
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Optional, Union

import httpx
from loguru import logger

from catalog_crawler.monitoring.metrics_server import REQUEST_COUNT, REQUEST_LATENCY


MAX_DOWNLOAD_BYTES = int(os.getenv("MAX_DOWNLOAD_BYTES", 5_000_000))
TRANSPORT_RETRIES = 2


# --------------------------
#  Tagged fetch outcome
# --------------------------
@dataclass
class FetchSuccess:
    url: str
    status_code: int
    content: str


@dataclass
class TransientFailure:
    url: str
    message: str
    status_code: Optional[int] = None
    retry_after: Optional[float] = None


@dataclass
class TerminalFailure:
    url: str
    message: str
    status_code: Optional[int] = None


FetchOutcome = Union[FetchSuccess, TransientFailure, TerminalFailure]


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """Return the Retry-After hint in seconds (delta-seconds or HTTP-date form)."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    current = now or datetime.now(timezone.utc)
    return max(0.0, (when - current).total_seconds())


class HttpFetcher:
    """One GET per call; classifies the response instead of raising."""

    def __init__(
        self,
        user_agent: str,
        *,
        timeout: float = 30.0,
        transport_retries: int = TRANSPORT_RETRIES,
        max_download_bytes: Optional[int] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.user_agent = user_agent
        self.timeout = timeout
        self.transport_retries = transport_retries
        self.max_download_bytes = max_download_bytes or MAX_DOWNLOAD_BYTES
        self.headers = {
            "User-Agent": user_agent,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Language": "en-US,en;q=0.5",
        }
        self._owns_client = client is None
        self.client: Optional[httpx.AsyncClient] = client

    async def open(self) -> "HttpFetcher":
        if self.client is None:
            # connection-level failures only; status based retries belong to the scheduler
            transport = httpx.AsyncHTTPTransport(retries=self.transport_retries)
            self.client = httpx.AsyncClient(
                transport=transport,
                timeout=httpx.Timeout(timeout=self.timeout),
                follow_redirects=True,
            )
            self._owns_client = True
        return self

    async def close(self) -> None:
        if self.client is not None and self._owns_client:
            await self.client.aclose()
            self.client = None

    async def __aenter__(self) -> "HttpFetcher":
        return await self.open()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # --------------------------
    #  HTTP fetch with metrics
    # --------------------------
    async def fetch(self, url: str) -> FetchOutcome:
        if self.client is None:
            raise RuntimeError("HTTP client is not initialized")

        start = time.perf_counter()
        try:
            resp = await self.client.get(url, headers=self.headers)
        except httpx.TimeoutException as exc:
            REQUEST_COUNT.labels(outcome="timeout").inc()
            logger.warning(f"Timeout fetching {url}: {exc!r}")
            return TransientFailure(url=url, message=f"timeout: {exc!r}")
        except httpx.TransportError as exc:
            REQUEST_COUNT.labels(outcome="connection_error").inc()
            logger.warning(f"Network error fetching {url}: {exc!r}")
            return TransientFailure(url=url, message=f"connection error: {exc!r}")
        except httpx.RequestError as exc:
            REQUEST_COUNT.labels(outcome="request_error").inc()
            logger.error(f"Request for {url} cannot succeed: {exc!r}")
            return TerminalFailure(url=url, message=f"request error: {exc!r}")
        finally:
            REQUEST_LATENCY.observe(time.perf_counter() - start)

        return self._classify(url, resp)

    def _classify(self, url: str, resp: httpx.Response) -> FetchOutcome:
        status_code = resp.status_code

        if 200 <= status_code < 300:
            body = resp.content or b""
            if len(body) > self.max_download_bytes:
                REQUEST_COUNT.labels(outcome="body_too_large").inc()
                return TerminalFailure(
                    url=url,
                    message=f"body of {len(body)} bytes exceeds {self.max_download_bytes}",
                    status_code=status_code,
                )
            REQUEST_COUNT.labels(outcome="success").inc()
            logger.debug(f"Response received: {status_code} from {url}")
            return FetchSuccess(url=url, status_code=status_code, content=resp.text or "")

        retry_after = parse_retry_after(resp.headers.get("Retry-After"))

        if status_code == 429:
            REQUEST_COUNT.labels(outcome="rate_limited").inc()
            logger.warning(f"Rate limited by {url} (retry-after={retry_after})")
            return TransientFailure(
                url=url,
                message="HTTP 429 Too Many Requests",
                status_code=status_code,
                retry_after=retry_after,
            )

        if status_code >= 500:
            REQUEST_COUNT.labels(outcome="server_error").inc()
            logger.warning(f"HTTP Error: {status_code} from {url}")
            return TransientFailure(
                url=url,
                message=f"HTTP {status_code}",
                status_code=status_code,
                retry_after=retry_after,
            )

        REQUEST_COUNT.labels(outcome="client_error").inc()
        logger.warning(f"HTTP Error: {status_code} from {url}")
        return TerminalFailure(url=url, message=f"HTTP {status_code}", status_code=status_code)
