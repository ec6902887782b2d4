from __future__ import annotations

from typing import Optional


class CrawlError(Exception):
    """Base class for every error the crawl engine knows how to report."""

    def __init__(self, message: str, *, url: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.url = url
        self.status_code = status_code

    def __str__(self) -> str:
        return self.message


class PolicyDenied(CrawlError):
    """robots.txt forbids the URL. Never retried, audited as skipped."""


class TransientFetchError(CrawlError):
    """Timeout, connection failure, 5xx or 429."""

    def __init__(
        self,
        message: str,
        *,
        url: Optional[str] = None,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, url=url, status_code=status_code)
        self.retry_after = retry_after


class RetriesExhausted(TransientFetchError):
    def __init__(self, message: str, *, url: Optional[str] = None, status_code: Optional[int] = None, attempts: int = 0):
        super().__init__(message, url=url, status_code=status_code)
        self.attempts = attempts


class TerminalFetchError(CrawlError):
    """4xx other than 429, or a response we refuse to read."""


class ExtractionFailure(CrawlError):
    pass


class PersistenceFailure(CrawlError):
    pass


class CrawlCancelled(CrawlError):
    """Cancellation stopped the target. ``attempts`` counts fetches already made."""

    def __init__(self, message: str, *, url: Optional[str] = None, status_code: Optional[int] = None, attempts: int = 0):
        super().__init__(message, url=url, status_code=status_code)
        self.attempts = attempts

    @property
    def attempted(self) -> bool:
        return self.attempts > 0


class DiscoveryError(CrawlError):
    """Discovery could not produce anything (page 1 failed)."""
