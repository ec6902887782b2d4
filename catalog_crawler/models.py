from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Tuple


LISTING_PRIORITY = 5
DETAIL_PRIORITY = 3


class TargetKind(str, enum.Enum):
    LISTING = "listing"
    DETAIL = "detail"


class AuditOutcome(str, enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class RunState(str, enum.Enum):
    IDLE = "idle"
    DISCOVERING = "discovering"
    EXTRACTING = "extracting"
    DRAINING = "draining"
    DONE = "done"
    FAILED = "failed"


@dataclass
class CrawlTarget:
    url: str
    kind: TargetKind
    priority: int = DETAIL_PRIORITY
    attempt: int = 0

    @classmethod
    def listing(cls, url: str) -> "CrawlTarget":
        return cls(url=url, kind=TargetKind.LISTING, priority=LISTING_PRIORITY)

    @classmethod
    def detail(cls, url: str) -> "CrawlTarget":
        return cls(url=url, kind=TargetKind.DETAIL, priority=DETAIL_PRIORITY)


@dataclass
class CrawlAuditRecord:
    url: str
    outcome: AuditOutcome
    http_status: Optional[int] = None
    error_message: Optional[str] = None
    items_extracted: int = 0
    duration_ms: int = 0
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


# --------------------------
#  Extracted catalog data
# --------------------------
@dataclass
class RecordAttribute:
    """One related entity of an item: a note, creator, accord, season or occasion."""

    kind: str
    name: str
    position: Optional[str] = None
    score: Optional[int] = None


@dataclass
class CatalogRecord:
    item_id: str
    url: str
    name: str
    brand: str = "Unknown"
    release_year: Optional[int] = None
    gender: Optional[str] = None
    concentration: Optional[str] = None
    description: Optional[str] = None
    rating_value: Optional[float] = None
    rating_count: Optional[int] = None
    longevity_rating: Optional[float] = None
    sillage_rating: Optional[float] = None
    attributes: List[RecordAttribute] = field(default_factory=list)

    def attributes_of(self, kind: str) -> List[RecordAttribute]:
        return [attr for attr in self.attributes if attr.kind == kind]


# --------------------------
#  Run configuration / result
# --------------------------
@dataclass(frozen=True)
class QuotaSpec:
    window_ms: int
    capacity: int


@dataclass(frozen=True)
class RunOptions:
    start_url: str
    max_pages: int = 10
    page_param: str = "page"
    skip_existing: bool = True
    respect_access_policy: bool = True
    concurrency_limit: int = 2
    min_spacing_ms: int = 2000
    quota_windows: Tuple[QuotaSpec, ...] = (
        QuotaSpec(window_ms=60_000, capacity=30),
        QuotaSpec(window_ms=3_600_000, capacity=1000),
    )
    max_retries: int = 3
    backoff_base_ms: int = 1000
    backoff_cap_ms: int = 30_000
    jitter_ms: int = 1000
    extractor_strategy: str = "v3"

    def __post_init__(self) -> None:
        if self.max_pages < 1:
            raise ValueError("max_pages must be >= 1")
        if self.concurrency_limit < 1:
            raise ValueError("concurrency_limit must be >= 1")
        if self.min_spacing_ms < 0:
            raise ValueError("min_spacing_ms must be >= 0")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        for spec in self.quota_windows:
            if spec.window_ms <= 0 or spec.capacity < 1:
                raise ValueError(f"invalid quota window: {spec}")


@dataclass
class RunSummary:
    state: RunState
    discovered: int = 0
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    total_fetches: int = 0
    cancelled: bool = False
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "discovered": self.discovered,
            "processed": self.processed,
            "failed": self.failed,
            "skipped": self.skipped,
            "total_fetches": self.total_fetches,
            "cancelled": self.cancelled,
            "error": self.error,
        }
