from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Protocol

from asyncpg import PostgresError
from loguru import logger
from tortoise.exceptions import BaseORMException
from tortoise.transactions import in_transaction

from catalog_crawler.errors import PersistenceFailure
from catalog_crawler.models import CatalogRecord, CrawlAuditRecord
from catalog_crawler.storage.models import Brand, CatalogItem, CrawlHistory, ItemAttribute
from catalog_crawler.storage.models.crawl_history_model import MAX_ERROR_MESSAGE


AUDIT_BATCH_SIZE = 20

# ORM errors plus the driver-level ones Tortoise lets through
STORE_ERRORS = (BaseORMException, PostgresError, OSError)


class CatalogStore(Protocol):
    async def exists(self, item_id: str) -> bool: ...

    async def save(self, record: CatalogRecord) -> None: ...

    async def append_audit(self, record: CrawlAuditRecord) -> None: ...

    async def flush_audit(self) -> None: ...


class CatalogRepository:
    """Tortoise-backed CatalogStore.

    Items are upserted by ``item_id`` inside one transaction together with their
    brand and attributes. Audit rows are buffered and written in batches; audit
    failures are logged and never propagate.
    """

    def __init__(self, audit_batch_size: int = AUDIT_BATCH_SIZE):
        self.audit_batch_size = audit_batch_size
        self._audit_buffer: List[CrawlAuditRecord] = []

    async def exists(self, item_id: str) -> bool:
        try:
            return await CatalogItem.filter(item_id=item_id).exists()
        except STORE_ERRORS as exc:
            raise PersistenceFailure(f"existence check failed for {item_id}: {exc}") from exc

    async def save(self, record: CatalogRecord) -> None:
        try:
            async with in_transaction() as conn:
                brand, _ = await Brand.get_or_create(name=record.brand, using_db=conn)

                values = {
                    "name": record.name,
                    "brand": brand,
                    "release_year": record.release_year,
                    "gender": record.gender,
                    "concentration": record.concentration,
                    "description": record.description,
                    "rating_value": record.rating_value,
                    "rating_count": record.rating_count,
                    "longevity_rating": record.longevity_rating,
                    "sillage_rating": record.sillage_rating,
                    "url": record.url,
                    "last_crawled": datetime.now(timezone.utc),
                }

                item = await CatalogItem.filter(item_id=record.item_id).using_db(conn).first()
                if item is None:
                    item = await CatalogItem.create(item_id=record.item_id, using_db=conn, **values)
                else:
                    item.update_from_dict(values)
                    await item.save(using_db=conn)

                await ItemAttribute.filter(item_id=item.id).using_db(conn).delete()

                seen = set()
                rows = []
                for attr in record.attributes:
                    key = (attr.kind, attr.name, attr.position)
                    if key in seen:
                        continue
                    seen.add(key)
                    rows.append(
                        ItemAttribute(
                            item=item,
                            kind=attr.kind,
                            name=attr.name[:255],
                            position=attr.position,
                            score=attr.score,
                        )
                    )
                if rows:
                    await ItemAttribute.bulk_create(rows, using_db=conn)
        except STORE_ERRORS as exc:
            raise PersistenceFailure(f"failed to save {record.item_id}: {exc}", url=record.url) from exc

        logger.debug(f"Saved {record.item_id} with {len(record.attributes)} attributes")

    # --------------------------
    #  Audit trail
    # --------------------------
    async def append_audit(self, record: CrawlAuditRecord) -> None:
        self._audit_buffer.append(record)
        if len(self._audit_buffer) >= self.audit_batch_size:
            await self.flush_audit()

    async def flush_audit(self) -> None:
        if not self._audit_buffer:
            return

        pending, self._audit_buffer = self._audit_buffer, []
        rows = [
            CrawlHistory(
                url=r.url,
                status=r.outcome.value,
                http_status=r.http_status,
                error_message=r.error_message[:MAX_ERROR_MESSAGE] if r.error_message else None,
                items_extracted=r.items_extracted,
                duration_ms=r.duration_ms,
                timestamp=r.timestamp,
            )
            for r in pending
        ]
        try:
            await CrawlHistory.bulk_create(rows)
        except Exception as exc:
            logger.error(f"Failed to write {len(rows)} audit records: {exc}")
