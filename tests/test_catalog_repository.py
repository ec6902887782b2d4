import pytest

from catalog_crawler.errors import PersistenceFailure
from catalog_crawler.models import AuditOutcome, CatalogRecord, CrawlAuditRecord, RecordAttribute
from catalog_crawler.storage.catalog_repository import CatalogRepository
from catalog_crawler.storage.models import Brand, CatalogItem, CrawlHistory, ItemAttribute
from conftest import memory_db


def make_record(**overrides) -> CatalogRecord:
    values = dict(
        item_id="chanel/no-5",
        url="https://www.parfumo.com/Perfumes/Chanel/No-5",
        name="No 5",
        brand="Chanel",
        release_year=1921,
        attributes=[
            RecordAttribute(kind="note", name="Aldehydes", position="top"),
            RecordAttribute(kind="note", name="Aldehydes", position="top"),
            RecordAttribute(kind="creator", name="Ernest Beaux"),
            RecordAttribute(kind="accord", name="Powdery", score=80),
        ],
    )
    values.update(overrides)
    return CatalogRecord(**values)


@pytest.mark.asyncio
async def test_save_then_exists():
    async with memory_db():
        repo = CatalogRepository()
        assert not await repo.exists("chanel/no-5")

        await repo.save(make_record())

        assert await repo.exists("chanel/no-5")
        item = await CatalogItem.get(item_id="chanel/no-5").prefetch_related("brand")
        assert item.name == "No 5"
        assert item.brand.name == "Chanel"
        assert item.last_crawled is not None
        assert await ItemAttribute.filter(item_id=item.id).count() == 3


@pytest.mark.asyncio
async def test_save_is_an_upsert_that_replaces_attributes():
    async with memory_db():
        repo = CatalogRepository()
        await repo.save(make_record())
        await repo.save(
            make_record(
                name="No 5 Eau de Parfum",
                attributes=[RecordAttribute(kind="note", name="Rose", position="middle")],
            )
        )

        assert await CatalogItem.all().count() == 1
        assert await Brand.all().count() == 1
        item = await CatalogItem.get(item_id="chanel/no-5")
        assert item.name == "No 5 Eau de Parfum"
        names = await ItemAttribute.filter(item_id=item.id).values_list("name", flat=True)
        assert list(names) == ["Rose"]


@pytest.mark.asyncio
async def test_orm_errors_become_persistence_failures(monkeypatch):
    from tortoise.exceptions import OperationalError

    async with memory_db():
        repo = CatalogRepository()

        async def broken(*_args, **_kwargs):
            raise OperationalError("database is locked")

        monkeypatch.setattr(Brand, "get_or_create", broken)

        with pytest.raises(PersistenceFailure):
            await repo.save(make_record())
        assert not await repo.exists("chanel/no-5")


@pytest.mark.asyncio
async def test_driver_errors_become_persistence_failures(monkeypatch):
    async with memory_db():
        repo = CatalogRepository()

        async def dropped(*_args, **_kwargs):
            raise ConnectionResetError("db connection dropped")

        monkeypatch.setattr(Brand, "get_or_create", dropped)

        with pytest.raises(PersistenceFailure) as excinfo:
            await repo.save(make_record())
        assert "db connection dropped" in str(excinfo.value)

        def unreachable(*_args, **_kwargs):
            raise OSError("connection refused")

        monkeypatch.setattr(CatalogItem, "filter", unreachable)

        with pytest.raises(PersistenceFailure):
            await repo.exists("chanel/no-5")


@pytest.mark.asyncio
async def test_audit_records_are_buffered_and_flushed():
    async with memory_db():
        repo = CatalogRepository(audit_batch_size=3)

        await repo.append_audit(CrawlAuditRecord(url="https://a", outcome=AuditOutcome.SUCCESS, items_extracted=1))
        await repo.append_audit(CrawlAuditRecord(url="https://b", outcome=AuditOutcome.SKIPPED))
        assert await CrawlHistory.all().count() == 0

        await repo.append_audit(
            CrawlAuditRecord(url="https://c", outcome=AuditOutcome.FAILED, http_status=500, error_message="x" * 2000)
        )
        assert await CrawlHistory.all().count() == 3

        failed = await CrawlHistory.get(url="https://c")
        assert failed.status == "failed"
        assert len(failed.error_message) == 512

        await repo.append_audit(CrawlAuditRecord(url="https://d", outcome=AuditOutcome.SUCCESS))
        await repo.flush_audit()
        assert await CrawlHistory.all().count() == 4


@pytest.mark.asyncio
async def test_audit_write_failure_never_raises(monkeypatch):
    async with memory_db():
        repo = CatalogRepository()

        async def broken(*_args, **_kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(CrawlHistory, "bulk_create", broken)

        await repo.append_audit(CrawlAuditRecord(url="https://a", outcome=AuditOutcome.SUCCESS))
        await repo.flush_audit()
