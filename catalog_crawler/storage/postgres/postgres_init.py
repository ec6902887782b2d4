import os

from loguru import logger
from tortoise import Tortoise

from catalog_crawler.utils.db_utils import to_asyncpg_dsn


MODEL_MODULES = [
    "catalog_crawler.storage.models.brand_model",
    "catalog_crawler.storage.models.catalog_item_model",
    "catalog_crawler.storage.models.item_attribute_model",
    "catalog_crawler.storage.models.crawl_history_model",
]


def resolve_database_url(db_url: str | None = None) -> str:
    """DATABASE_URL wins; otherwise the DSN is assembled from POSTGRES_* variables."""
    db_url = db_url or os.getenv("DATABASE_URL")
    if not db_url:
        user = os.getenv("POSTGRES_USER", "catalog")
        password = os.getenv("POSTGRES_PASSWORD", "postgres")
        host = os.getenv("POSTGRES_HOST", "localhost")
        port = os.getenv("POSTGRES_PORT", "5432")
        db = os.getenv("POSTGRES_DB", "catalog_crawler")

        db_url = f"postgresql://{user}:{password}@{host}:{port}/{db}"

    return to_asyncpg_dsn(db_url)


async def init_db(db_url: str | None = None) -> None:
    """
    Connect Tortoise and create or verify the catalog tables.

    ``sqlite://`` URLs pass through unchanged for local runs and tests.
    """
    db_url = resolve_database_url(db_url)
    logger.info("Initializing database and ORM models...")

    await Tortoise.init(db_url=db_url, modules={"models": MODEL_MODULES})
    await Tortoise.generate_schemas(safe=True)
    logger.info("Catalog tables created or verified.")


async def close_db() -> None:
    await Tortoise.close_connections()
