from .brand_model import Brand
from .catalog_item_model import CatalogItem
from .item_attribute_model import ItemAttribute
from .crawl_history_model import CrawlHistory

__all__ = [
    "Brand",
    "CatalogItem",
    "ItemAttribute",
    "CrawlHistory",
]
