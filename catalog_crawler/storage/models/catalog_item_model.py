from tortoise import fields, models


class CatalogItem(models.Model):
    """
    One catalog entry, keyed by the canonical id derived from its URL.
    """
    id = fields.IntField(pk=True)
    item_id = fields.CharField(max_length=255, unique=True, index=True)
    name = fields.CharField(max_length=500)
    brand = fields.ForeignKeyField("models.Brand", related_name="items", null=True)
    release_year = fields.IntField(null=True)
    gender = fields.CharField(max_length=50, null=True)
    concentration = fields.CharField(max_length=100, null=True)
    description = fields.TextField(null=True)
    rating_value = fields.FloatField(null=True)
    rating_count = fields.IntField(null=True)
    longevity_rating = fields.FloatField(null=True)
    sillage_rating = fields.FloatField(null=True)
    url = fields.CharField(max_length=2048)
    last_crawled = fields.DatetimeField(null=True)
    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "catalog_items"

    def __str__(self):
        return f"{self.item_id} ({self.name})"
