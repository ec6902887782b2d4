from tortoise import fields, models


class ItemAttribute(models.Model):
    """
    Note, creator, accord, season or occasion attached to an item.
    """
    id = fields.IntField(pk=True)
    item = fields.ForeignKeyField("models.CatalogItem", related_name="attributes", on_delete=fields.CASCADE)
    kind = fields.CharField(max_length=20, index=True)
    name = fields.CharField(max_length=255)
    position = fields.CharField(max_length=20, null=True)
    score = fields.IntField(null=True)
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "item_attributes"
        unique_together = (("item", "kind", "name", "position"),)
