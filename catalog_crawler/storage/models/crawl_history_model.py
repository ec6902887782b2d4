from tortoise import fields, models


MAX_ERROR_MESSAGE = 512


class CrawlHistory(models.Model):
    """
    Append-only audit row: one per attempted fetch and one per skip.
    """
    id = fields.IntField(pk=True)

    url = fields.CharField(max_length=2048, index=True)
    status = fields.CharField(max_length=20)
    http_status = fields.IntField(null=True)
    error_message = fields.TextField(null=True)
    items_extracted = fields.IntField(default=0)
    duration_ms = fields.IntField(default=0)
    timestamp = fields.DatetimeField()

    class Meta:
        table = "crawl_history"
        indexes = ("url", "timestamp")

    async def save(self, *args, **kwargs):  # type: ignore[override]
        if self.error_message and len(self.error_message) > MAX_ERROR_MESSAGE:
            self.error_message = self.error_message[:MAX_ERROR_MESSAGE]
        await super().save(*args, **kwargs)
