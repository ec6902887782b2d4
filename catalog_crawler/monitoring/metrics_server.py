from aiohttp import web
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    generate_latest,
    Counter,
    Gauge,
    Histogram,
)

# -------------------------
# Fetch Metrics
# -------------------------

REQUEST_COUNT = Counter(
    "catalog_crawler_requests_total",
    "Total HTTP requests by outcome",
    ["outcome"],
)

REQUEST_LATENCY = Histogram(
    "catalog_crawler_request_latency_seconds",
    "Time to fetch a page",
)

ROBOTS_FETCHES = Counter(
    "catalog_crawler_robots_fetches_total",
    "robots.txt documents fetched",
    ["status"],
)

# -------------------------
# Scheduler Metrics
# -------------------------

ADMISSIONS = Counter(
    "catalog_crawler_admissions_total",
    "Fetch attempts admitted by the scheduler",
    ["kind"],
)

RETRIES = Counter(
    "catalog_crawler_retries_total",
    "Retries scheduled after transient failures",
)

QUOTA_WAITS = Counter(
    "catalog_crawler_quota_waits_total",
    "Admissions delayed because a quota window was full",
)

IN_FLIGHT = Gauge(
    "catalog_crawler_in_flight",
    "Fetches currently holding a concurrency slot",
)

# -------------------------
# Item Metrics
# -------------------------

ITEMS_PROCESSED = Counter(
    "catalog_crawler_items_processed_total",
    "Detail pages extracted and saved",
)

ITEMS_FAILED = Counter(
    "catalog_crawler_items_failed_total",
    "Detail pages that ended in failure",
    ["reason"],
)

ITEMS_SKIPPED = Counter(
    "catalog_crawler_items_skipped_total",
    "Detail pages skipped without fetching",
    ["reason"],
)


# -------------------------
# /metrics endpoint
# -------------------------

async def metrics_handler(request):
    data = generate_latest()

    # content type must not carry the charset parameter
    ctype = CONTENT_TYPE_LATEST.split(";")[0]

    return web.Response(
        body=data,
        content_type=ctype
    )


async def start_metrics_server(port=8000):
    app = web.Application()
    app.router.add_get("/metrics", metrics_handler)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "0.0.0.0", port)
    await site.start()

    return runner, site
