import re
from urllib.parse import urlparse

from catalog_crawler.utils.url_utils import get_domain, item_path_segments

# static resources are never catalog pages
BLOCKED_EXTENSIONS = (
    ".jpg", ".jpeg", ".png", ".gif", ".webp", ".svg", ".mp4", ".mp3", ".pdf",
    ".zip", ".rar", ".exe", ".apk", ".iso", ".tar", ".gz", ".7z", ".css", ".js"
)


def is_valid_link(base_domain: str, url: str) -> bool:
    """Crawlable same-host http(s) link that is not a static resource."""
    parsed = urlparse(url)
    if not parsed.scheme.startswith("http"):
        return False

    if not parsed.netloc:
        return False

    combined_path = parsed.path
    if parsed.query:
        combined_path = f"{combined_path}?{parsed.query}"
    combined_path = combined_path.lower()

    if any(re.search(re.escape(ext) + r"(?:$|[?#&])", combined_path) for ext in BLOCKED_EXTENSIONS):
        return False

    # subdomains are deliberately treated as foreign
    return get_domain(url) == base_domain


def is_item_link(base_domain: str, url: str) -> bool:
    """Detail page link: ``/Perfumes/<brand>/<item>`` on the catalog host."""
    if not is_valid_link(base_domain, url):
        return False
    return len(item_path_segments(url)) >= 2
