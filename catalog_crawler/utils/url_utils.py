import re
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urljoin, urlparse, urlunparse


ITEM_SEGMENT = "Perfumes"


def _clean_tracking_params(query: str) -> str:
    clean_query = re.sub(r"(utm_[^=&]+|sessionid|fbclid|ref|gclid)=[^&]*", "", query, flags=re.IGNORECASE)
    clean_query = re.sub(r"&&+", "&", clean_query).strip("&")
    return clean_query


def normalize_url(base_url: str, link: Optional[str]) -> Optional[str]:
    """Resolve ``link`` against ``base_url`` and strip fragments, tracking params and trailing slashes."""
    if not link:
        return None

    raw_link = link.strip()
    if not raw_link or re.match(r"^(javascript:|mailto:|tel:)", raw_link, re.I):
        return None
    if raw_link.startswith("//"):
        base_scheme = urlparse(base_url).scheme or "https"
        raw_link = f"{base_scheme}:{raw_link}"

    try:
        parsed = urlparse(urljoin(base_url, raw_link))
    except ValueError:
        return None

    if parsed.scheme not in ("http", "https"):
        return None

    path = re.sub(r"/{2,}", "/", parsed.path or "/")
    if path != "/" and path.endswith("/"):
        path = path[:-1]

    parsed = parsed._replace(
        netloc=parsed.netloc.lower(),
        path=path,
        query=_clean_tracking_params(parsed.query),
        fragment="",
    )
    return urlunparse(parsed)


def get_domain(url: str) -> str:
    try:
        netloc = urlparse(url).netloc.lower()
    except ValueError:
        return ""
    return netloc.split(":", 1)[0]


def build_page_url(start_url: str, page: int, page_param: str = "page") -> str:
    """Page 1 is the start URL itself; later pages set ``page_param`` to the page number."""
    if page <= 1:
        return start_url

    parsed = urlparse(start_url)
    params = [(k, v) for k, v in parse_qsl(parsed.query, keep_blank_values=True) if k != page_param]
    params.append((page_param, str(page)))
    return urlunparse(parsed._replace(query=urlencode(params)))


def item_path_segments(url: str) -> list:
    """Path segments after the ``/Perfumes/`` marker, e.g. ``['Chanel', 'No-5']``."""
    segments = [s for s in urlparse(url).path.split("/") if s]
    if ITEM_SEGMENT not in segments:
        return []
    return segments[segments.index(ITEM_SEGMENT) + 1:]


def canonical_item_id(url: str) -> str:
    """Stable identifier for an item URL.

    ``/Perfumes/Brand/Item-Name`` becomes ``brand/item-name``. URLs outside that
    shape fall back to the lower-cased host and path.
    """
    segments = item_path_segments(url)
    if len(segments) >= 2:
        return "/".join(s.lower() for s in segments[:2])

    parsed = urlparse(url)
    path = re.sub(r"/{2,}", "/", parsed.path or "/").rstrip("/")
    return f"{get_domain(url)}{path}".lower()
