from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from bs4 import BeautifulSoup
from loguru import logger
from selectolax.parser import HTMLParser

from catalog_crawler.errors import ExtractionFailure
from catalog_crawler.models import CatalogRecord, RecordAttribute
from catalog_crawler.utils.filters import is_item_link
from catalog_crawler.utils.url_utils import canonical_item_id, get_domain, normalize_url


MAX_DESCRIPTION_CHARS = 5000
DEFAULT_ACCORD_STRENGTH = 50

CONCENTRATIONS = (
    "Eau de Parfum",
    "Eau de Toilette",
    "Eau de Cologne",
    "Extrait",
    "Parfum",
    "Cologne",
)

_YEAR_RE = re.compile(r"\b(?:19|20)\d{2}\b")
_WIDTH_RE = re.compile(r"width:\s*(\d+)")


@dataclass(frozen=True)
class SelectorStrategy:
    """CSS selectors for one generation of the catalog's page layout.

    A selector may end in ``@attr`` to read an attribute instead of the text.
    Lists are tried in order; the first non-empty value wins.
    """

    name: str
    listing_links: str
    title: Tuple[str, ...]
    brand: Tuple[str, ...]
    release_year: Tuple[str, ...] = ()
    gender: Tuple[str, ...] = ()
    concentration: Tuple[str, ...] = ()
    description: Tuple[str, ...] = ()
    rating_value: Tuple[str, ...] = ()
    rating_count: Tuple[str, ...] = ()
    longevity: Tuple[str, ...] = ()
    sillage: Tuple[str, ...] = ()
    rating_bars: Optional[str] = None
    note_blocks: Optional[str] = None
    note_items: str = "a"
    creators: Optional[str] = None
    accords: Optional[str] = None
    seasons: Optional[str] = None
    occasions: Optional[str] = None
    note_positions: Dict[str, str] = field(default_factory=dict)


STRATEGIES: Dict[str, SelectorStrategy] = {
    "v1": SelectorStrategy(
        name="v1",
        listing_links='a[href*="/Perfumes/"], a.fragrance-link',
        title=('h1[itemprop="name"]', "h1.fragrance-name", "h1"),
        brand=('span[itemprop="brand"]', ".brand-name", 'a[href*="/brand/"]'),
        release_year=(".release-year",),
        gender=(".gender", '[itemprop="gender"]'),
        concentration=(".concentration", ".fragrance-type", '[itemprop="category"]'),
        description=('[itemprop="description"]', ".fragrance-description", ".description"),
        rating_value=('[itemprop="ratingValue"]', ".rating-value", ".average-rating"),
        rating_count=('[itemprop="ratingCount"]', ".rating-count", ".votes-count"),
        note_blocks=".pyramid-level, .notes-section",
        note_items="a",
        creators='.perfumer-name, a[href*="/perfumer/"]',
        accords=".accord-bar, .accord",
        seasons=".season-rating [data-season], .seasons li",
        occasions=".occasion-rating [data-occasion], .occasions li, .usage li",
        note_positions={"top": "top", "heart": "middle", "middle": "middle", "base": "base"},
    ),
    "v2": SelectorStrategy(
        name="v2",
        listing_links='a[href*="/Perfumes/"]',
        title=('h1[itemprop="name"]', "h1.p_name_h1", ".fragrance-name", "h1"),
        brand=(
            'span[itemprop="brand"] span[itemprop="name"]',
            'span[itemprop="brand"]',
            ".brand-name",
            'a[href*="/Brands/"]',
        ),
        release_year=(".release-year", "div.launch_year"),
        gender=(".gender", '[itemprop="gender"]', ".for_gender"),
        concentration=(".concentration", ".fragrance-type", '[itemprop="category"]'),
        description=('[itemprop="description"]', ".fragrance-description", ".p_desc", ".description"),
        rating_value=('[itemprop="ratingValue"]@content', ".rating-value", ".average-rating", ".rating_big_alt"),
        rating_count=('[itemprop="ratingCount"]@content', ".rating-count", ".votes-count"),
        longevity=(".longevity .rating",),
        sillage=(".sillage .rating",),
        note_blocks=".pyramid .pyramid-level, .notes-pyramid .level",
        note_items="a",
        creators='.perfumer a, a[href*="/Noses/"]',
        accords=".accords .accord",
        seasons=".season-ratings .season",
        occasions=".occasions .occasion",
        note_positions={"top": "top", "heart": "middle", "middle": "middle", "base": "base"},
    ),
    "v3": SelectorStrategy(
        name="v3",
        listing_links='a[href*="/Perfumes/"]',
        title=("h1",),
        brand=(
            '[itemprop="brand"] [itemprop="name"]',
            '[itemprop="brand"]',
            ".brand_in_header",
            ".brand-name",
            'a[href*="/Brands/"]',
        ),
        gender=(".gender_text", '[itemprop="gender"]', ".for_gender"),
        concentration=(".fragrance-type", '[itemprop="category"]'),
        description=(
            '[itemprop="description"]',
            ".fragrance_description",
            ".p_desc",
            'meta[name="description"]@content',
        ),
        rating_value=('[itemprop="aggregateRating"] [itemprop="ratingValue"]', ".ratingvalue", ".rating_big_alt"),
        rating_count=('[itemprop="aggregateRating"] [itemprop="ratingCount"]', ".rating_count"),
        rating_bars=".barfiller_element",
        note_blocks=".pyramid_block",
        note_items=".clickable_note_img",
        creators='.perfumer a, a[href*="/Noses/"], .nose_name',
        accords=".main_accords_bar .accords_block, .accord_element",
        note_positions={"nb_t": "top", "nb_m": "middle", "nb_b": "base"},
    ),
}

DEFAULT_STRATEGY = "v3"


def get_strategy(name: str) -> SelectorStrategy:
    try:
        return STRATEGIES[name]
    except KeyError:
        raise ValueError(f"unknown extractor strategy {name!r}; expected one of {sorted(STRATEGIES)}") from None


# --------------------------
#  Small parsing helpers
# --------------------------
def _clean(text: Optional[str]) -> str:
    return " ".join((text or "").split())


def _select_value(soup: BeautifulSoup, selector: str) -> str:
    attr = None
    if "@" in selector:
        selector, attr = selector.rsplit("@", 1)
    node = soup.select_one(selector)
    if node is None:
        return ""
    if attr:
        return _clean(node.get(attr))
    return _clean(node.get_text(" "))


def first_value(soup: BeautifulSoup, selectors: Tuple[str, ...]) -> str:
    for selector in selectors:
        value = _select_value(soup, selector)
        if value:
            return value
    return ""


def _to_float(text: str) -> Optional[float]:
    match = re.search(r"\d+(?:[.,]\d+)?", text or "")
    if not match:
        return None
    return float(match.group(0).replace(",", "."))


def _to_int(text: str) -> Optional[int]:
    digits = re.sub(r"\D", "", text or "")
    return int(digits) if digits else None


class CatalogExtractor:
    """Turns listing and detail pages into item URLs and CatalogRecords.

    Pure: no network, no persistence. Listing pages are scanned with selectolax;
    detail pages are parsed with BeautifulSoup on lxml.
    """

    def __init__(self, strategy: str | SelectorStrategy = DEFAULT_STRATEGY):
        self.strategy = strategy if isinstance(strategy, SelectorStrategy) else get_strategy(strategy)

    # --------------------------
    #  Listing pages
    # --------------------------
    def parse_listing(self, content: str, base_url: str) -> List[str]:
        tree = HTMLParser(content or "")
        base_domain = get_domain(base_url)
        urls: List[str] = []
        seen = set()

        for node in tree.css(self.strategy.listing_links):
            normalized = normalize_url(base_url, node.attributes.get("href"))
            if not normalized or normalized in seen:
                continue
            if not is_item_link(base_domain, normalized):
                continue
            seen.add(normalized)
            urls.append(normalized)

        logger.debug(f"Found {len(urls)} item URLs on {base_url}")
        return urls

    # --------------------------
    #  Detail pages
    # --------------------------
    def parse_detail(self, content: str, url: str) -> CatalogRecord:
        try:
            soup = BeautifulSoup(content or "", "lxml")
            return self._build_record(soup, url)
        except ExtractionFailure:
            raise
        except Exception as exc:
            raise ExtractionFailure(f"failed to parse {url}: {exc!r}", url=url) from exc

    def _build_record(self, soup: BeautifulSoup, url: str) -> CatalogRecord:
        s = self.strategy
        brand = first_value(soup, s.brand) or "Unknown"
        name, year = self._name_and_year(soup, brand)
        if not name:
            raise ExtractionFailure(f"no item name found on {url}", url=url)

        description = first_value(soup, s.description)
        rating_value, rating_count, longevity, sillage = self._ratings(soup)

        record = CatalogRecord(
            item_id=canonical_item_id(url),
            url=url,
            name=name,
            brand=brand,
            release_year=year,
            gender=self._gender(soup, description),
            concentration=self._concentration(soup),
            description=description[:MAX_DESCRIPTION_CHARS] or None,
            rating_value=rating_value,
            rating_count=rating_count,
            longevity_rating=longevity,
            sillage_rating=sillage,
        )
        record.attributes.extend(self._notes(soup))
        record.attributes.extend(
            RecordAttribute(kind="creator", name=n) for n in self._unique_texts(soup, s.creators)
        )
        record.attributes.extend(self._accords(soup))
        record.attributes.extend(self._scored(soup, s.seasons, "season"))
        record.attributes.extend(self._scored(soup, s.occasions, "occasion"))
        return record

    def _name_and_year(self, soup: BeautifulSoup, brand: str) -> Tuple[str, Optional[int]]:
        title = first_value(soup, self.strategy.title)

        year_source = first_value(soup, self.strategy.release_year) or title
        year_match = _YEAR_RE.search(year_source)
        year = int(year_match.group(0)) if year_match else None

        name = title
        title_year = _YEAR_RE.search(name)
        if title_year:
            name = _clean(name.replace(title_year.group(0), ""))
        if brand != "Unknown" and name.endswith(brand) and name != brand:
            name = name[: -len(brand)].strip()
        return name, year

    def _gender(self, soup: BeautifulSoup, description: str) -> Optional[str]:
        text = description.lower()
        if "women and men" in text or "unisex" in text:
            return "Unisex"
        if "for women" in text:
            return "Women"
        if "for men" in text:
            return "Men"
        return first_value(soup, self.strategy.gender) or None

    def _concentration(self, soup: BeautifulSoup) -> Optional[str]:
        title = first_value(soup, self.strategy.title)
        for concentration in CONCENTRATIONS:
            if concentration in title:
                return concentration
        return first_value(soup, self.strategy.concentration) or None

    def _ratings(self, soup: BeautifulSoup):
        s = self.strategy
        value = _to_float(first_value(soup, s.rating_value))
        count = _to_int(first_value(soup, s.rating_count))
        longevity = _to_float(first_value(soup, s.longevity))
        sillage = _to_float(first_value(soup, s.sillage))

        if s.rating_bars:
            for bar in soup.select(s.rating_bars):
                votes = _to_float(bar.get("data-total_votings", ""))
                if votes is None:
                    continue
                score = votes / 10
                kind = bar.get("data-type")
                if kind == "scent" and value is None:
                    value = score
                elif kind == "durability":
                    longevity = score
                elif kind == "sillage":
                    sillage = score
        return value, count, longevity, sillage

    def _note_position(self, block) -> str:
        classes = " ".join(block.get("class") or []).lower()
        for marker, position in self.strategy.note_positions.items():
            if marker in classes:
                return position
        heading = _clean(block.get_text(" ")).lower()
        for marker, position in self.strategy.note_positions.items():
            if marker in heading:
                return position
        return "middle"

    def _notes(self, soup: BeautifulSoup) -> List[RecordAttribute]:
        if not self.strategy.note_blocks:
            return []

        notes: List[RecordAttribute] = []
        for block in soup.select(self.strategy.note_blocks):
            position = self._note_position(block)
            for item in block.select(self.strategy.note_items):
                images = item.select("img[alt]") if item.name != "img" else [item]
                names = [_clean(img.get("alt")) for img in images] or [_clean(item.get_text(" "))]
                for name in names:
                    if name and "Notes" not in name:
                        notes.append(RecordAttribute(kind="note", name=name, position=position))
        return notes

    def _unique_texts(self, soup: BeautifulSoup, selector: Optional[str]) -> List[str]:
        if not selector:
            return []
        names: List[str] = []
        for node in soup.select(selector):
            name = _clean(node.get_text(" "))
            if name and name not in names:
                names.append(name)
        return names

    def _accords(self, soup: BeautifulSoup) -> List[RecordAttribute]:
        if not self.strategy.accords:
            return []

        accords: Dict[str, RecordAttribute] = {}
        for node in soup.select(self.strategy.accords):
            name = _clean(node.get_text(" "))
            if not name or name in accords:
                continue
            strength = DEFAULT_ACCORD_STRENGTH
            width = _WIDTH_RE.search(node.get("style") or "")
            if width:
                strength = int(width.group(1))
            elif node.get("data-strength"):
                strength = _to_int(node["data-strength"]) or DEFAULT_ACCORD_STRENGTH
            accords[name] = RecordAttribute(kind="accord", name=name, score=strength)
        return list(accords.values())

    def _scored(self, soup: BeautifulSoup, selector: Optional[str], kind: str) -> List[RecordAttribute]:
        if not selector:
            return []

        items: List[RecordAttribute] = []
        for node in soup.select(selector):
            name = _clean(node.get(f"data-{kind}") or node.get("data-name") or re.sub(r"[\d%]+", "", node.get_text(" ")))
            if not name:
                continue
            score = _to_int(node.get("data-rating") or node.get("data-value") or "")
            if score is None:
                score = _to_int(node.get_text(" "))
            items.append(RecordAttribute(kind=kind, name=name, score=score))
        return items
