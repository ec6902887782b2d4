import asyncio
import enum
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import urlparse

from loguru import logger

from catalog_crawler.monitoring.metrics_server import ROBOTS_FETCHES
from catalog_crawler.utils.url_utils import get_domain


ROBOTS_CACHE_TTL = timedelta(hours=24)
ROBOTS_FAILURE_TTL = timedelta(minutes=15)


class RuleSetStatus(str, enum.Enum):
    PARSED = "parsed"
    NOT_FOUND = "not_found"
    UNAVAILABLE = "unavailable"


@dataclass
class AccessRule:
    """One robots.txt group: the user agents it names and their path rules."""

    scopes: List[str] = field(default_factory=list)
    allow_patterns: List[str] = field(default_factory=list)
    disallow_patterns: List[str] = field(default_factory=list)
    crawl_delay_seconds: Optional[float] = None


@dataclass
class AccessRuleSet:
    host: str
    status: RuleSetStatus
    fetched_at: datetime
    ttl: timedelta
    rules: List[AccessRule] = field(default_factory=list)
    sitemaps: List[str] = field(default_factory=list)

    def is_fresh(self, now: datetime) -> bool:
        return now - self.fetched_at < self.ttl

    def rule_for(self, user_agent: str) -> Optional[AccessRule]:
        """Group naming our product token wins, then ``*``."""
        token = product_token(user_agent)
        wildcard: Optional[AccessRule] = None

        for rule in self.rules:
            for scope in rule.scopes:
                if scope == "*":
                    if wildcard is None:
                        wildcard = rule
                elif product_token(scope) == token:
                    return rule

        return wildcard


def product_token(user_agent: str) -> str:
    """``CatalogCrawler/1.0 (+contact)`` -> ``catalogcrawler``."""
    parts = user_agent.strip().split("/", 1)[0].split()
    return parts[0].lower() if parts else ""


# -------------------------------------------------------
#  robots.txt parsing and matching
# -------------------------------------------------------
def parse_robots_txt(text: str) -> Tuple[List[AccessRule], List[str]]:
    rules: List[AccessRule] = []
    sitemaps: List[str] = []
    current: Optional[AccessRule] = None
    collecting_agents = False

    for raw_line in text.splitlines():
        line = raw_line.split("#", 1)[0].strip()
        if not line or ":" not in line:
            continue

        key, value = line.split(":", 1)
        key = key.strip().lower()
        value = value.strip()

        if key == "user-agent":
            if current is None or not collecting_agents:
                current = AccessRule()
                rules.append(current)
                collecting_agents = True
            current.scopes.append(value.lower())
            continue

        if key == "sitemap":
            if value:
                sitemaps.append(value)
            continue

        if current is None:
            continue
        collecting_agents = False

        if key == "allow" and value:
            current.allow_patterns.append(value)
        elif key == "disallow" and value:
            current.disallow_patterns.append(value)
        elif key == "crawl-delay":
            try:
                current.crawl_delay_seconds = float(value)
            except ValueError:
                logger.debug(f"Ignoring invalid Crawl-delay value: {value!r}")

    return rules, sitemaps


def _pattern_to_regex(pattern: str) -> "re.Pattern[str]":
    anchored = pattern.endswith("$")
    if anchored:
        pattern = pattern[:-1]
    body = ".*".join(re.escape(part) for part in pattern.split("*"))
    return re.compile(body + ("$" if anchored else ""))


def pattern_matches(pattern: str, path: str) -> bool:
    return _pattern_to_regex(pattern).match(path) is not None


def evaluate(rule: Optional[AccessRule], path: str) -> bool:
    if rule is None:
        return True
    if any(pattern_matches(p, path) for p in rule.allow_patterns):
        return True
    if any(pattern_matches(p, path) for p in rule.disallow_patterns):
        return False
    return True


# -------------------------------------------------------
#  Checker
# -------------------------------------------------------
class AccessPolicyChecker:
    """Fetch, cache and evaluate robots.txt rules per host."""

    def __init__(
        self,
        client,
        user_agent: str,
        cache_ttl: timedelta = ROBOTS_CACHE_TTL,
        failure_ttl: timedelta = ROBOTS_FAILURE_TTL,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.client = client
        self.user_agent = user_agent
        self.cache_ttl = cache_ttl
        self.failure_ttl = failure_ttl
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._cache: Dict[str, AccessRuleSet] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    # -------------------------------------------------------
    async def is_allowed(self, url: str) -> bool:
        try:
            parsed = urlparse(url)
            rule_set = await self.get_rule_set(url)
            path = parsed.path or "/"
            if parsed.query:
                path = f"{path}?{parsed.query}"
            allowed = evaluate(rule_set.rule_for(self.user_agent), path)
        except Exception as exc:
            logger.warning(f"Access policy check failed for {url}, allowing: {exc!r}")
            return True

        if not allowed:
            logger.info(f"Disallowed by robots.txt for agent {self.user_agent}: {url}")
        return allowed

    def crawl_delay_for(self, host: str) -> Optional[float]:
        rule_set = self._cache.get(host.lower())
        if rule_set is None:
            return None
        rule = rule_set.rule_for(self.user_agent)
        return rule.crawl_delay_seconds if rule else None

    def sitemaps_for(self, host: str) -> List[str]:
        rule_set = self._cache.get(host.lower())
        return list(rule_set.sitemaps) if rule_set else []

    # -------------------------------------------------------
    async def get_rule_set(self, url: str) -> AccessRuleSet:
        parsed = urlparse(url)
        host = get_domain(url)
        robots_url = f"{parsed.scheme or 'https'}://{parsed.netloc.lower()}/robots.txt"

        cached = self._cache.get(host)
        if cached and cached.is_fresh(self._clock()):
            return cached

        lock = self._locks.setdefault(host, asyncio.Lock())
        async with lock:
            # another task may have refreshed it while we waited
            cached = self._cache.get(host)
            if cached and cached.is_fresh(self._clock()):
                return cached

            rule_set = await self._fetch_rule_set(host, robots_url)
            self._cache[host] = rule_set
            return rule_set

    async def _fetch_rule_set(self, host: str, robots_url: str) -> AccessRuleSet:
        now = self._clock()
        try:
            response = await self.client.get(
                robots_url,
                headers={"User-Agent": self.user_agent},
            )
        except Exception as exc:
            ROBOTS_FETCHES.labels(status="error").inc()
            logger.warning(f"Failed to fetch robots.txt from {robots_url}: {exc!r}")
            return AccessRuleSet(host, RuleSetStatus.UNAVAILABLE, now, self.failure_ttl)

        if response.status_code == 404:
            ROBOTS_FETCHES.labels(status="not_found").inc()
            logger.info(f"No robots.txt at {robots_url}; no restrictions")
            return AccessRuleSet(host, RuleSetStatus.NOT_FOUND, now, self.cache_ttl)

        if response.status_code != 200:
            ROBOTS_FETCHES.labels(status="unavailable").inc()
            logger.warning(
                f"robots.txt at {robots_url} returned {response.status_code}; allowing for now"
            )
            return AccessRuleSet(host, RuleSetStatus.UNAVAILABLE, now, self.failure_ttl)

        rules, sitemaps = parse_robots_txt(getattr(response, "text", "") or "")
        ROBOTS_FETCHES.labels(status="parsed").inc()
        logger.debug(f"Parsed robots.txt for {host}: {len(rules)} groups, {len(sitemaps)} sitemaps")
        return AccessRuleSet(
            host,
            RuleSetStatus.PARSED,
            now,
            self.cache_ttl,
            rules=rules,
            sitemaps=sitemaps,
        )
