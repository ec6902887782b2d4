import os
from typing import Any, Dict, Optional, Tuple

import yaml
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from catalog_crawler.models import QuotaSpec, RunOptions
from catalog_crawler.utils.env_loader import load_environment


DEFAULT_USER_AGENT = "CatalogCrawler/1.0 (+contact)"
DEFAULT_CONFIG_PATH = os.path.join(os.path.dirname(__file__), "../config/config.yaml")

# yaml key under a section -> Config field
_SECTION_KEYS = {
    "crawler": {
        "start_url": "start_url",
        "page_param": "page_param",
        "max_pages": "max_pages",
        "user_agent": "crawler_user_agent",
        "extractor_strategy": "extractor_strategy",
        "skip_existing": "skip_existing",
        "respect_robots": "respect_robots",
    },
    "rate_limit": {
        "crawl_delay_ms": "crawl_delay_ms",
        "concurrent_requests": "concurrent_requests",
        "requests_per_minute": "requests_per_minute",
        "requests_per_hour": "requests_per_hour",
        "max_retries": "max_retries",
    },
}


class Config(BaseSettings):
    database_url: Optional[str] = None
    crawler_user_agent: str = DEFAULT_USER_AGENT
    request_timeout: float = 30.0

    crawl_delay_ms: int = 2000
    max_retries: int = 3
    concurrent_requests: int = 2
    requests_per_minute: int = 30
    requests_per_hour: int = 1000
    backoff_base_ms: int = 1000
    backoff_cap_ms: int = 30_000
    jitter_ms: int = 1000
    robots_cache_ttl_hours: float = 24

    start_url: str = "https://www.parfumo.com/s_perfumes_x.php?g_m=1&g_f=1&g_u=1"
    max_pages: int = 10
    page_param: str = "page"
    skip_existing: bool = True
    respect_robots: bool = True
    extractor_strategy: str = "v3"

    log_level: str = "INFO"
    log_path: str = "logs/crawler.log"
    metrics_port: Optional[int] = None

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        # environment beats the yaml values passed in by load_config()
        return env_settings, dotenv_settings, init_settings, file_secret_settings

    def to_run_options(self, **overrides: Any) -> RunOptions:
        values: Dict[str, Any] = dict(
            start_url=self.start_url,
            max_pages=self.max_pages,
            page_param=self.page_param,
            skip_existing=self.skip_existing,
            respect_access_policy=self.respect_robots,
            concurrency_limit=self.concurrent_requests,
            min_spacing_ms=self.crawl_delay_ms,
            quota_windows=(
                QuotaSpec(window_ms=60_000, capacity=self.requests_per_minute),
                QuotaSpec(window_ms=3_600_000, capacity=self.requests_per_hour),
            ),
            max_retries=self.max_retries,
            backoff_base_ms=self.backoff_base_ms,
            backoff_cap_ms=self.backoff_cap_ms,
            jitter_ms=self.jitter_ms,
            extractor_strategy=self.extractor_strategy,
        )
        values.update({k: v for k, v in overrides.items() if v is not None})
        return RunOptions(**values)


def _load_yaml_config(path: Optional[str] = None) -> Dict[str, Any]:
    config_path = path or os.getenv("CATALOG_CRAWLER_CONFIG") or DEFAULT_CONFIG_PATH
    if not os.path.exists(config_path):
        return {}

    with open(config_path, "r") as f:
        return yaml.safe_load(f) or {}


def _flatten(file_data: Dict[str, Any]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for section, mapping in _SECTION_KEYS.items():
        section_data = file_data.get(section) or {}
        for key, field_name in mapping.items():
            if section_data.get(key) is not None:
                values[field_name] = section_data[key]

    for key, value in file_data.items():
        if key not in _SECTION_KEYS and key in Config.model_fields and value is not None:
            values[key] = value
    return values


def load_config(path: Optional[str] = None) -> Config:
    """Environment > yaml file > defaults."""
    load_environment()
    return Config(**_flatten(_load_yaml_config(path)))

