"""Runtime configuration.

Everything tunable lives in one frozen :class:`Settings` object that is built
once by :func:`load_settings` and handed to each component. Tests derive
variants with :func:`dataclasses.replace`.
"""

from __future__ import annotations

import os
import pathlib
from dataclasses import dataclass, field
from typing import Any, Mapping

import yaml
from dotenv import load_dotenv

from arbwatch.utils.retry import RetryPolicy

SITES_PATH = pathlib.Path(__file__).with_name("sites.yml")
DEFAULT_SP_API_ENDPOINT = "https://sellingpartnerapi-na.amazon.com"
DEFAULT_MARKETPLACE_ID = "ATVPDKIKX0DER"  # US

DEFAULT_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}


@dataclass(frozen=True, slots=True)
class SiteProfile:
    """CSS selectors for each logical field of a product page."""

    title: str = "h1"
    price: str = ""
    stock: str = ""
    image: str = ""
    color: str = ""
    size: str = ""


@dataclass(frozen=True, slots=True)
class SearchEngine:
    name: str
    url_template: str


@dataclass(frozen=True, slots=True)
class CrawlerSettings:
    target_sites: tuple[str, ...] = ()
    search_engines: tuple[SearchEngine, ...] = ()
    profiles: Mapping[str, SiteProfile] = field(default_factory=lambda: {"default": SiteProfile()})
    concurrency: int = 10
    request_timeout: float = 30.0
    max_requests_per_crawl: int = 100
    host_rate: float = 2.0
    retry: RetryPolicy = RetryPolicy()
    headers: Mapping[str, str] = field(default_factory=lambda: dict(DEFAULT_HEADERS))


@dataclass(frozen=True, slots=True)
class ChangeThresholds:
    min_absolute_change: float = 1.00
    min_percentage_change: float = 5.0


@dataclass(frozen=True, slots=True)
class ProfitThresholds:
    min_margin_percent: float = 15.0
    min_profit_amount: float = 5.0


@dataclass(frozen=True, slots=True)
class AlertSettings:
    recipient: str = "alerts@example.com"
    from_email: str = "alerts@arbwatch.local"
    from_name: str = "Arbitrage Alerts"
    opportunity_subject: str = "Profitable Opportunity Found"
    digest_subject: str = "Daily Summary Report"
    immediate_alerts: bool = True
    daily_summary: bool = True
    max_opportunities_per_email: int = 10
    min_hours_between_alerts: float = 24.0


@dataclass(frozen=True, slots=True)
class RetentionSettings:
    history_days: int = 90
    alert_days: int = 30


@dataclass(frozen=True, slots=True)
class MonitoringSettings:
    recheck_after_hours: float = 24.0
    batch_size: int = 100


@dataclass(frozen=True, slots=True)
class PricingSettings:
    endpoint: str = DEFAULT_SP_API_ENDPOINT
    token_url: str = "https://api.amazon.com/auth/o2/token"
    marketplace_id: str = DEFAULT_MARKETPLACE_ID
    refresh_token: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    timeout: float = 15.0
    cache_max_age_hours: float = 24.0


@dataclass(frozen=True, slots=True)
class SchedulerSettings:
    monitoring_interval_hours: int = 24
    cleanup_interval_hours: int = 168
    job_timeout_seconds: float = 3600.0


@dataclass(frozen=True, slots=True)
class Settings:
    crawler: CrawlerSettings = CrawlerSettings()
    changes: ChangeThresholds = ChangeThresholds()
    profit: ProfitThresholds = ProfitThresholds()
    alerts: AlertSettings = AlertSettings()
    retention: RetentionSettings = RetentionSettings()
    monitoring: MonitoringSettings = MonitoringSettings()
    pricing: PricingSettings = PricingSettings()
    scheduler: SchedulerSettings = SchedulerSettings()


def load_site_config(path: pathlib.Path | None = None) -> dict[str, Any]:
    data = yaml.safe_load((path or SITES_PATH).read_text()) or {}
    profiles = {domain: SiteProfile(**fields) for domain, fields in (data.get("profiles") or {}).items()}
    profiles.setdefault("default", SiteProfile())
    return {
        "target_sites": tuple(site.lower() for site in data.get("target_sites") or ()),
        "search_engines": tuple(SearchEngine(**engine) for engine in data.get("search_engines") or ()),
        "profiles": profiles,
    }


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    return float(value) if value not in (None, "") else default


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    return int(value) if value not in (None, "") else default


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value in (None, ""):
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def load_settings() -> Settings:
    """Build settings from the environment (and ``.env``) plus the sites file."""
    load_dotenv()
    sites_file = os.environ.get("ARBWATCH_SITES_FILE")
    site_config = load_site_config(pathlib.Path(sites_file) if sites_file else None)
    crawler = CrawlerSettings(
        **site_config,
        concurrency=_env_int("CRAWL_CONCURRENCY", 10),
        request_timeout=_env_float("CRAWL_REQUEST_TIMEOUT", 30.0),
        max_requests_per_crawl=_env_int("CRAWL_MAX_REQUESTS", 100),
        host_rate=_env_float("CRAWL_HOST_RATE", 2.0),
        retry=RetryPolicy(
            max_retries=_env_int("CRAWL_MAX_RETRIES", 3),
            min_delay=_env_float("CRAWL_RETRY_MIN_DELAY", 2.0),
            max_delay=_env_float("CRAWL_RETRY_MAX_DELAY", 10.0),
        ),
    )
    return Settings(
        crawler=crawler,
        changes=ChangeThresholds(
            min_absolute_change=_env_float("MIN_ABSOLUTE_CHANGE", 1.00),
            min_percentage_change=_env_float("MIN_PERCENTAGE_CHANGE", 5.0),
        ),
        profit=ProfitThresholds(
            min_margin_percent=_env_float("MIN_MARGIN_PERCENT", 15.0),
            min_profit_amount=_env_float("MIN_PROFIT_AMOUNT", 5.0),
        ),
        alerts=AlertSettings(
            recipient=os.environ.get("ALERT_RECIPIENT", "alerts@example.com"),
            from_email=os.environ.get("ALERT_FROM_EMAIL", "alerts@arbwatch.local"),
            from_name=os.environ.get("ALERT_FROM_NAME", "Arbitrage Alerts"),
            immediate_alerts=_env_bool("ALERT_IMMEDIATE", True),
            daily_summary=_env_bool("ALERT_DAILY_SUMMARY", True),
            max_opportunities_per_email=_env_int("ALERT_MAX_PER_EMAIL", 10),
            min_hours_between_alerts=_env_float("ALERT_MIN_HOURS_BETWEEN", 24.0),
        ),
        retention=RetentionSettings(
            history_days=_env_int("RETENTION_HISTORY_DAYS", 90),
            alert_days=_env_int("RETENTION_ALERT_DAYS", 30),
        ),
        monitoring=MonitoringSettings(
            recheck_after_hours=_env_float("MONITOR_RECHECK_HOURS", 24.0),
            batch_size=_env_int("MONITOR_BATCH_SIZE", 100),
        ),
        pricing=PricingSettings(
            endpoint=os.environ.get("SP_API_ENDPOINT", DEFAULT_SP_API_ENDPOINT),
            marketplace_id=os.environ.get("SP_API_MARKETPLACE_ID", DEFAULT_MARKETPLACE_ID),
            refresh_token=os.environ.get("SP_API_REFRESH_TOKEN"),
            client_id=os.environ.get("SP_API_CLIENT_ID"),
            client_secret=os.environ.get("SP_API_CLIENT_SECRET"),
            cache_max_age_hours=_env_float("PRICING_CACHE_MAX_AGE_HOURS", 24.0),
        ),
        scheduler=SchedulerSettings(
            job_timeout_seconds=_env_float("JOB_TIMEOUT_SECONDS", 3600.0),
        ),
    )
