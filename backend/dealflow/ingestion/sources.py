"""Registry of ingestion sources.

Every deal and coupon lands in 'pending' for moderator review regardless of
which source produced it.
"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from dealflow.config import settings

BROWSER_HEADERS = {"User-Agent": settings.HTTP.browser_user_agent}


class SourceRateLimit(BaseModel):
    requests: int
    window_ms: int


class SourceConfig(BaseModel):
    """One external feed/site configuration identified by a stable key."""

    key: str
    enabled: bool = False
    type: Literal["rss", "api"] = "rss"
    entity: Optional[Literal["deal", "coupon"]] = None
    priority: int = 5
    schedule: str = "*/30 * * * *"  # 5-field cron
    rate_limit: Optional[SourceRateLimit] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    fetcher: Optional[str] = None  # dotted path "package.module:callable" for api sources

    @property
    def is_coupon_source(self) -> bool:
        """Explicit entity wins; otherwise infer from the key."""
        if self.entity is not None:
            return self.entity == "coupon"
        return "coupon" in self.key


SOURCES: Dict[str, SourceConfig] = {
    source.key: source
    for source in (
        # RSS feeds
        SourceConfig(
            key="slickdeals_rss",
            enabled=True,
            type="rss",
            priority=1,
            schedule="*/25 * * * *",
            rate_limit=SourceRateLimit(requests=1, window_ms=1_500_000),
            config={
                "feed_url": "https://slickdeals.net/newsearch.php?mode=frontpage&searcharea=deals&searchin=first&rss=1",
            },
        ),
        SourceConfig(
            key="dealnews_rss",
            enabled=False,  # feed returns no items
            type="rss",
            priority=2,
            schedule="*/15 * * * *",
            rate_limit=SourceRateLimit(requests=1, window_ms=900_000),
            config={"feed_url": "https://www.dealnews.com/rss/", "headers": BROWSER_HEADERS},
        ),
        SourceConfig(
            key="techbargains_rss",
            enabled=False,  # 403 Forbidden
            type="rss",
            priority=3,
            schedule="0 */2 * * *",
            rate_limit=SourceRateLimit(requests=1, window_ms=7_200_000),
            config={"feed_url": "https://www.techbargains.com/rss", "headers": BROWSER_HEADERS},
        ),
        # Coupon feeds
        SourceConfig(
            key="slickdeals_coupons",
            enabled=True,
            type="rss",
            entity="deal",  # coupon-code deals are stored as deals
            priority=2,
            schedule="*/25 * * * *",
            rate_limit=SourceRateLimit(requests=1, window_ms=1_500_000),
            config={
                "feed_url": "https://slickdeals.net/newsearch.php?mode=frontpage&searcharea=deals&searchin=first&rss=1&q=coupon+code",
            },
        ),
        SourceConfig(
            key="dealnews_coupons",
            enabled=False,
            type="rss",
            entity="coupon",
            priority=2,
            schedule="*/30 * * * *",
            rate_limit=SourceRateLimit(requests=1, window_ms=1_800_000),
            config={"feed_url": "https://www.dealnews.com/c494/Coupons/rss/", "headers": BROWSER_HEADERS},
        ),
        # Affiliate APIs, enabled once credentials exist
        SourceConfig(
            key="cj_affiliate",
            type="api",
            priority=1,
            schedule="*/30 * * * *",
            rate_limit=SourceRateLimit(requests=1000, window_ms=3_600_000),
            config={"endpoint": "https://advertiser-lookup.api.cj.com/v3/advertiser-lookup"},
        ),
        SourceConfig(
            key="impact",
            type="api",
            priority=1,
            schedule="0 */3 * * *",
            rate_limit=SourceRateLimit(requests=100, window_ms=60_000),
            config={"endpoint": "https://api.impact.com"},
        ),
    )
}


def _is_enabled(source: SourceConfig) -> bool:
    return source.enabled or source.key in settings.get_enabled_source_overrides()


def get_source_config(key: str) -> Optional[SourceConfig]:
    return SOURCES.get(key)


def is_source_enabled(key: str) -> bool:
    source = SOURCES.get(key)
    return source is not None and _is_enabled(source)


def get_enabled_sources() -> List[SourceConfig]:
    """Enabled sources, highest priority (lowest number) first."""
    return sorted((s for s in SOURCES.values() if _is_enabled(s)), key=lambda s: s.priority)


def get_sources_by_type(source_type: str) -> List[SourceConfig]:
    return [s for s in get_enabled_sources() if s.type == source_type]
