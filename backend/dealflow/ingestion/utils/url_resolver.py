"""Resolve aggregator links (click trackers, deal pages) to the merchant's own URL.

Each aggregator gets its own strategy; anything else falls back to
following HTTP redirects. Strategies only return URLs that pass the
merchant allow-list and are not CDNs, social networks or app stores.
"""

import json
import re
from abc import ABC, abstractmethod
from typing import Any, Iterable, List, Optional
from urllib.parse import unquote, urlparse

import structlog
from bs4 import BeautifulSoup

from dealflow.ingestion.utils.http_client import HttpClient
from dealflow.services.cache_service import CacheService, cache_key_for_merchant_url

logger = structlog.get_logger(__name__)

RESOLVER_SOURCE = "url-resolver"

EXCLUDED_PATTERNS = (
    "googleapis.com", "gstatic.com", "google.com/recaptcha",
    "googletagmanager", "google-analytics", "doubleclick",
    "facebook.com", "twitter.com", "instagram.com", "pinterest.com",
    "youtube.com", "linkedin.com", "tiktok.com",
    "cdn.", "static.", "assets.", "images.", "img.",
    ".css", ".js", ".png", ".jpg", ".gif", ".svg", ".woff", ".ttf",
    "fonts.", "cloudflare", "akamai", "fastly",
    "slickdeals.net", "dealnews.com", "techbargains.com",
    "shareasale.com", "linksynergy.com", "impact.com",
    "gravatar.com", "wp.com", "wordpress.com",
    "itunes.apple.com", "apps.apple.com", "play.google.com",
    "microsoft.com/store", "amazon.com/app", "onelink.me",
    "app.adjust.com", "appsflyer.com", "branch.io",
)

MERCHANT_PATTERNS = (
    "amazon.com", "walmart.com", "target.com", "bestbuy.com",
    "ebay.com", "newegg.com", "homedepot.com", "lowes.com",
    "costco.com", "samsclub.com", "bjs.com",
    "kohls.com", "macys.com", "nordstrom.com", "jcpenney.com",
    "adidas.com", "nike.com", "underarmour.com", "reebok.com",
    "apple.com", "dell.com", "hp.com", "lenovo.com", "microsoft.com",
    "samsung.com", "lg.com", "sony.com", "bose.com",
    "wayfair.com", "overstock.com", "bedbathandbeyond.com",
    "gamestop.com", "bhphotovideo.com", "adorama.com",
    "staples.com", "officedepot.com", "dickssportinggoods.com",
    "rei.com", "backcountry.com", "moosejaw.com",
    "zappos.com", "dsw.com", "footlocker.com",
    "sephora.com", "ulta.com", "cvs.com", "walgreens.com",
    "petsmart.com", "petco.com", "chewy.com",
    "williams-sonoma.com", "potterybarn.com", "crateandbarrel.com",
    "ikea.com", "ashleyfurniture.com",
    "gap.com", "oldnavy.com", "bananarepublic.com",
    "hm.com", "zara.com", "uniqlo.com",
    "rakuten.com", "shopify.com", "etsy.com",
)

PRIORITY_JSON_KEYS = ("outclickUrl", "productUrl", "dealUrl", "merchantUrl", "url", "href", "link")

_INVALID_URL_CHAR = re.compile(r"[\s<>\"'{}|\\^\[\]`]")
_SCRIPT_URL_VAR = re.compile(
    r"(?:popUrl|outclickUrl|dealUrl|productUrl|merchantUrl)\s*[:=]\s*[\"']([^\"']+)[\"']",
    re.IGNORECASE,
)
_SLICKDEALS_CLICK = re.compile(r"^https?://(?:www\.)?slickdeals\.net/(?:click|goto|lno|pno)", re.IGNORECASE)


def is_valid_merchant(url: Optional[str]) -> bool:
    if not url or not url.startswith("http"):
        return False
    lowered = url.lower()
    if any(pattern in lowered for pattern in EXCLUDED_PATTERNS):
        return False
    return any(pattern in lowered for pattern in MERCHANT_PATTERNS)


def clean_url(url: Optional[str]) -> Optional[str]:
    """Strip markup/escape artifacts from a scraped URL and validate it.

    Returns:
        Cleaned absolute URL, or None if nothing valid remains
    """
    if not url:
        return None

    cleaned = re.sub(r"<[^>]*>", "", url)
    cleaned = re.sub(r"\\?u003C[^>]*>", "", cleaned, flags=re.IGNORECASE)
    cleaned = re.sub(r"&lt;[^&]*&gt;", "", cleaned, flags=re.IGNORECASE)
    cleaned = (
        cleaned.replace("&amp;", "&")
        .replace("&quot;", '"')
        .replace("&#39;", "'")
        .replace("\\u002F", "/")
        .replace("\\", "")
    )

    if "%3A%2F%2F" in cleaned:
        cleaned = unquote(cleaned)

    match = _INVALID_URL_CHAR.search(cleaned)
    if match:
        cleaned = cleaned[:match.start()]

    parsed = urlparse(cleaned)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return None
    return cleaned


def find_merchant_url_in_json(obj: Any, depth: int = 0) -> Optional[str]:
    """Depth-first search of page data for the first merchant URL, likely keys first."""
    if depth > 10 or not obj:
        return None

    if isinstance(obj, str):
        if obj.startswith("http") and is_valid_merchant(obj):
            return obj
        return None

    if isinstance(obj, list):
        for item in obj:
            found = find_merchant_url_in_json(item, depth + 1)
            if found:
                return found
        return None

    if isinstance(obj, dict):
        for key in PRIORITY_JSON_KEYS:
            if key in obj:
                found = find_merchant_url_in_json(obj[key], depth + 1)
                if found:
                    return found
        for key, value in obj.items():
            if key in PRIORITY_JSON_KEYS:
                continue
            found = find_merchant_url_in_json(value, depth + 1)
            if found:
                return found

    return None


class ResolverStrategy(ABC):
    """Extracts the merchant URL behind one aggregator's pages."""

    hosts: Iterable[str] = ()

    def matches(self, hostname: str) -> bool:
        return any(host in hostname for host in self.hosts)

    async def _fetch_page(self, http: HttpClient, url: str) -> Optional[str]:
        try:
            return await http.get_page(RESOLVER_SOURCE, url)
        except Exception as e:
            logger.debug("resolver_page_fetch_failed", url=url[:60], error=str(e))
            return None

    @abstractmethod
    async def resolve(self, url: str, http: HttpClient) -> Optional[str]:
        pass


class SlickdealsStrategy(ResolverStrategy):
    hosts = ("slickdeals.net",)

    async def resolve(self, url: str, http: HttpClient) -> Optional[str]:
        html = await self._fetch_page(http, url)
        if not html:
            return None
        soup = BeautifulSoup(html, "lxml")

        # Next.js page data
        next_data = soup.find("script", id="__NEXT_DATA__")
        if next_data and next_data.string:
            try:
                found = find_merchant_url_in_json(json.loads(next_data.string))
            except ValueError:
                found = None
            if found:
                return clean_url(found)

        exit_tag = soup.find(attrs={"data-product-exitwebsite": True})
        merchant_domain = exit_tag["data-product-exitwebsite"] if exit_tag else None

        # Slickdeals redirect links
        click = soup.find("a", href=_SLICKDEALS_CLICK)
        if click:
            final_url = await http.get_final_url(RESOLVER_SOURCE, click["href"])
            if is_valid_merchant(final_url):
                return clean_url(final_url)

        if merchant_domain:
            pattern = re.compile(
                r"https?://(?:www\.)?" + re.escape(merchant_domain) + r"[^\"'\s]+",
                re.IGNORECASE,
            )
            direct = pattern.search(html)
            if direct and is_valid_merchant(direct.group(0)):
                return clean_url(direct.group(0))

        script_var = _SCRIPT_URL_VAR.search(html)
        if script_var and is_valid_merchant(script_var.group(1)):
            return clean_url(script_var.group(1))

        return None


class DealNewsStrategy(ResolverStrategy):
    hosts = ("dealnews.com",)

    async def resolve(self, url: str, http: HttpClient) -> Optional[str]:
        html = await self._fetch_page(http, url)
        if not html:
            return None
        soup = BeautifulSoup(html, "lxml")

        tag = soup.find(attrs={"data-click-url": True})
        if tag:
            return clean_url(tag["data-click-url"])

        match = re.search(r'"dealUrl":\s*"([^"]+)"', html, re.IGNORECASE)
        if match:
            return clean_url(match.group(1))

        button = soup.select_one("a.dealButton[href]")
        if button:
            return clean_url(button["href"])
        return None


class TechBargainsStrategy(ResolverStrategy):
    hosts = ("techbargains.com",)

    async def resolve(self, url: str, http: HttpClient) -> Optional[str]:
        html = await self._fetch_page(http, url)
        if not html:
            return None
        soup = BeautifulSoup(html, "lxml")

        tag = soup.find(attrs={"data-outbound-url": True})
        if tag:
            return clean_url(tag["data-outbound-url"])

        link = soup.select_one("a.deal-link[href]")
        if link:
            return clean_url(link["href"])
        return None


class RedirectStrategy(ResolverStrategy):
    """Fallback for unknown hosts: follow HTTP redirects."""

    def matches(self, hostname: str) -> bool:
        return True

    async def resolve(self, url: str, http: HttpClient) -> Optional[str]:
        return await http.get_final_url(RESOLVER_SOURCE, url)


DEFAULT_STRATEGIES: List[ResolverStrategy] = [
    SlickdealsStrategy(),
    DealNewsStrategy(),
    TechBargainsStrategy(),
    RedirectStrategy(),
]


class MerchantUrlResolver:
    """Resolves deal URLs through the first matching strategy, with caching."""

    def __init__(
        self,
        http: HttpClient,
        cache: Optional[CacheService] = None,
        strategies: Optional[List[ResolverStrategy]] = None,
        ttl: int = 3600,
    ):
        self.http = http
        self.cache = cache
        self.strategies = strategies if strategies is not None else DEFAULT_STRATEGIES
        self.ttl = ttl
        self.logger = logger.bind(component="url_resolver")

    async def resolve(self, url: Optional[str]) -> Optional[str]:
        """Return the merchant URL behind ``url``, or ``url`` itself when unresolvable."""
        if not url:
            return None

        key = cache_key_for_merchant_url(url)
        if self.cache is not None:
            cached = await self.cache.get(key)
            if cached:
                return cached

        hostname = (urlparse(url).hostname or "").lower()
        strategy = next((s for s in self.strategies if s.matches(hostname)), None)

        merchant_url = url
        if strategy is not None:
            try:
                merchant_url = await strategy.resolve(url, self.http) or url
            except Exception as e:
                self.logger.debug("url_resolution_failed", url=url[:60], error=str(e))
                return url

        if self.cache is not None:
            await self.cache.set(key, merchant_url, self.ttl)

        if merchant_url != url:
            self.logger.info("merchant_url_resolved", source_url=url[:60], merchant_url=merchant_url[:60])
        return merchant_url
