"""RSS/Atom fetch strategy built on feedparser."""

import calendar
import re
from datetime import datetime, timezone
from typing import Any, List, Optional

import feedparser

from dealflow.core.exceptions import FetchError
from dealflow.ingestion.base import Fetcher, RawItem
from dealflow.ingestion.sources import SourceConfig
from dealflow.ingestion.utils.normalizer import clean_text, extract_coupon_code, parse_date

_BARE_AMPERSAND = re.compile(r"&(?!amp;|lt;|gt;|quot;|apos;|#\d+;|#x[\da-fA-F]+;)")
_STRAY_LT = re.compile(r"<(?![/a-zA-Z!?])")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")

_BBCODE = (
    (re.compile(r"\[url[^\]]*\]", re.IGNORECASE), ""),
    (re.compile(r"\[/url\]", re.IGNORECASE), ""),
    (re.compile(r"\[/?list\]", re.IGNORECASE), ""),
    (re.compile(r"\[\*\]"), "• "),
    (re.compile(r"\[/?[biu]\]", re.IGNORECASE), ""),
    (re.compile(r"\[[a-z0-9-]+\.(?:com|net|org|io)\]", re.IGNORECASE), ""),
    (re.compile(r"\*+"), ""),
)

# "[walmart.com]" style markers in Slickdeals descriptions
KNOWN_MERCHANT_DOMAINS = {
    "amazon.com": "Amazon",
    "walmart.com": "Walmart",
    "target.com": "Target",
    "bestbuy.com": "Best Buy",
    "ebay.com": "eBay",
    "newegg.com": "Newegg",
    "homedepot.com": "Home Depot",
    "lowes.com": "Lowe's",
    "costco.com": "Costco",
    "kohls.com": "Kohl's",
    "macys.com": "Macy's",
    "nordstrom.com": "Nordstrom",
    "adidas.com": "Adidas",
    "nike.com": "Nike",
    "bhphotovideo.com": "B&H Photo",
    "samsclub.com": "Sam's Club",
    "staples.com": "Staples",
    "dell.com": "Dell",
    "hp.com": "HP",
    "lenovo.com": "Lenovo",
    "microsoft.com": "Microsoft",
    "cvs.com": "CVS",
    "walgreens.com": "Walgreens",
}

MERCHANT_KEYWORDS = (
    "Amazon", "Walmart", "Target", "Best Buy", "Home Depot", "Costco", "eBay", "Newegg",
    "CVS", "Walgreens", "HP", "Dell", "Lenovo", "Microsoft", "Adidas", "Nike", "Macy",
    "Nordstrom", "Kohl's", "Lowe's", "Staples", "B&H Photo", "Sam's Club", "Sephora", "IKEA",
)

_BRACKET_DOMAIN = re.compile(r"\[([a-z0-9-]+)\.com\]", re.IGNORECASE)
_VIA_MERCHANT = re.compile(r"(?:via|at|from)\s+([A-Z][a-z]+(?:\s+[A-Z][a-z]+)?)")
_INLINE_IMG = re.compile(r"<img[^>]+src=[\"']([^\"']+)[\"']", re.IGNORECASE)


def sanitize_xml(xml: str) -> str:
    """Repair the usual breakage in hand-rolled feeds before parsing."""
    if not xml:
        return ""
    xml = _BARE_AMPERSAND.sub("&amp;", xml)
    xml = _STRAY_LT.sub("&lt;", xml)
    return _CONTROL_CHARS.sub("", xml).strip()


def clean_description(text: str) -> Optional[str]:
    for pattern, replacement in _BBCODE:
        text = pattern.sub(replacement, text)
    text = re.sub(r"\s+", " ", text).strip()
    return text or None


def _raw_description(entry: Any) -> str:
    if entry.get("summary"):
        return entry["summary"]
    for content in entry.get("content") or []:
        if content.get("value"):
            return content["value"]
    return ""


def extract_url(entry: Any) -> Optional[str]:
    url = entry.get("link")
    if not url:
        for link in entry.get("links") or []:
            if link.get("href"):
                url = link["href"]
                break
    if not url:
        guid = entry.get("id")
        if guid and guid.startswith("http"):
            url = guid
    if not url:
        for enclosure in entry.get("enclosures") or []:
            if enclosure.get("href"):
                url = enclosure["href"]
                break
    return url.strip() if url else None


def extract_image(entry: Any) -> Optional[str]:
    for enclosure in entry.get("enclosures") or []:
        href = enclosure.get("href") or enclosure.get("url")
        if href and (enclosure.get("type") or "").startswith("image/"):
            return href

    for key in ("media_content", "media_thumbnail"):
        media = entry.get(key) or []
        if media and media[0].get("url"):
            return media[0]["url"]

    image = entry.get("image")
    if isinstance(image, dict) and image.get("href"):
        return image["href"]

    match = _INLINE_IMG.search(_raw_description(entry))
    return match.group(1) if match else None


def extract_merchant(title: str, description: str) -> Optional[str]:
    """Best guess at the merchant behind a feed entry."""
    lowered = description.lower()
    for domain, name in KNOWN_MERCHANT_DOMAINS.items():
        if f"[{domain}]" in lowered:
            return name

    bracket = _BRACKET_DOMAIN.search(description)
    if bracket:
        return bracket.group(1).replace("-", " ").capitalize()

    via = _VIA_MERCHANT.search(title) or _VIA_MERCHANT.search(description)
    if via:
        return via.group(1)

    for merchant in MERCHANT_KEYWORDS:
        if merchant in title or merchant in description:
            return merchant
    return None


def extract_category(entry: Any) -> Optional[str]:
    tags = entry.get("tags") or []
    if tags:
        category = clean_text(tags[0].get("term"))
        if category and len(category) < 50:
            return category
    return None


def extract_published(entry: Any) -> Optional[datetime]:
    for key in ("published_parsed", "updated_parsed"):
        parsed = entry.get(key)
        if parsed:
            return datetime.fromtimestamp(calendar.timegm(parsed), tz=timezone.utc)
    return parse_date(entry.get("published") or entry.get("updated"))


def transform_entry(entry: Any, source_key: str) -> RawItem:
    title = clean_text(entry.get("title"))
    description = clean_text(_raw_description(entry))
    url = extract_url(entry)
    guid = entry.get("id")

    return {
        "title": title,
        "url": url,
        "description": clean_description(description),
        "image_url": extract_image(entry),
        "merchant": extract_merchant(title, description),
        "category": extract_category(entry),
        "published_at": extract_published(entry),
        "source": source_key,
        "external_id": guid if guid and guid != url else None,
        "coupon_code": extract_coupon_code(title, description),
    }


class RssFetcher(Fetcher):
    """Fetches a source's ``feed_url`` and turns entries into raw items."""

    source_type = "rss"

    async def fetch(self, source: SourceConfig) -> List[RawItem]:
        feed_url = source.config.get("feed_url")
        if not feed_url:
            raise FetchError(source.key, "no feed_url configured")

        self.logger.info("fetching_rss_feed", source=source.key, url=feed_url)
        xml = await self.http.fetch_feed(source.key, feed_url, headers=source.config.get("headers"))
        if not xml or not xml.strip():
            raise FetchError(source.key, "empty RSS response")

        parsed = feedparser.parse(sanitize_xml(xml))
        if parsed.bozo and not parsed.entries:
            raise FetchError(source.key, f"unparseable feed: {parsed.get('bozo_exception')}")

        items: List[RawItem] = []
        error_count = 0
        for entry in parsed.entries:
            try:
                item = transform_entry(entry, source.key)
            except Exception as e:
                error_count += 1
                self.logger.warning(
                    "rss_item_skipped",
                    source=source.key,
                    error=str(e),
                    title=str(entry.get("title", "unknown"))[:50],
                )
                continue
            if item["title"] and item["url"]:
                items.append(item)

        if error_count:
            self.logger.warning("rss_items_skipped", source=source.key, error_count=error_count, total=len(parsed.entries))
        self.logger.info("rss_feed_parsed", source=source.key, item_count=len(items))
        return items
