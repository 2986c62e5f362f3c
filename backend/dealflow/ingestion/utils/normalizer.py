"""Text, price, date and URL normalization for raw feed items."""

import html
import re
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from bs4 import BeautifulSoup

# Tried in order; the first pattern that matches any text wins
COUPON_CODE_PATTERNS = (
    re.compile(r"(?:w/|with|use|via)\s+(?:coupon\s+|promo\s+)?code\s+([A-Z0-9]{3,20})", re.IGNORECASE),
    re.compile(r"(?:coupon|promo)?\s*code:\s*([A-Z0-9]{3,20})", re.IGNORECASE),
    re.compile(r"(?:code|coupon|promo)\s*:?\s*([A-Z0-9]{3,20})", re.IGNORECASE),
)

# Tracking parameters removed before URLs are compared
TRACKING_PARAMS = frozenset({
    "utm_source", "utm_medium", "utm_campaign", "utm_content", "utm_term",
    "ref", "referrer", "source", "affiliate", "aff", "partner",
    "gclid", "fbclid", "msclkid", "dclid", "zanpid", "clickid",
    "mc_cid", "mc_eid", "_ga", "_gl",
})

_CURRENCY_CHARS = re.compile(r"[$,%€£¥₹₩]")


def clean_text(text: Optional[str]) -> str:
    """Strip HTML tags and entities and collapse whitespace.

    Args:
        text: Raw text, possibly containing markup

    Returns:
        Plain text, empty string for missing input
    """
    if not text:
        return ""
    if "<" in text:
        text = BeautifulSoup(text, "lxml").get_text(" ")
    text = html.unescape(text).replace("\xa0", " ")
    return re.sub(r"\s+", " ", text).strip()


def parse_price(value: Any) -> Optional[float]:
    """Parse a price-like value into a float.

    Handles various formats:
    - 12.99 -> 12.99
    - "$1,234.50" -> 1234.5
    - "15%" -> 15.0
    - "free" -> None

    Returns:
        Parsed number, or None if parsing fails
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        return None

    cleaned = _CURRENCY_CHARS.sub("", value).strip()
    match = re.match(r"-?\d+(?:\.\d+)?", cleaned)
    if not match:
        return None
    try:
        return float(match.group(0))
    except ValueError:
        return None


def parse_date(value: Any) -> Optional[datetime]:
    """Parse a date defensively. Invalid input yields None, never an error.

    Accepts datetimes, ISO 8601 strings, RFC 2822 strings (RSS pubDate)
    and unix timestamps. Naive results are taken as UTC.
    """
    if not value:
        return None

    parsed: Optional[datetime] = None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            parsed = datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        text = value.strip()
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            try:
                parsed = parsedate_to_datetime(text)
            except (TypeError, ValueError, IndexError):
                return None

    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def slugify(name: str) -> str:
    """Create a URL-friendly slug ("Best Buy!" -> "best-buy")."""
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")


def extract_coupon_code(*texts: Optional[str]) -> Optional[str]:
    """Find an embedded code such as "use code SAVE20" or "code: SAVE20"."""
    texts = [text for text in texts if text]
    for pattern in COUPON_CODE_PATTERNS:
        for text in texts:
            match = pattern.search(text)
            if match:
                return match.group(1).upper()
    return None


def is_valid_url(url: Optional[str]) -> bool:
    if not url:
        return False
    parsed = urlparse(url)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def normalize_url(url: Optional[str]) -> Optional[str]:
    """Canonicalize a URL for comparison.

    Removes tracking parameters, lowercases the host, drops a leading
    "www." and sorts the remaining query parameters.

    Args:
        url: URL to normalize

    Returns:
        Normalized URL (lowercased), or None for missing input
    """
    if not url:
        return None

    parsed = urlparse(url.strip())
    if not parsed.scheme or not parsed.netloc:
        return url.strip().lower()

    host = parsed.netloc.lower()
    if host.startswith("www."):
        host = host[4:]

    params = sorted(
        (k, v) for k, v in parse_qsl(parsed.query, keep_blank_values=True)
        if k not in TRACKING_PARAMS
    )
    query = urlencode(params)

    return urlunparse((parsed.scheme.lower(), host, parsed.path, "", query, "")).lower()
