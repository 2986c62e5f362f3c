"""Product image discovery for deals whose feed entry carried no image."""

import json
import re
from typing import List, Optional
from urllib.parse import urljoin

import structlog
from bs4 import BeautifulSoup

from dealflow.ingestion.utils.http_client import HttpClient
from dealflow.services.cache_service import CacheService, cache_key_for_images

logger = structlog.get_logger(__name__)

EXTRACTOR_SOURCE = "image-extractor"

# Slickdeals images that appear on every page (site chrome, sidebar ads, placeholders)
EXCLUDED_IMAGE_IDS = (
    "19293397", "19293733", "19290000", "19285", "19286",
    "19292389", "19294090", "19289068", "19293388",
)

NON_PRODUCT_MARKERS = (
    "logo", "icon", "avatar", "tracking", "pixel", "1x1",
    "spacer", "facebook", "twitter", "social",
)

_IMAGE_EXTENSION = re.compile(r"\.(jpg|jpeg|png|gif|webp|avif|thumb|bmp|svg)(\?.*)?$", re.IGNORECASE)
_IMAGE_CDN = re.compile(r"cloudinary|imgix|shopify|amazonaws|cloudfront|akamai", re.IGNORECASE)
_SLICKDEALS_CDN = "https://static.slickdealscdn.com/attachment/"
_SLICKDEALS_ATTACHMENT = re.compile(r"https?://slickdeals\.net/attachment/[^\"'\s<>]+", re.IGNORECASE)
_GALLERY_HINT = re.compile(r"gallery|product|main", re.IGNORECASE)
_CONTENT_CLASS = re.compile(r"content|product|deal", re.IGNORECASE)


def is_valid_image_url(url: Optional[str]) -> bool:
    if not url:
        return False
    lowered = url.lower()
    if "1x1" in lowered or "pixel" in lowered or "tracking" in lowered:
        return False
    return bool(
        _IMAGE_EXTENSION.search(lowered)
        or _IMAGE_CDN.search(lowered)
        or "slickdeals.net/attachment" in lowered
        or "/image" in lowered
        or "/thumb" in lowered
        or "/photo" in lowered
    )


def is_common_site_image(url: str) -> bool:
    if any(image_id in url for image_id in EXCLUDED_IMAGE_IDS):
        return True
    if "200x200" in url or "300x300" in url:
        return True
    # Only 450x450 attachments are product thumbnails
    return "/attachment/" in url and "450x450" not in url


def _looks_like_product(src: str) -> bool:
    return not any(marker in src for marker in NON_PRODUCT_MARKERS)


def make_absolute_url(image_url: str, page_url: str) -> str:
    if image_url.startswith("http"):
        return image_url
    return urljoin(page_url, image_url)


def _meta_content(soup: BeautifulSoup, **attrs) -> Optional[str]:
    tag = soup.find("meta", attrs=attrs)
    if tag and tag.get("content"):
        return tag["content"].strip()
    return None


def og_image(soup: BeautifulSoup) -> Optional[str]:
    return _meta_content(soup, property="og:image")


def twitter_image(soup: BeautifulSoup) -> Optional[str]:
    return _meta_content(soup, **{"name": "twitter:image"})


def schema_image(soup: BeautifulSoup) -> Optional[str]:
    script = soup.find("script", type="application/ld+json")
    if not script or not script.string:
        return None
    try:
        schema = json.loads(script.string)
    except ValueError:
        return None
    if not isinstance(schema, dict):
        return None

    image = schema.get("image")
    if isinstance(image, dict):
        return image.get("url")
    if isinstance(image, list):
        image = image[0] if image else None
    if isinstance(image, str):
        return image
    return schema.get("thumbnailUrl")


def slickdeals_gallery_images(soup: BeautifulSoup) -> List[str]:
    """Images from the deal's own gallery, skipping sidebar/popular-deal rotations."""
    images: List[str] = []

    for img in soup.find_all("img", src=True):
        src = img["src"]
        if not src.startswith(_SLICKDEALS_CDN) or src in images:
            continue
        classes = " ".join(img.get("class", []))
        if "dealImage" in classes or "450x450" in src or "300x300" in src:
            images.append(src)

    return images[:10]


def gallery_images(html: str, soup: BeautifulSoup) -> List[str]:
    images: List[str] = []

    for match in _SLICKDEALS_ATTACHMENT.findall(html):
        if match not in images and not is_common_site_image(match):
            images.append(match)

    for img in soup.find_all("img", src=True):
        hints = " ".join(img.get("class", [])) + " " + (img.get("data-src") or "")
        if _GALLERY_HINT.search(hints) and img["src"] not in images:
            images.append(img["src"])

    return images[:10]


def content_images(soup: BeautifulSoup) -> List[str]:
    images: List[str] = []
    for img in soup.find_all("img", src=True):
        if len(images) >= 10:
            break
        if _looks_like_product(img["src"]):
            images.append(img["src"])
    return images


def first_content_image(soup: BeautifulSoup) -> Optional[str]:
    area = soup.find("main") or soup.find("article") or soup.find("div", class_=_CONTENT_CLASS) or soup
    img = area.find("img", src=True)
    if img and _looks_like_product(img["src"]):
        return img["src"]
    return None


class ImageExtractor:
    """Finds product images on a deal page: meta tags first, then galleries, then content."""

    def __init__(self, http: HttpClient, cache: Optional[CacheService] = None, ttl: int = 3600):
        self.http = http
        self.cache = cache
        self.ttl = ttl
        self.logger = logger.bind(component="image_extractor")

    async def _fetch(self, url: str) -> Optional[str]:
        try:
            return await self.http.get_page(EXTRACTOR_SOURCE, url)
        except Exception as e:
            self.logger.warning("image_page_fetch_failed", url=url[:60], error=str(e))
            return None

    async def extract_image(self, url: Optional[str]) -> Optional[str]:
        """Return the single best image for the page, or None."""
        if not url:
            return None

        key = cache_key_for_images(url, 1)
        if self.cache is not None:
            cached = await self.cache.get_json(key)
            if cached:
                return cached[0]

        html = await self._fetch(url)
        if html is None:
            return None

        soup = BeautifulSoup(html, "lxml")
        image_url = og_image(soup) or twitter_image(soup) or schema_image(soup) or first_content_image(soup)

        if not image_url or not is_valid_image_url(image_url):
            self.logger.debug("no_image_found", url=url[:50])
            return None

        absolute = make_absolute_url(image_url, url)
        if self.cache is not None:
            await self.cache.set_json(key, [absolute], self.ttl)
        return absolute

    async def extract_images(self, url: Optional[str], max_images: int = 5) -> List[str]:
        """Return up to ``max_images`` distinct product images for the page."""
        if not url:
            return []

        key = cache_key_for_images(url, max_images)
        if self.cache is not None:
            cached = await self.cache.get_json(key)
            if cached:
                return cached

        html = await self._fetch(url)
        if html is None:
            return []

        soup = BeautifulSoup(html, "lxml")
        images: List[str] = []

        def add(candidate: Optional[str]) -> None:
            if len(images) >= max_images or not is_valid_image_url(candidate):
                return
            absolute = make_absolute_url(candidate, url)
            if absolute not in images:
                images.append(absolute)

        add(og_image(soup))
        add(twitter_image(soup))

        if "slickdeals.net" in url:
            for img in slickdeals_gallery_images(soup):
                add(img)
        else:
            for img in gallery_images(html, soup):
                add(img)
            for img in content_images(soup):
                add(img)

        if images:
            self.logger.debug("images_extracted", url=url[:50], count=len(images))
            if self.cache is not None:
                await self.cache.set_json(key, images, self.ttl)
        return images
