"""Deal variant of the ingestion pipeline."""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from dealflow.config import AutoApprovalSettings, DealValidationSettings, settings
from dealflow.ingestion.base import RawItem
from dealflow.ingestion.processors.base import ItemPipeline
from dealflow.ingestion.utils.normalizer import (
    clean_text,
    extract_coupon_code,
    is_valid_url,
    parse_date,
    parse_price,
)
from dealflow.services.dedup_service import DEAL_SCOPE


def _strip(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value).strip() or None


def calculate_quality_score(item: Dict[str, Any], trusted_sources: List[str]) -> float:
    """Data-completeness score in [0.5, 1.0], advisory only."""
    score = 0.5
    if item.get("image_url"):
        score += 0.1
    if item.get("description") and len(item["description"]) > 50:
        score += 0.1
    if item.get("price") and item.get("original_price"):
        score += 0.1
    if item.get("expires_at"):
        score += 0.05
    if item.get("category"):
        score += 0.05
    if item.get("source") in trusted_sources:
        score += 0.1
    return round(min(1.0, score), 3)


class DealPipeline(ItemPipeline):
    entity = "deal"
    scope = DEAL_SCOPE
    error_type = "deal_processing"
    metric_prefix = "deals"
    enforce_daily_cap = True
    resolve_merchant_urls = True

    def __init__(
        self,
        *args: Any,
        validation: Optional[DealValidationSettings] = None,
        auto_approval: Optional[AutoApprovalSettings] = None,
        **kwargs: Any,
    ):
        super().__init__(*args, **kwargs)
        self.validation = validation or settings.VALIDATION.deal
        self.auto_approval = auto_approval or settings.AUTO_APPROVAL

    def normalize(self, raw: RawItem, source: str) -> Dict[str, Any]:
        title = clean_text(raw.get("title"))
        description = clean_text(raw.get("description")) or None
        coupon_code = _strip(raw.get("coupon_code")) or extract_coupon_code(title, description)

        item = {
            "title": title,
            "url": _strip(raw.get("url")),
            "description": description,
            "image_url": _strip(raw.get("image_url")),
            "price": parse_price(raw.get("price")),
            "original_price": parse_price(raw.get("original_price") or raw.get("list_price")),
            "currency": (_strip(raw.get("currency")) or "USD").upper(),
            "merchant": _strip(raw.get("merchant")),
            "category": _strip(raw.get("category")),
            "expires_at": parse_date(raw.get("expires_at") or raw.get("expiry_date")),
            "source": source,
            "external_id": _strip(raw.get("external_id") or raw.get("product_id") or raw.get("asin")),
            "source_url": _strip(raw.get("source_url") or raw.get("affiliate_url")),
            "coupon_code": coupon_code.upper() if coupon_code else None,
        }
        item["quality_score"] = calculate_quality_score(item, self.auto_approval.trusted_sources)
        return item

    def validate(self, item: Dict[str, Any]) -> Tuple[List[str], List[str]]:
        rules = self.validation
        errors: List[str] = []
        warnings: List[str] = []

        title = item.get("title")
        if not title:
            errors.append("Missing title")
        elif len(title) < rules.min_title_length:
            errors.append(f"Title too short (min {rules.min_title_length} chars)")
        elif len(title) > rules.max_title_length:
            warnings.append(f"Title truncated from {len(title)} chars")
            item["title"] = title[:rules.max_title_length]

        if not item.get("url"):
            errors.append("Missing URL")
        elif not is_valid_url(item["url"]):
            errors.append("Invalid URL format")
        elif len(item["url"]) > rules.max_url_length:
            errors.append(f"URL too long (max {rules.max_url_length} chars)")

        description = item.get("description")
        if description and len(description) > rules.max_description_length:
            warnings.append("Description truncated")
            item["description"] = description[:rules.max_description_length]

        # A cut URL points nowhere, drop it instead
        image_url = item.get("image_url")
        if image_url and len(image_url) > rules.max_image_url_length:
            warnings.append("Image URL dropped (too long)")
            item["image_url"] = None

        code = item.get("coupon_code")
        if code and len(code) > rules.max_code_length:
            warnings.append("Coupon code truncated")
            item["coupon_code"] = code[:rules.max_code_length]

        price = item.get("price")
        list_price = item.get("original_price")
        if price is not None:
            if price < rules.min_price:
                errors.append(f"Price below minimum ({rules.min_price})")
            elif price > rules.max_price:
                errors.append(f"Price above maximum ({rules.max_price})")

        if price is not None and list_price is not None:
            if price >= list_price:
                errors.append("Price must be less than list price")
            else:
                discount = (list_price - price) / list_price * 100
                if discount < rules.min_discount:
                    errors.append(f"Discount too small ({discount:.1f}% < {rules.min_discount}%)")
                elif discount > rules.max_discount:
                    warnings.append(f"Unusually high discount: {discount:.1f}%")

        expires_at = item.get("expires_at")
        if expires_at and expires_at < datetime.now(timezone.utc):
            errors.append("Deal already expired")

        return errors, warnings

    def insert_data(self, item: Dict[str, Any], source: str) -> Dict[str, Any]:
        return {
            "title": item["title"],
            "url": item["url"],
            "source_url": item.get("source_url") or item["url"],
            "description": item.get("description"),
            "image_url": item.get("image_url"),
            "images": item.get("images"),
            "price": item.get("price"),
            "original_price": item.get("original_price"),
            "currency": item.get("currency") or "USD",
            "merchant": item.get("merchant"),
            "category": item.get("category"),
            "expires_at": item.get("expires_at"),
            "company_id": item.get("company_id"),
            "source": source,
            "external_id": item.get("external_id"),
            "quality_score": item.get("quality_score", 0.5),
            "deal_type": "discount",
            "coupon_code": item.get("coupon_code"),
        }

    def error_context(self, raw: RawItem) -> Dict[str, Any]:
        return {"title": raw.get("title"), "url": raw.get("url"), "merchant": raw.get("merchant")}
