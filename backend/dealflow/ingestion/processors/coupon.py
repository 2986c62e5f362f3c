"""Coupon variant of the ingestion pipeline."""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from dealflow.config import CouponValidationSettings, settings
from dealflow.ingestion.base import RawItem
from dealflow.ingestion.processors.base import ItemPipeline
from dealflow.ingestion.utils.normalizer import (
    clean_text,
    extract_coupon_code,
    is_valid_url,
    parse_date,
    parse_price,
)
from dealflow.services.dedup_service import COUPON_SCOPE

COUPON_TYPES = ("percentage", "fixed_amount", "free_shipping", "bogo", "other")


class CouponPipeline(ItemPipeline):
    entity = "coupon"
    scope = COUPON_SCOPE
    error_type = "coupon_processing"
    metric_prefix = "coupons"

    def __init__(self, *args: Any, validation: Optional[CouponValidationSettings] = None, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.validation = validation or settings.VALIDATION.coupon

    def normalize(self, raw: RawItem, source: str) -> Dict[str, Any]:
        title = clean_text(raw.get("title"))
        description = clean_text(raw.get("description")) or None

        code = raw.get("coupon_code")
        code = str(code).strip() if code else extract_coupon_code(title, description)

        coupon_type = raw.get("coupon_type") or "percentage"
        if coupon_type not in COUPON_TYPES:
            coupon_type = "other"

        source_url = raw.get("source_url") or raw.get("url")
        return {
            "title": title,
            "description": description,
            "coupon_code": code.upper() if code else None,
            "coupon_type": coupon_type,
            "discount_value": parse_price(raw.get("discount_value") or raw.get("discount")),
            "minimum_order_amount": parse_price(raw.get("minimum_order_amount")),
            "maximum_discount_amount": parse_price(raw.get("maximum_discount_amount")),
            "terms_conditions": clean_text(raw.get("terms_conditions")) or None,
            "expires_at": parse_date(raw.get("expires_at") or raw.get("expiry_date")),
            "source": source,
            "source_url": source_url.strip() if source_url else None,
            "external_id": raw.get("external_id") or raw.get("coupon_id") or None,
            "merchant": (raw.get("merchant") or "").strip() or None,
            "featured_image": raw.get("image_url") or raw.get("featured_image") or None,
        }

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

        code = item.get("coupon_code")
        if code and len(code) > rules.max_code_length:
            warnings.append("Coupon code truncated")
            item["coupon_code"] = code[:rules.max_code_length]

        if item.get("source_url") and not is_valid_url(item["source_url"]):
            errors.append("Invalid URL format")

        discount = item.get("discount_value")
        if discount is not None:
            if discount <= 0:
                errors.append("Discount must be positive")
            elif item.get("coupon_type") == "percentage" and discount > 100:
                errors.append("Percentage discount cannot exceed 100%")

        expires_at = item.get("expires_at")
        if expires_at and expires_at < datetime.now(timezone.utc):
            errors.append("Coupon already expired")

        return errors, warnings

    def insert_data(self, item: Dict[str, Any], source: str) -> Dict[str, Any]:
        return {
            "title": item["title"],
            "description": item.get("description"),
            "coupon_code": item.get("coupon_code"),
            "coupon_type": item.get("coupon_type") or "percentage",
            "discount_value": item.get("discount_value"),
            "minimum_order_amount": item.get("minimum_order_amount"),
            "maximum_discount_amount": item.get("maximum_discount_amount"),
            "terms_conditions": item.get("terms_conditions"),
            "expires_at": item.get("expires_at"),
            "source": source,
            "source_url": item.get("source_url"),
            "external_id": item.get("external_id"),
            "merchant": item.get("merchant"),
            "company_id": item.get("company_id"),
            "featured_image": item.get("featured_image"),
            "images": item.get("images"),
        }

    def error_context(self, raw: RawItem) -> Dict[str, Any]:
        return {"title": raw.get("title"), "code": raw.get("coupon_code"), "merchant": raw.get("merchant")}
