from dealflow.ingestion.processors.coupon import CouponPipeline
from dealflow.ingestion.processors.deal import DealPipeline

__all__ = ["CouponPipeline", "DealPipeline"]
