"""Coupon model for ingested promo codes and store-wide offers."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Optional

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from dealflow.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin

if TYPE_CHECKING:
    from dealflow.models.company import Company


class Coupon(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A coupon ingested from an external feed."""

    __tablename__ = "coupons"
    __table_args__ = (
        UniqueConstraint("source", "external_id", name="uq_coupons_source_external_id"),
    )

    company_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        ForeignKey("companies.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )

    title: Mapped[str] = mapped_column(String(300), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    coupon_code: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    coupon_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="percentage",
        comment="Type: 'percentage', 'fixed_amount', 'free_shipping', 'bogo'"
    )
    discount_value: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    minimum_order_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    maximum_discount_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    terms_conditions: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    source: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    source_url: Mapped[Optional[str]] = mapped_column(String(2000), nullable=True, unique=True)
    url_hash: Mapped[Optional[str]] = mapped_column(String(32), nullable=True, index=True)
    external_id: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    merchant: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    featured_image: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    images: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)

    quality_score: Mapped[Decimal] = mapped_column(Numeric(4, 3), nullable=False, default=Decimal("0.5"))
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    verification_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    company: Mapped[Optional["Company"]] = relationship(back_populates="coupons")

    def __repr__(self) -> str:
        return f"<Coupon(id={self.id}, source='{self.source}', code='{self.coupon_code}')>"
