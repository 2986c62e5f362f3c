"""Deal model for ingested third-party deal listings."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Optional

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from dealflow.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin

if TYPE_CHECKING:
    from dealflow.models.company import Company


class Deal(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A deal ingested from an external feed.

    Deals always enter as 'pending'; approval happens in the moderation
    workflow, never in the ingestion pipeline.
    """

    __tablename__ = "deals"
    __table_args__ = (
        UniqueConstraint("source", "external_id", name="uq_deals_source_external_id"),
    )

    company_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        ForeignKey("companies.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )

    # Content
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    url: Mapped[str] = mapped_column(String(2000), nullable=False, unique=True, comment="Merchant URL")
    source_url: Mapped[Optional[str]] = mapped_column(
        String(2000), nullable=True, comment="Original aggregator URL"
    )
    url_hash: Mapped[Optional[str]] = mapped_column(
        String(32), nullable=True, index=True, comment="md5 of the canonical URL"
    )
    image_url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    images: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)

    # Pricing
    price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    original_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    currency: Mapped[str] = mapped_column(String(5), nullable=False, default="USD")
    coupon_code: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    deal_type: Mapped[str] = mapped_column(String(20), nullable=False, default="discount")

    merchant: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    category: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Provenance
    source: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    external_id: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    # Moderation
    quality_score: Mapped[Decimal] = mapped_column(Numeric(4, 3), nullable=False, default=Decimal("0.5"))
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="pending",
        index=True,
        comment="Status: 'pending', 'approved', 'rejected'"
    )
    verification_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    company: Mapped[Optional["Company"]] = relationship(back_populates="deals")

    def __repr__(self) -> str:
        return f"<Deal(id={self.id}, source='{self.source}', title='{self.title[:30]}')>"
