"""Company model representing merchants that deals and coupons belong to."""

from typing import TYPE_CHECKING

from sqlalchemy import Boolean, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from dealflow.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin

if TYPE_CHECKING:
    from dealflow.models.coupon import Coupon
    from dealflow.models.deal import Deal


class Company(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Merchant entity, created lazily the first time a merchant is seen.

    New companies start unverified and pending so moderators can review them.
    """

    __tablename__ = "companies"

    name: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    slug: Mapped[str] = mapped_column(String(200), unique=True, index=True, nullable=False)
    is_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="pending",
        comment="Status: 'pending', 'approved', 'rejected'"
    )

    deals: Mapped[list["Deal"]] = relationship(back_populates="company")
    coupons: Mapped[list["Coupon"]] = relationship(back_populates="company")

    def __repr__(self) -> str:
        return f"<Company(id={self.id}, slug='{self.slug}', name='{self.name}')>"
