"""
Coupon model
"""

from sqlalchemy import Column, String, Integer, Numeric, Boolean, ForeignKey, Index, CheckConstraint, Enum, DateTime, Uuid

from .base import Base, TimestampedModel, UUIDModel, TenantScopedModel
from .reward import RewardType

class Coupon(Base, TimestampedModel, UUIDModel, TenantScopedModel):
    """Discount or free-service grant, usually issued as a referral reward"""

    __tablename__ = "coupons"

    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=True)  # None: anyone
    code = Column(String(32), nullable=True, index=True)

    # Discount details
    discount_type = Column(Enum(RewardType), nullable=False)
    discount_value = Column(Numeric(10, 2), nullable=True)
    service_id = Column(String(64), nullable=True)

    # Usage limits
    max_uses = Column(Integer, default=1, nullable=False)
    used_count = Column(Integer, default=0, nullable=False)

    # Validity
    valid_from = Column(DateTime(timezone=True), nullable=True)
    valid_to = Column(DateTime(timezone=True), nullable=True)

    # Flipped off on void, never deleted
    is_active = Column(Boolean, default=True, nullable=False)

    __table_args__ = (
        CheckConstraint("used_count >= 0", name="check_non_negative_used_count"),
        CheckConstraint("max_uses > 0", name="check_positive_max_uses"),
        Index("idx_coupons_scope_user_active", "tenant_id", "location_id", "user_id", "is_active"),
    )

    @property
    def remaining_uses(self) -> int:
        return max(0, (self.max_uses or 0) - (self.used_count or 0))
