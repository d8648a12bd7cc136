"""
Reward wallet and ledger models

The ledger is append-only: rows are never deleted, and only the status of
HOLD and COUPON_USED rows changes after insert. Corrections are new
ADJUSTMENT rows.
"""

from sqlalchemy import Column, String, Numeric, Enum, ForeignKey, Index, UniqueConstraint, Uuid
import enum

from .base import Base, TimestampedModel, UUIDModel, TenantScopedModel

class RewardType(str, enum.Enum):
    WALLET = "wallet"
    PERCENT_DISCOUNT = "percent_discount"
    FIXED_DISCOUNT = "fixed_discount"
    FREE_SERVICE = "free_service"

class RewardTxType(str, enum.Enum):
    HOLD = "hold"
    DEBIT = "debit"
    RELEASE = "release"
    CREDIT = "credit"
    COUPON_ISSUED = "coupon_issued"
    COUPON_USED = "coupon_used"
    ADJUSTMENT = "adjustment"

class RewardTxStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"

class RewardWallet(Base, TimestampedModel, UUIDModel, TenantScopedModel):
    """Wallet balance, one per (tenant scope, user)"""

    __tablename__ = "reward_wallets"

    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False)
    balance = Column(Numeric(10, 2), default=0, nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "location_id", "user_id", name="uq_reward_wallets_scope_user"),
    )

class RewardTransaction(Base, TimestampedModel, UUIDModel, TenantScopedModel):
    """Ledger row"""

    __tablename__ = "reward_transactions"

    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False)
    type = Column(Enum(RewardTxType), nullable=False)
    status = Column(Enum(RewardTxStatus), nullable=False)
    amount = Column(Numeric(10, 2), nullable=True)

    # References
    appointment_id = Column(String(64), nullable=True)
    coupon_id = Column(Uuid(as_uuid=True), ForeignKey("coupons.id"), nullable=True)
    referral_attribution_id = Column(
        Uuid(as_uuid=True), ForeignKey("referral_attributions.id"), nullable=True
    )

    description = Column(String(500), nullable=False, default="")

    __table_args__ = (
        Index("idx_reward_transactions_user_type_status", "user_id", "type", "status"),
        Index("idx_reward_transactions_appointment", "appointment_id", "type", "status"),
        Index("idx_reward_transactions_attribution", "referral_attribution_id"),
    )
