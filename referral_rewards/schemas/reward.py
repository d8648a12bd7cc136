"""Wallet and coupon response schemas."""

from typing import Optional, List
from decimal import Decimal
from datetime import datetime
import uuid

from referral_rewards.models.reward import RewardType, RewardTxType, RewardTxStatus
from referral_rewards.schemas.base import BaseSchema


class WalletBalance(BaseSchema):
    balance: Decimal
    available_balance: Decimal
    pending_holds: Decimal


class TransactionItem(BaseSchema):
    id: uuid.UUID
    type: RewardTxType
    status: RewardTxStatus
    amount: Optional[Decimal] = None
    description: str
    created_at: datetime


class CouponItem(BaseSchema):
    id: uuid.UUID
    code: Optional[str] = None
    discount_type: RewardType
    discount_value: Optional[Decimal] = None
    service_id: Optional[str] = None
    is_active: bool
    max_uses: int
    used_count: int
    valid_from: Optional[datetime] = None
    valid_to: Optional[datetime] = None
    created_at: datetime


class WalletSummary(BaseSchema):
    wallet: WalletBalance
    transactions: List[TransactionItem] = []
    coupons: List[CouponItem] = []
