"""Models package initialization"""

from .base import Base
from .user import User
from .reward import RewardType, RewardTxType, RewardTxStatus, RewardWallet, RewardTransaction
from .coupon import Coupon
from .referral import (
    ReferralAttributionStatus,
    ReferralChannel,
    OPEN_STATUSES,
    ReferralCode,
    ReferralAttribution,
    ReferralConfigTemplate,
    ReferralProgramConfig,
)

# Export all models
__all__ = [
    "Base",
    "User",
    "RewardType",
    "RewardTxType",
    "RewardTxStatus",
    "RewardWallet",
    "RewardTransaction",
    "Coupon",
    "ReferralAttributionStatus",
    "ReferralChannel",
    "OPEN_STATUSES",
    "ReferralCode",
    "ReferralAttribution",
    "ReferralConfigTemplate",
    "ReferralProgramConfig",
]
