"""Services package"""

from .email_service import EmailService
from .notification import NotificationService
from .booking import BookingGateway
from .referral_code import ReferralCodeService
from .referral_config import ReferralConfigService
from .rewards import RewardLedgerService
from .referral_attribution import ReferralAttributionService

__all__ = [
    "EmailService",
    "NotificationService",
    "BookingGateway",
    "ReferralCodeService",
    "ReferralConfigService",
    "RewardLedgerService",
    "ReferralAttributionService"
]
