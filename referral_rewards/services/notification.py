"""
Referral notifications

Delivery is best-effort: failures are logged and never reach the caller,
so a rewarded referral is never rolled back because an email bounced.
"""

from typing import Optional
import logging

from referral_rewards.models import User
from referral_rewards.services.email_service import EmailService
from referral_rewards.tasks.notification_tasks import send_reward_unlocked_email

logger = logging.getLogger(__name__)

class NotificationService:
    """Sends "reward unlocked" messages to referral participants"""

    def __init__(self, email_service: Optional[EmailService] = None):
        self.email_service = email_service or EmailService()

    @staticmethod
    def wants_email(user: Optional[User]) -> bool:
        return bool(user and user.email and user.notification_email is not False)

    async def _deliver(self, user: User, title: str, message: str, reward_text: Optional[str]) -> bool:
        return await self.email_service.send_referral_reward_email(
            to_email=user.email,
            name=user.name,
            title=title,
            message=message,
            reward_text=reward_text
        )

    async def send_reward_unlocked(
        self,
        user: User,
        title: str,
        message: str,
        reward_text: Optional[str] = None
    ) -> bool:
        """Email the user unless they have no address or opted out"""
        if not self.wants_email(user):
            return False

        try:
            return await self._deliver(user, title, message, reward_text)
        except Exception:
            logger.exception(f"Failed to send reward notification to user {user.id}")
            return False

class QueuedNotificationService(NotificationService):
    """Queues reward emails on the notifications worker instead of sending inline"""

    async def _deliver(self, user: User, title: str, message: str, reward_text: Optional[str]) -> bool:
        send_reward_unlocked_email.delay(
            to_email=user.email,
            name=user.name,
            title=title,
            message=message,
            reward_text=reward_text
        )
        logger.info(f"Reward notification queued for user {user.id}")
        return True
