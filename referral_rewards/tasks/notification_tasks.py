"""Reward notification email tasks"""

import asyncio
from typing import Optional
from celery import Task
from celery.utils.log import get_task_logger

from referral_rewards.core.celery_app import celery_app
from referral_rewards.services.email_service import EmailService

logger = get_task_logger(__name__)

class EmailTask(Task):
    """Base email task with retry logic"""
    autoretry_for = (Exception,)
    retry_kwargs = {"max_retries": 3}
    retry_backoff = True
    retry_backoff_max = 600
    retry_jitter = True

@celery_app.task(base=EmailTask, name="send_reward_unlocked_email")
def send_reward_unlocked_email(
    to_email: str,
    name: str,
    title: str,
    message: str,
    reward_text: Optional[str] = None
):
    """Render and send one "reward unlocked" email"""
    sent = asyncio.run(
        EmailService().send_referral_reward_email(
            to_email=to_email,
            name=name,
            title=title,
            message=message,
            reward_text=reward_text
        )
    )
    logger.info(f"Reward email to {to_email}: sent={sent}")
    return {"success": sent}
