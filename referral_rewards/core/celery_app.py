"""Celery application configuration"""

from celery import Celery
from celery.signals import setup_logging as celery_setup_logging
from kombu import Exchange, Queue
from referral_rewards.core.config import settings
from referral_rewards.core.log import setup_logging

# Create Celery app
celery_app = Celery(
    "referral_rewards",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "referral_rewards.tasks.ledger_tasks",
        "referral_rewards.tasks.notification_tasks"
    ]
)

# Configure Celery
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.CELERY_TIMEZONE,
    enable_utc=True,
    task_track_started=True,
    task_time_limit=10 * 60,  # 10 minutes
    task_soft_time_limit=8 * 60,  # 8 minutes
    task_acks_late=True,
    worker_prefetch_multiplier=1,

    # Task routing
    task_routes={
        "release_stale_reward_holds": {"queue": "ledger"},
        "send_reward_unlocked_email": {"queue": "notifications"}
    },

    # Retry configuration
    task_default_retry_delay=60,  # 1 minute
    task_max_retries=3,

    result_expires=3600,  # 1 hour
)

celery_app.conf.task_queues = (
    Queue("default", Exchange("default"), routing_key="default"),
    Queue("ledger", Exchange("ledger"), routing_key="ledger"),
    Queue("notifications", Exchange("notifications"), routing_key="notifications"),
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    "release-stale-reward-holds": {
        "task": "release_stale_reward_holds",
        "schedule": 60 * 60 * 6,  # Every 6 hours
        "options": {"queue": "ledger"}
    },
}

@celery_setup_logging.connect
def configure_worker_logging(**kwargs):
    """Use the service log format in workers instead of Celery's default"""
    setup_logging()
