"""Reward ledger housekeeping tasks"""

import asyncio
from typing import Dict
from celery.utils.log import get_task_logger
from sqlalchemy import select

from referral_rewards.core.celery_app import celery_app
from referral_rewards.core.config import settings
from referral_rewards.core.database import get_db_context
from referral_rewards.core.tenancy import TenantScope
from referral_rewards.models import RewardTransaction, RewardTxType, RewardTxStatus
from referral_rewards.services.rewards import RewardLedgerService

logger = get_task_logger(__name__)

async def release_stale_holds_all_scopes(older_than_days: int) -> Dict[str, int]:
    """Release stale holds in every scope that has pending holds"""
    released = {}
    async with get_db_context() as db:
        result = await db.execute(
            select(RewardTransaction.tenant_id, RewardTransaction.location_id)
            .where(
                RewardTransaction.type == RewardTxType.HOLD,
                RewardTransaction.status == RewardTxStatus.PENDING
            )
            .distinct()
        )
        scopes = [TenantScope(tenant_id=row[0], location_id=row[1]) for row in result.all()]

        for scope in scopes:
            ledger = RewardLedgerService(db, scope)
            count = await ledger.release_stale_holds(older_than_days)
            if count:
                released[f"{scope.tenant_id}/{scope.location_id}"] = count

    return released

@celery_app.task(name="release_stale_reward_holds")
def release_stale_reward_holds(older_than_days: int = None):
    """Cancel wallet holds whose booking never settled"""
    days = older_than_days if older_than_days is not None else settings.REWARD_HOLD_STALE_DAYS
    try:
        released = asyncio.run(release_stale_holds_all_scopes(days))
        logger.info(f"Released stale holds older than {days} days: {released}")
        return {"released": released}
    except Exception as e:
        logger.error(f"Error releasing stale holds: {str(e)}")
        raise
