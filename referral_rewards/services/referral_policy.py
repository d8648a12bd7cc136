"""
Anti-fraud policy checks for referrals

Predicates over an AntiFraudConfig snapshot. Only has_open_duplicate
touches the database, and only when duplicate blocking is enabled.
"""

from typing import Optional
from datetime import datetime
import logging
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, or_

from referral_rewards.core.tenancy import TenantScope
from referral_rewards.models import User, ReferralAttribution, OPEN_STATUSES
from referral_rewards.schemas.referral import AntiFraudConfig
from referral_rewards.utils.validators import normalize_email, normalize_phone

logger = logging.getLogger(__name__)

# Stored camelCase keys from older payloads map onto the snake_case flags
_LEGACY_KEYS = {
    "blockSelfByUser": "block_self_by_user",
    "blockSelfByContact": "block_self_by_contact",
    "blockDuplicateContact": "block_duplicate_contact",
}

def normalize_anti_fraud(value) -> AntiFraudConfig:
    """Build a policy from a stored payload, filling missing flags with defaults"""
    if isinstance(value, AntiFraudConfig):
        return value
    if not isinstance(value, dict):
        return AntiFraudConfig()

    flags = {}
    for key, flag in value.items():
        name = _LEGACY_KEYS.get(key, key)
        if name in AntiFraudConfig.model_fields and isinstance(flag, bool):
            flags[name] = flag
    return AntiFraudConfig(**flags)

def is_self_referral(
    referrer: User,
    policy: AntiFraudConfig,
    user_id=None,
    email: Optional[str] = None,
    phone: Optional[str] = None
) -> bool:
    """
    Check whether the candidate identity is the referrer

    Args:
        referrer: Owner of the referral code
        policy: Anti-fraud flags
        user_id: Candidate user id
        email: Candidate email
        phone: Candidate phone

    Returns:
        True when a matching identity is blocked by its flag
    """
    if policy.block_self_by_user and user_id and str(user_id) == str(referrer.id):
        return True

    if policy.block_self_by_contact:
        referrer_email = normalize_email(referrer.email)
        referrer_phone = normalize_phone(referrer.phone)
        if referrer_email and referrer_email == normalize_email(email):
            return True
        if referrer_phone and referrer_phone == normalize_phone(phone):
            return True

    return False

async def has_open_duplicate(
    db: AsyncSession,
    scope: TenantScope,
    policy: AntiFraudConfig,
    now: datetime,
    user_id=None,
    email: Optional[str] = None,
    phone: Optional[str] = None
) -> bool:
    """True when an unexpired open attribution already claims any of the identity tokens"""
    if not policy.block_duplicate_contact:
        return False

    conditions = []
    if user_id:
        conditions.append(ReferralAttribution.referred_user_id == user_id)
    if normalize_email(email):
        conditions.append(ReferralAttribution.referred_email == normalize_email(email))
    if normalize_phone(phone):
        conditions.append(ReferralAttribution.referred_phone == normalize_phone(phone))
    if not conditions:
        return False

    result = await db.execute(
        select(ReferralAttribution.id).where(
            *scope.as_filter(ReferralAttribution),
            ReferralAttribution.status.in_(OPEN_STATUSES),
            ReferralAttribution.expires_at > now,
            or_(*conditions)
        ).limit(1)
    )
    return result.first() is not None
