"""Referral code registry"""

from typing import Tuple
import logging
import secrets
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import IntegrityError
from sqlalchemy import select

from referral_rewards.core.config import settings
from referral_rewards.core.tenancy import TenantScope
from referral_rewards.core.exceptions import (
    ReferralCodeNotFoundException,
    UserNotFoundException,
    CodeGenerationExhaustedException,
)
from referral_rewards.models import User, ReferralCode
from referral_rewards.utils.helpers import to_uuid
from referral_rewards.utils.validators import normalize_referral_code

logger = logging.getLogger(__name__)

class ReferralCodeService:
    """Issues and resolves one shareable code per user and tenant scope"""

    def __init__(self, db: AsyncSession, scope: TenantScope):
        self.db = db
        self.scope = scope

    def _generate_code(self) -> str:
        return secrets.token_hex(settings.REFERRAL_CODE_BYTES).upper()

    async def get_code(self, user_id) -> ReferralCode:
        result = await self.db.execute(
            select(ReferralCode).where(
                *self.scope.as_filter(ReferralCode),
                ReferralCode.user_id == to_uuid(user_id)
            )
        )
        return result.scalar_one_or_none()

    async def _code_taken(self, code: str) -> bool:
        result = await self.db.execute(
            select(ReferralCode.id).where(
                *self.scope.as_filter(ReferralCode),
                ReferralCode.code == code
            )
        )
        return result.first() is not None

    async def get_or_create_code(self, user_id) -> ReferralCode:
        """
        Return the user's code, creating it on first use

        The new code is committed immediately, so call this outside any
        larger unit of work.

        Args:
            user_id: Owner of the code

        Returns:
            ReferralCode row

        Raises:
            UserNotFoundException: unknown user
            CodeGenerationExhaustedException: every generated code collided
        """
        try:
            user_id = to_uuid(user_id)
        except ValueError:
            raise UserNotFoundException()

        user = await self.db.get(User, user_id)
        if not user:
            raise UserNotFoundException()

        existing = await self.get_code(user_id)
        if existing:
            return existing

        for attempt in range(1, settings.REFERRAL_CODE_MAX_ATTEMPTS + 1):
            code = self._generate_code()
            if await self._code_taken(code):
                logger.warning(f"Referral code collision on attempt {attempt} for user {user_id}")
                continue

            referral_code = ReferralCode(
                user_id=user_id,
                code=code,
                is_active=True,
                **self.scope.as_values()
            )
            self.db.add(referral_code)
            try:
                await self.db.commit()
            except IntegrityError:
                # Lost a race: either the code or the user's own row was inserted concurrently
                await self.db.rollback()
                existing = await self.get_code(user_id)
                if existing:
                    return existing
                logger.warning(f"Referral code insert conflict on attempt {attempt} for user {user_id}")
                continue

            logger.info(f"Referral code created for user {user_id}")
            return referral_code

        logger.error(
            f"Referral code generation exhausted after {settings.REFERRAL_CODE_MAX_ATTEMPTS} "
            f"attempts for user {user_id} in {self.scope}"
        )
        raise CodeGenerationExhaustedException()

    async def resolve_code(self, code: str) -> Tuple[ReferralCode, User]:
        """Look up an active code and its owner; raises ReferralCodeNotFoundException"""
        try:
            normalized = normalize_referral_code(code)
        except ValueError:
            raise ReferralCodeNotFoundException()

        result = await self.db.execute(
            select(ReferralCode, User)
            .join(User, User.id == ReferralCode.user_id)
            .where(
                *self.scope.as_filter(ReferralCode),
                ReferralCode.code == normalized,
                ReferralCode.is_active == True
            )
        )
        row = result.first()
        if not row:
            raise ReferralCodeNotFoundException()
        return row[0], row[1]
