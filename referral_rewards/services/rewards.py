"""
Reward ledger service

Owns every mutation of wallet balances and coupon usage. Methods only
flush; the caller commits or rolls back, normally through
``core.database.atomic``.

Wallet holds follow a two-phase protocol: ``reserve_hold`` records a
PENDING HOLD without touching the balance, then exactly one of
``confirm_hold`` (HOLD confirmed, DEBIT written, balance decremented) or
``release_hold`` (HOLD cancelled, RELEASE written) settles it. Coupon
usage mirrors the same protocol on ``used_count``.
"""

from typing import Optional, List
from decimal import Decimal, ROUND_HALF_UP
from datetime import datetime, timedelta
import logging
import secrets
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func

from referral_rewards.core.config import settings
from referral_rewards.core.tenancy import TenantScope
from referral_rewards.core.exceptions import (
    CouponNotFoundException,
    InvalidCouponException,
    InsufficientBalanceException,
    MissingRewardServiceException,
)
from referral_rewards.models import (
    Coupon,
    RewardType,
    RewardTxType,
    RewardTxStatus,
    RewardWallet,
    RewardTransaction,
)
from referral_rewards.schemas.reward import WalletSummary, WalletBalance, TransactionItem, CouponItem
from referral_rewards.utils.helpers import as_naive_utc, to_uuid

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

def to_amount(value) -> Decimal:
    """Money value rounded to cents"""
    return Decimal(str(value or 0)).quantize(CENT, rounding=ROUND_HALF_UP)

class RewardLedgerService:
    """Wallet balance, holds, reward issuance and coupon usage"""

    def __init__(self, db: AsyncSession, scope: TenantScope, clock=None):
        self.db = db
        self.scope = scope
        self._now = clock or datetime.utcnow

    # Wallet

    async def ensure_wallet(self, user_id) -> RewardWallet:
        """Get or lazily create the user's wallet"""
        user_id = to_uuid(user_id)
        result = await self.db.execute(
            select(RewardWallet).where(
                *self.scope.as_filter(RewardWallet),
                RewardWallet.user_id == user_id
            )
        )
        wallet = result.scalar_one_or_none()
        if wallet:
            return wallet

        wallet = RewardWallet(user_id=user_id, balance=Decimal("0"), **self.scope.as_values())
        self.db.add(wallet)
        await self.db.flush()
        return wallet

    async def get_pending_holds_total(self, user_id) -> Decimal:
        total = await self.db.scalar(
            select(func.coalesce(func.sum(RewardTransaction.amount), 0)).where(
                *self.scope.as_filter(RewardTransaction),
                RewardTransaction.user_id == to_uuid(user_id),
                RewardTransaction.type == RewardTxType.HOLD,
                RewardTransaction.status == RewardTxStatus.PENDING
            )
        )
        return to_amount(total)

    async def get_available_balance(self, user_id) -> Decimal:
        """Balance minus pending holds, never below zero"""
        wallet = await self.ensure_wallet(user_id)
        pending = await self.get_pending_holds_total(user_id)
        return max(Decimal("0.00"), to_amount(wallet.balance) - pending)

    async def _apply_to_wallet(self, user_id, delta: Decimal) -> RewardWallet:
        wallet = await self.ensure_wallet(user_id)
        wallet.balance = to_amount(wallet.balance) + delta
        return wallet

    # Holds

    async def reserve_hold(self, user_id, appointment_id: str, amount, description: str) -> Decimal:
        """
        Reserve wallet funds for a booking

        Args:
            user_id: Wallet owner
            appointment_id: Booking the funds are held for
            amount: Amount to hold
            description: Ledger text

        Returns:
            The held amount, 0 when nothing was held
        """
        amount = to_amount(amount)
        if amount <= 0:
            return Decimal("0")

        available = await self.get_available_balance(user_id)
        if amount > available:
            raise InsufficientBalanceException()

        self.db.add(RewardTransaction(
            user_id=to_uuid(user_id),
            appointment_id=appointment_id,
            type=RewardTxType.HOLD,
            status=RewardTxStatus.PENDING,
            amount=amount,
            description=description,
            **self.scope.as_values()
        ))
        await self.db.flush()

        logger.info(f"Hold of {amount} reserved for user {user_id} on appointment {appointment_id}")
        return amount

    async def _pending(self, tx_type: RewardTxType, appointment_id: str = None) -> List[RewardTransaction]:
        query = select(RewardTransaction).where(
            *self.scope.as_filter(RewardTransaction),
            RewardTransaction.type == tx_type,
            RewardTransaction.status == RewardTxStatus.PENDING
        )
        if appointment_id is not None:
            query = query.where(RewardTransaction.appointment_id == appointment_id)
        result = await self.db.execute(query.order_by(RewardTransaction.created_at))
        return list(result.scalars().all())

    async def confirm_hold(self, appointment_id: str) -> int:
        """Settle pending holds as debits; re-running finds nothing left to settle"""
        holds = await self._pending(RewardTxType.HOLD, appointment_id)
        for hold in holds:
            hold.status = RewardTxStatus.CONFIRMED
            amount = to_amount(hold.amount)
            if amount <= 0:
                continue

            self.db.add(RewardTransaction(
                user_id=hold.user_id,
                appointment_id=hold.appointment_id,
                type=RewardTxType.DEBIT,
                status=RewardTxStatus.CONFIRMED,
                amount=amount,
                description="Wallet debit for completed appointment.",
                **self.scope.as_values()
            ))
            await self._apply_to_wallet(hold.user_id, -amount)
            logger.info(f"Hold of {amount} debited for user {hold.user_id} on appointment {appointment_id}")

        await self.db.flush()
        return len(holds)

    async def _release(self, holds: List[RewardTransaction], description: str) -> int:
        for hold in holds:
            hold.status = RewardTxStatus.CANCELLED
            amount = to_amount(hold.amount)
            if amount > 0:
                self.db.add(RewardTransaction(
                    user_id=hold.user_id,
                    appointment_id=hold.appointment_id,
                    type=RewardTxType.RELEASE,
                    status=RewardTxStatus.CONFIRMED,
                    amount=amount,
                    description=description,
                    **self.scope.as_values()
                ))
            logger.info(f"Hold of {amount} released for user {hold.user_id} on appointment {hold.appointment_id}")

        await self.db.flush()
        return len(holds)

    async def release_hold(self, appointment_id: str) -> int:
        """Cancel pending holds for a cancelled booking; balance is unchanged"""
        holds = await self._pending(RewardTxType.HOLD, appointment_id)
        return await self._release(holds, "Wallet hold released for cancelled appointment.")

    async def release_stale_holds(self, older_than_days: int = None, now: datetime = None) -> int:
        """Release pending holds older than the threshold"""
        days = older_than_days if older_than_days is not None else settings.REWARD_HOLD_STALE_DAYS
        cutoff = (now or self._now()) - timedelta(days=days)

        holds = [
            hold for hold in await self._pending(RewardTxType.HOLD)
            if as_naive_utc(hold.created_at) < cutoff
        ]
        released = await self._release(holds, "Wallet hold released after expiring unused.")
        if released:
            logger.info(f"Released {released} stale holds in {self.scope}")
        return released

    # Rewards

    async def issue_reward(
        self,
        user_id,
        attribution_id,
        reward_type: RewardType,
        reward_value=None,
        reward_service_id: Optional[str] = None,
        description: str = ""
    ) -> Optional[RewardTransaction]:
        """
        Credit the wallet or issue a single-use coupon

        Args:
            user_id: Reward recipient
            attribution_id: Referral the reward belongs to
            reward_type: Wallet credit or coupon kind
            reward_value: Amount or percentage
            reward_service_id: Service covered by a free-service coupon
            description: Ledger text

        Returns:
            The CREDIT or COUPON_ISSUED row, None for a zero wallet credit

        Raises:
            MissingRewardServiceException: free-service reward without a service
        """
        reward_type = RewardType(reward_type)
        user_id = to_uuid(user_id)
        attribution_id = to_uuid(attribution_id)

        if reward_type == RewardType.WALLET:
            amount = max(Decimal("0"), to_amount(reward_value))
            if amount <= 0:
                return None

            await self._apply_to_wallet(user_id, amount)
            credit = RewardTransaction(
                user_id=user_id,
                referral_attribution_id=attribution_id,
                type=RewardTxType.CREDIT,
                status=RewardTxStatus.CONFIRMED,
                amount=amount,
                description=description,
                **self.scope.as_values()
            )
            self.db.add(credit)
            await self.db.flush()

            logger.info(f"Credited {amount} to user {user_id} for referral {attribution_id}")
            return credit

        if reward_type == RewardType.FREE_SERVICE and not reward_service_id:
            logger.error(f"Free-service reward for referral {attribution_id} has no service configured")
            raise MissingRewardServiceException()

        coupon = Coupon(
            user_id=user_id,
            code=secrets.token_hex(4).upper(),
            discount_type=reward_type,
            discount_value=to_amount(reward_value) if reward_value else None,
            service_id=reward_service_id,
            max_uses=1,
            used_count=0,
            is_active=True,
            **self.scope.as_values()
        )
        self.db.add(coupon)
        await self.db.flush()

        issued = RewardTransaction(
            user_id=user_id,
            referral_attribution_id=attribution_id,
            coupon_id=coupon.id,
            type=RewardTxType.COUPON_ISSUED,
            status=RewardTxStatus.CONFIRMED,
            description=description,
            **self.scope.as_values()
        )
        self.db.add(issued)
        await self.db.flush()

        logger.info(f"Coupon {coupon.id} ({reward_type.value}) issued to user {user_id} for referral {attribution_id}")
        return issued

    async def void_referral_rewards(self, attribution_id, reason: str) -> int:
        """
        Reverse confirmed rewards of a referral with compensating rows

        Credits are reversed with a negative ADJUSTMENT and a wallet
        decrement; issued coupons are deactivated with a zero ADJUSTMENT.
        Original rows are left untouched. Returns the number of reversals.
        """
        attribution_id = to_uuid(attribution_id)
        result = await self.db.execute(
            select(RewardTransaction).where(
                *self.scope.as_filter(RewardTransaction),
                RewardTransaction.referral_attribution_id == attribution_id,
                RewardTransaction.status == RewardTxStatus.CONFIRMED
            ).order_by(RewardTransaction.created_at)
        )
        entries = list(result.scalars().all())

        # Already reversed
        if any(entry.type == RewardTxType.ADJUSTMENT for entry in entries):
            return 0

        reversed_count = 0
        for entry in entries:
            if entry.type == RewardTxType.CREDIT:
                amount = to_amount(entry.amount)
                if amount <= 0:
                    continue
                await self._apply_to_wallet(entry.user_id, -amount)
                self.db.add(RewardTransaction(
                    user_id=entry.user_id,
                    referral_attribution_id=attribution_id,
                    type=RewardTxType.ADJUSTMENT,
                    status=RewardTxStatus.CONFIRMED,
                    amount=-amount,
                    description=reason,
                    **self.scope.as_values()
                ))
                reversed_count += 1
                logger.info(f"Reversed credit of {amount} for user {entry.user_id} on referral {attribution_id}")

            elif entry.type == RewardTxType.COUPON_ISSUED and entry.coupon_id:
                coupon = await self.db.get(Coupon, entry.coupon_id)
                if coupon:
                    coupon.is_active = False
                self.db.add(RewardTransaction(
                    user_id=entry.user_id,
                    referral_attribution_id=attribution_id,
                    coupon_id=entry.coupon_id,
                    type=RewardTxType.ADJUSTMENT,
                    status=RewardTxStatus.CONFIRMED,
                    amount=Decimal("0"),
                    description=reason,
                    **self.scope.as_values()
                ))
                reversed_count += 1
                logger.info(f"Deactivated coupon {entry.coupon_id} on referral {attribution_id}")

        await self.db.flush()
        return reversed_count

    # Coupons

    async def get_coupon(self, coupon_id) -> Coupon:
        result = await self.db.execute(
            select(Coupon).where(
                *self.scope.as_filter(Coupon),
                Coupon.id == to_uuid(coupon_id)
            )
        )
        coupon = result.scalar_one_or_none()
        if not coupon:
            raise CouponNotFoundException()
        return coupon

    async def validate_coupon(
        self,
        user_id,
        coupon_id,
        service_id: Optional[str],
        reference_date: datetime
    ) -> Coupon:
        """Check that a coupon can pay for ``service_id`` at ``reference_date``"""
        coupon = await self.get_coupon(coupon_id)
        reference_date = as_naive_utc(reference_date)

        if not coupon.is_active:
            raise InvalidCouponException("The coupon is not active.", "COUPON_INACTIVE")
        if coupon.discount_type == RewardType.WALLET:
            raise InvalidCouponException("Invalid coupon type.", "COUPON_INVALID_TYPE")
        if coupon.user_id and str(coupon.user_id) != str(user_id):
            raise InvalidCouponException("The coupon does not belong to this user.", "COUPON_NOT_OWNED")
        if coupon.valid_from and reference_date < as_naive_utc(coupon.valid_from):
            raise InvalidCouponException("The coupon is not valid yet.", "COUPON_NOT_YET_VALID")
        if coupon.valid_to and reference_date > as_naive_utc(coupon.valid_to):
            raise InvalidCouponException("The coupon has expired.", "COUPON_EXPIRED")
        if coupon.remaining_uses <= 0:
            raise InvalidCouponException("The coupon has already been used.", "COUPON_EXHAUSTED")
        if coupon.service_id and coupon.service_id != service_id:
            raise InvalidCouponException("The coupon does not apply to this service.", "COUPON_SERVICE_MISMATCH")

        return coupon

    @staticmethod
    def calculate_discount(coupon_type: RewardType, coupon_value, base_price) -> Decimal:
        """Discount a coupon grants on ``base_price``, never more than the price"""
        base = max(Decimal("0"), to_amount(base_price))
        if base <= 0:
            return Decimal("0.00")

        coupon_type = RewardType(coupon_type)
        value = max(Decimal("0"), Decimal(str(coupon_value or 0)))
        if coupon_type == RewardType.FREE_SERVICE:
            return base
        if coupon_type == RewardType.PERCENT_DISCOUNT:
            return min(base, to_amount(base * value / Decimal("100")))
        if coupon_type == RewardType.FIXED_DISCOUNT:
            return min(base, to_amount(value))
        return Decimal("0.00")

    async def reserve_coupon_usage(
        self,
        user_id,
        coupon_id,
        appointment_id: str,
        amount,
        description: str
    ) -> RewardTransaction:
        """Count a use against the coupon and record it as PENDING"""
        coupon = await self.get_coupon(coupon_id)
        if coupon.remaining_uses <= 0:
            raise InvalidCouponException("The coupon has already been used.", "COUPON_EXHAUSTED")

        coupon.used_count = (coupon.used_count or 0) + 1
        usage = RewardTransaction(
            user_id=to_uuid(user_id),
            appointment_id=appointment_id,
            coupon_id=coupon.id,
            type=RewardTxType.COUPON_USED,
            status=RewardTxStatus.PENDING,
            amount=to_amount(amount),
            description=description,
            **self.scope.as_values()
        )
        self.db.add(usage)
        await self.db.flush()

        logger.info(f"Coupon {coupon.id} reserved for appointment {appointment_id}")
        return usage

    async def confirm_coupon_usage(self, appointment_id: str) -> int:
        usages = await self._pending(RewardTxType.COUPON_USED, appointment_id)
        for usage in usages:
            usage.status = RewardTxStatus.CONFIRMED
        await self.db.flush()
        return len(usages)

    async def cancel_coupon_usage(self, appointment_id: str) -> int:
        """Give reserved uses back to their coupons"""
        usages = await self._pending(RewardTxType.COUPON_USED, appointment_id)
        for usage in usages:
            if usage.coupon_id:
                coupon = await self.db.get(Coupon, usage.coupon_id)
                if coupon and coupon.used_count > 0:
                    coupon.used_count -= 1
            usage.status = RewardTxStatus.CANCELLED
            logger.info(f"Coupon {usage.coupon_id} usage cancelled for appointment {appointment_id}")
        await self.db.flush()
        return len(usages)

    # Summary

    async def get_wallet_summary(self, user_id) -> WalletSummary:
        """Balance, available balance, recent transactions and active coupons"""
        user_id = to_uuid(user_id)
        wallet = await self.ensure_wallet(user_id)
        pending = await self.get_pending_holds_total(user_id)
        balance = to_amount(wallet.balance)

        transactions = await self.db.execute(
            select(RewardTransaction).where(
                *self.scope.as_filter(RewardTransaction),
                RewardTransaction.user_id == user_id
            ).order_by(RewardTransaction.created_at.desc()).limit(settings.REWARD_TX_HISTORY_LIMIT)
        )
        coupons = await self.db.execute(
            select(Coupon).where(
                *self.scope.as_filter(Coupon),
                Coupon.user_id == user_id,
                Coupon.is_active == True
            ).order_by(Coupon.created_at.desc())
        )

        return WalletSummary(
            wallet=WalletBalance(
                balance=balance,
                available_balance=max(Decimal("0.00"), balance - pending),
                pending_holds=pending
            ),
            transactions=[TransactionItem.model_validate(tx) for tx in transactions.scalars().all()],
            coupons=[CouponItem.model_validate(coupon) for coupon in coupons.scalars().all()]
        )
