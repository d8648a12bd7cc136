"""
Tests for the reward ledger.

Covers:
- wallet credits and coupon issuance
- two-phase wallet holds and stale hold release
- reversal of referral rewards
- coupon validation, discount calculation and usage
"""
import re
import uuid
import pytest
from decimal import Decimal
from datetime import datetime, timedelta
from sqlalchemy import select

from referral_rewards.core.exceptions import (
    CouponNotFoundException,
    InvalidCouponException,
    InsufficientBalanceException,
    MissingRewardServiceException,
)
from referral_rewards.models import (
    Coupon,
    RewardTransaction,
    RewardTxStatus,
    RewardTxType,
    RewardType,
)
from referral_rewards.services.rewards import RewardLedgerService, to_amount


async def credit(db, ledger, user, amount, attribution_id=None):
    entry = await ledger.issue_reward(
        user_id=user.id,
        attribution_id=attribution_id,
        reward_type=RewardType.WALLET,
        reward_value=Decimal(amount),
        description="Test credit"
    )
    await db.commit()
    return entry


async def rows(db, *criteria):
    result = await db.execute(select(RewardTransaction).where(*criteria).order_by(RewardTransaction.created_at))
    return list(result.scalars().all())


class TestIssueReward:
    """Tests for issue_reward"""

    @pytest.mark.asyncio
    async def test_wallet_credit(self, db, ledger, referrer):
        entry = await credit(db, ledger, referrer, "5")

        assert entry.type == RewardTxType.CREDIT
        assert entry.status == RewardTxStatus.CONFIRMED
        assert entry.amount == Decimal("5.00")
        assert (await ledger.ensure_wallet(referrer.id)).balance == Decimal("5.00")

    @pytest.mark.asyncio
    async def test_zero_credit_is_skipped(self, db, ledger, referrer):
        assert await credit(db, ledger, referrer, "0") is None
        assert await rows(db, RewardTransaction.user_id == referrer.id) == []

    @pytest.mark.asyncio
    async def test_coupon_issued(self, db, ledger, guest):
        entry = await ledger.issue_reward(
            user_id=guest.id,
            attribution_id=None,
            reward_type=RewardType.PERCENT_DISCOUNT,
            reward_value=Decimal("15"),
            description="Welcome reward"
        )
        await db.commit()

        coupon = await ledger.get_coupon(entry.coupon_id)
        assert entry.type == RewardTxType.COUPON_ISSUED
        assert entry.amount is None
        assert re.fullmatch(r"[0-9A-F]{8}", coupon.code)
        assert coupon.user_id == guest.id
        assert coupon.discount_value == Decimal("15.00")
        assert (coupon.max_uses, coupon.used_count, coupon.is_active) == (1, 0, True)

    @pytest.mark.asyncio
    async def test_free_service_coupon(self, db, ledger, guest):
        entry = await ledger.issue_reward(guest.id, None, RewardType.FREE_SERVICE, reward_service_id="svc-cut")
        await db.commit()

        coupon = await ledger.get_coupon(entry.coupon_id)
        assert coupon.service_id == "svc-cut"
        assert coupon.discount_value is None

    @pytest.mark.asyncio
    async def test_free_service_requires_service(self, ledger, guest):
        with pytest.raises(MissingRewardServiceException):
            await ledger.issue_reward(guest.id, None, RewardType.FREE_SERVICE)


class TestHolds:
    """Tests for the two-phase wallet hold protocol"""

    @pytest.mark.asyncio
    async def test_confirm_debits_balance(self, db, ledger, guest):
        await credit(db, ledger, guest, "20")

        held = await ledger.reserve_hold(guest.id, "apt-1", "8", "Wallet payment")
        await db.commit()

        assert held == Decimal("8.00")
        assert (await ledger.ensure_wallet(guest.id)).balance == Decimal("20.00")
        assert await ledger.get_available_balance(guest.id) == Decimal("12.00")

        assert await ledger.confirm_hold("apt-1") == 1
        await db.commit()

        assert (await ledger.ensure_wallet(guest.id)).balance == Decimal("12.00")
        assert await ledger.get_available_balance(guest.id) == Decimal("12.00")
        debits = await rows(db, RewardTransaction.type == RewardTxType.DEBIT)
        assert [debit.amount for debit in debits] == [Decimal("8.00")]

        # Nothing left to settle
        assert await ledger.confirm_hold("apt-1") == 0
        assert await ledger.release_hold("apt-1") == 0

    @pytest.mark.asyncio
    async def test_release_keeps_balance(self, db, ledger, guest):
        await credit(db, ledger, guest, "20")
        await ledger.reserve_hold(guest.id, "apt-2", Decimal("8"), "Wallet payment")
        await db.commit()

        assert await ledger.release_hold("apt-2") == 1
        await db.commit()

        assert (await ledger.ensure_wallet(guest.id)).balance == Decimal("20.00")
        assert await ledger.get_available_balance(guest.id) == Decimal("20.00")
        entries = {entry.type: entry for entry in await rows(db, RewardTransaction.appointment_id == "apt-2")}
        assert entries[RewardTxType.HOLD].status == RewardTxStatus.CANCELLED
        assert entries[RewardTxType.RELEASE].amount == Decimal("8.00")

        assert await ledger.release_hold("apt-2") == 0
        assert await ledger.confirm_hold("apt-2") == 0

    @pytest.mark.asyncio
    async def test_zero_hold(self, db, ledger, guest):
        assert await ledger.reserve_hold(guest.id, "apt-1", 0, "Wallet payment") == Decimal("0")
        assert await rows(db, RewardTransaction.user_id == guest.id) == []

    @pytest.mark.asyncio
    async def test_hold_limited_by_available_balance(self, db, ledger, guest):
        await credit(db, ledger, guest, "20")

        with pytest.raises(InsufficientBalanceException):
            await ledger.reserve_hold(guest.id, "apt-1", "25", "Wallet payment")

        await ledger.reserve_hold(guest.id, "apt-1", "15", "Wallet payment")
        with pytest.raises(InsufficientBalanceException):
            await ledger.reserve_hold(guest.id, "apt-2", "10", "Wallet payment")

    @pytest.mark.asyncio
    async def test_empty_wallet_writes_nothing_and_clamped_amount_holds(self, db, ledger, guest):
        with pytest.raises(InsufficientBalanceException):
            await ledger.reserve_hold(guest.id, "apt-9", 10, "Wallet payment")
        assert await rows(db, RewardTransaction.user_id == guest.id) == []

        await credit(db, ledger, guest, "4")
        available = await ledger.get_available_balance(guest.id)
        held = await ledger.reserve_hold(guest.id, "apt-9", min(available, Decimal("10")), "Wallet payment")

        assert held == Decimal("4.00")
        assert await ledger.get_available_balance(guest.id) == Decimal("0")

    @pytest.mark.asyncio
    async def test_release_stale_holds(self, db, ledger, guest):
        await credit(db, ledger, guest, "20")
        await ledger.reserve_hold(guest.id, "apt-1", "5", "Wallet payment")
        await db.commit()

        assert await ledger.release_stale_holds(now=datetime.utcnow()) == 0
        assert await ledger.release_stale_holds(now=datetime.utcnow() + timedelta(days=8)) == 1
        await db.commit()

        assert await ledger.get_pending_holds_total(guest.id) == Decimal("0.00")
        assert (await ledger.ensure_wallet(guest.id)).balance == Decimal("20.00")

    @pytest.mark.asyncio
    async def test_holds_are_scoped(self, db, other_scope, ledger, guest):
        await credit(db, ledger, guest, "20")
        await ledger.reserve_hold(guest.id, "apt-1", "5", "Wallet payment")
        await db.commit()

        other = RewardLedgerService(db, other_scope)
        assert await other.confirm_hold("apt-1") == 0
        assert await other.get_available_balance(guest.id) == Decimal("0.00")


class TestVoidReferralRewards:
    """Tests for void_referral_rewards"""

    @pytest.mark.asyncio
    async def test_reverses_credit_and_coupon(self, db, ledger, referrer, guest):
        attribution_id = uuid.uuid4()
        await credit(db, ledger, referrer, "5", attribution_id=attribution_id)
        issued = await ledger.issue_reward(guest.id, attribution_id, RewardType.FIXED_DISCOUNT, Decimal("10"))
        await db.commit()

        assert await ledger.void_referral_rewards(attribution_id, "fraud") == 2
        await db.commit()

        assert (await ledger.ensure_wallet(referrer.id)).balance == Decimal("0.00")
        coupon = await ledger.get_coupon(issued.coupon_id)
        assert coupon.is_active is False

        adjustments = await rows(db, RewardTransaction.type == RewardTxType.ADJUSTMENT)
        assert sorted(entry.amount for entry in adjustments) == [Decimal("-5.00"), Decimal("0.00")]
        assert all(entry.description == "fraud" for entry in adjustments)
        credits = await rows(db, RewardTransaction.type == RewardTxType.CREDIT)
        assert [entry.amount for entry in credits] == [Decimal("5.00")]

    @pytest.mark.asyncio
    async def test_second_void_is_noop(self, db, ledger, referrer):
        attribution_id = uuid.uuid4()
        await credit(db, ledger, referrer, "5", attribution_id=attribution_id)

        await ledger.void_referral_rewards(attribution_id, "fraud")
        await db.commit()
        assert await ledger.void_referral_rewards(attribution_id, "fraud") == 0

        assert (await ledger.ensure_wallet(referrer.id)).balance == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_nothing_to_reverse(self, ledger):
        assert await ledger.void_referral_rewards(uuid.uuid4(), "fraud") == 0


class TestCoupons:
    """Tests for coupon validation, discounts and usage"""

    @pytest.fixture
    def make_coupon(self, db, scope, guest):
        async def _make(**fields):
            fields.setdefault("user_id", guest.id)
            fields.setdefault("discount_type", RewardType.PERCENT_DISCOUNT)
            fields.setdefault("discount_value", Decimal("15"))
            coupon = Coupon(**fields, **scope.as_values())
            db.add(coupon)
            await db.commit()
            return coupon
        return _make

    @pytest.mark.asyncio
    async def test_valid_coupon(self, ledger, guest, make_coupon, clock):
        coupon = await make_coupon(service_id="svc-1", valid_to=clock.now + timedelta(days=5))

        validated = await ledger.validate_coupon(guest.id, coupon.id, "svc-1", clock.now)

        assert validated.id == coupon.id

    @pytest.mark.asyncio
    @pytest.mark.parametrize("fields,error_code", [
        ({"is_active": False}, "COUPON_INACTIVE"),
        ({"discount_type": RewardType.WALLET}, "COUPON_INVALID_TYPE"),
        ({"valid_from": datetime(2026, 4, 1)}, "COUPON_NOT_YET_VALID"),
        ({"valid_to": datetime(2026, 3, 1)}, "COUPON_EXPIRED"),
        ({"used_count": 1}, "COUPON_EXHAUSTED"),
        ({"service_id": "svc-color"}, "COUPON_SERVICE_MISMATCH"),
    ])
    async def test_invalid_coupon(self, ledger, guest, make_coupon, clock, fields, error_code):
        coupon = await make_coupon(**fields)

        with pytest.raises(InvalidCouponException) as exc_info:
            await ledger.validate_coupon(guest.id, coupon.id, "svc-1", clock.now)
        assert exc_info.value.error_code == error_code

    @pytest.mark.asyncio
    async def test_coupon_of_other_user(self, ledger, referrer, make_coupon, clock):
        coupon = await make_coupon()

        with pytest.raises(InvalidCouponException) as exc_info:
            await ledger.validate_coupon(referrer.id, coupon.id, "svc-1", clock.now)
        assert exc_info.value.error_code == "COUPON_NOT_OWNED"

    @pytest.mark.asyncio
    async def test_unowned_coupon_open_to_anyone(self, ledger, referrer, make_coupon, clock):
        coupon = await make_coupon(user_id=None)

        assert (await ledger.validate_coupon(referrer.id, coupon.id, None, clock.now)).id == coupon.id

    @pytest.mark.asyncio
    async def test_unknown_coupon(self, ledger, guest, clock):
        with pytest.raises(CouponNotFoundException):
            await ledger.validate_coupon(guest.id, uuid.uuid4(), "svc-1", clock.now)

    @pytest.mark.parametrize("coupon_type,value,price,expected", [
        (RewardType.FREE_SERVICE, None, "30", "30.00"),
        (RewardType.PERCENT_DISCOUNT, "15", "30", "4.50"),
        (RewardType.FIXED_DISCOUNT, "10", "30", "10.00"),
        (RewardType.FIXED_DISCOUNT, "50", "30", "30.00"),
        (RewardType.PERCENT_DISCOUNT, "15", "0", "0.00"),
        (RewardType.WALLET, "5", "30", "0.00"),
    ])
    def test_calculate_discount(self, coupon_type, value, price, expected):
        discount = RewardLedgerService.calculate_discount(coupon_type, value, Decimal(price))
        assert discount == Decimal(expected)

    @pytest.mark.asyncio
    async def test_usage_reserve_cancel_confirm(self, db, ledger, guest, make_coupon):
        coupon = await make_coupon()

        await ledger.reserve_coupon_usage(guest.id, coupon.id, "apt-1", "4.50", "Coupon applied")
        await db.commit()
        assert coupon.used_count == 1

        with pytest.raises(InvalidCouponException) as exc_info:
            await ledger.reserve_coupon_usage(guest.id, coupon.id, "apt-2", "4.50", "Coupon applied")
        assert exc_info.value.error_code == "COUPON_EXHAUSTED"

        assert await ledger.cancel_coupon_usage("apt-1") == 1
        await db.commit()
        assert coupon.used_count == 0

        usage = await ledger.reserve_coupon_usage(guest.id, coupon.id, "apt-2", "4.50", "Coupon applied")
        assert await ledger.confirm_coupon_usage("apt-2") == 1
        await db.commit()

        assert usage.status == RewardTxStatus.CONFIRMED
        assert usage.amount == to_amount("4.50")
        assert coupon.used_count == 1
        assert await ledger.cancel_coupon_usage("apt-2") == 0


class TestWalletSummary:
    """Tests for get_wallet_summary"""

    @pytest.mark.asyncio
    async def test_summary(self, db, ledger, guest):
        await credit(db, ledger, guest, "20")
        await ledger.reserve_hold(guest.id, "apt-1", "8", "Wallet payment")
        await ledger.issue_reward(guest.id, None, RewardType.FIXED_DISCOUNT, Decimal("10"))
        await db.commit()

        summary = await ledger.get_wallet_summary(guest.id)

        assert summary.wallet.balance == Decimal("20.00")
        assert summary.wallet.pending_holds == Decimal("8.00")
        assert summary.wallet.available_balance == Decimal("12.00")
        assert {tx.type for tx in summary.transactions} == {
            RewardTxType.CREDIT,
            RewardTxType.HOLD,
            RewardTxType.COUPON_ISSUED,
        }
        assert len(summary.coupons) == 1
        assert summary.coupons[0].discount_type == RewardType.FIXED_DISCOUNT

    @pytest.mark.asyncio
    async def test_empty_wallet(self, ledger, referrer):
        summary = await ledger.get_wallet_summary(referrer.id)

        assert summary.wallet.balance == Decimal("0.00")
        assert summary.transactions == []
        assert summary.coupons == []
