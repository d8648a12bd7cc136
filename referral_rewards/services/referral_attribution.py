"""
Referral attribution lifecycle

    ATTRIBUTED -> BOOKED -> COMPLETED -> REWARDED
    BOOKED -> ATTRIBUTED | EXPIRED      (booking cancelled)
    BOOKED -> VOIDED                    (completion rejected by policy)
    any but EXPIRED -> VOIDED           (admin void, rewards reversed)

Expiry is lazy: an open attribution past ``expires_at`` is never matched
or reported as pending, but its row is only moved to EXPIRED when a
transition touches it.
"""

from typing import Optional, Union, Dict, List
from decimal import Decimal
from datetime import datetime, timedelta
import logging
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, or_, and_
from sqlalchemy.orm import aliased

from referral_rewards.core.database import atomic
from referral_rewards.core.tenancy import TenantScope
from referral_rewards.core.exceptions import (
    ProgramDisabledException,
    SelfReferralException,
    DuplicateReferralException,
    NotEligibleException,
    AttributionExpiredException,
    AttributionNotFoundException,
    UserNotFoundException,
    ValidationException,
)
from referral_rewards.models import (
    User,
    ReferralAttribution,
    ReferralAttributionStatus,
    OPEN_STATUSES,
)
from referral_rewards.schemas.referral import (
    AttributeReferralRequest,
    AttributionResult,
    CompletionOutcome,
    ProgramConfig,
    ReferralContact,
    ReferralItem,
    ReferralListItem,
    ReferralListResponse,
    ReferralOverview,
    TopReferrer,
    ReferrerSummary,
    ResolveReferralResponse,
)
from referral_rewards.services.booking import BookingGateway
from referral_rewards.services.notification import NotificationService, QueuedNotificationService
from referral_rewards.services.referral_code import ReferralCodeService
from referral_rewards.services.referral_config import ReferralConfigService
from referral_rewards.services.referral_policy import is_self_referral, has_open_duplicate
from referral_rewards.services.rewards import RewardLedgerService
from referral_rewards.utils.helpers import parse_contact_tokens, start_of_month, end_of_month, to_uuid
from referral_rewards.utils.pagination import PaginationParams, paginate
from referral_rewards.utils.validators import normalize_email, normalize_phone

logger = logging.getLogger(__name__)

DEFAULT_VOID_REASON = "invalidated_by_admin"

# Policy reasons recorded when a completion is rejected
REASON_SERVICE_NOT_ALLOWED = "service_not_allowed"
REASON_NOT_NEW_CUSTOMER = "not_new_customer"
REASON_MONTHLY_LIMIT = "monthly_limit"

CONFIRMED_STATUSES = (ReferralAttributionStatus.COMPLETED, ReferralAttributionStatus.REWARDED)

class ReferralAttributionService:
    """Creates attributions, follows their bookings and settles rewards"""

    def __init__(
        self,
        db: AsyncSession,
        scope: TenantScope,
        booking_gateway: BookingGateway,
        config_service: Optional[ReferralConfigService] = None,
        code_service: Optional[ReferralCodeService] = None,
        ledger: Optional[RewardLedgerService] = None,
        notifier: Optional[NotificationService] = None,
        clock=None
    ):
        self.db = db
        self.scope = scope
        self.booking = booking_gateway
        self._now = clock or datetime.utcnow
        self.config_service = config_service or ReferralConfigService(db, scope)
        self.code_service = code_service or ReferralCodeService(db, scope)
        self.ledger = ledger or RewardLedgerService(db, scope, clock=self._now)
        self.notifier = notifier or QueuedNotificationService()

    # Lookups

    async def _get_attribution(self, attribution_id) -> Optional[ReferralAttribution]:
        result = await self.db.execute(
            select(ReferralAttribution).where(
                *self.scope.as_filter(ReferralAttribution),
                ReferralAttribution.id == to_uuid(attribution_id)
            )
        )
        return result.scalar_one_or_none()

    async def _latest_open(self, *criteria) -> Optional[ReferralAttribution]:
        result = await self.db.execute(
            select(ReferralAttribution).where(
                *self.scope.as_filter(ReferralAttribution),
                ReferralAttribution.status.in_(OPEN_STATUSES),
                ReferralAttribution.expires_at > self._now(),
                *criteria
            ).order_by(ReferralAttribution.attributed_at.desc()).limit(1)
        )
        return result.scalar_one_or_none()

    async def _users_by_id(self, user_ids) -> Dict:
        ids = {user_id for user_id in user_ids if user_id}
        if not ids:
            return {}
        result = await self.db.execute(select(User).where(User.id.in_(ids)))
        return {user.id: user for user in result.scalars().all()}

    @staticmethod
    def _contact_tokens(guest_contact: Optional[str]):
        email, phone = parse_contact_tokens(guest_contact)
        return normalize_email(email), normalize_phone(phone)

    # Attribution

    async def attribute(self, request: Union[AttributeReferralRequest, dict]) -> AttributionResult:
        """
        Record that a visitor arrived through a referral code

        Args:
            request: Code, channel and whatever identity the visitor gave

        Returns:
            Attribution id and its fixed expiry

        Raises:
            ProgramDisabledException: module or program disabled
            ReferralCodeNotFoundException: unknown or inactive code
            SelfReferralException: visitor is the referrer
            DuplicateReferralException: identity already has an open referral
            NotEligibleException: visitor already booked here
        """
        if not isinstance(request, AttributeReferralRequest):
            request = AttributeReferralRequest.model_validate(request)

        config = await self.config_service.get_active_config()
        if not config:
            raise ProgramDisabledException()

        referral_code, referrer = await self.code_service.resolve_code(request.code)
        policy = config.anti_fraud

        if request.user_id and not await self.db.get(User, request.user_id):
            raise UserNotFoundException()

        identity = dict(
            user_id=request.user_id,
            email=request.referred_email,
            phone=request.referred_phone
        )

        if is_self_referral(referrer, policy, **identity):
            logger.warning(f"Self-referral rejected for code {referral_code.code}")
            raise SelfReferralException()

        now = self._now()
        if await has_open_duplicate(self.db, self.scope, policy, now, **identity):
            logger.warning(f"Duplicate referral rejected for code {referral_code.code}")
            raise DuplicateReferralException()

        if config.new_customer_only and await self.booking.has_prior_appointments(self.scope, **identity):
            logger.warning(f"Referral for existing customer rejected for code {referral_code.code}")
            raise NotEligibleException()

        attribution = ReferralAttribution(
            referral_code_id=referral_code.id,
            referrer_user_id=referral_code.user_id,
            referred_user_id=request.user_id,
            referred_email=request.referred_email,
            referred_phone=request.referred_phone,
            status=ReferralAttributionStatus.ATTRIBUTED,
            attributed_at=now,
            expires_at=now + timedelta(days=config.attribution_expiry_days),
            meta={
                "channel": request.channel.value,
                "missing_contact": request.missing_contact,
            },
            **self.scope.as_values()
        )
        async with atomic(self.db):
            self.db.add(attribution)
            await self.db.flush()

        logger.info(
            f"Referral {attribution.id} attributed to referrer {attribution.referrer_user_id} "
            f"via {request.channel.value}"
        )
        return AttributionResult(attribution_id=attribution.id, expires_at=attribution.expires_at)

    async def resolve_attribution_for_booking(
        self,
        attribution_id=None,
        user_id=None,
        guest_contact: Optional[str] = None
    ) -> Optional[ReferralAttribution]:
        """
        Find the open, unexpired attribution a new booking belongs to

        An explicit id wins; otherwise the latest match by user id, then by
        the email or phone parsed from the guest contact.
        """
        now = self._now()
        if attribution_id:
            attribution = await self._get_attribution(attribution_id)
            if not attribution:
                raise AttributionNotFoundException()
            if not attribution.is_open or attribution.is_expired(now):
                return None
            return attribution

        if user_id:
            return await self._latest_open(ReferralAttribution.referred_user_id == to_uuid(user_id))

        email, phone = self._contact_tokens(guest_contact)
        conditions = []
        if email:
            conditions.append(ReferralAttribution.referred_email == email)
        if phone:
            conditions.append(ReferralAttribution.referred_phone == phone)
        if not conditions:
            return None
        return await self._latest_open(or_(*conditions))

    async def attach_to_booking(
        self,
        appointment_id: str,
        attribution_id=None,
        user_id=None,
        guest_contact: Optional[str] = None
    ) -> Optional[ReferralAttribution]:
        """
        Link a booking to its attribution and move it to BOOKED

        With an explicit ``attribution_id`` guard failures raise; when the
        attribution is looked up by identity they are logged and the
        booking simply goes ahead unattributed (returns None).
        """
        strict = attribution_id is not None
        user_id = to_uuid(user_id)

        def reject(exc: Exception, message: str):
            if strict:
                raise exc
            logger.warning(message)
            return None

        if strict:
            attribution = await self._get_attribution(attribution_id)
            if not attribution:
                raise AttributionNotFoundException()
        else:
            attribution = await self.resolve_attribution_for_booking(user_id=user_id, guest_contact=guest_contact)
            if not attribution:
                return None

        if not attribution.is_open:
            return reject(
                ValidationException("The referral is no longer active.", "ATTRIBUTION_CLOSED"),
                f"Referral {attribution.id} is {attribution.status.value}, not attached"
            )
        if attribution.is_expired(self._now()):
            return reject(
                AttributionExpiredException(),
                f"Referral {attribution.id} expired, not attached"
            )
        if attribution.first_appointment_id and attribution.first_appointment_id != appointment_id:
            return reject(
                ValidationException("The referral is already linked to another booking.", "ATTRIBUTION_ALREADY_BOOKED"),
                f"Referral {attribution.id} already linked to {attribution.first_appointment_id}"
            )

        config = await self.config_service.get_active_config()
        if not config:
            return reject(ProgramDisabledException(), "Referral program disabled, booking not attributed")

        email, phone = self._contact_tokens(guest_contact)
        referrer = await self.db.get(User, attribution.referrer_user_id)
        if referrer and is_self_referral(referrer, config.anti_fraud, user_id=user_id, email=email, phone=phone):
            return reject(
                SelfReferralException(),
                f"Self-referral booking {appointment_id} not attached to referral {attribution.id}"
            )

        async with atomic(self.db):
            attribution.status = ReferralAttributionStatus.BOOKED
            attribution.first_appointment_id = appointment_id
            attribution.referred_user_id = attribution.referred_user_id or user_id
            attribution.referred_email = attribution.referred_email or email
            attribution.referred_phone = attribution.referred_phone or phone

        logger.info(f"Referral {attribution.id} booked with appointment {appointment_id}")
        return attribution

    async def on_booking_cancelled(self, appointment_id: str) -> Optional[ReferralAttribution]:
        """Free the attribution of a cancelled booking, expiring it if its window has passed"""
        result = await self.db.execute(
            select(ReferralAttribution).where(
                *self.scope.as_filter(ReferralAttribution),
                ReferralAttribution.first_appointment_id == appointment_id,
                ReferralAttribution.status.in_(OPEN_STATUSES)
            )
        )
        attribution = result.scalars().first()
        if not attribution:
            return None

        expired = attribution.is_expired(self._now())
        async with atomic(self.db):
            attribution.status = (
                ReferralAttributionStatus.EXPIRED if expired else ReferralAttributionStatus.ATTRIBUTED
            )
            attribution.first_appointment_id = None

        logger.info(f"Referral {attribution.id} released by cancelled appointment {appointment_id}: {attribution.status.value}")
        return attribution

    # Completion

    async def _policy_void(self, attribution: ReferralAttribution, reason: str) -> CompletionOutcome:
        async with atomic(self.db):
            attribution.status = ReferralAttributionStatus.VOIDED
            attribution.merge_metadata(reason=reason)

        logger.warning(f"Referral {attribution.id} voided on completion: {reason}")
        return CompletionOutcome(
            attribution_id=attribution.id,
            status=ReferralAttributionStatus.VOIDED,
            reason=reason
        )

    async def _monthly_cap_reached(self, config: ProgramConfig, referrer_user_id, now: datetime) -> bool:
        if not config.monthly_max_rewards_per_referrer:
            return False
        rewarded = await self.db.scalar(
            select(func.count(ReferralAttribution.id)).where(
                *self.scope.as_filter(ReferralAttribution),
                ReferralAttribution.referrer_user_id == referrer_user_id,
                ReferralAttribution.status == ReferralAttributionStatus.REWARDED,
                ReferralAttribution.rewarded_at >= start_of_month(now),
                ReferralAttribution.rewarded_at <= end_of_month(now)
            )
        )
        return (rewarded or 0) >= config.monthly_max_rewards_per_referrer

    async def on_booking_completed(self, appointment_id: str) -> CompletionOutcome:
        """
        Settle the referral of a completed booking

        Policy failures void the attribution with a reason code. On success
        both rewards and the REWARDED flip commit together; if any step
        fails nothing is written and the attribution stays BOOKED.
        Replaying a rewarded booking is a no-op.
        """
        appointment = await self.booking.get_appointment(self.scope, appointment_id)
        if not appointment or not appointment.is_completed:
            return CompletionOutcome()

        if appointment.referral_attribution_id:
            attribution = await self._get_attribution(appointment.referral_attribution_id)
        else:
            result = await self.db.execute(
                select(ReferralAttribution).where(
                    *self.scope.as_filter(ReferralAttribution),
                    ReferralAttribution.first_appointment_id == appointment.id
                )
            )
            attribution = result.scalars().first()
        if not attribution:
            return CompletionOutcome()

        unchanged = CompletionOutcome(attribution_id=attribution.id, status=attribution.status)
        if not attribution.is_open:
            return unchanged
        if attribution.first_appointment_id and attribution.first_appointment_id != appointment.id:
            return unchanged

        config = await self.config_service.get_active_config()
        if not config:
            return unchanged

        if not config.allows_service(appointment.service_id):
            return await self._policy_void(attribution, REASON_SERVICE_NOT_ALLOWED)

        if config.new_customer_only:
            email, phone = self._contact_tokens(appointment.guest_contact)
            has_previous = await self.booking.has_prior_appointments(
                self.scope,
                user_id=appointment.user_id,
                email=email,
                phone=phone,
                before=appointment.start_at,
                exclude_appointment_id=appointment.id
            )
            if has_previous:
                return await self._policy_void(attribution, REASON_NOT_NEW_CUSTOMER)

        now = self._now()
        if await self._monthly_cap_reached(config, attribution.referrer_user_id, now):
            return await self._policy_void(attribution, REASON_MONTHLY_LIMIT)

        referrer_reward = config.reward_referrer
        referred_reward = config.reward_referred
        attribution_id = attribution.id
        referrer_user_id = attribution.referrer_user_id
        referred_user_id = attribution.referred_user_id

        async with atomic(self.db):
            attribution.status = ReferralAttributionStatus.COMPLETED
            await self.db.flush()

            await self.ledger.issue_reward(
                user_id=referrer_user_id,
                attribution_id=attribution_id,
                reward_type=referrer_reward.reward_type,
                reward_value=referrer_reward.value,
                reward_service_id=referrer_reward.service_id,
                description=f"Reward for completed referral ({referrer_reward.text})."
            )
            if referred_user_id:
                await self.ledger.issue_reward(
                    user_id=referred_user_id,
                    attribution_id=attribution_id,
                    reward_type=referred_reward.reward_type,
                    reward_value=referred_reward.value,
                    reward_service_id=referred_reward.service_id,
                    description=f"Welcome reward ({referred_reward.text})."
                )

            attribution.status = ReferralAttributionStatus.REWARDED
            attribution.rewarded_at = now

        logger.info(f"Referral {attribution_id} rewarded for appointment {appointment.id}")

        await self._notify_rewarded(
            referrer_user_id,
            referred_user_id,
            referrer_reward.text,
            referred_reward.text
        )
        return CompletionOutcome(attribution_id=attribution_id, status=ReferralAttributionStatus.REWARDED)

    async def _notify_rewarded(self, referrer_user_id, referred_user_id, referrer_text: str, referred_text: str):
        users = await self._users_by_id([referrer_user_id, referred_user_id])
        messages = [
            (
                users.get(referrer_user_id),
                "Reward unlocked",
                "Your guest completed their first visit. Your reward is unlocked.",
                referrer_text
            ),
            (
                users.get(referred_user_id) if referred_user_id else None,
                "Your reward is ready",
                "Welcome! Your reward is unlocked and ready for your next appointment.",
                referred_text
            ),
        ]
        for user, title, message, reward_text in messages:
            if not user:
                continue
            try:
                await self.notifier.send_reward_unlocked(user, title, message, reward_text)
            except Exception:
                logger.exception(f"Reward notification failed for user {user.id}")

    # Admin

    async def void_attribution(self, attribution_id, reason: Optional[str] = None) -> ReferralAttribution:
        """
        Void a referral and reverse any rewards it produced

        Raises:
            AttributionNotFoundException: unknown id in this scope
        """
        reason = (reason or "").strip() or DEFAULT_VOID_REASON
        attribution = await self._get_attribution(attribution_id)
        if not attribution:
            raise AttributionNotFoundException()

        if attribution.status in (ReferralAttributionStatus.VOIDED, ReferralAttributionStatus.EXPIRED):
            return attribution

        async with atomic(self.db):
            attribution.status = ReferralAttributionStatus.VOIDED
            attribution.merge_metadata(reason=reason)
            reversed_count = await self.ledger.void_referral_rewards(attribution.id, reason)

        logger.info(f"Referral {attribution.id} voided ({reason}), {reversed_count} rewards reversed")
        return attribution

    def _effective_status(self, attribution: ReferralAttribution, now: datetime) -> ReferralAttributionStatus:
        if attribution.is_open and attribution.is_expired(now):
            return ReferralAttributionStatus.EXPIRED
        return attribution.status

    def _referred_contact(self, attribution: ReferralAttribution, users: Dict) -> ReferralContact:
        referred = users.get(attribution.referred_user_id)
        if referred:
            return ReferralContact.model_validate(referred)
        return ReferralContact(email=attribution.referred_email, phone=attribution.referred_phone)

    def _status_filter(self, status: ReferralAttributionStatus, now: datetime):
        status = ReferralAttributionStatus(status)
        if status == ReferralAttributionStatus.EXPIRED:
            return or_(
                ReferralAttribution.status == ReferralAttributionStatus.EXPIRED,
                and_(
                    ReferralAttribution.status.in_(OPEN_STATUSES),
                    ReferralAttribution.expires_at <= now
                )
            )
        if status in OPEN_STATUSES:
            return and_(ReferralAttribution.status == status, ReferralAttribution.expires_at > now)
        return ReferralAttribution.status == status

    async def list_referrals(
        self,
        status: Optional[ReferralAttributionStatus] = None,
        query: Optional[str] = None,
        page: int = 1,
        size: int = 20
    ) -> ReferralListResponse:
        """Admin listing with free-text search over both parties"""
        params = PaginationParams.clamped(page, size)
        now = self._now()
        referrer = aliased(User)
        referred = aliased(User)

        stmt = (
            select(ReferralAttribution)
            .join(referrer, referrer.id == ReferralAttribution.referrer_user_id)
            .outerjoin(referred, referred.id == ReferralAttribution.referred_user_id)
            .where(*self.scope.as_filter(ReferralAttribution))
        )
        if status:
            stmt = stmt.where(self._status_filter(status, now))
        if query and query.strip():
            pattern = f"%{query.strip()}%"
            stmt = stmt.where(or_(
                referrer.name.ilike(pattern),
                referrer.email.ilike(pattern),
                referred.name.ilike(pattern),
                referred.email.ilike(pattern),
                ReferralAttribution.referred_email.ilike(pattern),
                ReferralAttribution.referred_phone.ilike(pattern)
            ))
        stmt = stmt.order_by(ReferralAttribution.attributed_at.desc())

        result = await paginate(self.db, stmt, params)
        attributions = result["items"]
        users = await self._users_by_id(
            [item.referrer_user_id for item in attributions] + [item.referred_user_id for item in attributions]
        )

        items = []
        for attribution in attributions:
            referrer_user = users.get(attribution.referrer_user_id)
            items.append(ReferralListItem(
                id=attribution.id,
                status=self._effective_status(attribution, now),
                attributed_at=attribution.attributed_at,
                expires_at=attribution.expires_at,
                referrer=ReferralContact.model_validate(referrer_user) if referrer_user else ReferralContact(),
                referred=self._referred_contact(attribution, users),
                first_appointment_id=attribution.first_appointment_id
            ))

        return ReferralListResponse(
            items=items,
            total=result["total"],
            page=result["page"],
            size=result["size"],
            pages=result["pages"]
        )

    async def get_overview(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> ReferralOverview:
        """Invite and conversion counts, attributable revenue and top referrers"""
        now = self._now()
        scoped = list(self.scope.as_filter(ReferralAttribution))
        created_range = []
        rewarded_range = []
        if start and end:
            created_range = [ReferralAttribution.created_at >= start, ReferralAttribution.created_at <= end]
            rewarded_range = [ReferralAttribution.rewarded_at >= start, ReferralAttribution.rewarded_at <= end]

        async def count(*criteria) -> int:
            total = await self.db.scalar(
                select(func.count(ReferralAttribution.id)).where(*scoped, *created_range, *criteria)
            )
            return total or 0

        invites = await count()
        pending = await count(
            ReferralAttribution.status.in_(OPEN_STATUSES),
            ReferralAttribution.expires_at > now
        )
        confirmed = await count(ReferralAttribution.status.in_(CONFIRMED_STATUSES))

        revenue = await self.booking.get_attributable_revenue(self.scope, start, end)

        rewarded_count = func.count(ReferralAttribution.id).label("rewarded_count")
        top_result = await self.db.execute(
            select(ReferralAttribution.referrer_user_id, rewarded_count)
            .where(
                *scoped,
                *rewarded_range,
                ReferralAttribution.status == ReferralAttributionStatus.REWARDED
            )
            .group_by(ReferralAttribution.referrer_user_id)
            .order_by(rewarded_count.desc())
            .limit(5)
        )
        top = top_result.all()
        users = await self._users_by_id([row[0] for row in top])

        return ReferralOverview(
            invites=invites,
            pending=pending,
            confirmed=confirmed,
            revenue_attributable=Decimal(str(revenue or 0)),
            top_referrers=[
                TopReferrer(
                    user_id=user_id,
                    count=total,
                    name=users[user_id].name if user_id in users else "Unknown",
                    email=users[user_id].email if user_id in users else None
                )
                for user_id, total in top
            ]
        )

    # Referrer facing

    async def get_referrer_summary(self, user_id) -> ReferrerSummary:
        """The referrer's code, current rewards and their referrals bucketed by outcome"""
        user_id = to_uuid(user_id)
        config = await self.config_service.get_config()
        module_enabled = await self.config_service.is_module_enabled()
        code = await self.code_service.get_or_create_code(user_id)
        reward_summary = await self.config_service.get_reward_summary(config)

        result = await self.db.execute(
            select(ReferralAttribution).where(
                *self.scope.as_filter(ReferralAttribution),
                ReferralAttribution.referrer_user_id == user_id
            ).order_by(ReferralAttribution.created_at.desc())
        )
        attributions = list(result.scalars().all())
        users = await self._users_by_id([item.referred_user_id for item in attributions])

        now = self._now()
        buckets: Dict[str, List[ReferralItem]] = {"pending": [], "confirmed": [], "expired": [], "invalidated": []}
        for attribution in attributions:
            status = self._effective_status(attribution, now)
            item = ReferralItem(
                id=attribution.id,
                status=status,
                attributed_at=attribution.attributed_at,
                expires_at=attribution.expires_at,
                referred=self._referred_contact(attribution, users)
            )
            if status in OPEN_STATUSES:
                buckets["pending"].append(item)
            elif status in CONFIRMED_STATUSES:
                buckets["confirmed"].append(item)
            elif status == ReferralAttributionStatus.EXPIRED:
                buckets["expired"].append(item)
            else:
                buckets["invalidated"].append(item)

        return ReferrerSummary(
            code=code.code,
            program_enabled=module_enabled and config.enabled,
            reward_summary=reward_summary,
            **buckets
        )

    async def resolve_referral(self, code: str) -> ResolveReferralResponse:
        """Landing-page payload for a shared referral link"""
        config = await self.config_service.get_config()
        module_enabled = await self.config_service.is_module_enabled()
        _, referrer = await self.code_service.resolve_code(code)
        return ResolveReferralResponse(
            referrer_display_name=referrer.name,
            program_enabled=module_enabled and config.enabled,
            reward_summary=await self.config_service.get_reward_summary(config),
            expires_in_days=config.attribution_expiry_days
        )
