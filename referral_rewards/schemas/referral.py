"""Referral program schemas: program config, reward definitions and payloads."""

from typing import Optional, List, Literal, Union, Annotated
from decimal import Decimal
from datetime import datetime
import uuid
from pydantic import BaseModel, Field, field_validator

from referral_rewards.models.reward import RewardType
from referral_rewards.models.referral import ReferralAttributionStatus, ReferralChannel
from referral_rewards.schemas.base import BaseSchema
from referral_rewards.utils.helpers import format_reward_text
from referral_rewards.utils.validators import validate_email_address, normalize_phone


class AntiFraudConfig(BaseModel):
    block_self_by_user: bool = True
    block_self_by_contact: bool = True
    block_duplicate_contact: bool = True


class _RewardBase(BaseModel):
    service_id: Optional[str] = None
    service_name: Optional[str] = None

    @property
    def reward_type(self) -> RewardType:
        return RewardType(self.kind)

    @property
    def text(self) -> str:
        return format_reward_text(self.reward_type, getattr(self, "value", None), self.service_name)


class WalletReward(_RewardBase):
    """Credit added to the wallet balance"""
    kind: Literal["wallet"] = "wallet"
    value: Decimal

    @field_validator("value")
    def validate_amount(cls, v):
        if v is None or v <= 0:
            raise ValueError("Wallet reward must be greater than 0")
        return v


class PercentDiscountReward(_RewardBase):
    """Single-use coupon for a percentage off"""
    kind: Literal["percent_discount"] = "percent_discount"
    value: Decimal

    @field_validator("value")
    def validate_percent(cls, v):
        if v is None or v <= 0 or v > 100:
            raise ValueError("Percent discount must be between 1 and 100")
        return v


class FixedDiscountReward(_RewardBase):
    """Single-use coupon for a fixed amount off"""
    kind: Literal["fixed_discount"] = "fixed_discount"
    value: Decimal

    @field_validator("value")
    def validate_amount(cls, v):
        if v is None or v <= 0:
            raise ValueError("Fixed discount must be greater than 0")
        return v


class FreeServiceReward(_RewardBase):
    """Single-use coupon covering one service"""
    kind: Literal["free_service"] = "free_service"
    value: Optional[Decimal] = None
    service_id: Optional[str] = Field(None, validate_default=True)

    @field_validator("service_id")
    def validate_service(cls, v):
        if not v or not v.strip():
            raise ValueError("Free service reward requires a service")
        return v.strip()


RewardDefinition = Annotated[
    Union[WalletReward, PercentDiscountReward, FixedDiscountReward, FreeServiceReward],
    Field(discriminator="kind")
]

REWARD_CLASSES = {
    RewardType.WALLET: WalletReward,
    RewardType.PERCENT_DISCOUNT: PercentDiscountReward,
    RewardType.FIXED_DISCOUNT: FixedDiscountReward,
    RewardType.FREE_SERVICE: FreeServiceReward,
}


def normalize_service_ids(v):
    if not v:
        return None
    ids = []
    for item in v:
        if isinstance(item, str) and item.strip() and item.strip() not in ids:
            ids.append(item.strip())
    return ids or None


def default_reward() -> WalletReward:
    return WalletReward(value=Decimal("5"))


class ProgramConfig(BaseModel):
    """Effective referral program settings for one tenant scope"""
    enabled: bool = False
    attribution_expiry_days: int = Field(30, ge=1, le=365)
    new_customer_only: bool = True
    monthly_max_rewards_per_referrer: Optional[int] = Field(None, ge=1)
    allowed_service_ids: Optional[List[str]] = None
    reward_referrer: RewardDefinition = Field(default_factory=default_reward)
    reward_referred: RewardDefinition = Field(default_factory=default_reward)
    anti_fraud: AntiFraudConfig = Field(default_factory=AntiFraudConfig)

    @field_validator("allowed_service_ids")
    def clean_service_ids(cls, v):
        return normalize_service_ids(v)

    def allows_service(self, service_id: Optional[str]) -> bool:
        if not self.allowed_service_ids:
            return True
        return service_id in self.allowed_service_ids


class ProgramSettingsUpdate(BaseModel):
    """Partial update; omitted fields keep their stored value"""
    enabled: Optional[bool] = None
    attribution_expiry_days: Optional[int] = Field(None, ge=1, le=365)
    new_customer_only: Optional[bool] = None
    monthly_max_rewards_per_referrer: Optional[int] = Field(None, ge=0)
    allowed_service_ids: Optional[List[str]] = None
    reward_referrer: Optional[RewardDefinition] = None
    reward_referred: Optional[RewardDefinition] = None
    anti_fraud: Optional[AntiFraudConfig] = None


class ProgramConfigUpdate(ProgramSettingsUpdate):
    module_enabled: Optional[bool] = None


def _clean_template_name(v):
    if v is None:
        return v
    v = v.strip()
    if not v:
        raise ValueError("Template name is required")
    return v


class ReferralTemplateCreate(ProgramConfig):
    """New brand template; templates are enabled unless stated otherwise"""
    name: str = Field(..., max_length=120)
    enabled: bool = True

    @field_validator("name")
    def validate_name(cls, v):
        return _clean_template_name(v)


class ReferralTemplateUpdate(ProgramSettingsUpdate):
    name: Optional[str] = Field(None, max_length=120)

    @field_validator("name")
    def validate_name(cls, v):
        return _clean_template_name(v)


class ReferralTemplate(ProgramConfig):
    id: uuid.UUID
    name: str
    created_at: Optional[datetime] = None


class AttributeReferralRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=64)
    channel: ReferralChannel = ReferralChannel.LINK
    user_id: Optional[uuid.UUID] = None
    referred_email: Optional[str] = Field(None, max_length=120)
    referred_phone: Optional[str] = Field(None, max_length=40)

    @field_validator("referred_email")
    def validate_email(cls, v):
        if v is None or not v.strip():
            return None
        return validate_email_address(v)

    @field_validator("referred_phone")
    def validate_phone(cls, v):
        return normalize_phone(v)

    @property
    def missing_contact(self) -> bool:
        return not (self.user_id or self.referred_email or self.referred_phone)


class AttributionResult(BaseSchema):
    attribution_id: uuid.UUID
    expires_at: datetime


class CompletionOutcome(BaseSchema):
    """Result of handling a completed booking; reason is set on policy voids"""
    attribution_id: Optional[uuid.UUID] = None
    status: Optional[ReferralAttributionStatus] = None
    reason: Optional[str] = None

    @property
    def rewarded(self) -> bool:
        return self.status == ReferralAttributionStatus.REWARDED


class ReferralContact(BaseSchema):
    id: Optional[uuid.UUID] = None
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class ReferralItem(BaseSchema):
    id: uuid.UUID
    status: ReferralAttributionStatus
    attributed_at: datetime
    expires_at: datetime
    referred: ReferralContact


class ReferralListItem(ReferralItem):
    referrer: ReferralContact
    first_appointment_id: Optional[str] = None


class ReferralListResponse(BaseSchema):
    items: List[ReferralListItem] = []
    total: int
    page: int
    size: int
    pages: int


class TopReferrer(BaseSchema):
    user_id: uuid.UUID
    count: int
    name: str
    email: Optional[str] = None


class ReferralOverview(BaseSchema):
    invites: int
    pending: int
    confirmed: int
    revenue_attributable: Decimal
    top_referrers: List[TopReferrer] = []


class RewardSummaryItem(BaseSchema):
    kind: RewardType
    value: Optional[Decimal] = None
    service_id: Optional[str] = None
    text: str


class RewardSummary(BaseSchema):
    referrer: RewardSummaryItem
    referred: RewardSummaryItem


class ReferrerSummary(BaseSchema):
    code: str
    program_enabled: bool
    reward_summary: RewardSummary
    pending: List[ReferralItem] = []
    confirmed: List[ReferralItem] = []
    expired: List[ReferralItem] = []
    invalidated: List[ReferralItem] = []


class ResolveReferralResponse(BaseSchema):
    referrer_display_name: str
    program_enabled: bool
    reward_summary: RewardSummary
    expires_in_days: int
