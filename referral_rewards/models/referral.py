"""Referral program models"""

from sqlalchemy import Column, String, Integer, Boolean, ForeignKey, DateTime, Numeric, Enum, Index, UniqueConstraint, JSON, Uuid
import enum
from datetime import timezone

from .base import Base, TimestampedModel, UUIDModel, TenantScopedModel
from .reward import RewardType

class ReferralAttributionStatus(str, enum.Enum):
    ATTRIBUTED = "attributed"
    BOOKED = "booked"
    COMPLETED = "completed"
    REWARDED = "rewarded"
    VOIDED = "voided"
    EXPIRED = "expired"

# Only these states may be matched against a new booking or contact
OPEN_STATUSES = (ReferralAttributionStatus.ATTRIBUTED, ReferralAttributionStatus.BOOKED)

class ReferralChannel(str, enum.Enum):
    WHATSAPP = "whatsapp"
    QR = "qr"
    COPY = "copy"
    LINK = "link"

class ReferralCode(Base, TimestampedModel, UUIDModel, TenantScopedModel):
    """Shareable code, one per (tenant scope, user)"""

    __tablename__ = "referral_codes"

    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False)
    code = Column(String(32), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "location_id", "code", name="uq_referral_codes_scope_code"),
        UniqueConstraint("tenant_id", "location_id", "user_id", name="uq_referral_codes_scope_user"),
    )

class ReferralAttribution(Base, TimestampedModel, UUIDModel, TenantScopedModel):
    """Tracked claim that a referrer brought in a referred person"""

    __tablename__ = "referral_attributions"

    referral_code_id = Column(Uuid(as_uuid=True), ForeignKey("referral_codes.id"), nullable=False)
    referrer_user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    referred_user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=True, index=True)
    referred_email = Column(String(120), nullable=True, index=True)
    referred_phone = Column(String(40), nullable=True, index=True)

    status = Column(
        Enum(ReferralAttributionStatus),
        default=ReferralAttributionStatus.ATTRIBUTED,
        nullable=False,
        index=True
    )
    attributed_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)  # fixed at creation
    rewarded_at = Column(DateTime(timezone=True), nullable=True)
    first_appointment_id = Column(String(64), nullable=True, index=True)

    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JSON, nullable=True)

    __table_args__ = (
        Index("idx_referral_attributions_scope_status", "tenant_id", "location_id", "status"),
    )

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    def is_expired(self, now) -> bool:
        expires_at = self.expires_at
        if expires_at.tzinfo is not None:
            expires_at = expires_at.astimezone(timezone.utc).replace(tzinfo=None)
        return expires_at <= now

    def merge_metadata(self, **extra) -> None:
        """Replace metadata with a merged copy so the JSON column is flagged dirty"""
        current = self.meta if isinstance(self.meta, dict) else {}
        self.meta = {**current, **extra}

class ProgramSettingsMixin:
    """Program settings columns shared by location configs and brand templates"""

    enabled = Column(Boolean, default=False, nullable=False)
    attribution_expiry_days = Column(Integer, default=30, nullable=False)
    new_customer_only = Column(Boolean, default=True, nullable=False)
    monthly_max_rewards_per_referrer = Column(Integer, nullable=True)
    allowed_service_ids = Column(JSON, nullable=True)

    reward_referrer_type = Column(Enum(RewardType), default=RewardType.WALLET, nullable=False)
    reward_referrer_value = Column(Numeric(10, 2), nullable=True)
    reward_referrer_service_id = Column(String(64), nullable=True)
    reward_referrer_service_name = Column(String(120), nullable=True)

    reward_referred_type = Column(Enum(RewardType), default=RewardType.WALLET, nullable=False)
    reward_referred_value = Column(Numeric(10, 2), nullable=True)
    reward_referred_service_id = Column(String(64), nullable=True)
    reward_referred_service_name = Column(String(120), nullable=True)

    anti_fraud = Column(JSON, nullable=True)

class ReferralConfigTemplate(Base, TimestampedModel, UUIDModel, ProgramSettingsMixin):
    """Named program settings shared by every location of a brand"""

    __tablename__ = "referral_config_templates"

    tenant_id = Column(String(64), nullable=False, index=True)
    name = Column(String(120), nullable=False)

class ReferralProgramConfig(Base, TimestampedModel, UUIDModel, TenantScopedModel, ProgramSettingsMixin):
    """Referral program settings for one tenant scope"""

    __tablename__ = "referral_program_configs"

    module_enabled = Column(Boolean, nullable=True)  # None defers to settings
    applied_template_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("referral_config_templates.id", ondelete="SET NULL"),
        nullable=True
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "location_id", name="uq_referral_program_configs_scope"),
    )
