"""Referral program configuration per tenant scope, and brand-level templates"""

from typing import Optional, Union, List
import logging
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update
from pydantic import ValidationError

from referral_rewards.core.config import settings
from referral_rewards.core.tenancy import TenantScope
from referral_rewards.core.exceptions import (
    InvalidRewardConfigException,
    ProgramDisabledException,
    ProgramConfigNotFoundException,
    TemplateNotFoundException,
    ValidationException,
)
from referral_rewards.models import ReferralConfigTemplate, ReferralProgramConfig, RewardType
from referral_rewards.schemas.referral import (
    ProgramConfig,
    ProgramConfigUpdate,
    ReferralTemplate,
    ReferralTemplateCreate,
    ReferralTemplateUpdate,
    RewardSummary,
    RewardSummaryItem,
    REWARD_CLASSES,
    normalize_service_ids,
)
from referral_rewards.services.referral_policy import normalize_anti_fraud
from referral_rewards.utils.helpers import to_uuid

logger = logging.getLogger(__name__)

def _reward_from_row(reward_type, value, service_id, service_name):
    # Stored rows were validated on write; build without re-validating
    reward_type = RewardType(reward_type or RewardType.WALLET)
    return REWARD_CLASSES[reward_type].model_construct(
        kind=reward_type.value,
        value=value if value else None,
        service_id=service_id,
        service_name=service_name
    )

def _settings_from_row(row) -> dict:
    """ProgramConfig fields from a config or template row"""
    return dict(
        enabled=row.enabled,
        attribution_expiry_days=row.attribution_expiry_days,
        new_customer_only=row.new_customer_only,
        monthly_max_rewards_per_referrer=row.monthly_max_rewards_per_referrer or None,
        allowed_service_ids=normalize_service_ids(row.allowed_service_ids),
        reward_referrer=_reward_from_row(
            row.reward_referrer_type,
            row.reward_referrer_value,
            row.reward_referrer_service_id,
            row.reward_referrer_service_name
        ),
        reward_referred=_reward_from_row(
            row.reward_referred_type,
            row.reward_referred_value,
            row.reward_referred_service_id,
            row.reward_referred_service_name
        ),
        anti_fraud=normalize_anti_fraud(row.anti_fraud),
    )

def _write_settings(row, config: ProgramConfig) -> None:
    row.enabled = config.enabled
    row.attribution_expiry_days = config.attribution_expiry_days
    row.new_customer_only = config.new_customer_only
    row.monthly_max_rewards_per_referrer = config.monthly_max_rewards_per_referrer
    row.allowed_service_ids = config.allowed_service_ids

    row.reward_referrer_type = config.reward_referrer.reward_type
    row.reward_referrer_value = config.reward_referrer.value
    row.reward_referrer_service_id = config.reward_referrer.service_id
    row.reward_referrer_service_name = config.reward_referrer.service_name

    row.reward_referred_type = config.reward_referred.reward_type
    row.reward_referred_value = config.reward_referred.value
    row.reward_referred_service_id = config.reward_referred.service_id
    row.reward_referred_service_name = config.reward_referred.service_name

    row.anti_fraud = config.anti_fraud.model_dump()

def _validation_message(error: ValidationError) -> str:
    return error.errors()[0]["msg"]

class ReferralConfigService:
    """Loads, validates and stores the referral program configuration"""

    def __init__(self, db: AsyncSession, scope: TenantScope):
        self.db = db
        self.scope = scope

    async def _get_row(self) -> Optional[ReferralProgramConfig]:
        result = await self.db.execute(
            select(ReferralProgramConfig).where(*self.scope.as_filter(ReferralProgramConfig))
        )
        return result.scalar_one_or_none()

    def _to_config(self, row: Optional[ReferralProgramConfig]) -> ProgramConfig:
        if row is None:
            return ProgramConfig(attribution_expiry_days=settings.REFERRAL_DEFAULT_EXPIRY_DAYS)
        return ProgramConfig.model_construct(**_settings_from_row(row))

    async def get_config(self) -> ProgramConfig:
        """Stored configuration, or defaults when none was saved"""
        return self._to_config(await self._get_row())

    async def is_module_enabled(self) -> bool:
        row = await self._get_row()
        if row is not None and row.module_enabled is not None:
            return row.module_enabled
        return settings.REFERRAL_MODULE_ENABLED

    async def get_active_config(self) -> Optional[ProgramConfig]:
        """Configuration when both the module and the program are enabled, else None"""
        if not await self.is_module_enabled():
            return None
        config = await self.get_config()
        if not config.enabled:
            return None
        return config

    async def _ensure_module_enabled(self) -> None:
        if not await self.is_module_enabled():
            raise ProgramDisabledException("The referral module is not enabled for this location.")

    async def update_config(self, payload: Union[ProgramConfigUpdate, dict]) -> ProgramConfig:
        """
        Validate and upsert the program configuration

        Args:
            payload: Partial update; omitted fields keep their stored value

        Returns:
            The effective configuration after the update

        Raises:
            InvalidRewardConfigException: a field or reward definition is invalid
            ProgramDisabledException: the module is disabled for this scope
        """
        try:
            if not isinstance(payload, ProgramConfigUpdate):
                payload = ProgramConfigUpdate.model_validate(payload)
            changes = payload.model_dump(exclude_unset=True)
        except ValidationError as e:
            raise InvalidRewardConfigException(_validation_message(e))

        module_enabled = changes.pop("module_enabled", None)
        if module_enabled is not True:
            await self._ensure_module_enabled()

        if changes.get("monthly_max_rewards_per_referrer") == 0:
            changes["monthly_max_rewards_per_referrer"] = None

        row = await self._get_row()
        merged = self._to_config(row).model_dump()
        merged.update(changes)
        try:
            config = ProgramConfig.model_validate(merged)
        except ValidationError as e:
            raise InvalidRewardConfigException(_validation_message(e))

        if row is None:
            row = ReferralProgramConfig(**self.scope.as_values())
            self.db.add(row)

        _write_settings(row, config)
        if module_enabled is not None:
            row.module_enabled = module_enabled

        await self.db.commit()
        logger.info(f"Referral program config updated for {self.scope}: enabled={config.enabled}")
        return config

    async def _replace_config(self, values: dict, applied_template_id=None) -> ProgramConfig:
        """Overwrite this scope's settings with already validated values"""
        await self._ensure_module_enabled()

        config = ProgramConfig.model_construct(**values)
        row = await self._get_row()
        if row is None:
            row = ReferralProgramConfig(**self.scope.as_values())
            self.db.add(row)

        _write_settings(row, config)
        row.applied_template_id = applied_template_id
        await self.db.commit()
        return config

    async def apply_template(self, template_id) -> ProgramConfig:
        """
        Copy a brand template's settings into this location's configuration

        Raises:
            TemplateNotFoundException: no such template for this brand
            ProgramDisabledException: the module is disabled for this scope
        """
        template = await self._get_template(template_id)
        config = await self._replace_config(_settings_from_row(template), applied_template_id=template.id)
        logger.info(f"Referral template {template.id} applied to {self.scope}")
        return config

    async def copy_from_location(self, source_location_id: str) -> ProgramConfig:
        """
        Copy the configuration of another location of the same brand

        Raises:
            ValidationException: the source is this location
            ProgramConfigNotFoundException: the source location has no configuration
            ProgramDisabledException: the module is disabled for this scope
        """
        source_location_id = (source_location_id or "").strip()
        if source_location_id == self.scope.location_id:
            raise ValidationException("Choose a different location to copy from.", error_code="SAME_LOCATION")

        source_scope = TenantScope(tenant_id=self.scope.tenant_id, location_id=source_location_id)
        source = await ReferralConfigService(self.db, source_scope)._get_row()
        if source is None:
            raise ProgramConfigNotFoundException()

        config = await self._replace_config(_settings_from_row(source), applied_template_id=source.applied_template_id)
        logger.info(f"Referral program config copied from {source_scope} to {self.scope}")
        return config

    # Templates

    async def _get_template(self, template_id) -> ReferralConfigTemplate:
        try:
            template_id = to_uuid(template_id)
        except ValueError:
            raise TemplateNotFoundException()

        result = await self.db.execute(
            select(ReferralConfigTemplate).where(
                ReferralConfigTemplate.tenant_id == self.scope.tenant_id,
                ReferralConfigTemplate.id == template_id
            )
        )
        template = result.scalar_one_or_none()
        if template is None:
            raise TemplateNotFoundException()
        return template

    def _to_template(self, row: ReferralConfigTemplate) -> ReferralTemplate:
        return ReferralTemplate.model_construct(
            id=row.id,
            name=row.name,
            created_at=row.created_at,
            **_settings_from_row(row)
        )

    async def list_templates(self) -> List[ReferralTemplate]:
        """Templates of this scope's brand, newest first"""
        result = await self.db.execute(
            select(ReferralConfigTemplate)
            .where(ReferralConfigTemplate.tenant_id == self.scope.tenant_id)
            .order_by(ReferralConfigTemplate.created_at.desc())
        )
        return [self._to_template(row) for row in result.scalars().all()]

    async def create_template(self, payload: Union[ReferralTemplateCreate, dict]) -> ReferralTemplate:
        """
        Validate and store a new brand template

        Raises:
            InvalidRewardConfigException: a field or reward definition is invalid
        """
        try:
            if not isinstance(payload, ReferralTemplateCreate):
                payload = ReferralTemplateCreate.model_validate(payload)
        except ValidationError as e:
            raise InvalidRewardConfigException(_validation_message(e))

        row = ReferralConfigTemplate(tenant_id=self.scope.tenant_id, name=payload.name)
        _write_settings(row, payload)
        self.db.add(row)
        await self.db.commit()

        logger.info(f"Referral template '{row.name}' created for brand {self.scope.tenant_id}")
        return self._to_template(row)

    async def update_template(self, template_id, payload: Union[ReferralTemplateUpdate, dict]) -> ReferralTemplate:
        """
        Partially update a template; the merged settings are validated again

        Raises:
            TemplateNotFoundException: no such template for this brand
            InvalidRewardConfigException: a field or reward definition is invalid
        """
        row = await self._get_template(template_id)
        try:
            if not isinstance(payload, ReferralTemplateUpdate):
                payload = ReferralTemplateUpdate.model_validate(payload)
            changes = payload.model_dump(exclude_unset=True)
        except ValidationError as e:
            raise InvalidRewardConfigException(_validation_message(e))

        name = changes.pop("name", None) or row.name
        if changes.get("monthly_max_rewards_per_referrer") == 0:
            changes["monthly_max_rewards_per_referrer"] = None

        merged = ProgramConfig.model_construct(**_settings_from_row(row)).model_dump()
        merged.update(changes)
        try:
            config = ProgramConfig.model_validate(merged)
        except ValidationError as e:
            raise InvalidRewardConfigException(_validation_message(e))

        _write_settings(row, config)
        row.name = name
        await self.db.commit()

        logger.info(f"Referral template {row.id} updated")
        return self._to_template(row)

    async def delete_template(self, template_id) -> None:
        """Delete a template; configs that applied it keep their settings"""
        row = await self._get_template(template_id)
        await self.db.execute(
            update(ReferralProgramConfig)
            .where(ReferralProgramConfig.applied_template_id == row.id)
            .values(applied_template_id=None)
        )
        await self.db.delete(row)
        await self.db.commit()
        logger.info(f"Referral template {row.id} deleted")

    async def get_reward_summary(self, config: Optional[ProgramConfig] = None) -> RewardSummary:
        """Referrer and referred rewards with display text"""
        config = config or await self.get_config()

        def _item(reward) -> RewardSummaryItem:
            return RewardSummaryItem(
                kind=reward.reward_type,
                value=reward.value,
                service_id=reward.service_id,
                text=reward.text
            )

        return RewardSummary(
            referrer=_item(config.reward_referrer),
            referred=_item(config.reward_referred)
        )
