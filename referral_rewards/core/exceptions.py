"""
Custom exception classes
Provides consistent error responses for the referral and reward services
"""

from fastapi import HTTPException, status
from typing import Any, Dict, Optional

class ReferralRewardsException(HTTPException):
    """Base exception class for the referral rewards services"""

    def __init__(
        self,
        status_code: int,
        detail: str,
        error_code: Optional[str] = None,
        headers: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.error_code = error_code

class BadRequestException(ReferralRewardsException):
    """400 Bad Request"""

    def __init__(self, detail: str, error_code: str = "BAD_REQUEST"):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=detail,
            error_code=error_code
        )

class NotFoundException(ReferralRewardsException):
    """404 Not Found"""

    def __init__(self, detail: str = "Not found", error_code: str = "NOT_FOUND"):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=detail,
            error_code=error_code
        )

class InternalServerException(ReferralRewardsException):
    """500 Internal Server Error"""

    def __init__(
        self,
        detail: str = "Internal server error",
        error_code: str = "INTERNAL_ERROR"
    ):
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=detail,
            error_code=error_code
        )

# Validation errors, surfaced to the caller as-is
class ValidationException(BadRequestException):
    """Referral or reward request rejected by a guard"""

    def __init__(self, detail: str, error_code: str = "VALIDATION_ERROR"):
        super().__init__(detail=detail, error_code=error_code)

class ProgramDisabledException(ValidationException):
    def __init__(self, detail: str = "The referral program is disabled."):
        super().__init__(detail=detail, error_code="PROGRAM_DISABLED")

class SelfReferralException(ValidationException):
    def __init__(self, detail: str = "You cannot refer yourself."):
        super().__init__(detail=detail, error_code="SELF_REFERRAL")

class DuplicateReferralException(ValidationException):
    def __init__(self, detail: str = "This person has already been referred."):
        super().__init__(detail=detail, error_code="DUPLICATE_REFERRAL")

class NotEligibleException(ValidationException):
    def __init__(
        self,
        detail: str = "The referred person is already a customer.",
        reason: str = "not_new_customer"
    ):
        super().__init__(detail=detail, error_code="NOT_ELIGIBLE")
        self.reason = reason

class AttributionExpiredException(ValidationException):
    def __init__(self, detail: str = "The referral has expired."):
        super().__init__(detail=detail, error_code="ATTRIBUTION_EXPIRED")

class InvalidRewardConfigException(ValidationException):
    def __init__(self, detail: str):
        super().__init__(detail=detail, error_code="INVALID_REWARD_CONFIG")

class InsufficientBalanceException(ValidationException):
    def __init__(self, detail: str = "Insufficient wallet balance."):
        super().__init__(detail=detail, error_code="INSUFFICIENT_BALANCE")

class InvalidCouponException(ValidationException):
    """Coupon cannot be applied; error_code names the violated rule"""

    def __init__(self, detail: str, error_code: str):
        super().__init__(detail=detail, error_code=error_code)

# Lookups
class ReferralCodeNotFoundException(NotFoundException):
    def __init__(self, detail: str = "Referral code not found"):
        super().__init__(detail=detail, error_code="REFERRAL_CODE_NOT_FOUND")

class AttributionNotFoundException(NotFoundException):
    def __init__(self, detail: str = "Referral not found"):
        super().__init__(detail=detail, error_code="ATTRIBUTION_NOT_FOUND")

class CouponNotFoundException(NotFoundException):
    def __init__(self, detail: str = "Coupon not found"):
        super().__init__(detail=detail, error_code="COUPON_NOT_FOUND")

class UserNotFoundException(NotFoundException):
    def __init__(self, detail: str = "User not found"):
        super().__init__(detail=detail, error_code="USER_NOT_FOUND")

class TemplateNotFoundException(NotFoundException):
    def __init__(self, detail: str = "Template not found"):
        super().__init__(detail=detail, error_code="TEMPLATE_NOT_FOUND")

class ProgramConfigNotFoundException(NotFoundException):
    def __init__(self, detail: str = "The source location has no referral configuration"):
        super().__init__(detail=detail, error_code="PROGRAM_CONFIG_NOT_FOUND")

# Invariant violations: internal, alert-worthy, never retried blindly
class InvariantViolationException(InternalServerException):
    def __init__(self, detail: str, error_code: str = "INVARIANT_VIOLATION"):
        super().__init__(detail=detail, error_code=error_code)

class MissingRewardServiceException(InvariantViolationException):
    def __init__(self, detail: str = "A free-service reward requires a service id."):
        super().__init__(detail=detail, error_code="MISSING_REWARD_SERVICE")

class CodeGenerationExhaustedException(InvariantViolationException):
    def __init__(self, detail: str = "Unable to generate referral code"):
        super().__init__(detail=detail, error_code="CODE_GENERATION_EXHAUSTED")
