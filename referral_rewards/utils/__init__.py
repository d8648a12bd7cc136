"""Utilities package"""

from .validators import validate_email_address, normalize_email, normalize_phone, normalize_referral_code
from .helpers import parse_contact_tokens, format_amount, format_reward_text, start_of_month, end_of_month, as_naive_utc, to_uuid
from .pagination import paginate, PaginationParams

__all__ = [
    "validate_email_address",
    "normalize_email",
    "normalize_phone",
    "normalize_referral_code",
    "parse_contact_tokens",
    "format_amount",
    "format_reward_text",
    "start_of_month",
    "end_of_month",
    "as_naive_utc",
    "to_uuid",
    "paginate",
    "PaginationParams",
]
