"""
Helper utilities
"""

import re
import calendar
import uuid
from typing import Optional, Tuple
from decimal import Decimal
from datetime import datetime, timezone

from referral_rewards.core.config import settings
from referral_rewards.models.reward import RewardType

# Separators used by the booking form when it joins contact fields
CONTACT_SEPARATORS = re.compile(r"·|\||,|/")

def parse_contact_tokens(contact: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """
    Split a free-text booking contact into (email, phone)

    Args:
        contact: e.g. "g@example.com · +34 600 000 000"

    Returns:
        Tuple of email (lower-cased) and phone, either may be None
    """
    if not contact or not contact.strip():
        return None, None

    parts = [part.strip() for part in CONTACT_SEPARATORS.split(contact)]
    parts = [part for part in parts if part]

    email = None
    phone = None
    for part in parts:
        if email is None and "@" in part:
            email = part
        elif phone is None and "@" not in part:
            phone = part

    if email is None and "@" in contact:
        email = contact.strip()
    if phone is None and "@" not in contact:
        phone = contact.strip()

    return (email.lower() if email else None), phone

def format_amount(amount, symbol: Optional[str] = None) -> str:
    """Format a money amount with two decimals and the currency symbol"""
    value = max(Decimal("0"), Decimal(str(amount or 0)))
    return f"{value:.2f}{symbol if symbol is not None else settings.CURRENCY_SYMBOL}"

def format_reward_text(
    reward_type: RewardType,
    value=None,
    service_name: Optional[str] = None
) -> str:
    """
    Human readable description of a reward

    Args:
        reward_type: Reward kind
        value: Amount or percentage
        service_name: Name of the free service, if any

    Returns:
        Short text such as "5.00€ credit" or "15% discount"
    """
    reward_type = RewardType(reward_type)
    if reward_type == RewardType.WALLET:
        return f"{format_amount(value)} credit"
    if reward_type == RewardType.PERCENT_DISCOUNT:
        percent = max(Decimal("0"), Decimal(str(value or 0)))
        return f"{percent.normalize():f}% discount"
    if reward_type == RewardType.FIXED_DISCOUNT:
        return f"{format_amount(value)} discount"
    return f"{service_name} free" if service_name else "Free service"

def start_of_month(date: datetime) -> datetime:
    return date.replace(day=1, hour=0, minute=0, second=0, microsecond=0)

def end_of_month(date: datetime) -> datetime:
    last_day = calendar.monthrange(date.year, date.month)[1]
    return date.replace(day=last_day, hour=23, minute=59, second=59, microsecond=999999)

def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Drop tzinfo after converting to UTC; stored timestamps are compared as naive UTC"""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)

def to_uuid(value) -> Optional[uuid.UUID]:
    """Coerce ids arriving as strings into UUIDs for Uuid columns"""
    if value is None or isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))
