"""Custom validators and normalizers"""

import re
from typing import Optional
from email_validator import validate_email, EmailNotValidError

# Referral codes are hex tokens rendered upper-case
REFERRAL_CODE_PATTERN = re.compile(r"^[A-Z0-9]{4,32}$")

def validate_email_address(email: str) -> str:
    """Validate and normalize email"""
    email = email.strip().lower()

    try:
        # Validate email
        validation = validate_email(email, check_deliverability=False)
        return validation.normalized.lower()
    except EmailNotValidError as e:
        raise ValueError(str(e))

def normalize_email(email: Optional[str]) -> Optional[str]:
    """Lower-case and trim an email used as an identity token"""
    if not email or not email.strip():
        return None
    return email.strip().lower()

def normalize_phone(phone: Optional[str]) -> Optional[str]:
    """Strip formatting from a phone used as an identity token"""
    if not phone or not phone.strip():
        return None
    cleaned = re.sub(r"[^\d+]", "", phone)
    return cleaned or None

def normalize_referral_code(code: str) -> str:
    """Normalize user-typed or linked referral codes"""
    cleaned = re.sub(r"[\s\-_]", "", code or "").upper()
    if not REFERRAL_CODE_PATTERN.match(cleaned):
        raise ValueError("Invalid referral code format")
    return cleaned
