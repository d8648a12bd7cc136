"""
Tests for helper utilities and validators.
"""
import uuid
import pytest
from decimal import Decimal
from datetime import datetime, timezone, timedelta

from referral_rewards.models import RewardType
from referral_rewards.utils.helpers import (
    parse_contact_tokens,
    format_amount,
    format_reward_text,
    start_of_month,
    end_of_month,
    as_naive_utc,
    to_uuid,
)
from referral_rewards.utils.pagination import PaginationParams
from referral_rewards.utils.validators import (
    validate_email_address,
    normalize_email,
    normalize_phone,
    normalize_referral_code,
)


class TestParseContactTokens:
    """Tests for parse_contact_tokens"""

    def test_email_and_phone(self):
        assert parse_contact_tokens("G@Example.com · +34 600 000 000") == ("g@example.com", "+34 600 000 000")

    def test_pipe_separator(self):
        assert parse_contact_tokens("+34 600 000 000 | g@example.com") == ("g@example.com", "+34 600 000 000")

    def test_email_only(self):
        assert parse_contact_tokens("g@example.com") == ("g@example.com", None)

    def test_phone_only(self):
        assert parse_contact_tokens("600 000 000") == (None, "600 000 000")

    def test_empty(self):
        assert parse_contact_tokens(None) == (None, None)
        assert parse_contact_tokens("   ") == (None, None)


class TestFormatting:
    """Tests for amount and reward text formatting"""

    def test_format_amount(self):
        assert format_amount(Decimal("5")) == "5.00€"
        assert format_amount("7.5", symbol="$") == "7.50$"
        assert format_amount(None) == "0.00€"
        assert format_amount(Decimal("-3")) == "0.00€"

    @pytest.mark.parametrize("reward_type,value,service_name,expected", [
        (RewardType.WALLET, Decimal("5"), None, "5.00€ credit"),
        (RewardType.PERCENT_DISCOUNT, Decimal("15"), None, "15% discount"),
        (RewardType.PERCENT_DISCOUNT, Decimal("10.00"), None, "10% discount"),
        (RewardType.FIXED_DISCOUNT, Decimal("7.5"), None, "7.50€ discount"),
        (RewardType.FREE_SERVICE, None, "Haircut", "Haircut free"),
        (RewardType.FREE_SERVICE, None, None, "Free service"),
    ])
    def test_format_reward_text(self, reward_type, value, service_name, expected):
        assert format_reward_text(reward_type, value, service_name) == expected

    def test_format_reward_text_accepts_raw_value(self):
        assert format_reward_text("wallet", 12) == "12.00€ credit"


class TestDates:
    """Tests for month bounds and timezone handling"""

    def test_month_bounds(self):
        now = datetime(2024, 2, 14, 9, 30)
        assert start_of_month(now) == datetime(2024, 2, 1, 0, 0, 0)
        assert end_of_month(now) == datetime(2024, 2, 29, 23, 59, 59, 999999)

    def test_as_naive_utc(self):
        aware = datetime(2026, 3, 10, 14, 0, tzinfo=timezone(timedelta(hours=2)))
        assert as_naive_utc(aware) == datetime(2026, 3, 10, 12, 0)
        assert as_naive_utc(datetime(2026, 3, 10, 12, 0)) == datetime(2026, 3, 10, 12, 0)
        assert as_naive_utc(None) is None


class TestIdentifiers:
    """Tests for id coercion and pagination clamping"""

    def test_to_uuid(self):
        value = uuid.uuid4()
        assert to_uuid(value) is value
        assert to_uuid(str(value)) == value
        assert to_uuid(None) is None

    def test_to_uuid_rejects_garbage(self):
        with pytest.raises(ValueError):
            to_uuid("not-a-uuid")

    def test_pagination_clamped(self):
        params = PaginationParams.clamped(0, 500)
        assert (params.page, params.size) == (1, 100)
        assert PaginationParams.clamped(3, 2).size == 5
        assert PaginationParams.clamped(3, 10).offset == 20


class TestValidators:
    """Tests for contact and code normalization"""

    def test_validate_email_address(self):
        assert validate_email_address("  Guest@Example.COM ") == "guest@example.com"

    def test_validate_email_address_invalid(self):
        with pytest.raises(ValueError):
            validate_email_address("not-an-email")

    def test_normalize_email(self):
        assert normalize_email(" G@Example.com ") == "g@example.com"
        assert normalize_email("") is None

    def test_normalize_phone(self):
        assert normalize_phone("+34 (600) 111-222") == "+34600111222"
        assert normalize_phone("   ") is None
        assert normalize_phone("n/a") is None

    def test_normalize_referral_code(self):
        assert normalize_referral_code(" abc-123_def ") == "ABC123DEF"

    @pytest.mark.parametrize("code", ["", "ab", "ABC!23", "A" * 33])
    def test_normalize_referral_code_invalid(self, code):
        with pytest.raises(ValueError):
            normalize_referral_code(code)
