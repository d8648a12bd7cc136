"""Booking data handed to the referral engine by the host platform."""

from typing import Optional
from decimal import Decimal
from datetime import datetime
import uuid

from referral_rewards.schemas.base import BaseSchema


class AppointmentInfo(BaseSchema):
    id: str
    status: str
    start_at: datetime
    user_id: Optional[uuid.UUID] = None
    guest_contact: Optional[str] = None
    service_id: Optional[str] = None
    price: Decimal = Decimal("0")
    referral_attribution_id: Optional[uuid.UUID] = None

    @property
    def is_completed(self) -> bool:
        return self.status == "completed"
