"""Booking collaborator used by the referral engine"""

from abc import ABC, abstractmethod
from typing import Optional
from decimal import Decimal
from datetime import datetime

from referral_rewards.core.tenancy import TenantScope
from referral_rewards.schemas.booking import AppointmentInfo

class BookingGateway(ABC):
    """
    Read access to appointments owned by the host platform

    Implementations must restrict every lookup to the given scope.
    """

    @abstractmethod
    async def get_appointment(self, scope: TenantScope, appointment_id: str) -> Optional[AppointmentInfo]:
        """Appointment by id, or None"""

    @abstractmethod
    async def has_prior_appointments(
        self,
        scope: TenantScope,
        user_id=None,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        before: Optional[datetime] = None,
        exclude_appointment_id: Optional[str] = None
    ) -> bool:
        """
        Whether the identity already booked at this location

        Args:
            scope: Tenant scope
            user_id: Registered customer
            email: Guest email token
            phone: Guest phone token
            before: Only count appointments starting before this time;
                cancelled and no-show appointments are ignored when set
            exclude_appointment_id: Appointment to leave out of the check
        """

    @abstractmethod
    async def get_attributable_revenue(
        self,
        scope: TenantScope,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> Decimal:
        """Sum of completed appointment prices linked to a referral"""
