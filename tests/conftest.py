"""
Pytest configuration and shared fixtures for the referral and reward services.
"""
import pytest
import pytest_asyncio
from decimal import Decimal
from datetime import datetime, timedelta
from typing import Dict, List, Optional
from sqlalchemy import select
from sqlalchemy.pool import StaticPool

from referral_rewards.core.database import build_engine, create_session_factory, init_db
from referral_rewards.core.tenancy import TenantScope
from referral_rewards.models import User, ReferralCode
from referral_rewards.schemas.booking import AppointmentInfo
from referral_rewards.services.booking import BookingGateway
from referral_rewards.services.referral_config import ReferralConfigService
from referral_rewards.services.referral_attribution import ReferralAttributionService
from referral_rewards.services.rewards import RewardLedgerService


class FixedClock:
    """Callable clock that only moves when told to"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeBookingGateway(BookingGateway):
    """In-memory appointments keyed by id"""

    def __init__(self):
        self.appointments: Dict[str, AppointmentInfo] = {}

    def add(self, **fields) -> AppointmentInfo:
        appointment = AppointmentInfo(**fields)
        self.appointments[appointment.id] = appointment
        return appointment

    async def get_appointment(self, scope, appointment_id):
        return self.appointments.get(appointment_id)

    async def has_prior_appointments(
        self,
        scope,
        user_id=None,
        email=None,
        phone=None,
        before=None,
        exclude_appointment_id=None
    ):
        for appointment in self.appointments.values():
            if appointment.id == exclude_appointment_id:
                continue
            if before is not None:
                if appointment.start_at >= before or appointment.status in ("cancelled", "no_show"):
                    continue
            contact = (appointment.guest_contact or "").lower().replace(" ", "")
            if user_id and appointment.user_id == user_id:
                return True
            if email and email in contact:
                return True
            if phone and phone in contact:
                return True
        return False

    async def get_attributable_revenue(self, scope, start=None, end=None):
        total = Decimal("0")
        for appointment in self.appointments.values():
            if appointment.status != "completed" or not appointment.referral_attribution_id:
                continue
            if start and end and not (start <= appointment.start_at <= end):
                continue
            total += appointment.price
        return total


class RecordingNotifier:
    """Collects reward notifications instead of sending them"""

    def __init__(self):
        self.sent: List[tuple] = []
        self.fail = False

    async def send_reward_unlocked(self, user, title, message, reward_text=None):
        if self.fail:
            raise RuntimeError("smtp unavailable")
        self.sent.append((user.id, title, reward_text))
        return True


@pytest.fixture
def clock():
    """Fixed datetime for deterministic expiry"""
    return FixedClock(datetime(2026, 3, 10, 12, 0, 0))


@pytest.fixture
def scope():
    return TenantScope(tenant_id="brand-1", location_id="loc-1")


@pytest.fixture
def other_scope():
    return TenantScope(tenant_id="brand-1", location_id="loc-2")


@pytest_asyncio.fixture
async def engine():
    engine = build_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db(engine):
    async with create_session_factory(engine)() as session:
        yield session


@pytest.fixture
def reload(db):
    """Fetch a row from the database, discarding any in-session state"""
    async def _reload(model, row_id):
        result = await db.execute(
            select(model).where(model.id == row_id).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()
    return _reload


@pytest_asyncio.fixture
async def referrer(db):
    user = User(name="Rita Referrer", email="rita@example.com", phone="+34600111222")
    db.add(user)
    await db.commit()
    return user


@pytest_asyncio.fixture
async def guest(db):
    user = User(name="Gina Guest", email="g@example.com", phone="+34600333444")
    db.add(user)
    await db.commit()
    return user


@pytest_asyncio.fixture
async def referral_code(db, scope, referrer):
    code = ReferralCode(user_id=referrer.id, code="ABC123", is_active=True, **scope.as_values())
    db.add(code)
    await db.commit()
    return code


@pytest.fixture
def gateway():
    return FakeBookingGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def config_service(db, scope):
    return ReferralConfigService(db, scope)


@pytest_asyncio.fixture
async def enabled_program(config_service):
    return await config_service.update_config({"enabled": True})


@pytest.fixture
def ledger(db, scope, clock):
    return RewardLedgerService(db, scope, clock=clock)


@pytest.fixture
def referrals(db, scope, gateway, notifier, clock):
    return ReferralAttributionService(db, scope, gateway, notifier=notifier, clock=clock)


def make_appointment(gateway: FakeBookingGateway, appointment_id: str, start_at: datetime, **fields) -> AppointmentInfo:
    fields.setdefault("status", "completed")
    fields.setdefault("service_id", "svc-1")
    fields.setdefault("price", Decimal("30"))
    return gateway.add(id=appointment_id, start_at=start_at, **fields)


@pytest.fixture
def appointment_factory(gateway, clock):
    """Register an appointment starting a day after the current clock"""
    def _factory(appointment_id: str, start_at: Optional[datetime] = None, **fields):
        return make_appointment(gateway, appointment_id, start_at or clock.now + timedelta(days=1), **fields)
    return _factory
