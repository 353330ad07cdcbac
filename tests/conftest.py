"""
Shared fixtures: a fresh in-memory SQLite schema per test, plus factories
for users, crew members and bookings.
"""
import os

# Must be set before carwash.lib.settings is imported anywhere
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["DB_RETRY_ATTEMPTS"] = "3"
os.environ["JWT_SECRET"] = "test-secret"

from uuid import uuid4

import pytest

import carwash.models  # noqa: F401
from carwash.lib.clock import utcnow
from carwash.lib.db import SessionLocal, drop_db, init_db
from carwash.lib.jwt import create_access_token
from carwash.lib.metrics import reset_metrics
from carwash.models.bookings import (
    Booking,
    BookingStatus,
    BookingType,
    ServiceCategory,
    ServiceType,
    UnitType,
)
from carwash.models.users import CrewStatus, User, UserRole


@pytest.fixture(autouse=True)
def fresh_schema():
    """Create all tables before each test and drop them afterwards."""
    init_db()
    reset_metrics()
    yield
    drop_db()


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_user(db):
    def _make_user(role: UserRole = UserRole.USER, **overrides) -> User:
        user = User(
            email=f"{uuid4().hex[:10]}@example.com",
            full_name=overrides.pop("full_name", f"{role.value.title()} {uuid4().hex[:4]}"),
            role=role,
            is_active=True,
        )
        if role == UserRole.CREW:
            user.crew_status = CrewStatus.AVAILABLE
            user.crew_skills = ["exterior_wash", "interior_detail"]
            user.branch_location = "Makati"
        for key, value in overrides.items():
            setattr(user, key, value)
        db.add(user)
        db.commit()
        return user

    return _make_user


@pytest.fixture
def make_booking(db):
    def _make_booking(
        status: BookingStatus = BookingStatus.CONFIRMED,
        customer: User = None,
        **overrides,
    ) -> Booking:
        now = utcnow()
        booking = Booking(
            type=BookingType.REGISTERED if customer else BookingType.GUEST,
            user_id=customer.id if customer else None,
            guest_info=None if customer else {
                "firstName": "Juan",
                "lastName": "Dela Cruz",
                "email": "juan@example.com",
                "phone": "09171234567",
            },
            confirmation_code="K7Q2M9XA",
            category=ServiceCategory.CARWASH,
            service="Premium Wash",
            service_type=ServiceType.BRANCH,
            unit_type=UnitType.CAR,
            unit_size="sedan",
            plate_number="ABC 1234",
            date="2026-10-20",
            time_slot="10:00 AM",
            branch="Makati",
            base_price=500,
            total_price=500,
            status=status,
            version=1,
            assigned_crew=[],
            created_at=now,
            updated_at=now,
        )
        for key, value in overrides.items():
            setattr(booking, key, value)
        db.add(booking)
        db.commit()
        return booking

    return _make_booking


@pytest.fixture
def admin(make_user):
    return make_user(UserRole.ADMIN, full_name="Ana Admin")


@pytest.fixture
def customer(make_user):
    return make_user(UserRole.USER, full_name="Carla Customer")


def _bearer(user: User) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user.id, user.role.value)}"}


@pytest.fixture
def auth_headers():
    """Bearer header factory for a user, as issued at login."""
    return _bearer
