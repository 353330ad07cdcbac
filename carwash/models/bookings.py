"""
Booking model - car wash service appointments and their status history.
"""
from datetime import datetime, timezone
from typing import Dict, FrozenSet, Optional
import enum

from sqlalchemy import String, Integer, Numeric, DateTime, ForeignKey, JSON, Text
from sqlalchemy.orm import Mapped, mapped_column

from carwash.lib.db import Base, enum_column_type, new_id


class BookingStatus(str, enum.Enum):
    """Booking lifecycle stages. Values are stored and sent as-is."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CREW_ASSIGNED = "crew_assigned"
    CREW_GOING = "crew_going"
    CREW_ARRIVED = "crew_arrived"
    IN_PROGRESS = "in_progress"
    WASHING = "washing"
    COMPLETED = "completed"
    PAID = "paid"
    CANCELLED = "cancelled"


# Forward-only transitions; cancellation is reachable until the work is done.
ALLOWED_TRANSITIONS: Dict[BookingStatus, FrozenSet[BookingStatus]] = {
    BookingStatus.PENDING: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELLED}),
    BookingStatus.CONFIRMED: frozenset({
        BookingStatus.CREW_ASSIGNED,
        BookingStatus.IN_PROGRESS,
        BookingStatus.CANCELLED,
    }),
    BookingStatus.CREW_ASSIGNED: frozenset({BookingStatus.CREW_GOING, BookingStatus.CANCELLED}),
    BookingStatus.CREW_GOING: frozenset({BookingStatus.CREW_ARRIVED, BookingStatus.CANCELLED}),
    BookingStatus.CREW_ARRIVED: frozenset({
        BookingStatus.IN_PROGRESS,
        BookingStatus.WASHING,
        BookingStatus.CANCELLED,
    }),
    BookingStatus.IN_PROGRESS: frozenset({
        BookingStatus.WASHING,
        BookingStatus.COMPLETED,
        BookingStatus.CANCELLED,
    }),
    BookingStatus.WASHING: frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED}),
    BookingStatus.COMPLETED: frozenset({BookingStatus.PAID}),
    BookingStatus.PAID: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
}

# Statuses in which a booking is still being worked on
ACTIVE_STATUSES: FrozenSet[BookingStatus] = frozenset({
    BookingStatus.CONFIRMED,
    BookingStatus.CREW_ASSIGNED,
    BookingStatus.CREW_GOING,
    BookingStatus.CREW_ARRIVED,
    BookingStatus.IN_PROGRESS,
    BookingStatus.WASHING,
})

# Statuses that occupy a branch time slot
SLOT_HOLDING_STATUSES: FrozenSet[BookingStatus] = frozenset({
    BookingStatus.PENDING,
    BookingStatus.CONFIRMED,
    BookingStatus.IN_PROGRESS,
})


def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
    """Re-applying the current status is always allowed."""
    return target == current or target in ALLOWED_TRANSITIONS[current]


class PaymentStatus(str, enum.Enum):
    """Payment status enumeration."""
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class BookingType(str, enum.Enum):
    REGISTERED = "registered"
    GUEST = "guest"


class ServiceCategory(str, enum.Enum):
    CARWASH = "carwash"
    AUTO_DETAILING = "auto_detailing"
    GRAPHENE_COATING = "graphene_coating"


class ServiceType(str, enum.Enum):
    BRANCH = "branch"
    HOME = "home"


class UnitType(str, enum.Enum):
    CAR = "car"
    MOTORCYCLE = "motorcycle"


class Booking(Base):
    """
    Booking entity - one scheduled wash for a registered user or a guest.
    Every write bumps `version`; updates are guarded on the version read.
    """
    __tablename__ = "bookings"

    id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
        default=lambda: new_id("BOOK"),
    )

    # Customer (user_id for registered, guest_info for guests)
    user_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    guest_info: Mapped[Optional[dict]] = mapped_column(
        JSON,
        nullable=True,
        comment="{firstName, lastName, email, phone}",
    )
    type: Mapped[BookingType] = mapped_column(
        enum_column_type(BookingType, "booking_type"),
        nullable=False,
    )
    confirmation_code: Mapped[str] = mapped_column(String(50), nullable=False, index=True)

    # Service
    category: Mapped[ServiceCategory] = mapped_column(
        enum_column_type(ServiceCategory, "service_category"),
        nullable=False,
    )
    service: Mapped[str] = mapped_column(String(255), nullable=False)
    service_type: Mapped[ServiceType] = mapped_column(
        enum_column_type(ServiceType, "service_type"),
        nullable=False,
        default=ServiceType.BRANCH,
    )
    service_location: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    estimated_duration: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Vehicle
    unit_type: Mapped[UnitType] = mapped_column(
        enum_column_type(UnitType, "unit_type"),
        nullable=False,
    )
    unit_size: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    plate_number: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    vehicle_model: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Schedule
    date: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    time_slot: Mapped[str] = mapped_column(String(50), nullable=False)
    branch: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    # Pricing
    base_price: Mapped[float] = mapped_column(Numeric(10, 2), nullable=False)
    total_price: Mapped[float] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False, default="PHP")

    # Payment
    payment_method: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    payment_status: Mapped[PaymentStatus] = mapped_column(
        enum_column_type(PaymentStatus, "payment_status"),
        nullable=False,
        default=PaymentStatus.PENDING,
    )

    # Status
    status: Mapped[BookingStatus] = mapped_column(
        enum_column_type(BookingStatus, "booking_status"),
        nullable=False,
        default=BookingStatus.PENDING,
        index=True,
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Assignment
    assigned_crew: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    crew_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Stage timestamps
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    crew_arrival_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    crew_start_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    crew_completion_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        index=True,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    @property
    def customer_name(self) -> Optional[str]:
        if self.guest_info:
            first = self.guest_info.get("firstName", "")
            last = self.guest_info.get("lastName", "")
            return f"{first} {last}".strip() or None
        return None

    def __repr__(self) -> str:
        return f"<Booking(id={self.id}, status={self.status}, version={self.version})>"


class BookingStatusUpdate(Base):
    """
    Append-only history of booking status changes.
    """
    __tablename__ = "booking_status_updates"

    id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
        default=lambda: new_id("STATUS"),
    )
    booking_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("bookings.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    status: Mapped[BookingStatus] = mapped_column(
        enum_column_type(BookingStatus, "booking_status"),
        nullable=False,
    )
    previous_status: Mapped[Optional[BookingStatus]] = mapped_column(
        enum_column_type(BookingStatus, "booking_status"),
        nullable=True,
    )
    updated_by: Mapped[str] = mapped_column(String(64), nullable=False)
    updated_by_role: Mapped[str] = mapped_column(String(50), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    location: Mapped[Optional[dict]] = mapped_column(
        JSON,
        nullable=True,
        comment="{latitude, longitude, address}",
    )
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self) -> str:
        return f"<BookingStatusUpdate(booking_id={self.booking_id}, status={self.status})>"
