"""
User model - customers, staff and crew members share one table.
"""
from datetime import datetime, timezone
from typing import Optional
import enum

from sqlalchemy import String, Boolean, Integer, Numeric, DateTime, JSON
from sqlalchemy.orm import Mapped, mapped_column

from carwash.lib.db import Base, enum_column_type, new_id


class UserRole(str, enum.Enum):
    """User role enumeration."""
    USER = "user"
    ADMIN = "admin"
    SUPERADMIN = "superadmin"
    CASHIER = "cashier"
    INVENTORY_MANAGER = "inventory_manager"
    MANAGER = "manager"
    DISPATCHER = "dispatcher"
    CREW = "crew"


# Roles allowed to manage bookings and crew
STAFF_ROLES = frozenset({
    UserRole.ADMIN,
    UserRole.SUPERADMIN,
    UserRole.MANAGER,
    UserRole.DISPATCHER,
})


class CrewStatus(str, enum.Enum):
    """Availability of a crew member."""
    AVAILABLE = "available"
    BUSY = "busy"
    OFFLINE = "offline"


class User(Base):
    """
    User entity - represents all system users.
    Crew members carry the crew_* columns; for everyone else they stay NULL.
    """
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
        default=lambda: new_id("USER"),
    )

    # Profile
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[UserRole] = mapped_column(
        enum_column_type(UserRole, "user_role"),
        nullable=False,
        default=UserRole.USER,
        index=True,
    )
    contact_number: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    branch_location: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)

    # Status
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Crew specific fields
    crew_skills: Mapped[Optional[list]] = mapped_column(
        JSON,
        nullable=True,
        comment="e.g. ['exterior_wash', 'interior_detail', 'coating']",
    )
    crew_status: Mapped[Optional[CrewStatus]] = mapped_column(
        enum_column_type(CrewStatus, "crew_status"),
        nullable=True,
        index=True,
    )
    current_assignment: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        comment="Booking ID the crew member is working on",
    )
    crew_rating: Mapped[Optional[float]] = mapped_column(Numeric(3, 2), nullable=True)
    crew_experience: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

    @property
    def is_crew(self) -> bool:
        return self.role == UserRole.CREW

    def __repr__(self) -> str:
        return f"<User(id={self.id}, name={self.full_name}, role={self.role})>"
