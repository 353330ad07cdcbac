"""
Crew assignment model - links one booking to one crew member.
"""
from datetime import datetime, timezone
from typing import Optional
import enum

from sqlalchemy import String, DateTime, ForeignKey, Text
from sqlalchemy.orm import Mapped, mapped_column

from carwash.lib.db import Base, enum_column_type, new_id


class CrewAssignmentStatus(str, enum.Enum):
    """Sub-status of one crew member's part in a booking."""
    ASSIGNED = "assigned"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    COMPLETED = "completed"


# Assignments that keep a crew member busy
OPEN_ASSIGNMENT_STATUSES = frozenset({
    CrewAssignmentStatus.ASSIGNED,
    CrewAssignmentStatus.ACCEPTED,
})


class CrewAssignment(Base):
    """
    CrewAssignment entity (many per booking, one per crew member).
    """
    __tablename__ = "crew_assignments"

    id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
        default=lambda: new_id("CREW_ASSIGN"),
    )
    booking_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("bookings.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    crew_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    assigned_by: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[CrewAssignmentStatus] = mapped_column(
        enum_column_type(CrewAssignmentStatus, "crew_assignment_status"),
        nullable=False,
        default=CrewAssignmentStatus.ASSIGNED,
        index=True,
    )
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    assigned_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    accepted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    responded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<CrewAssignment(id={self.id}, booking_id={self.booking_id}, "
            f"crew_id={self.crew_id}, status={self.status})>"
        )
