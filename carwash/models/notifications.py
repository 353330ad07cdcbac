"""
Notification model - per-user in-app messages used for badges.
"""
from datetime import datetime, timezone
from typing import Optional
import enum

from sqlalchemy import String, Boolean, DateTime, ForeignKey, JSON, Text
from sqlalchemy.orm import Mapped, mapped_column

from carwash.lib.db import Base, enum_column_type, new_id


class NotificationType(str, enum.Enum):
    """Notification type enumeration."""
    BOOKING_ASSIGNMENT = "booking_assignment"
    BOOKING_UPDATE = "booking_update"
    BOOKING_CONFIRMATION = "booking_confirmation"
    SYSTEM = "system"


class Notification(Base):
    """
    Notification entity - one row per recipient, newest shown first.
    """
    __tablename__ = "notifications"

    id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
        default=lambda: new_id("NOTIF"),
    )
    user_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    type: Mapped[NotificationType] = mapped_column(
        enum_column_type(NotificationType, "notification_type"),
        nullable=False,
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[Optional[dict]] = mapped_column(
        JSON,
        nullable=True,
        comment="e.g. {bookingId, assignmentId}",
    )
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        index=True,
    )

    def __repr__(self) -> str:
        return f"<Notification(id={self.id}, user_id={self.user_id}, type={self.type}, read={self.is_read})>"
