"""
Crew tracking models - availability history and reported positions.
"""
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import String, DateTime, ForeignKey, Float, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from carwash.lib.db import Base, enum_column_type, new_id
from carwash.models.users import CrewStatus


class CrewStatusHistory(Base):
    """
    One availability period of a crew member.

    The open period has ended_at = NULL; a status change closes it and
    opens the next one.
    """
    __tablename__ = "crew_status_history"

    id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
        default=lambda: new_id("CREW_STATUS"),
    )
    crew_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    status: Mapped[CrewStatus] = mapped_column(
        enum_column_type(CrewStatus, "crew_status"),
        nullable=False,
    )
    previous_status: Mapped[Optional[CrewStatus]] = mapped_column(
        enum_column_type(CrewStatus, "crew_status"),
        nullable=True,
    )
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    booking_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    changed_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        index=True,
    )
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<CrewStatusHistory(crew_id={self.crew_id}, status={self.status}, started_at={self.started_at})>"


class CrewLocation(Base):
    """GPS fix reported by a crew member's device."""
    __tablename__ = "crew_locations"

    id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
        default=lambda: new_id("CREW_LOC"),
    )
    crew_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    accuracy: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    heading: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    speed: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    battery_level: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        index=True,
    )

    def __repr__(self) -> str:
        return f"<CrewLocation(crew_id={self.crew_id}, lat={self.latitude}, lng={self.longitude})>"
