"""
SQLAlchemy models package.
Import all models here to ensure they're registered with Base.metadata.
"""
from carwash.models.users import User
from carwash.models.bookings import Booking, BookingStatusUpdate
from carwash.models.crew_assignments import CrewAssignment
from carwash.models.crew_tracking import CrewLocation, CrewStatusHistory
from carwash.models.notifications import Notification

__all__ = [
    "User",
    "Booking",
    "BookingStatusUpdate",
    "CrewAssignment",
    "CrewLocation",
    "CrewStatusHistory",
    "Notification",
]
