"""
BookingService - booking store and the status lifecycle.

Every write to a booking row goes through `write_booking()`, a single-row
UPDATE guarded on the (version, status) pair the caller read. When another
request got there first the UPDATE matches nothing and the caller receives
ConcurrentModificationException instead of silently overwriting that write.

Status changes are validated against ALLOWED_TRANSITIONS; re-applying the
current status is accepted and only advances updated_at/version.
"""
import secrets
import string
from collections import defaultdict
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, func, update, or_, String, cast
from sqlalchemy.orm import Session

from carwash.api.middleware.error_handler import (
    ConcurrentModificationException,
    ConflictException,
    ForbiddenException,
    InvalidTransitionException,
    NotFoundException,
    ValidationException,
)
from carwash.lib.clock import ensure_utc, next_timestamp, utcnow
from carwash.lib.db import lock_for_transaction
from carwash.lib.logging import get_logger
from carwash.lib.metrics import get_metrics_collector
from carwash.lib.settings import settings
from carwash.models.bookings import (
    ALLOWED_TRANSITIONS,
    SLOT_HOLDING_STATUSES,
    Booking,
    BookingStatus,
    BookingStatusUpdate,
    BookingType,
    can_transition,
)
from carwash.models.crew_assignments import CrewAssignment, CrewAssignmentStatus, OPEN_ASSIGNMENT_STATUSES
from carwash.models.notifications import NotificationType
from carwash.models.users import CrewStatus, User
from carwash.services.crew_tracking_service import CrewTrackingService
from carwash.services.notification_service import NotificationService
from carwash.services.unit_of_work import retrying_unit_of_work


logger = get_logger(__name__)

CONFIRMATION_CODE_ALPHABET = string.ascii_uppercase + string.digits
CONFIRMATION_CODE_LENGTH = 8

# Stage timestamp columns stamped when a booking enters a status
STAGE_TIMESTAMPS: Dict[BookingStatus, Tuple[str, ...]] = {
    BookingStatus.CONFIRMED: ("confirmed_at",),
    BookingStatus.CREW_ARRIVED: ("crew_arrival_time",),
    BookingStatus.IN_PROGRESS: ("started_at",),
    BookingStatus.WASHING: ("crew_start_time",),
    BookingStatus.COMPLETED: ("completed_at", "crew_completion_time"),
    BookingStatus.CANCELLED: ("cancelled_at",),
}


def parse_status(value: Any) -> BookingStatus:
    """Turn a wire value into a BookingStatus or raise ValidationException."""
    if isinstance(value, BookingStatus):
        return value
    try:
        return BookingStatus(value)
    except ValueError:
        raise ValidationException(
            f"Unknown booking status '{value}'",
            errors={"status": value, "allowed": [s.value for s in BookingStatus]},
        )


def generate_confirmation_code() -> str:
    return "".join(secrets.choice(CONFIRMATION_CODE_ALPHABET) for _ in range(CONFIRMATION_CODE_LENGTH))


def escape_like(value: str) -> str:
    """Escape LIKE wildcards so user input matches literally."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class BookingService:
    """
    Booking store operations for admin, manager and crew screens.
    """

    def __init__(self, db: Session):
        self.db = db
        self.notifications = NotificationService(db)
        self.crew_tracking = CrewTrackingService(db)
        self.metrics = get_metrics_collector()

    # ===== Reads =====

    def get_booking(self, booking_id: str) -> Booking:
        """
        Load a booking, bypassing any stale copy held by the session.

        Raises:
            NotFoundException: If no booking has this ID
        """
        booking = self.db.get(Booking, booking_id, populate_existing=True)
        if booking is None:
            raise NotFoundException("Booking", booking_id)
        return booking

    def list_bookings(
        self,
        status: Optional[BookingStatus] = None,
        branch: Optional[str] = None,
        date: Optional[str] = None,
        search: Optional[str] = None,
        crew_id: Optional[str] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Tuple[List[Booking], int]:
        """
        Filtered, newest-first page of bookings.

        `search` matches guest name/email, registered customer name/email,
        service name or plate number (case-insensitive).

        Returns:
            (bookings on the page, total matching)
        """
        stmt = select(Booking).outerjoin(User, Booking.user_id == User.id)

        if status is not None:
            stmt = stmt.where(Booking.status == status)
        if branch:
            stmt = stmt.where(Booking.branch == branch)
        if date:
            stmt = stmt.where(Booking.date == date)
        if search:
            pattern = f"%{escape_like(search.lower())}%"
            stmt = stmt.where(
                or_(
                    func.lower(Booking.service).like(pattern, escape="\\"),
                    func.lower(Booking.plate_number).like(pattern, escape="\\"),
                    func.lower(cast(Booking.guest_info, String)).like(pattern, escape="\\"),
                    func.lower(User.full_name).like(pattern, escape="\\"),
                    func.lower(User.email).like(pattern, escape="\\"),
                )
            )
        stmt = stmt.order_by(Booking.created_at.desc(), Booking.id.desc())
        offset = (page - 1) * page_size

        # assigned_crew is a JSON list; filter in Python to stay portable
        if crew_id:
            bookings = [
                b for b in self.db.execute(stmt).scalars().all()
                if crew_id in (b.assigned_crew or [])
            ]
            return bookings[offset:offset + page_size], len(bookings)

        total = self.db.execute(select(func.count()).select_from(stmt.order_by(None).subquery())).scalar_one()
        bookings = list(self.db.execute(stmt.offset(offset).limit(page_size)).scalars().all())
        return bookings, total

    def get_status_history(self, booking_id: str) -> List[BookingStatusUpdate]:
        """Status changes of a booking, oldest first."""
        self.get_booking(booking_id)
        stmt = (
            select(BookingStatusUpdate)
            .where(BookingStatusUpdate.booking_id == booking_id)
            .order_by(BookingStatusUpdate.timestamp.asc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def slot_availability(self, date: str, time_slot: str, branch: str) -> Dict[str, Any]:
        """
        Capacity check for one branch time slot.

        Returns:
            {"isAvailable": bool, "currentBookings": int, "maxCapacity": int}
        """
        stmt = (
            select(func.count())
            .select_from(Booking)
            .where(
                Booking.date == date,
                Booking.time_slot == time_slot,
                Booking.branch == branch,
                Booking.status.in_(SLOT_HOLDING_STATUSES),
            )
        )
        current = self.db.execute(stmt).scalar_one()
        return {
            "isAvailable": current < settings.slot_capacity,
            "currentBookings": current,
            "maxCapacity": settings.slot_capacity,
        }

    def dashboard_stats(self, start: Optional[str] = None, end: Optional[str] = None) -> Dict[str, Any]:
        """
        Totals, top services, daily figures and status breakdown.

        Args:
            start: First schedule date (YYYY-MM-DD), inclusive
            end: Last schedule date (YYYY-MM-DD), inclusive
        """
        stmt = select(Booking)
        if start:
            stmt = stmt.where(Booking.date >= start)
        if end:
            stmt = stmt.where(Booking.date <= end)
        bookings = list(self.db.execute(stmt).scalars().all())

        total_revenue = Decimal("0")
        services: Dict[str, Dict[str, Any]] = defaultdict(lambda: {"count": 0, "revenue": Decimal("0")})
        daily: Dict[str, Dict[str, Any]] = defaultdict(lambda: {"bookings": 0, "revenue": Decimal("0")})
        by_status: Dict[str, int] = {s.value: 0 for s in BookingStatus}

        for booking in bookings:
            price = Decimal(str(booking.total_price))
            total_revenue += price
            services[booking.service]["count"] += 1
            services[booking.service]["revenue"] += price
            daily[booking.date]["bookings"] += 1
            daily[booking.date]["revenue"] += price
            by_status[booking.status.value] += 1

        top_services = sorted(
            ({"name": name, "count": s["count"], "revenue": float(s["revenue"])} for name, s in services.items()),
            key=lambda s: s["revenue"],
            reverse=True,
        )[:5]
        recent = sorted(bookings, key=lambda b: ensure_utc(b.created_at), reverse=True)[:10]

        return {
            "totalBookings": len(bookings),
            "totalRevenue": float(total_revenue),
            "topServices": top_services,
            "recentBookings": recent,
            "dailyStats": [
                {"date": day, "bookings": d["bookings"], "revenue": float(d["revenue"])}
                for day, d in sorted(daily.items())
            ],
            "statusBreakdown": by_status,
        }

    # ===== Writes =====

    @retrying_unit_of_work
    def create_booking(self, data: Dict[str, Any], actor: User) -> Booking:
        """
        Create a pending booking.

        Args:
            data: Booking fields (snake_case attribute names)
            actor: Authenticated user placing the booking

        Raises:
            ValidationException: Registered booking without userId, guest booking without guestInfo
            NotFoundException: Registered customer does not exist
            ForbiddenException: Non-staff user booking on behalf of someone else
            ConflictException: Time slot is full
        """
        booking_type = BookingType(data.get("type", BookingType.REGISTERED))

        if booking_type == BookingType.REGISTERED:
            user_id = data.get("user_id") or (None if actor.is_staff else actor.id)
            if not user_id:
                raise ValidationException(
                    "Registered bookings need a userId",
                    errors={"userId": "required for registered bookings"},
                )
            if not actor.is_staff and user_id != actor.id:
                raise ForbiddenException("Customers can only book for themselves")
            if self.db.get(User, user_id) is None:
                raise NotFoundException("User", user_id)
            data = {**data, "user_id": user_id, "guest_info": None}
        else:
            if not data.get("guest_info"):
                raise ValidationException(
                    "Guest bookings need guestInfo",
                    errors={"guestInfo": "required for guest bookings"},
                )
            data = {**data, "user_id": None}

        # Held until commit, so the count below cannot be overtaken by another insert
        lock_for_transaction(self.db, f"slot:{data['branch']}:{data['date']}:{data['time_slot']}")
        availability = self.slot_availability(data["date"], data["time_slot"], data["branch"])
        if not availability["isAvailable"]:
            raise ConflictException(
                f"Time slot {data['time_slot']} on {data['date']} at {data['branch']} is full",
                details=availability,
            )

        now = utcnow()
        booking = Booking(
            **{**data, "type": booking_type},
            confirmation_code=generate_confirmation_code(),
            status=BookingStatus.PENDING,
            version=1,
            assigned_crew=[],
            created_at=now,
            updated_at=now,
        )
        self.db.add(booking)
        self.db.flush()

        self.record_history(booking.id, BookingStatus.PENDING, None, actor, notes="Booking created")

        if booking.user_id:
            self.notifications.notify(
                booking.user_id,
                NotificationType.BOOKING_CONFIRMATION,
                "Booking Received",
                f"Your booking for {booking.service} on {booking.date} at {booking.branch} has been received.",
                data={"bookingId": booking.id, "confirmationCode": booking.confirmation_code},
            )

        self.db.commit()
        logger.info(
            f"Booking {booking.id} created",
            extra={"booking_id": booking.id, "branch": booking.branch, "date": booking.date},
        )
        return booking

    @retrying_unit_of_work
    def update_status(
        self,
        booking_id: str,
        target_status: Any,
        actor: User,
        notes: Optional[str] = None,
        location: Optional[Dict[str, Any]] = None,
        expected_status: Optional[Any] = None,
        expected_version: Optional[int] = None,
    ) -> Booking:
        """
        Move a booking to a new lifecycle status.

        Args:
            booking_id: Booking to update
            target_status: New status (enum or its string value)
            actor: User performing the change (staff, or crew assigned to the booking)
            notes: Free text; stored as crew notes for crew, cancellation reason on cancel
            location: Optional {latitude, longitude, address} of the crew
            expected_status: Status the caller last saw; mismatch is a conflict
            expected_version: Version the caller last saw; mismatch is a conflict

        Returns:
            The updated booking

        Raises:
            NotFoundException: Unknown booking
            ForbiddenException: Crew not assigned to this booking, or non-staff user
            ValidationException / InvalidTransitionException: Unknown or disallowed status
            ConcurrentModificationException: Booking changed since the caller read it
        """
        target = parse_status(target_status)
        booking = self.get_booking(booking_id)
        self._ensure_can_update(booking, actor)
        self.check_expectations(booking, expected_status, expected_version, operation="update_status")

        previous = booking.status
        if not can_transition(previous, target):
            logger.warning(
                f"Rejected transition {previous.value} -> {target.value}",
                extra={"booking_id": booking_id, "actor_id": actor.id},
            )
            raise InvalidTransitionException(
                previous.value,
                target.value,
                sorted(s.value for s in ALLOWED_TRANSITIONS[previous]),
            )

        values: Dict[str, Any] = {"status": target}
        changed = target != previous
        if changed:
            stamp = utcnow()
            for column in STAGE_TIMESTAMPS.get(target, ()):
                values[column] = stamp
        if notes:
            if target == BookingStatus.CANCELLED:
                values["cancellation_reason"] = notes
            elif actor.is_crew:
                values["crew_notes"] = notes
            else:
                values["notes"] = notes

        self.write_booking(booking, values, operation="update_status")

        if changed:
            self.record_history(booking.id, target, previous, actor, notes=notes, location=location)
            if target in (BookingStatus.COMPLETED, BookingStatus.CANCELLED):
                self._release_crew(booking, actor, complete_assignments=target == BookingStatus.COMPLETED)
            self._notify_customer(booking, target, notes)

        self.db.commit()

        if changed:
            self.metrics.increment_transitions(previous.value, target.value)
        logger.info(
            f"Booking {booking_id} status {previous.value} -> {target.value}",
            extra={"booking_id": booking_id, "actor_id": actor.id, "version": booking.version},
        )
        return booking

    # ===== Building blocks shared with CrewService =====

    def write_booking(self, booking: Booking, values: Dict[str, Any], operation: str) -> Booking:
        """
        Guarded single-row update of a booking the caller has already read.

        Bumps version, advances updated_at strictly, and refreshes `booking`.
        Does not commit.

        Raises:
            ConcurrentModificationException: Row no longer matches the read version/status
        """
        read_version = booking.version
        read_status = booking.status
        stmt = (
            update(Booking)
            .where(
                Booking.id == booking.id,
                Booking.version == read_version,
                Booking.status == read_status,
            )
            .values(
                **values,
                version=read_version + 1,
                updated_at=next_timestamp(booking.updated_at),
            )
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)

        if result.rowcount != 1:
            self.metrics.increment_conflicts(operation)
            current = self.db.execute(
                select(Booking.status, Booking.version).where(Booking.id == booking.id)
            ).one_or_none()
            logger.warning(
                f"Concurrent modification of booking {booking.id} during {operation}",
                extra={"booking_id": booking.id, "read_version": read_version},
            )
            raise ConcurrentModificationException(
                booking.id,
                expected={"status": read_status.value, "version": read_version},
                actual={"status": current.status.value, "version": current.version} if current else {},
            )

        self.db.refresh(booking)
        return booking

    def check_expectations(
        self,
        booking: Booking,
        expected_status: Optional[Any],
        expected_version: Optional[int],
        operation: str,
    ) -> None:
        status_mismatch = expected_status is not None and parse_status(expected_status) != booking.status
        version_mismatch = expected_version is not None and expected_version != booking.version
        if status_mismatch or version_mismatch:
            self.metrics.increment_conflicts(operation)
            raise ConcurrentModificationException(
                booking.id,
                expected={
                    "status": parse_status(expected_status).value if expected_status is not None else None,
                    "version": expected_version,
                },
                actual={"status": booking.status.value, "version": booking.version},
            )

    def _ensure_can_update(self, booking: Booking, actor: User) -> None:
        if actor.is_staff:
            return
        if actor.is_crew and actor.id in (booking.assigned_crew or []):
            return
        raise ForbiddenException("Only staff or crew assigned to this booking can change its status")

    def record_history(
        self,
        booking_id: str,
        status: BookingStatus,
        previous: Optional[BookingStatus],
        actor: User,
        notes: Optional[str] = None,
        location: Optional[Dict[str, Any]] = None,
    ) -> BookingStatusUpdate:
        entry = BookingStatusUpdate(
            booking_id=booking_id,
            status=status,
            previous_status=previous,
            updated_by=actor.id,
            updated_by_role=actor.role.value,
            notes=notes,
            location=location,
            timestamp=utcnow(),
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def release_crew_member(
        self,
        crew_id: str,
        booking_id: str,
        changed_by: Optional[str],
        reason: str,
    ) -> bool:
        """
        Make a crew member available again if they are still on `booking_id`.

        Guarded on current_assignment, so a crew member who has since been
        claimed by another booking is left alone. Does not commit.

        Returns:
            True when the crew member was released
        """
        read_status = self.db.execute(
            select(User.crew_status).where(User.id == crew_id, User.current_assignment == booking_id)
        ).scalar_one_or_none()
        result = self.db.execute(
            update(User)
            .where(User.id == crew_id, User.current_assignment == booking_id)
            .values(crew_status=CrewStatus.AVAILABLE, current_assignment=None, updated_at=utcnow())
        )
        if result.rowcount != 1:
            return False
        if read_status != CrewStatus.AVAILABLE:
            self.crew_tracking.record_status_change(
                crew_id,
                CrewStatus.AVAILABLE,
                read_status,
                changed_by=changed_by,
                reason=reason,
                booking_id=booking_id,
            )
        return True

    def _release_crew(self, booking: Booking, actor: User, complete_assignments: bool) -> None:
        """Return the booking's crew to available; close their assignments on completion."""
        reason = f"Booking {booking.id} {booking.status.value}"
        for crew_id in booking.assigned_crew or []:
            self.release_crew_member(crew_id, booking.id, actor.id, reason)

        if complete_assignments:
            self.db.execute(
                update(CrewAssignment)
                .where(
                    CrewAssignment.booking_id == booking.id,
                    CrewAssignment.status.in_(OPEN_ASSIGNMENT_STATUSES),
                )
                .values(status=CrewAssignmentStatus.COMPLETED, responded_at=utcnow())
            )
        self.db.flush()

    def _notify_customer(self, booking: Booking, status: BookingStatus, notes: Optional[str]) -> None:
        if not booking.user_id:
            return

        if status == BookingStatus.CONFIRMED:
            title = "Booking Confirmed"
            message = f"Your booking for {booking.service} on {booking.date} has been confirmed!"
        elif status == BookingStatus.COMPLETED:
            title = "Booking Completed"
            message = f"Your {booking.service} service has been completed. Thank you for choosing us!"
        else:
            title = "Booking Updated"
            message = f"Your booking status has been updated to {status.value}."
            if notes:
                message = f"{message} Note: {notes}"

        self.notifications.notify(
            booking.user_id,
            NotificationType.BOOKING_UPDATE,
            title,
            message,
            data={"bookingId": booking.id, "status": status.value},
        )
