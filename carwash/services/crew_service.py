"""
Crew service - assigning crew to bookings and tracking crew availability.

An assignment is one transaction: the booking's crew list and status,
one CrewAssignment row per new crew member, the crew members' busy flags
and their notifications either all commit or none do.
"""
from datetime import datetime, time, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, func, update
from sqlalchemy.orm import Session

from carwash.api.middleware.error_handler import (
    ConflictException,
    CrewCapacityExceededException,
    CrewUnavailableException,
    ForbiddenException,
    InvalidTransitionException,
    NotFoundException,
    ValidationException,
)
from carwash.lib.clock import utcnow
from carwash.lib.logging import get_logger
from carwash.lib.metrics import get_metrics_collector
from carwash.lib.settings import settings
from carwash.models.bookings import ACTIVE_STATUSES, Booking, BookingStatus
from carwash.models.crew_assignments import CrewAssignment, CrewAssignmentStatus, OPEN_ASSIGNMENT_STATUSES
from carwash.models.crew_tracking import CrewLocation
from carwash.models.notifications import NotificationType
from carwash.models.users import CrewStatus, User, UserRole
from carwash.services.booking_service import BookingService
from carwash.services.unit_of_work import retrying_unit_of_work


logger = get_logger(__name__)

# Booking statuses from which crew can be (re)assigned
ASSIGNABLE_STATUSES = frozenset({BookingStatus.CONFIRMED, BookingStatus.CREW_ASSIGNED})


class CrewService:
    """
    Crew dispatch operations.

    Handles:
    - Assigning crew to confirmed bookings
    - Crew accepting or rejecting an assignment
    - Crew availability and dashboards
    """

    def __init__(self, db: Session):
        self.db = db
        self.bookings = BookingService(db)
        self.notifications = self.bookings.notifications
        self.tracking = self.bookings.crew_tracking
        self.metrics = get_metrics_collector()

    def get_crew_member(self, crew_id: str) -> User:
        """
        Raises:
            NotFoundException: If the user does not exist or is not crew
        """
        crew = self.db.get(User, crew_id, populate_existing=True)
        if crew is None or crew.role != UserRole.CREW:
            raise NotFoundException("Crew member", crew_id)
        return crew

    @retrying_unit_of_work
    def assign_crew(
        self,
        booking_id: str,
        crew_ids: List[str],
        actor: User,
        notes: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> Tuple[Booking, List[CrewAssignment]]:
        """
        Attach crew members to a booking and move it to crew_assigned.

        Duplicate IDs in the request and crew already on the booking are
        ignored. Each newly assigned crew member gets an assignment row and
        a booking_assignment notification.

        Args:
            booking_id: Booking to staff
            crew_ids: Crew user IDs
            actor: Staff member doing the assignment
            notes: Instructions stored on the assignment rows
            expected_version: Booking version the caller last saw

        Returns:
            (updated booking, newly created assignments)

        Raises:
            NotFoundException: Unknown booking, or an ID that is not an active crew member
            InvalidTransitionException: Booking is not confirmed or crew_assigned
            CrewCapacityExceededException: More crew than settings.max_crew_per_booking
            CrewUnavailableException: A crew member is busy or offline
            ConcurrentModificationException: Booking changed since it was read
        """
        requested = list(dict.fromkeys(crew_ids))
        if not requested:
            raise ValidationException("At least one crew member is required", errors={"crewIds": "empty"})

        booking = self.bookings.get_booking(booking_id)
        self.bookings.check_expectations(booking, None, expected_version, operation="assign_crew")

        if booking.status not in ASSIGNABLE_STATUSES:
            raise InvalidTransitionException(
                booking.status.value,
                BookingStatus.CREW_ASSIGNED.value,
                sorted(s.value for s in ASSIGNABLE_STATUSES),
            )

        crew_by_id = {
            user.id: user
            for user in self.db.execute(
                select(User).where(User.id.in_(requested)).execution_options(populate_existing=True)
            ).scalars()
        }
        for crew_id in requested:
            crew = crew_by_id.get(crew_id)
            if crew is None or crew.role != UserRole.CREW or not crew.is_active:
                raise NotFoundException("Crew member", crew_id)
        # Claims below are guarded on exactly what was read here
        read_state = {
            crew_id: (crew.crew_status, crew.current_assignment)
            for crew_id, crew in crew_by_id.items()
        }

        current = list(booking.assigned_crew or [])
        new_ids = [crew_id for crew_id in requested if crew_id not in current]
        if not new_ids:
            logger.info(
                f"Crew already assigned to booking {booking_id}",
                extra={"booking_id": booking_id, "crew_ids": requested},
            )
            return booking, []

        total = len(current) + len(new_ids)
        if total > settings.max_crew_per_booking:
            self.metrics.increment_assignments("refused")
            raise CrewCapacityExceededException(booking_id, total, settings.max_crew_per_booking)

        unavailable = [
            crew_id for crew_id in new_ids
            if read_state[crew_id][0] in (CrewStatus.BUSY, CrewStatus.OFFLINE)
        ]
        if unavailable:
            if not settings.allow_busy_crew_assignment:
                self.metrics.increment_assignments("refused")
                raise CrewUnavailableException(unavailable)
            logger.warning(
                "Assigning crew that is busy or offline",
                extra={"booking_id": booking_id, "crew_ids": unavailable},
            )

        previous_status = booking.status
        self.bookings.write_booking(
            booking,
            {"assigned_crew": current + new_ids, "status": BookingStatus.CREW_ASSIGNED},
            operation="assign_crew",
        )
        if previous_status != BookingStatus.CREW_ASSIGNED:
            self.bookings.record_history(
                booking.id,
                BookingStatus.CREW_ASSIGNED,
                previous_status,
                actor,
                notes=f"Crew assigned: {', '.join(new_ids)}",
            )

        for crew_id in new_ids:
            self._claim_crew(crew_by_id[crew_id], read_state[crew_id], booking.id, actor)

        now = utcnow()
        assignments = []
        for crew_id in new_ids:
            assignment = CrewAssignment(
                booking_id=booking.id,
                crew_id=crew_id,
                assigned_by=actor.id,
                status=CrewAssignmentStatus.ASSIGNED,
                notes=notes,
                assigned_at=now,
            )
            self.db.add(assignment)
            assignments.append(assignment)
        self.db.flush()

        for assignment in assignments:
            self.notifications.notify(
                assignment.crew_id,
                NotificationType.BOOKING_ASSIGNMENT,
                "New Booking Assignment",
                f"You have been assigned to {booking.service} on {booking.date} at {booking.time_slot}, "
                f"{booking.branch}.",
                data={"bookingId": booking.id, "assignmentId": assignment.id},
            )

        self.db.commit()

        self.metrics.increment_assignments("assigned", len(assignments))
        if previous_status != BookingStatus.CREW_ASSIGNED:
            self.metrics.increment_transitions(previous_status.value, BookingStatus.CREW_ASSIGNED.value)
        logger.info(
            f"Assigned {len(assignments)} crew to booking {booking.id}",
            extra={"booking_id": booking.id, "crew_ids": new_ids, "actor_id": actor.id},
        )
        return booking, assignments

    @retrying_unit_of_work
    def respond_to_assignment(
        self,
        assignment_id: str,
        accept: bool,
        actor: User,
        notes: Optional[str] = None,
    ) -> CrewAssignment:
        """
        Crew member accepts or rejects an assignment.

        The answer is a guarded write on status = assigned, so of two
        concurrent answers exactly one wins. Rejecting takes the crew member
        off the booking and frees them; when nobody is left on a
        crew_assigned booking it drops back to confirmed so it can be
        assigned again.

        Raises:
            NotFoundException: Unknown assignment
            ForbiddenException: Actor is neither the assigned crew member nor staff
            InvalidTransitionException: Assignment was already answered
            ConcurrentModificationException: Booking changed while the rejection was applied
        """
        assignment = self.db.get(CrewAssignment, assignment_id, populate_existing=True)
        if assignment is None:
            raise NotFoundException("Crew assignment", assignment_id)
        if actor.id != assignment.crew_id and not actor.is_staff:
            raise ForbiddenException("Only the assigned crew member can respond to this assignment")

        target = CrewAssignmentStatus.ACCEPTED if accept else CrewAssignmentStatus.REJECTED
        if assignment.status != CrewAssignmentStatus.ASSIGNED:
            raise InvalidTransitionException(assignment.status.value, target.value, [])

        now = utcnow()
        values: Dict[str, Any] = {"status": target, "responded_at": now}
        if accept:
            values["accepted_at"] = now
        if notes:
            values["notes"] = notes
        result = self.db.execute(
            update(CrewAssignment)
            .where(
                CrewAssignment.id == assignment.id,
                CrewAssignment.status == CrewAssignmentStatus.ASSIGNED,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.metrics.increment_conflicts("respond_to_assignment")
            answered = self.db.execute(
                select(CrewAssignment.status).where(CrewAssignment.id == assignment.id)
            ).scalar_one()
            logger.warning(
                f"Assignment {assignment.id} was answered concurrently",
                extra={"assignment_id": assignment.id, "crew_id": assignment.crew_id},
            )
            raise InvalidTransitionException(answered.value, target.value, [])
        self.db.refresh(assignment)

        booking = self.bookings.get_booking(assignment.booking_id)
        crew = self.db.get(User, assignment.crew_id)

        if not accept:
            remaining = [c for c in (booking.assigned_crew or []) if c != assignment.crew_id]
            booking_values: Dict[str, Any] = {"assigned_crew": remaining}
            reverted = not remaining and booking.status == BookingStatus.CREW_ASSIGNED
            if reverted:
                booking_values["status"] = BookingStatus.CONFIRMED
            self.bookings.write_booking(booking, booking_values, operation="respond_to_assignment")
            if reverted:
                self.bookings.record_history(
                    booking.id,
                    BookingStatus.CONFIRMED,
                    BookingStatus.CREW_ASSIGNED,
                    actor,
                    notes="All assigned crew rejected the booking",
                )
            self.bookings.release_crew_member(
                assignment.crew_id,
                booking.id,
                actor.id,
                reason=f"Rejected booking {booking.id}",
            )

        crew_name = crew.full_name if crew is not None else assignment.crew_id
        verb = "accepted" if accept else "rejected"
        message = f"{crew_name} {verb} the assignment for booking {booking.id}."
        if notes:
            message = f"{message} Note: {notes}"
        self.notifications.notify(
            assignment.assigned_by,
            NotificationType.SYSTEM,
            f"Assignment {verb.capitalize()}",
            message,
            data={"bookingId": booking.id, "assignmentId": assignment.id, "crewId": assignment.crew_id},
        )

        self.db.commit()

        self.metrics.increment_assignments(verb)
        logger.info(
            f"Assignment {assignment.id} {verb}",
            extra={"assignment_id": assignment.id, "booking_id": booking.id, "crew_id": assignment.crew_id},
        )
        return assignment

    @retrying_unit_of_work
    def set_crew_status(
        self,
        crew_id: str,
        status: CrewStatus,
        actor: User,
        reason: Optional[str] = None,
    ) -> User:
        """
        Change a crew member's availability and log the new status period.

        Raises:
            NotFoundException: Unknown crew member
            ForbiddenException: Actor is neither the crew member nor staff
            CrewUnavailableException: Going available/offline while holding an open assignment
            ConflictException: Crew member was claimed or changed while this request ran
        """
        crew = self.get_crew_member(crew_id)
        if actor.id != crew_id and not actor.is_staff:
            raise ForbiddenException("Crew members can only change their own status")
        read_status, read_assignment = crew.crew_status, crew.current_assignment

        if status in (CrewStatus.AVAILABLE, CrewStatus.OFFLINE):
            open_count = self._open_assignment_count(crew_id)
            if open_count:
                raise CrewUnavailableException([crew_id], reason="has an open assignment")

        values: Dict[str, Any] = {"crew_status": status, "updated_at": utcnow()}
        if status != CrewStatus.BUSY:
            values["current_assignment"] = None
        result = self.db.execute(
            update(User)
            .where(
                User.id == crew_id,
                _matches(User.crew_status, read_status),
                _matches(User.current_assignment, read_assignment),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning(
                f"Crew {crew_id} changed during status update",
                extra={"crew_id": crew_id, "actor_id": actor.id},
            )
            raise ConflictException(
                f"Crew member '{crew_id}' was modified by another request",
                details={
                    "crew_id": crew_id,
                    "expected": {"status": read_status.value if read_status else None},
                },
            )

        if status != read_status:
            self.tracking.record_status_change(
                crew_id,
                status,
                read_status,
                changed_by=actor.id,
                reason=reason,
                booking_id=read_assignment if status == CrewStatus.BUSY else None,
            )
        self.db.commit()
        self.db.refresh(crew)

        logger.info(f"Crew {crew_id} is now {status.value}", extra={"crew_id": crew_id, "actor_id": actor.id})
        return crew

    def get_status_history(self, crew_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        """Availability periods of a crew member, newest first."""
        self.get_crew_member(crew_id)
        return self.tracking.status_history(crew_id, limit=limit)

    def report_location(self, crew_id: str, actor: User, **fix: Any) -> CrewLocation:
        """
        Store the crew member's current position.

        Raises:
            NotFoundException: Unknown crew member
            ForbiddenException: Actor is neither the crew member nor staff
        """
        self.get_crew_member(crew_id)
        if actor.id != crew_id and not actor.is_staff:
            raise ForbiddenException("Crew members can only report their own location")
        return self.tracking.record_location(crew_id, **fix)

    def live_locations(self, branch: Optional[str] = None) -> List[Dict[str, Any]]:
        return self.tracking.live_locations(branch)

    def list_crew(self, status: Optional[CrewStatus] = None, branch: Optional[str] = None) -> List[User]:
        """Active crew members, by name."""
        stmt = select(User).where(User.role == UserRole.CREW, User.is_active == True)  # noqa: E712
        if status is not None:
            stmt = stmt.where(User.crew_status == status)
        if branch:
            stmt = stmt.where(User.branch_location == branch)
        return list(self.db.execute(stmt.order_by(User.full_name)).scalars().all())

    def get_crew_assignments(
        self,
        crew_id: str,
        status: Optional[CrewAssignmentStatus] = None,
    ) -> List[Tuple[CrewAssignment, Booking]]:
        """A crew member's assignments with their bookings, newest first."""
        self.get_crew_member(crew_id)
        stmt = (
            select(CrewAssignment, Booking)
            .join(Booking, CrewAssignment.booking_id == Booking.id)
            .where(CrewAssignment.crew_id == crew_id)
        )
        if status is not None:
            stmt = stmt.where(CrewAssignment.status == status)
        stmt = stmt.order_by(CrewAssignment.assigned_at.desc())
        return [(assignment, booking) for assignment, booking in self.db.execute(stmt).all()]

    def crew_stats(self) -> Dict[str, Any]:
        """Crew availability counts and today's completed work."""
        counts = {s.value: 0 for s in CrewStatus}
        rows = self.db.execute(
            select(User.crew_status, func.count())
            .where(User.role == UserRole.CREW, User.is_active == True)  # noqa: E712
            .group_by(User.crew_status)
        ).all()
        for crew_status, count in rows:
            # Crew without a recorded status have never gone on shift
            key = crew_status.value if crew_status is not None else CrewStatus.OFFLINE.value
            counts[key] += count

        open_assignments = self.db.execute(
            select(func.count())
            .select_from(CrewAssignment)
            .where(CrewAssignment.status.in_(OPEN_ASSIGNMENT_STATUSES))
        ).scalar_one()

        start_of_day = datetime.combine(utcnow().date(), time.min, tzinfo=timezone.utc)
        completed_prices = self.db.execute(
            select(Booking.total_price).where(
                Booking.status.in_((BookingStatus.COMPLETED, BookingStatus.PAID)),
                Booking.completed_at >= start_of_day,
            )
        ).scalars().all()

        return {
            "totalCrew": sum(counts.values()),
            "availableCrew": counts[CrewStatus.AVAILABLE.value],
            "busyCrew": counts[CrewStatus.BUSY.value],
            "offlineCrew": counts[CrewStatus.OFFLINE.value],
            "openAssignments": open_assignments,
            "completedToday": len(completed_prices),
            "revenueToday": float(sum((Decimal(str(p)) for p in completed_prices), Decimal("0"))),
        }

    def _open_assignment_count(self, crew_id: str) -> int:
        """Open assignments on bookings that are still being worked on."""
        stmt = (
            select(func.count())
            .select_from(CrewAssignment)
            .join(Booking, CrewAssignment.booking_id == Booking.id)
            .where(
                CrewAssignment.crew_id == crew_id,
                CrewAssignment.status.in_(OPEN_ASSIGNMENT_STATUSES),
                Booking.status.in_(ACTIVE_STATUSES),
            )
        )
        return self.db.execute(stmt).scalar_one()

    def _claim_crew(
        self,
        crew: User,
        read_state: Tuple[Optional[CrewStatus], Optional[str]],
        booking_id: str,
        actor: User,
    ) -> None:
        """
        Mark a crew member busy on `booking_id`, guarded on the state read earlier.

        Raises:
            CrewUnavailableException: Another request claimed or changed the crew member first
        """
        read_status, read_assignment = read_state
        result = self.db.execute(
            update(User)
            .where(
                User.id == crew.id,
                _matches(User.crew_status, read_status),
                _matches(User.current_assignment, read_assignment),
            )
            .values(crew_status=CrewStatus.BUSY, current_assignment=booking_id, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.metrics.increment_assignments("refused")
            logger.warning(
                f"Crew {crew.id} was claimed by another request",
                extra={"booking_id": booking_id, "crew_id": crew.id},
            )
            raise CrewUnavailableException([crew.id], reason="claimed by another booking")
        self.db.refresh(crew)

        if read_status != CrewStatus.BUSY:
            self.tracking.record_status_change(
                crew.id,
                CrewStatus.BUSY,
                read_status,
                changed_by=actor.id,
                reason=f"Assigned to booking {booking_id}",
                booking_id=booking_id,
            )


def _matches(column, value):
    """Equality guard that also matches NULL."""
    return column.is_(None) if value is None else column == value
