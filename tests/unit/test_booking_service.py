"""
Unit tests for BookingService: status lifecycle, guarded writes and the booking store.
"""
import pytest
from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError

from carwash.api.middleware.error_handler import (
    ConcurrentModificationException,
    ConflictException,
    DownstreamUnavailableException,
    ForbiddenException,
    InvalidTransitionException,
    NotFoundException,
    ValidationException,
)
from carwash.lib.clock import ensure_utc
from carwash.lib.metrics import get_metrics_collector
from carwash.lib.settings import settings
from carwash.models.bookings import Booking, BookingStatus, BookingStatusUpdate, BookingType
from carwash.models.crew_assignments import CrewAssignment, CrewAssignmentStatus
from carwash.models.notifications import Notification, NotificationType
from carwash.models.users import CrewStatus, UserRole
from carwash.services.booking_service import BookingService, generate_confirmation_code


def _new_booking_data(**overrides):
    data = {
        "type": BookingType.GUEST,
        "guest_info": {
            "firstName": "Maria",
            "lastName": "Santos",
            "email": "maria@example.com",
            "phone": "09181112222",
        },
        "category": "carwash",
        "service": "Basic Wash",
        "unit_type": "car",
        "unit_size": "suv",
        "plate_number": "NBC 4321",
        "date": "2026-10-21",
        "time_slot": "9:00 AM",
        "branch": "Taguig",
        "base_price": 350,
        "total_price": 350,
    }
    data.update(overrides)
    return data


def _notifications(db, user_id):
    return db.execute(select(Notification).where(Notification.user_id == user_id)).scalars().all()


@pytest.mark.unit
def test_confirmation_code_format():
    code = generate_confirmation_code()
    assert len(code) == 8
    assert code.isalnum() and code.upper() == code


# ===== update_status =====

@pytest.mark.unit
def test_update_status_advances_updated_at_and_version(db, admin, make_booking):
    booking = make_booking(status=BookingStatus.PENDING)
    before = ensure_utc(booking.updated_at)

    updated = BookingService(db).update_status(booking.id, "confirmed", actor=admin)

    assert updated.status == BookingStatus.CONFIRMED
    assert updated.version == 2
    assert ensure_utc(updated.updated_at) > before
    assert updated.confirmed_at is not None


@pytest.mark.unit
def test_update_status_records_history(db, admin, make_booking):
    booking = make_booking(status=BookingStatus.PENDING)
    service = BookingService(db)

    service.update_status(booking.id, BookingStatus.CONFIRMED, actor=admin, notes="Called customer")

    history = service.get_status_history(booking.id)
    assert len(history) == 1
    assert history[0].status == BookingStatus.CONFIRMED
    assert history[0].previous_status == BookingStatus.PENDING
    assert history[0].updated_by == admin.id
    assert history[0].updated_by_role == "admin"
    assert history[0].notes == "Called customer"


@pytest.mark.unit
def test_reapplying_status_is_idempotent(db, admin, make_booking):
    booking = make_booking(status=BookingStatus.CONFIRMED)
    service = BookingService(db)

    first = service.update_status(booking.id, BookingStatus.CONFIRMED, actor=admin)
    first_updated_at = ensure_utc(first.updated_at)
    second = service.update_status(booking.id, BookingStatus.CONFIRMED, actor=admin)

    assert second.status == BookingStatus.CONFIRMED
    assert ensure_utc(second.updated_at) > first_updated_at
    assert second.version == 3
    assert service.get_status_history(booking.id) == []
    assert get_metrics_collector().get_counter_value(
        "booking_status_transitions_total",
        {"from_status": "confirmed", "to_status": "confirmed"},
    ) == 0


@pytest.mark.unit
def test_update_status_rejects_backward_transition(db, admin, make_booking):
    booking = make_booking(status=BookingStatus.COMPLETED)

    with pytest.raises(InvalidTransitionException) as exc_info:
        BookingService(db).update_status(booking.id, BookingStatus.WASHING, actor=admin)

    assert exc_info.value.status_code == 422
    assert exc_info.value.details["errors"]["allowed"] == ["paid"]
    assert BookingService(db).get_booking(booking.id).status == BookingStatus.COMPLETED


@pytest.mark.unit
def test_update_status_terminal_states(db, admin, make_booking):
    booking = make_booking(status=BookingStatus.CANCELLED)

    with pytest.raises(InvalidTransitionException):
        BookingService(db).update_status(booking.id, BookingStatus.CONFIRMED, actor=admin)


@pytest.mark.unit
def test_update_status_unknown_status(db, admin, make_booking):
    booking = make_booking()

    with pytest.raises(ValidationException) as exc_info:
        BookingService(db).update_status(booking.id, "teleported", actor=admin)

    assert exc_info.value.status_code == 422


@pytest.mark.unit
def test_update_status_unknown_booking(db, admin):
    with pytest.raises(NotFoundException):
        BookingService(db).update_status("BOOK_missing", BookingStatus.CONFIRMED, actor=admin)


@pytest.mark.unit
def test_second_update_from_same_read_conflicts(db, admin, make_booking):
    booking = make_booking(status=BookingStatus.CONFIRMED)
    service = BookingService(db)

    service.update_status(booking.id, BookingStatus.IN_PROGRESS, actor=admin, expected_version=1)

    with pytest.raises(ConcurrentModificationException) as exc_info:
        service.update_status(booking.id, BookingStatus.CANCELLED, actor=admin, expected_version=1)

    assert exc_info.value.status_code == 409
    assert exc_info.value.details["actual"] == {"status": "in_progress", "version": 2}
    assert service.get_booking(booking.id).status == BookingStatus.IN_PROGRESS
    assert get_metrics_collector().get_counter_value(
        "booking_status_conflicts_total", {"operation": "update_status"}
    ) == 1


@pytest.mark.unit
def test_expected_status_mismatch_conflicts(db, admin, make_booking):
    booking = make_booking(status=BookingStatus.CONFIRMED)

    with pytest.raises(ConcurrentModificationException):
        BookingService(db).update_status(
            booking.id,
            BookingStatus.CANCELLED,
            actor=admin,
            expected_status=BookingStatus.PENDING,
        )


@pytest.mark.unit
def test_guarded_write_detects_stale_read(db, make_booking):
    booking = make_booking(status=BookingStatus.CONFIRMED)
    service = BookingService(db)
    stale = service.get_booking(booking.id)

    # Another writer bumps the row behind the session's back
    db.execute(
        update(Booking)
        .where(Booking.id == booking.id)
        .values(version=7, status=BookingStatus.CANCELLED)
        .execution_options(synchronize_session=False)
    )
    db.commit()

    with pytest.raises(ConcurrentModificationException) as exc_info:
        service.write_booking(stale, {"notes": "late write"}, operation="update_status")

    assert exc_info.value.details["expected"] == {"status": "confirmed", "version": 1}
    assert exc_info.value.details["actual"] == {"status": "cancelled", "version": 7}


@pytest.mark.unit
def test_crew_can_only_update_assigned_bookings(db, make_user, make_booking):
    crew = make_user(UserRole.CREW)
    other_crew = make_user(UserRole.CREW)
    booking = make_booking(status=BookingStatus.CREW_ASSIGNED, assigned_crew=[crew.id])
    service = BookingService(db)

    with pytest.raises(ForbiddenException):
        service.update_status(booking.id, BookingStatus.CREW_GOING, actor=other_crew)

    updated = service.update_status(
        booking.id,
        BookingStatus.CREW_GOING,
        actor=crew,
        notes="On the way",
        location={"latitude": 14.55, "longitude": 121.02},
    )
    assert updated.status == BookingStatus.CREW_GOING
    assert updated.crew_notes == "On the way"
    assert service.get_status_history(booking.id)[0].location == {"latitude": 14.55, "longitude": 121.02}


@pytest.mark.unit
def test_customers_cannot_update_status(db, customer, make_booking):
    booking = make_booking(customer=customer)

    with pytest.raises(ForbiddenException):
        BookingService(db).update_status(booking.id, BookingStatus.CANCELLED, actor=customer)


@pytest.mark.unit
def test_customer_notified_on_status_change(db, admin, customer, make_booking):
    booking = make_booking(status=BookingStatus.PENDING, customer=customer)

    BookingService(db).update_status(booking.id, BookingStatus.CONFIRMED, actor=admin)

    notifications = _notifications(db, customer.id)
    assert len(notifications) == 1
    assert notifications[0].type == NotificationType.BOOKING_UPDATE
    assert notifications[0].title == "Booking Confirmed"
    assert notifications[0].data == {"bookingId": booking.id, "status": "confirmed"}


@pytest.mark.unit
def test_completion_frees_crew_and_closes_assignments(db, admin, make_user, make_booking):
    crew = make_user(UserRole.CREW)
    booking = make_booking(status=BookingStatus.WASHING, assigned_crew=[crew.id])
    crew.crew_status = CrewStatus.BUSY
    crew.current_assignment = booking.id
    db.add(CrewAssignment(
        booking_id=booking.id,
        crew_id=crew.id,
        assigned_by=admin.id,
        status=CrewAssignmentStatus.ACCEPTED,
    ))
    db.commit()

    updated = BookingService(db).update_status(booking.id, BookingStatus.COMPLETED, actor=admin)

    db.refresh(crew)
    assignment = db.execute(select(CrewAssignment).where(CrewAssignment.booking_id == booking.id)).scalar_one()
    assert updated.completed_at is not None
    assert updated.crew_completion_time is not None
    assert crew.crew_status == CrewStatus.AVAILABLE
    assert crew.current_assignment is None
    assert assignment.status == CrewAssignmentStatus.COMPLETED


@pytest.mark.unit
def test_cancellation_releases_crew_and_keeps_assignment_status(db, admin, make_user, make_booking):
    crew = make_user(UserRole.CREW)
    booking = make_booking(status=BookingStatus.CREW_ASSIGNED, assigned_crew=[crew.id])
    crew.crew_status = CrewStatus.BUSY
    crew.current_assignment = booking.id
    db.add(CrewAssignment(booking_id=booking.id, crew_id=crew.id, assigned_by=admin.id))
    db.commit()

    updated = BookingService(db).update_status(
        booking.id, BookingStatus.CANCELLED, actor=admin, notes="Customer no-show"
    )

    db.refresh(crew)
    assignment = db.execute(select(CrewAssignment).where(CrewAssignment.booking_id == booking.id)).scalar_one()
    assert updated.cancellation_reason == "Customer no-show"
    assert updated.cancelled_at is not None
    assert crew.crew_status == CrewStatus.AVAILABLE
    assert assignment.status == CrewAssignmentStatus.ASSIGNED


# ===== Retry policy =====

def _operational_error():
    return OperationalError("SELECT 1", {}, Exception("server closed the connection unexpectedly"))


@pytest.mark.unit
def test_database_outage_surfaces_as_downstream_unavailable(db, admin, make_booking, monkeypatch):
    booking = make_booking()
    service = BookingService(db)
    calls = []

    def failing_get_booking(booking_id):
        calls.append(booking_id)
        raise _operational_error()

    monkeypatch.setattr(service, "get_booking", failing_get_booking)

    with pytest.raises(DownstreamUnavailableException) as exc_info:
        service.update_status(booking.id, BookingStatus.IN_PROGRESS, actor=admin)

    assert exc_info.value.status_code == 503
    assert exc_info.value.details["retryable"] is True
    assert len(calls) == settings.db_retry_attempts


@pytest.mark.unit
def test_transient_database_error_is_retried(db, admin, make_booking, monkeypatch):
    booking = make_booking()
    service = BookingService(db)
    real_get_booking = service.get_booking
    calls = []

    def flaky_get_booking(booking_id):
        calls.append(booking_id)
        if len(calls) == 1:
            raise _operational_error()
        return real_get_booking(booking_id)

    monkeypatch.setattr(service, "get_booking", flaky_get_booking)

    updated = service.update_status(booking.id, BookingStatus.IN_PROGRESS, actor=admin)

    assert updated.status == BookingStatus.IN_PROGRESS
    assert len(calls) == 2


@pytest.mark.unit
def test_domain_errors_are_not_retried(db, admin, monkeypatch):
    service = BookingService(db)
    real_get_booking = service.get_booking
    calls = []

    def counting_get_booking(booking_id):
        calls.append(booking_id)
        return real_get_booking(booking_id)

    monkeypatch.setattr(service, "get_booking", counting_get_booking)

    with pytest.raises(NotFoundException):
        service.update_status("BOOK_missing", BookingStatus.CONFIRMED, actor=admin)

    assert len(calls) == 1


# ===== Booking store =====

@pytest.mark.unit
def test_create_guest_booking(db, admin):
    booking = BookingService(db).create_booking(_new_booking_data(), actor=admin)

    assert booking.id.startswith("BOOK_")
    assert booking.status == BookingStatus.PENDING
    assert booking.version == 1
    assert booking.user_id is None
    assert booking.customer_name == "Maria Santos"
    assert len(booking.confirmation_code) == 8


@pytest.mark.unit
def test_create_registered_booking_notifies_customer(db, customer):
    booking = BookingService(db).create_booking(
        _new_booking_data(type=BookingType.REGISTERED, guest_info=None),
        actor=customer,
    )

    assert booking.user_id == customer.id
    notifications = _notifications(db, customer.id)
    assert [n.type for n in notifications] == [NotificationType.BOOKING_CONFIRMATION]
    assert notifications[0].data["bookingId"] == booking.id


@pytest.mark.unit
def test_create_booking_requires_customer_details(db, admin):
    service = BookingService(db)

    with pytest.raises(ValidationException):
        service.create_booking(_new_booking_data(guest_info=None), actor=admin)

    with pytest.raises(ValidationException):
        service.create_booking(_new_booking_data(type=BookingType.REGISTERED, guest_info=None), actor=admin)


@pytest.mark.unit
def test_customer_cannot_book_for_someone_else(db, customer, make_user):
    other = make_user(UserRole.USER)

    with pytest.raises(ForbiddenException):
        BookingService(db).create_booking(
            _new_booking_data(type=BookingType.REGISTERED, user_id=other.id),
            actor=customer,
        )


@pytest.mark.unit
def test_full_slot_rejects_new_booking(db, admin):
    service = BookingService(db)
    for _ in range(settings.slot_capacity):
        service.create_booking(_new_booking_data(), actor=admin)

    availability = service.slot_availability("2026-10-21", "9:00 AM", "Taguig")
    assert availability == {
        "isAvailable": False,
        "currentBookings": settings.slot_capacity,
        "maxCapacity": settings.slot_capacity,
    }

    with pytest.raises(ConflictException):
        service.create_booking(_new_booking_data(), actor=admin)


@pytest.mark.unit
def test_slot_is_counted_after_taking_the_slot_lock(db, admin, make_booking, monkeypatch):
    keys = []

    def lock_then_fill(session, key):
        keys.append(key)
        # Bookings committed by whoever held the lock first
        for _ in range(settings.slot_capacity):
            make_booking(status=BookingStatus.PENDING, date="2026-10-21", time_slot="9:00 AM", branch="Taguig")

    monkeypatch.setattr("carwash.services.booking_service.lock_for_transaction", lock_then_fill)

    with pytest.raises(ConflictException):
        BookingService(db).create_booking(_new_booking_data(), actor=admin)

    assert keys == ["slot:Taguig:2026-10-21:9:00 AM"]
    assert len(db.execute(select(Booking)).scalars().all()) == settings.slot_capacity


@pytest.mark.unit
def test_cancelled_bookings_free_the_slot(db, make_booking):
    make_booking(status=BookingStatus.CANCELLED)
    make_booking(status=BookingStatus.CREW_ASSIGNED)
    make_booking(status=BookingStatus.PENDING)

    availability = BookingService(db).slot_availability("2026-10-20", "10:00 AM", "Makati")

    assert availability["currentBookings"] == 1
    assert availability["isAvailable"] is True


@pytest.mark.unit
def test_list_bookings_filters_and_search(db, customer, make_booking):
    make_booking(status=BookingStatus.PENDING, plate_number="XYZ 9876")
    make_booking(status=BookingStatus.CONFIRMED, customer=customer, branch="Pasig")
    make_booking(status=BookingStatus.CONFIRMED, service="Graphene Coating")
    service = BookingService(db)

    confirmed, total = service.list_bookings(status=BookingStatus.CONFIRMED)
    assert total == 2
    assert all(b.status == BookingStatus.CONFIRMED for b in confirmed)

    by_plate, _ = service.list_bookings(search="xyz")
    assert [b.plate_number for b in by_plate] == ["XYZ 9876"]

    by_customer, _ = service.list_bookings(search="carla")
    assert [b.user_id for b in by_customer] == [customer.id]

    by_guest, guest_total = service.list_bookings(search="dela cruz")
    assert guest_total == 2

    page, total = service.list_bookings(page=2, page_size=2)
    assert total == 3
    assert len(page) == 1


@pytest.mark.unit
def test_list_bookings_pages_in_the_query(db, make_booking):
    created = [make_booking() for _ in range(5)]
    service = BookingService(db)

    first_page, total = service.list_bookings(page=1, page_size=2)
    last_page, _ = service.list_bookings(page=3, page_size=2)
    beyond, beyond_total = service.list_bookings(page=4, page_size=2)

    newest_first = [b.id for b in reversed(created)]
    assert total == 5
    assert [b.id for b in first_page] == newest_first[:2]
    assert [b.id for b in last_page] == newest_first[4:]
    assert beyond == []
    assert beyond_total == 5


@pytest.mark.unit
def test_search_treats_wildcards_literally(db, make_booking):
    discounted = make_booking(service="Wash 50% Off")
    underscored = make_booking(plate_number="ABC_123")
    make_booking(service="Premium Wash", plate_number="ABC 1234")
    service = BookingService(db)

    by_percent, percent_total = service.list_bookings(search="50%")
    by_underscore, _ = service.list_bookings(search="c_1")

    assert [b.id for b in by_percent] == [discounted.id]
    assert percent_total == 1
    assert [b.id for b in by_underscore] == [underscored.id]
    assert service.list_bookings(search="%")[1] == 1


@pytest.mark.unit
def test_list_bookings_newest_first(db, make_booking):
    older = make_booking()
    newer = make_booking()

    bookings, _ = BookingService(db).list_bookings()

    assert [b.id for b in bookings] == [newer.id, older.id]


@pytest.mark.unit
def test_dashboard_stats(db, make_booking):
    make_booking(service="Premium Wash", total_price=500, date="2026-10-20")
    make_booking(service="Premium Wash", total_price=500, date="2026-10-21", status=BookingStatus.COMPLETED)
    make_booking(service="Graphene Coating", total_price=8000, date="2026-10-21")
    make_booking(service="Basic Wash", total_price=250, date="2026-11-02")

    stats = BookingService(db).dashboard_stats(start="2026-10-01", end="2026-10-31")

    assert stats["totalBookings"] == 3
    assert stats["totalRevenue"] == 9000.0
    assert [s["name"] for s in stats["topServices"]] == ["Graphene Coating", "Premium Wash"]
    assert stats["dailyStats"] == [
        {"date": "2026-10-20", "bookings": 1, "revenue": 500.0},
        {"date": "2026-10-21", "bookings": 2, "revenue": 8500.0},
    ]
    assert stats["statusBreakdown"]["confirmed"] == 2
    assert stats["statusBreakdown"]["completed"] == 1
    assert len(stats["recentBookings"]) == 3
