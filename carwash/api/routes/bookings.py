"""
Booking Routes - booking store and status lifecycle.

Provides:
- POST  /bookings: Create a booking (registered customer or guest)
- GET   /bookings: Filtered, paginated booking list (staff)
- GET   /bookings/availability: Slot capacity check
- GET   /bookings/{id}: Booking detail
- PATCH /bookings/{id}/status: Move a booking through its lifecycle
- GET   /bookings/{id}/history: Status change history
- POST  /bookings/{id}/crew: Assign crew members (staff)

Field names on the wire are camelCase.
"""
from datetime import datetime
from typing import Annotated, Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import AfterValidator, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.orm import Session

from carwash.api.dependencies import get_current_user, get_db, require_staff
from carwash.api.middleware.error_handler import ForbiddenException
from carwash.lib.clock import ensure_utc
from carwash.lib.logging import get_logger
from carwash.models.bookings import (
    Booking,
    BookingStatus,
    BookingType,
    PaymentStatus,
    ServiceCategory,
    ServiceType,
    UnitType,
)
from carwash.models.crew_assignments import CrewAssignmentStatus
from carwash.models.users import User
from carwash.services.booking_service import BookingService
from carwash.services.crew_service import CrewService


logger = get_logger(__name__)
router = APIRouter(prefix="/bookings", tags=["bookings"])

UtcDateTime = Annotated[datetime, AfterValidator(ensure_utc)]


class CamelModel(BaseModel):
    """Base schema: camelCase aliases, readable from ORM rows."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# Request models
class GuestInfo(CamelModel):
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    email: str = Field(pattern=r"^[^@\s]+@[^@\s]+$")
    phone: str = Field(min_length=1)


class Location(CamelModel):
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    address: Optional[str] = None


class BookingCreateRequest(CamelModel):
    """New booking. Registered bookings need userId, guest bookings guestInfo."""
    type: BookingType = BookingType.REGISTERED
    user_id: Optional[str] = None
    guest_info: Optional[GuestInfo] = None

    category: ServiceCategory
    service: str = Field(min_length=1, max_length=255)
    service_type: ServiceType = ServiceType.BRANCH
    service_location: Optional[str] = None
    estimated_duration: Optional[int] = Field(None, ge=0, description="Minutes")

    unit_type: UnitType
    unit_size: Optional[str] = None
    plate_number: Optional[str] = Field(None, max_length=20)
    vehicle_model: Optional[str] = None

    date: str = Field(pattern=r"^\d{4}-\d{2}-\d{2}$", description="YYYY-MM-DD")
    time_slot: str = Field(min_length=1, max_length=50)
    branch: str = Field(min_length=1, max_length=255)

    base_price: float = Field(ge=0)
    total_price: float = Field(ge=0)
    currency: str = "PHP"
    payment_method: Optional[str] = None
    notes: Optional[str] = None


class StatusUpdateRequest(CamelModel):
    status: BookingStatus
    notes: Optional[str] = None
    location: Optional[Location] = None
    expected_status: Optional[BookingStatus] = Field(
        None, description="Status the client last saw; mismatch returns 409"
    )
    expected_version: Optional[int] = Field(
        None, ge=1, description="Version the client last saw; mismatch returns 409"
    )


class AssignCrewRequest(CamelModel):
    crew_ids: List[str] = Field(min_length=1)
    notes: Optional[str] = None
    expected_version: Optional[int] = Field(None, ge=1)


# Response models
class BookingResponse(CamelModel):
    id: str
    user_id: Optional[str]
    guest_info: Optional[Dict[str, Any]]
    customer_name: Optional[str]
    type: BookingType
    confirmation_code: str

    category: ServiceCategory
    service: str
    service_type: ServiceType
    service_location: Optional[str]
    estimated_duration: Optional[int]

    unit_type: UnitType
    unit_size: Optional[str]
    plate_number: Optional[str]
    vehicle_model: Optional[str]

    date: str
    time_slot: str
    branch: str

    base_price: float
    total_price: float
    currency: str
    payment_method: Optional[str]
    payment_status: PaymentStatus

    status: BookingStatus
    version: int
    assigned_crew: List[str]
    crew_notes: Optional[str]
    notes: Optional[str]

    confirmed_at: Optional[UtcDateTime]
    crew_arrival_time: Optional[UtcDateTime]
    started_at: Optional[UtcDateTime]
    crew_start_time: Optional[UtcDateTime]
    completed_at: Optional[UtcDateTime]
    crew_completion_time: Optional[UtcDateTime]
    cancelled_at: Optional[UtcDateTime]
    cancellation_reason: Optional[str]

    created_at: UtcDateTime
    updated_at: UtcDateTime


class BookingListResponse(CamelModel):
    bookings: List[BookingResponse]
    total: int
    page: int
    page_size: int
    has_next: bool


class StatusHistoryEntry(CamelModel):
    id: str
    booking_id: str
    status: BookingStatus
    previous_status: Optional[BookingStatus]
    updated_by: str
    updated_by_role: str
    notes: Optional[str]
    location: Optional[Dict[str, Any]]
    timestamp: UtcDateTime


class CrewAssignmentResponse(CamelModel):
    id: str
    booking_id: str
    crew_id: str
    assigned_by: str
    status: CrewAssignmentStatus
    notes: Optional[str]
    assigned_at: UtcDateTime
    accepted_at: Optional[UtcDateTime]
    responded_at: Optional[UtcDateTime]


class AssignCrewResponse(CamelModel):
    booking: BookingResponse
    assignments: List[CrewAssignmentResponse]


class SlotAvailabilityResponse(CamelModel):
    is_available: bool
    current_bookings: int
    max_capacity: int


def _ensure_can_view(booking: Booking, user: User) -> None:
    if user.is_staff or booking.user_id == user.id or user.id in (booking.assigned_crew or []):
        return
    raise ForbiddenException("You do not have access to this booking")


@router.post(
    "",
    response_model=BookingResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a booking",
)
def create_booking(
    payload: BookingCreateRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> Booking:
    """
    Create a pending booking.

    Returns 409 when the branch time slot is already full.
    """
    data = payload.model_dump(exclude={"guest_info"})
    data["guest_info"] = payload.guest_info.model_dump(by_alias=True) if payload.guest_info else None
    return BookingService(db).create_booking(data, current_user)


@router.get(
    "",
    response_model=BookingListResponse,
    summary="List bookings",
)
def list_bookings(
    status_filter: Optional[BookingStatus] = Query(None, alias="status"),
    branch: Optional[str] = Query(None),
    date: Optional[str] = Query(None, description="YYYY-MM-DD"),
    search: Optional[str] = Query(None, description="Customer, service or plate number"),
    crew_id: Optional[str] = Query(None, alias="crewId"),
    page: int = Query(1, ge=1, description="Page number (1-indexed)"),
    page_size: int = Query(20, ge=1, le=100, alias="pageSize", description="Items per page"),
    db: Session = Depends(get_db),
    current_user: User = Depends(require_staff),
) -> BookingListResponse:
    logger.info(
        f"GET /bookings (page={page}, status={status_filter}, branch={branch}, date={date})"
    )
    bookings, total = BookingService(db).list_bookings(
        status=status_filter,
        branch=branch,
        date=date,
        search=search,
        crew_id=crew_id,
        page=page,
        page_size=page_size,
    )
    return BookingListResponse(
        bookings=[BookingResponse.model_validate(b) for b in bookings],
        total=total,
        page=page,
        page_size=page_size,
        has_next=page * page_size < total,
    )


@router.get(
    "/availability",
    response_model=SlotAvailabilityResponse,
    summary="Check time slot capacity",
)
def slot_availability(
    date: str = Query(..., description="YYYY-MM-DD"),
    time_slot: str = Query(..., alias="timeSlot"),
    branch: str = Query(...),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> Dict[str, Any]:
    return BookingService(db).slot_availability(date, time_slot, branch)


@router.get(
    "/{booking_id}",
    response_model=BookingResponse,
    summary="Get booking detail",
)
def get_booking(
    booking_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> Booking:
    booking = BookingService(db).get_booking(booking_id)
    _ensure_can_view(booking, current_user)
    return booking


@router.patch(
    "/{booking_id}/status",
    response_model=BookingResponse,
    summary="Update booking status",
    description="Move a booking to its next lifecycle status. Staff, or crew assigned to the booking.",
)
def update_booking_status(
    booking_id: str,
    payload: StatusUpdateRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> Booking:
    return BookingService(db).update_status(
        booking_id,
        payload.status,
        actor=current_user,
        notes=payload.notes,
        location=payload.location.model_dump(exclude_none=True) if payload.location else None,
        expected_status=payload.expected_status,
        expected_version=payload.expected_version,
    )


@router.get(
    "/{booking_id}/history",
    response_model=List[StatusHistoryEntry],
    summary="Booking status history",
)
def get_status_history(
    booking_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> list:
    service = BookingService(db)
    _ensure_can_view(service.get_booking(booking_id), current_user)
    return service.get_status_history(booking_id)


@router.post(
    "/{booking_id}/crew",
    response_model=AssignCrewResponse,
    summary="Assign crew to a booking",
)
def assign_crew(
    booking_id: str,
    payload: AssignCrewRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_staff),
) -> AssignCrewResponse:
    """
    Assign one or more crew members.

    Errors:
    - 404 unknown booking or crew member
    - 409 crew busy/offline, or booking changed concurrently
    - 422 booking not assignable, or too many crew
    """
    booking, assignments = CrewService(db).assign_crew(
        booking_id,
        payload.crew_ids,
        actor=current_user,
        notes=payload.notes,
        expected_version=payload.expected_version,
    )
    return AssignCrewResponse(
        booking=BookingResponse.model_validate(booking),
        assignments=[CrewAssignmentResponse.model_validate(a) for a in assignments],
    )
