"""
Crew Routes - crew availability, assignments and the dispatch dashboard.

Provides:
- GET   /crew: Active crew members, filterable by status and branch (staff)
- GET   /crew/stats: Availability counts and today's completed work (staff)
- PATCH /crew/{id}/status: Set availability (crew member or staff)
- GET   /crew/{id}/assignments: A crew member's assignments with bookings
- POST  /crew/assignments/{id}/respond: Accept or reject an assignment
- GET   /crew/{id}/status-history: Availability periods, newest first
- POST  /crew/{id}/location: Report the crew member's position
- GET   /crew/locations: Live map of active crew and their latest position (staff)
"""
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, status as http_status
from pydantic import Field
from sqlalchemy.orm import Session

from carwash.api.dependencies import get_current_user, get_db, require_staff
from carwash.api.middleware.error_handler import ForbiddenException
from carwash.api.routes.bookings import BookingResponse, CamelModel, CrewAssignmentResponse, UtcDateTime
from carwash.lib.logging import get_logger
from carwash.models.crew_assignments import CrewAssignment, CrewAssignmentStatus
from carwash.models.crew_tracking import CrewLocation
from carwash.models.users import CrewStatus, User
from carwash.services.crew_service import CrewService


logger = get_logger(__name__)
router = APIRouter(prefix="/crew", tags=["crew"])


# Request models
class CrewStatusRequest(CamelModel):
    status: CrewStatus
    reason: Optional[str] = Field(None, max_length=500)


class LocationReportRequest(CamelModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    accuracy: Optional[float] = Field(None, ge=0)
    heading: Optional[float] = Field(None, ge=0, lt=360)
    speed: Optional[float] = Field(None, ge=0)
    address: Optional[str] = None
    battery_level: Optional[int] = Field(None, ge=0, le=100)


class AssignmentResponseRequest(CamelModel):
    accept: bool = Field(description="True to accept, false to reject")
    notes: Optional[str] = None


# Response models
class CrewMemberResponse(CamelModel):
    id: str
    full_name: str
    email: str
    contact_number: Optional[str]
    branch_location: Optional[str]
    crew_skills: Optional[List[str]]
    crew_status: Optional[CrewStatus]
    current_assignment: Optional[str]
    crew_rating: Optional[float]
    crew_experience: Optional[int]


class CrewAssignmentDetail(CrewAssignmentResponse):
    booking: BookingResponse


class CrewStatsResponse(CamelModel):
    total_crew: int
    available_crew: int
    busy_crew: int
    offline_crew: int
    open_assignments: int
    completed_today: int
    revenue_today: float


class CrewStatusHistoryEntry(CamelModel):
    id: str
    crew_id: str
    status: CrewStatus
    previous_status: Optional[CrewStatus]
    reason: Optional[str]
    booking_id: Optional[str]
    changed_by: Optional[str]
    started_at: UtcDateTime
    ended_at: Optional[UtcDateTime]
    duration_minutes: int


class CrewLocationResponse(CamelModel):
    id: str
    crew_id: str
    latitude: float
    longitude: float
    accuracy: Optional[float]
    heading: Optional[float]
    speed: Optional[float]
    address: Optional[str]
    battery_level: Optional[int]
    recorded_at: UtcDateTime


class LiveCrewLocation(CamelModel):
    crew_id: str
    full_name: str
    branch_location: Optional[str]
    crew_status: Optional[CrewStatus]
    current_assignment: Optional[str]
    location: Optional[CrewLocationResponse]


@router.get(
    "",
    response_model=List[CrewMemberResponse],
    summary="List crew members",
)
def list_crew(
    status: Optional[CrewStatus] = Query(None),
    branch: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    current_user: User = Depends(require_staff),
) -> List[User]:
    return CrewService(db).list_crew(status=status, branch=branch)


@router.get(
    "/stats",
    response_model=CrewStatsResponse,
    summary="Crew dashboard figures",
)
def crew_stats(
    db: Session = Depends(get_db),
    current_user: User = Depends(require_staff),
) -> dict:
    return CrewService(db).crew_stats()


@router.get(
    "/locations",
    response_model=List[LiveCrewLocation],
    summary="Live crew map",
)
def live_locations(
    branch: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    current_user: User = Depends(require_staff),
) -> List[LiveCrewLocation]:
    """Positions older than CREW_LOCATION_MAX_AGE_MINUTES are reported as null."""
    return [
        LiveCrewLocation(
            crew_id=row["crew"].id,
            full_name=row["crew"].full_name,
            branch_location=row["crew"].branch_location,
            crew_status=row["crew"].crew_status,
            current_assignment=row["crew"].current_assignment,
            location=CrewLocationResponse.model_validate(row["location"]) if row["location"] else None,
        )
        for row in CrewService(db).live_locations(branch)
    ]


@router.patch(
    "/{crew_id}/status",
    response_model=CrewMemberResponse,
    summary="Set crew availability",
)
def set_crew_status(
    crew_id: str,
    payload: CrewStatusRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> User:
    """Going available or offline is refused (409) while an assignment is still open."""
    return CrewService(db).set_crew_status(crew_id, payload.status, actor=current_user, reason=payload.reason)


@router.get(
    "/{crew_id}/assignments",
    response_model=List[CrewAssignmentDetail],
    summary="List a crew member's assignments",
)
def get_crew_assignments(
    crew_id: str,
    status: Optional[CrewAssignmentStatus] = Query(None),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> List[CrewAssignmentDetail]:
    if current_user.id != crew_id and not current_user.is_staff:
        raise ForbiddenException("Crew members can only view their own assignments")

    rows = CrewService(db).get_crew_assignments(crew_id, status=status)
    return [
        CrewAssignmentDetail(
            **CrewAssignmentResponse.model_validate(assignment).model_dump(),
            booking=BookingResponse.model_validate(booking),
        )
        for assignment, booking in rows
    ]


@router.post(
    "/assignments/{assignment_id}/respond",
    response_model=CrewAssignmentResponse,
    summary="Accept or reject an assignment",
)
def respond_to_assignment(
    assignment_id: str,
    payload: AssignmentResponseRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> CrewAssignment:
    logger.info(
        f"Crew {current_user.id} responding to {assignment_id}",
        extra={"assignment_id": assignment_id, "accept": payload.accept},
    )
    return CrewService(db).respond_to_assignment(
        assignment_id,
        payload.accept,
        actor=current_user,
        notes=payload.notes,
    )


@router.get(
    "/{crew_id}/status-history",
    response_model=List[CrewStatusHistoryEntry],
    summary="Crew availability history",
)
def get_status_history(
    crew_id: str,
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> List[CrewStatusHistoryEntry]:
    if current_user.id != crew_id and not current_user.is_staff:
        raise ForbiddenException("Crew members can only view their own status history")

    return [_history_entry(row) for row in CrewService(db).get_status_history(crew_id, limit=limit)]


@router.post(
    "/{crew_id}/location",
    response_model=CrewLocationResponse,
    status_code=http_status.HTTP_201_CREATED,
    summary="Report crew position",
)
def report_location(
    crew_id: str,
    payload: LocationReportRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> CrewLocation:
    return CrewService(db).report_location(crew_id, actor=current_user, **payload.model_dump())


def _history_entry(row: Dict[str, Any]) -> CrewStatusHistoryEntry:
    entry = row["entry"]
    return CrewStatusHistoryEntry(
        id=entry.id,
        crew_id=entry.crew_id,
        status=entry.status,
        previous_status=entry.previous_status,
        reason=entry.reason,
        booking_id=entry.booking_id,
        changed_by=entry.changed_by,
        started_at=entry.started_at,
        ended_at=entry.ended_at,
        duration_minutes=row["duration_minutes"],
    )
