"""
Admin Dashboard Routes - booking and revenue figures for the admin home screen.

Provides:
- GET /admin/dashboard: Totals, top services, recent bookings, daily figures
  and status breakdown for an optional schedule date range
"""
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from carwash.api.dependencies import get_db, require_staff
from carwash.api.middleware.error_handler import BadRequestException
from carwash.api.routes.bookings import BookingResponse, CamelModel
from carwash.lib.logging import get_logger
from carwash.models.users import User
from carwash.services.booking_service import BookingService


logger = get_logger(__name__)
router = APIRouter(prefix="/admin/dashboard", tags=["admin"])

DATE_PATTERN = r"^\d{4}-\d{2}-\d{2}$"


class TopService(CamelModel):
    name: str
    count: int
    revenue: float


class DailyStat(CamelModel):
    date: str
    bookings: int
    revenue: float


class DashboardResponse(CamelModel):
    total_bookings: int
    total_revenue: float
    top_services: List[TopService]
    recent_bookings: List[BookingResponse]
    daily_stats: List[DailyStat]
    status_breakdown: Dict[str, int]


@router.get(
    "",
    response_model=DashboardResponse,
    summary="Dashboard statistics",
    description="Aggregates bookings whose schedule date falls in [start, end]",
)
def dashboard_stats(
    start: Optional[str] = Query(None, pattern=DATE_PATTERN, description="YYYY-MM-DD, inclusive"),
    end: Optional[str] = Query(None, pattern=DATE_PATTERN, description="YYYY-MM-DD, inclusive"),
    db: Session = Depends(get_db),
    current_user: User = Depends(require_staff),
) -> dict:
    if start and end and start > end:
        raise BadRequestException("start must not be after end", details={"start": start, "end": end})

    logger.info(f"GET /admin/dashboard (start={start}, end={end})")
    stats = BookingService(db).dashboard_stats(start=start, end=end)
    stats["recentBookings"] = [BookingResponse.model_validate(b) for b in stats["recentBookings"]]
    return stats
