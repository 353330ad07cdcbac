"""
Crew tracking - availability history and last known positions.

Status changes are written by whoever changes the crew flag (assignment,
release, manual status change) inside that caller's transaction.
"""
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, func, update
from sqlalchemy.orm import Session

from carwash.lib.clock import ensure_utc, next_timestamp, utcnow
from carwash.lib.logging import get_logger
from carwash.lib.settings import settings
from carwash.models.crew_tracking import CrewLocation, CrewStatusHistory
from carwash.models.users import CrewStatus, User, UserRole
from carwash.services.unit_of_work import retrying_unit_of_work


logger = get_logger(__name__)


class CrewTrackingService:

    def __init__(self, db: Session):
        self.db = db

    def record_status_change(
        self,
        crew_id: str,
        status: CrewStatus,
        previous: Optional[CrewStatus],
        changed_by: Optional[str] = None,
        reason: Optional[str] = None,
        booking_id: Optional[str] = None,
    ) -> CrewStatusHistory:
        """
        Close the crew member's open status period and open a new one.

        Does not commit.
        """
        open_since = self.db.execute(
            select(func.max(CrewStatusHistory.started_at)).where(CrewStatusHistory.crew_id == crew_id)
        ).scalar_one_or_none()
        now = next_timestamp(open_since)
        self.db.execute(
            update(CrewStatusHistory)
            .where(CrewStatusHistory.crew_id == crew_id, CrewStatusHistory.ended_at.is_(None))
            .values(ended_at=now)
            .execution_options(synchronize_session=False)
        )
        entry = CrewStatusHistory(
            crew_id=crew_id,
            status=status,
            previous_status=previous,
            reason=reason,
            booking_id=booking_id,
            changed_by=changed_by,
            started_at=now,
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def status_history(self, crew_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        """Status periods, newest first, each with its duration in whole minutes."""
        rows = self.db.execute(
            select(CrewStatusHistory)
            .where(CrewStatusHistory.crew_id == crew_id)
            .order_by(CrewStatusHistory.started_at.desc())
            .limit(limit)
            .execution_options(populate_existing=True)
        ).scalars().all()

        now = utcnow()
        history = []
        for entry in rows:
            started = ensure_utc(entry.started_at)
            ended = ensure_utc(entry.ended_at)
            history.append({
                "entry": entry,
                "duration_minutes": int(((ended or now) - started).total_seconds() // 60),
            })
        return history

    @retrying_unit_of_work
    def record_location(self, crew_id: str, **fix: Any) -> CrewLocation:
        """Store a position report and commit."""
        location = CrewLocation(crew_id=crew_id, recorded_at=utcnow(), **fix)
        self.db.add(location)
        self.db.commit()
        logger.info(
            f"Location reported by crew {crew_id}",
            extra={"crew_id": crew_id, "location_id": location.id},
        )
        return location

    def live_locations(self, branch: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Active crew with their most recent position inside the freshness window.

        Crew without a recent fix are listed with location = None.
        """
        cutoff = utcnow() - timedelta(minutes=settings.crew_location_max_age_minutes)
        latest = (
            select(CrewLocation.crew_id, func.max(CrewLocation.recorded_at).label("recorded_at"))
            .where(CrewLocation.recorded_at >= cutoff)
            .group_by(CrewLocation.crew_id)
            .subquery()
        )
        stmt = (
            select(User, CrewLocation)
            .outerjoin(latest, latest.c.crew_id == User.id)
            .outerjoin(
                CrewLocation,
                (CrewLocation.crew_id == latest.c.crew_id)
                & (CrewLocation.recorded_at == latest.c.recorded_at),
            )
            .where(User.role == UserRole.CREW, User.is_active == True)  # noqa: E712
        )
        if branch:
            stmt = stmt.where(User.branch_location == branch)

        seen = set()
        result = []
        for crew, location in self.db.execute(stmt.order_by(User.full_name)).all():
            # Two fixes with the same timestamp join twice
            if crew.id in seen:
                continue
            seen.add(crew.id)
            result.append({"crew": crew, "location": location})
        return result
