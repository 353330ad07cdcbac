"""
Notification Routes - the caller's in-app notification inbox.
"""
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from carwash.api.dependencies import get_current_user, get_db
from carwash.api.routes.bookings import CamelModel, UtcDateTime
from carwash.models.notifications import Notification, NotificationType
from carwash.models.users import User
from carwash.services.notification_service import NotificationService


router = APIRouter(prefix="/notifications", tags=["notifications"])


class NotificationResponse(CamelModel):
    id: str
    user_id: str
    type: NotificationType
    title: str
    message: str
    data: Optional[Dict[str, Any]]
    is_read: bool
    read_at: Optional[UtcDateTime]
    created_at: UtcDateTime


class UnreadCountResponse(CamelModel):
    count: int


class MarkAllReadResponse(CamelModel):
    updated: int


@router.get("", response_model=List[NotificationResponse], summary="List my notifications")
def list_notifications(
    unread_only: bool = Query(False, alias="unreadOnly"),
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> List[Notification]:
    """Newest first."""
    return NotificationService(db).list_for_user(current_user.id, unread_only=unread_only, limit=limit)


@router.get("/unread-count", response_model=UnreadCountResponse, summary="Unread badge count")
def unread_count(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> UnreadCountResponse:
    return UnreadCountResponse(count=NotificationService(db).unread_count(current_user.id))


@router.post("/read-all", response_model=MarkAllReadResponse, summary="Mark all as read")
def mark_all_read(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> MarkAllReadResponse:
    return MarkAllReadResponse(updated=NotificationService(db).mark_all_read(current_user.id))


@router.post("/{notification_id}/read", response_model=NotificationResponse, summary="Mark as read")
def mark_read(
    notification_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> Notification:
    return NotificationService(db).mark_read(notification_id, current_user.id)
