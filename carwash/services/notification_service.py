"""
Notification service - per-user in-app notification inbox.

Writes happen inside the caller's transaction: `notify()` only adds the row
and flushes, so a crew assignment and its notifications commit or roll back
together. They are counted in notifications_created_total once that
transaction commits. The read-side methods (listing, marking read) own their
commits.
"""
from typing import Any, Dict, List, Optional

from sqlalchemy import event, select, func, update
from sqlalchemy.orm import Session

from carwash.api.middleware.error_handler import NotFoundException
from carwash.lib.clock import utcnow
from carwash.lib.logging import get_logger
from carwash.lib.metrics import get_metrics_collector
from carwash.models.notifications import Notification, NotificationType
from carwash.services.unit_of_work import retrying_unit_of_work


logger = get_logger(__name__)

# Session.info key holding notification types added but not yet committed
_UNCOUNTED = "uncounted_notifications"


@event.listens_for(Session, "after_commit")
def _count_committed_notifications(session: Session) -> None:
    uncounted = session.info.pop(_UNCOUNTED, None)
    if uncounted:
        metrics = get_metrics_collector()
        for notification_type in uncounted:
            metrics.increment_notifications(notification_type)


@event.listens_for(Session, "after_soft_rollback")
def _discard_uncounted_notifications(session: Session, previous_transaction) -> None:
    session.info.pop(_UNCOUNTED, None)


class NotificationService:
    """
    In-app notification sink.

    Handles:
    - Appending notifications for a recipient
    - Newest-first listing and unread counts for badges
    - Read flags
    """

    def __init__(self, db: Session):
        self.db = db

    def notify(
        self,
        user_id: str,
        notification_type: NotificationType,
        title: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> Notification:
        """
        Append a notification to a user's inbox.

        Does not commit; the caller's unit of work decides.

        Args:
            user_id: Recipient user ID
            notification_type: Notification category
            title: Short title shown in the dropdown
            message: Body text
            data: Extra payload, e.g. {"bookingId": ..., "assignmentId": ...}

        Returns:
            The pending Notification row
        """
        notification = Notification(
            user_id=user_id,
            type=notification_type,
            title=title,
            message=message,
            data=data,
            is_read=False,
            created_at=utcnow(),
        )
        self.db.add(notification)
        self.db.flush()

        self.db.info.setdefault(_UNCOUNTED, []).append(notification_type.value)
        logger.info(
            "Notification queued",
            extra={"user_id": user_id, "type": notification_type.value, "notification_id": notification.id},
        )
        return notification

    def list_for_user(
        self,
        user_id: str,
        unread_only: bool = False,
        limit: int = 50,
    ) -> List[Notification]:
        """Return the user's notifications, newest first."""
        stmt = select(Notification).where(Notification.user_id == user_id)
        if unread_only:
            stmt = stmt.where(Notification.is_read == False)  # noqa: E712
        stmt = stmt.order_by(Notification.created_at.desc()).limit(limit)
        return list(self.db.execute(stmt).scalars().all())

    def unread_count(self, user_id: str) -> int:
        stmt = (
            select(func.count())
            .select_from(Notification)
            .where(Notification.user_id == user_id, Notification.is_read == False)  # noqa: E712
        )
        return self.db.execute(stmt).scalar_one()

    @retrying_unit_of_work
    def mark_read(self, notification_id: str, user_id: str) -> Notification:
        """
        Mark one of the user's notifications as read.

        Raises:
            NotFoundException: If the notification does not exist or belongs to someone else
        """
        notification = self.db.get(Notification, notification_id)
        if notification is None or notification.user_id != user_id:
            raise NotFoundException("Notification", notification_id)

        if not notification.is_read:
            notification.is_read = True
            notification.read_at = utcnow()
            self.db.commit()
        return notification

    @retrying_unit_of_work
    def mark_all_read(self, user_id: str) -> int:
        """Mark every unread notification of the user as read. Returns the count."""
        result = self.db.execute(
            update(Notification)
            .where(Notification.user_id == user_id, Notification.is_read == False)  # noqa: E712
            .values(is_read=True, read_at=utcnow())
        )
        self.db.commit()
        logger.info(f"Marked {result.rowcount} notifications read", extra={"user_id": user_id})
        return result.rowcount
