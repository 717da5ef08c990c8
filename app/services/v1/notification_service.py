# app/services/v1/notification_service.py
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
from app.db.models import Notification
from common import get_app_logger

logger = get_app_logger(__name__)


class NotificationService:
    """
    Writes in-app notification rows inside the caller's transaction.
    Delivery (push, email) happens elsewhere.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def notify(
        self,
        user_id: int,
        title: str,
        message: str,
        *,
        type: str = "appointment",
        related_id: Optional[int] = None,
        link: Optional[str] = None,
    ) -> Notification:
        notification = Notification(
            user_id=user_id,
            title=title,
            message=message,
            type=type,
            related_id=related_id,
            link=link,
        )
        self.db.add(notification)
        await self.db.flush()

        logger.debug(
            "Notification queued",
            user_id=user_id,
            notification_type=type,
            related_id=related_id,
        )
        return notification


__all__ = ["NotificationService"]
