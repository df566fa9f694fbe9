"""User notifications: persisted rows plus a live push to the user's room."""

import logging
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from agrolink.app.errors import AuthorizationError, NotFoundError
from agrolink.domain.enums import NotificationType
from agrolink.domain.models import Notification, User
from agrolink.services.realtime import ConnectionManager, user_room
from agrolink.services.serializers import serialize_notification

logger = logging.getLogger(__name__)


class NotificationService:
    """Create, list and manage notifications for a single recipient."""

    def __init__(self, db: AsyncSession, realtime: Optional[ConnectionManager] = None):
        self.db = db
        self.realtime = realtime

    async def notify(
        self,
        recipient_id: str,
        notification_type: NotificationType,
        title: str,
        message: str,
        data: Optional[dict] = None,
    ) -> Notification:
        """Persist a notification and push ``new_notification`` to the recipient.

        Commits on its own; callers run this after their primary write.
        """
        notification = Notification(
            recipient_id=recipient_id,
            type=notification_type.value,
            title=title,
            message=message,
            data=data or {},
        )
        self.db.add(notification)
        try:
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        if self.realtime is not None:
            await self.realtime.emit(
                user_room(recipient_id), "new_notification", serialize_notification(notification)
            )
        return notification

    async def list_for_user(
        self,
        user: User,
        unread_only: bool = False,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[Notification], int, int]:
        """Return (notifications newest first, total, unread_count)."""
        base = select(Notification).where(Notification.recipient_id == user.id)
        if unread_only:
            base = base.where(Notification.read.is_(False))

        total = (
            await self.db.execute(select(func.count()).select_from(base.subquery()))
        ).scalar_one()
        result = await self.db.execute(
            base.order_by(Notification.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        unread = await self.unread_count(user.id)
        return list(result.scalars().all()), total, unread

    async def unread_count(self, user_id: str) -> int:
        result = await self.db.execute(
            select(func.count(Notification.id)).where(
                Notification.recipient_id == user_id,
                Notification.read.is_(False),
            )
        )
        return result.scalar_one()

    async def _get_owned(self, user: User, notification_id: str) -> Notification:
        notification = await self.db.get(Notification, notification_id)
        if notification is None:
            raise NotFoundError("Notification not found")
        if notification.recipient_id != user.id:
            raise AuthorizationError("Not authorized to access this notification")
        return notification

    async def mark_read(self, user: User, notification_id: str) -> Notification:
        notification = await self._get_owned(user, notification_id)
        notification.read = True
        await self.db.commit()
        return notification

    async def mark_all_read(self, user: User) -> int:
        result = await self.db.execute(
            update(Notification)
            .where(Notification.recipient_id == user.id, Notification.read.is_(False))
            .values(read=True)
        )
        await self.db.commit()
        return result.rowcount or 0

    async def delete(self, user: User, notification_id: str) -> None:
        notification = await self._get_owned(user, notification_id)
        await self.db.delete(notification)
        await self.db.commit()
