"""Notification inbox endpoints (recipient only)."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from agrolink.app.routes.auth import get_current_user_dep
from agrolink.domain.models import User
from agrolink.infra.database import get_db
from agrolink.services.notification_service import NotificationService
from agrolink.services.serializers import serialize_notification

router = APIRouter(prefix="/api/v1/notifications", tags=["notifications"])


@router.get("")
async def list_notifications(
    unread_only: bool = Query(False),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    notifications, total, unread = await NotificationService(db).list_for_user(
        user, unread_only, page, limit
    )
    return {
        "success": True,
        "count": len(notifications),
        "total": total,
        "unread_count": unread,
        "notifications": [serialize_notification(n) for n in notifications],
    }


@router.put("/mark-all-read")
async def mark_all_read(
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    count = await NotificationService(db).mark_all_read(user)
    return {"success": True, "marked_read": count}


@router.put("/{notification_id}")
async def mark_read(
    notification_id: str,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    notification = await NotificationService(db).mark_read(user, notification_id)
    return {"success": True, "notification": serialize_notification(notification)}


@router.delete("/{notification_id}")
async def delete_notification(
    notification_id: str,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    await NotificationService(db).delete(user, notification_id)
    return {"success": True, "message": "Notification deleted"}
