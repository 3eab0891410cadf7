"""
Notification endpoints
"""

from fastapi import APIRouter, Depends

from .auth import LendingSystem, get_lending_system, get_current_user_id
from .schemas import serialize_notification


router = APIRouter()


@router.get("")
def list_notifications(
    unread_only: bool = False,
    user_id: str = Depends(get_current_user_id),
    system: LendingSystem = Depends(get_lending_system)
):
    notifications = system.notification_center.list_for_user(user_id, unread_only=unread_only)
    return {
        "notifications": [serialize_notification(n) for n in notifications],
        "unreadCount": system.notification_center.unread_count(user_id)
    }


@router.patch("/{notification_id}/read")
def mark_notification_read(
    notification_id: str,
    user_id: str = Depends(get_current_user_id),
    system: LendingSystem = Depends(get_lending_system)
):
    notification = system.notification_center.mark_read(notification_id, user_id)
    return {"notification": serialize_notification(notification), "message": "Notification marked as read"}
