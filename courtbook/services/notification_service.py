"""
Notification service for managing user notifications.

Notifications are persisted in the caller's unit of work and pushed to live
connections only after that unit commits. Dispatch is best-effort: a failure
to create or push a notification is logged and never fails the operation that
triggered it.
"""

from typing import List, Dict, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, func, and_
from courtbook.database.models import Notification
from courtbook.services.connection_registry import ConnectionRegistry
from courtbook.utils.datetime_utils import utcnow
import json
import logging

logger = logging.getLogger(__name__)

# Key in session.info holding notifications waiting for the commit
PENDING_PUSHES_KEY = "pending_notification_pushes"


def _to_dict(notification: Notification) -> Dict:
    return {
        "id": notification.id,
        "user_id": notification.user_id,
        "type": notification.type,
        "title": notification.title,
        "message": notification.message,
        "data": json.loads(notification.data) if notification.data else None,
        "is_read": notification.is_read,
        "read_at": notification.read_at.isoformat() if notification.read_at else None,
        "link_url": notification.link_url,
        "created_at": notification.created_at.isoformat() if notification.created_at else None,
    }


def create_notification(
    session: AsyncSession,
    user_id: int,
    type: str,
    title: str,
    message: str,
    data: Optional[Dict] = None,
    link_url: Optional[str] = None
) -> Notification:
    """
    Add a notification for a user to the session and queue it for live push.

    Args:
        session: Database session (the notification commits with it)
        user_id: ID of the user to notify
        type: Notification type (NotificationType enum value)
        title: Notification title
        message: Notification message text
        data: Optional JSON metadata (dict will be serialized to JSON string)
        link_url: Optional URL for navigation when notification is clicked

    Returns:
        The pending Notification object

    Raises:
        ValueError: If required fields are missing or invalid
    """
    if not user_id:
        raise ValueError("user_id is required")
    if not type:
        raise ValueError("type is required")
    if not title:
        raise ValueError("title is required")
    if not message:
        raise ValueError("message is required")

    notification = Notification(
        user_id=user_id,
        type=type,
        title=title,
        message=message,
        data=json.dumps(data, default=str) if data is not None else None,
        link_url=link_url,
        is_read=False,
    )
    session.add(notification)
    session.info.setdefault(PENDING_PUSHES_KEY, []).append(notification)
    return notification


def notify(
    session: AsyncSession,
    user_id: Optional[int],
    type: str,
    title: str,
    message: str,
    data: Optional[Dict] = None,
    link_url: Optional[str] = None,
) -> None:
    """Best-effort wrapper around create_notification used by workflows."""
    if not user_id:
        return
    try:
        create_notification(session, user_id, type, title, message, data=data, link_url=link_url)
    except Exception as e:
        logger.warning(f"Failed to create {type} notification for user {user_id}: {e}")


def notify_many(
    session: AsyncSession,
    user_ids,
    type: str,
    title: str,
    message: str,
    data: Optional[Dict] = None,
    link_url: Optional[str] = None,
) -> None:
    """Notify each distinct user id once."""
    for user_id in dict.fromkeys(uid for uid in user_ids if uid):
        notify(session, user_id, type, title, message, data=data, link_url=link_url)


def discard_pending_pushes(session: AsyncSession) -> None:
    """Forget queued pushes after a rollback."""
    session.info.pop(PENDING_PUSHES_KEY, None)


async def deliver_pending_pushes(
    session: AsyncSession, registry: Optional[ConnectionRegistry]
) -> int:
    """
    Push notifications committed by this session to live connections.

    Must be called after commit. Errors are logged, never raised.

    Returns:
        Number of notifications that reached at least one connection
    """
    pending: List[Notification] = session.info.pop(PENDING_PUSHES_KEY, [])
    if registry is None or not pending:
        return 0

    delivered = 0
    for notification in pending:
        try:
            if await registry.send_if_present(
                notification.user_id,
                {"type": "notification", "notification": _to_dict(notification)},
            ):
                delivered += 1
        except Exception as e:
            logger.warning(
                f"Failed to push notification to user {notification.user_id}: {e}"
            )
    return delivered


async def get_user_notifications(
    session: AsyncSession,
    user_id: int,
    limit: int = 50,
    offset: int = 0,
    unread_only: bool = False
) -> Dict:
    """
    Fetch user notifications with pagination.

    Returns:
        Dict containing:
            - notifications: List of notification dicts (ordered by created_at DESC)
            - total_count: Total number of notifications matching the criteria
            - has_more: Boolean indicating if there are more notifications
    """
    query = select(Notification).where(Notification.user_id == user_id)

    if unread_only:
        query = query.where(Notification.is_read == False)  # noqa: E712

    count_query = select(func.count()).select_from(query.subquery())
    total_result = await session.execute(count_query)
    total_count = total_result.scalar_one() or 0

    query = query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit).offset(offset)
    result = await session.execute(query)
    notification_dicts = [_to_dict(notif) for notif in result.scalars().all()]

    return {
        "notifications": notification_dicts,
        "total_count": total_count,
        "has_more": (offset + len(notification_dicts)) < total_count,
    }


async def get_unread_count(session: AsyncSession, user_id: int) -> int:
    """Get count of unread notifications for a user."""
    result = await session.execute(
        select(func.count())
        .select_from(Notification)
        .where(
            and_(
                Notification.user_id == user_id,
                Notification.is_read == False  # noqa: E712
            )
        )
    )
    return result.scalar_one() or 0


async def mark_as_read(
    session: AsyncSession,
    notification_id: int,
    user_id: int
) -> Dict:
    """
    Mark a single notification as read.

    Raises:
        ValueError: If notification not found or doesn't belong to user
    """
    result = await session.execute(
        select(Notification).where(
            and_(
                Notification.id == notification_id,
                Notification.user_id == user_id
            )
        )
    )
    notification = result.scalar_one_or_none()

    if not notification:
        raise ValueError("Notification not found or access denied")

    if not notification.is_read:
        notification.is_read = True
        notification.read_at = utcnow()
        await session.flush()

    return _to_dict(notification)


async def mark_all_as_read(session: AsyncSession, user_id: int) -> int:
    """Mark all user notifications as read. Returns how many changed."""
    result = await session.execute(
        update(Notification)
        .where(
            and_(
                Notification.user_id == user_id,
                Notification.is_read == False  # noqa: E712
            )
        )
        .values(is_read=True, read_at=utcnow())
    )
    await session.flush()
    return result.rowcount or 0


async def commit_and_deliver(
    session: AsyncSession, registry: Optional[ConnectionRegistry]
) -> int:
    """Commit the unit of work, then push the notifications it created."""
    await session.commit()
    return await deliver_pending_pushes(session, registry)
