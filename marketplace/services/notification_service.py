from __future__ import annotations

import logging
from collections.abc import Iterable

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from marketplace.errors import NotFound, ValidationFailed
from marketplace.models import Notification, NotificationType, User, UserRole

logger = logging.getLogger(__name__)


def notify(
    db: Session,
    *,
    user_id: int,
    type: NotificationType,
    title: str,
    message: str,
    link: str | None = None,
    data: dict | None = None,
) -> bool:
    """Best-effort notification insert.

    Runs in a SAVEPOINT so a failure only drops the notification and leaves
    the caller's transaction usable. Returns False when nothing was written.
    """
    try:
        with db.begin_nested():
            db.add(
                Notification(
                    user_id=user_id,
                    type=type,
                    title=title[:200],
                    message=message,
                    link=link,
                    data=data,
                )
            )
    except SQLAlchemyError:
        logger.warning('Notification %s for user %s was not stored', type.value, user_id, exc_info=True)
        return False
    return True


def notify_many(
    db: Session,
    *,
    user_ids: Iterable[int],
    type: NotificationType,
    title: str,
    message: str,
    link: str | None = None,
    data: dict | None = None,
    exclude_user_id: int | None = None,
) -> int:
    sent = 0
    for user_id in dict.fromkeys(user_ids):
        if user_id == exclude_user_id:
            continue
        if notify(db, user_id=user_id, type=type, title=title, message=message, link=link, data=data):
            sent += 1
    return sent


def admin_user_ids(db: Session) -> list[int]:
    return db.execute(
        select(User.id).where(User.role == UserRole.ADMIN, User.active.is_(True)).order_by(User.id)
    ).scalars().all()


def serialize_notification(notification: Notification) -> dict:
    return {
        'id': notification.id,
        'type': notification.type.value,
        'title': notification.title,
        'message': notification.message,
        'link': notification.link,
        'data': notification.data,
        'read': notification.read,
        'createdAt': notification.created_at,
    }


def list_notifications(
    db: Session,
    *,
    user_id: int,
    unread_only: bool = False,
    type: NotificationType | None = None,
    limit: int = 20,
    offset: int = 0,
) -> dict:
    conditions = [Notification.user_id == user_id]
    if unread_only:
        conditions.append(Notification.read.is_(False))
    if type is not None:
        conditions.append(Notification.type == type)

    rows = db.execute(
        select(Notification)
        .where(*conditions)
        .order_by(Notification.created_at.desc(), Notification.id.desc())
        .limit(limit)
        .offset(offset)
    ).scalars().all()
    total = db.execute(select(func.count(Notification.id)).where(*conditions)).scalar_one()
    unread = db.execute(
        select(func.count(Notification.id)).where(Notification.user_id == user_id, Notification.read.is_(False))
    ).scalar_one()

    return {
        'notifications': [serialize_notification(row) for row in rows],
        'pagination': {
            'total': total,
            'limit': limit,
            'offset': offset,
            'hasMore': offset + len(rows) < total,
        },
        'unreadCount': unread,
    }


def mark_notification_read(db: Session, *, user_id: int, notification_id: int) -> Notification:
    notification = db.execute(
        select(Notification).where(Notification.id == notification_id, Notification.user_id == user_id)
    ).scalar_one_or_none()
    if not notification:
        raise NotFound('Notification non trouvée', code='NOTIFICATION_NOT_FOUND')
    notification.read = True
    db.flush()
    return notification


def mark_all_notifications_read(db: Session, *, user_id: int) -> int:
    result = db.execute(
        update(Notification)
        .where(Notification.user_id == user_id, Notification.read.is_(False))
        .values(read=True)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


def create_notification_as_admin(
    db: Session,
    *,
    user_id: int,
    type: NotificationType,
    title: str,
    message: str,
    link: str | None = None,
    data: dict | None = None,
) -> Notification:
    if not db.get(User, user_id):
        raise NotFound('Utilisateur non trouvé', code='USER_NOT_FOUND')
    if not title.strip() or not message.strip():
        raise ValidationFailed('Titre et message requis')
    notification = Notification(user_id=user_id, type=type, title=title.strip(), message=message, link=link, data=data)
    db.add(notification)
    db.flush()
    return notification
