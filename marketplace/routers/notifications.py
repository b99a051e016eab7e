from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from marketplace.auth import Principal, Role, get_current_principal, require_role
from marketplace.db import get_db
from marketplace.models import NotificationType
from marketplace.schemas import NotificationIn
from marketplace.services.notification_service import (
    create_notification_as_admin,
    list_notifications,
    mark_all_notifications_read,
    mark_notification_read,
    serialize_notification,
)

router = APIRouter(prefix='/api/notifications', tags=['notifications'])


@router.get('')
def notifications(
    unread: bool = False,
    type_filter: NotificationType | None = Query(None, alias='type'),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return list_notifications(
        db, user_id=principal.id, unread_only=unread, type=type_filter, limit=limit, offset=offset
    )


@router.post('', status_code=status.HTTP_201_CREATED)
def send_notification(
    payload: NotificationIn,
    principal: Principal = Depends(require_role(Role.ADMIN)),
    db: Session = Depends(get_db),
):
    notification = create_notification_as_admin(
        db,
        user_id=payload.user_id,
        type=payload.type,
        title=payload.title,
        message=payload.message,
        link=payload.link,
        data=payload.data,
    )
    db.commit()
    return serialize_notification(notification)


@router.post('/read-all')
def read_all(principal: Principal = Depends(get_current_principal), db: Session = Depends(get_db)):
    updated = mark_all_notifications_read(db, user_id=principal.id)
    db.commit()
    return {'updated': updated}


@router.patch('/{notification_id}/read')
def read_one(notification_id: int, principal: Principal = Depends(get_current_principal), db: Session = Depends(get_db)):
    notification = mark_notification_read(db, user_id=principal.id, notification_id=notification_id)
    db.commit()
    return serialize_notification(notification)
