from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from marketplace.auth import Principal, Role, require_role
from marketplace.db import get_db
from marketplace.services.order_scope import OrderScope, get_order_detail
from marketplace.services.order_service import expire_temporary_bookings, remove_booking

router = APIRouter(prefix='/api/bookings', tags=['bookings'])


@router.post('/cleanup')
def cleanup_expired_bookings(
    _principal: Principal = Depends(require_role(Role.ADMIN)),
    db: Session = Depends(get_db),
):
    booking_ids = expire_temporary_bookings(db)
    db.commit()
    return {'cleaned': len(booking_ids), 'bookingIds': booking_ids}


@router.delete('/{booking_id}')
def delete_booking(
    booking_id: int,
    principal: Principal = Depends(require_role(Role.CLIENT, Role.ADMIN)),
    db: Session = Depends(get_db),
):
    order = remove_booking(db, principal=principal, booking_id=booking_id)
    db.commit()
    return get_order_detail(db, OrderScope(principal), order.id)
