from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from marketplace.auth import Principal, Role, require_role
from marketplace.db import get_db
from marketplace.schemas import BookingIn, SlotIn
from marketplace.services.catalog_service import create_delivery_slot, list_available_slots, serialize_slot
from marketplace.services.order_service import book_delivery_slot, serialize_booking

router = APIRouter(prefix='/api/delivery-slots', tags=['delivery-slots'])


@router.get('')
def available_slots(product_id: int | None = Query(None, alias='productId'), db: Session = Depends(get_db)):
    return {'slots': [serialize_slot(slot) for slot in list_available_slots(db, product_id=product_id)]}


@router.post('', status_code=status.HTTP_201_CREATED)
def new_slot(
    payload: SlotIn,
    principal: Principal = Depends(require_role(Role.PRODUCER, Role.ADMIN)),
    db: Session = Depends(get_db),
):
    slot = create_delivery_slot(
        db,
        principal=principal,
        product_id=payload.product_id,
        date=payload.date,
        max_capacity=payload.max_capacity,
    )
    db.commit()
    return serialize_slot(slot)


@router.post('/{slot_id}/book', status_code=status.HTTP_201_CREATED)
def book_slot(
    slot_id: int,
    payload: BookingIn,
    principal: Principal = Depends(require_role(Role.CLIENT)),
    db: Session = Depends(get_db),
):
    booking = book_delivery_slot(db, user_id=principal.id, slot_id=slot_id, quantity=payload.quantity)
    db.commit()
    return serialize_booking(booking)
