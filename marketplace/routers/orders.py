from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from marketplace.auth import Principal, Role, require_producer_profile, require_role
from marketplace.db import get_db
from marketplace.dependencies import pagination
from marketplace.models import OrderStatus
from marketplace.schemas import AddToCartIn, CheckoutIn, StatusChangeIn
from marketplace.services.checkout_service import finalize_checkout, prepare_checkout
from marketplace.services.order_metadata import dump_order_metadata
from marketplace.services.order_scope import (
    OrderFilters,
    OrderScope,
    get_order_detail,
    get_order_summary,
    list_orders,
    producer_pending_count,
)
from marketplace.services.order_service import CartLine, add_items_to_cart, change_order_status, remove_cart_item
from marketplace.services.payment_service import create_order_payment_intent
from marketplace.services.provider_factory import get_payment_gateway

router = APIRouter(prefix='/api/orders', tags=['orders'])

any_role = require_role(Role.CLIENT, Role.PRODUCER, Role.ADMIN)


def order_filters(
    status_filter: OrderStatus | None = Query(None, alias='status'),
    date_from: date | None = Query(None, alias='dateFrom'),
    date_to: date | None = Query(None, alias='dateTo'),
    days: int | None = Query(None, ge=1, le=3650),
    search: str | None = Query(None, max_length=200),
    page_limit: tuple[int, int] = Depends(pagination),
) -> OrderFilters:
    page, limit = page_limit
    return OrderFilters(
        status=status_filter,
        date_from=date_from,
        date_to=date_to,
        days=days,
        search=search,
        page=page,
        limit=limit,
    )


@router.get('')
def my_orders(
    filters: OrderFilters = Depends(order_filters),
    principal: Principal = Depends(require_role(Role.CLIENT)),
    db: Session = Depends(get_db),
):
    return list_orders(db, OrderScope(principal), filters)


@router.post('', status_code=status.HTTP_201_CREATED)
def add_to_cart(
    payload: AddToCartIn,
    principal: Principal = Depends(require_role(Role.CLIENT)),
    db: Session = Depends(get_db),
):
    order = add_items_to_cart(
        db,
        user_id=principal.id,
        lines=[CartLine(product_id=item.product_id, quantity=item.quantity) for item in payload.items],
    )
    db.commit()
    return get_order_detail(db, OrderScope(principal), order.id)


@router.get('/producer')
def producer_orders(
    filters: OrderFilters = Depends(order_filters),
    principal: Principal = Depends(require_producer_profile),
    db: Session = Depends(get_db),
):
    return list_orders(db, OrderScope(principal), filters)


@router.get('/producer/pending-count')
def producer_orders_pending_count(
    principal: Principal = Depends(require_producer_profile),
    db: Session = Depends(get_db),
):
    return {'count': producer_pending_count(db, producer_id=principal.producer_id)}


@router.delete('/items/{item_id}')
def delete_cart_item(
    item_id: int,
    principal: Principal = Depends(require_role(Role.CLIENT)),
    db: Session = Depends(get_db),
):
    order = remove_cart_item(db, user_id=principal.id, item_id=item_id)
    db.commit()
    return get_order_detail(db, OrderScope(principal), order.id)


@router.get('/{order_id}')
def order_detail(order_id: int, principal: Principal = Depends(any_role), db: Session = Depends(get_db)):
    return get_order_detail(db, OrderScope(principal), order_id)


@router.get('/{order_id}/summary')
def order_summary(order_id: int, principal: Principal = Depends(any_role), db: Session = Depends(get_db)):
    return get_order_summary(db, OrderScope(principal), order_id)


@router.post('/{order_id}/prepare-checkout')
def prepare_order_checkout(
    order_id: int,
    payload: CheckoutIn,
    principal: Principal = Depends(require_role(Role.CLIENT)),
    db: Session = Depends(get_db),
):
    order, metadata = prepare_checkout(
        db,
        user_id=principal.id,
        order_id=order_id,
        delivery_type=payload.delivery_type,
        delivery_info=payload.delivery_info,
        payment_method=payload.payment_method,
    )
    db.commit()
    return {
        'orderId': order.id,
        'status': order.status.value,
        'total': order.total,
        'fees': metadata.fees.model_dump(by_alias=True) if metadata.fees else None,
        'metadata': dump_order_metadata(metadata),
    }


@router.post('/{order_id}/checkout')
def checkout_order(
    order_id: int,
    payload: CheckoutIn,
    principal: Principal = Depends(require_role(Role.CLIENT)),
    db: Session = Depends(get_db),
):
    order = finalize_checkout(
        db,
        user_id=principal.id,
        order_id=order_id,
        delivery_type=payload.delivery_type,
        delivery_info=payload.delivery_info,
        payment_method=payload.payment_method,
    )
    db.commit()
    return get_order_detail(db, OrderScope(principal), order.id)


@router.post('/{order_id}/payment-intent')
def order_payment_intent(
    order_id: int,
    principal: Principal = Depends(require_role(Role.CLIENT)),
    db: Session = Depends(get_db),
    gateway=Depends(get_payment_gateway),
):
    result = create_order_payment_intent(db, gateway, principal=principal, order_id=order_id)
    db.commit()
    return result


@router.patch('/{order_id}/status')
def update_order_status(
    order_id: int,
    payload: StatusChangeIn,
    principal: Principal = Depends(require_role(Role.PRODUCER, Role.ADMIN)),
    db: Session = Depends(get_db),
):
    order = change_order_status(db, principal=principal, order_id=order_id, new_status=payload.status)
    db.commit()
    return get_order_detail(db, OrderScope(principal), order.id)
