from __future__ import annotations

from decimal import Decimal

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from marketplace.auth import Principal, Role, require_producer_profile, require_role
from marketplace.db import get_db
from marketplace.dependencies import pagination
from marketplace.schemas import ProductIn, ProductPatchIn, ScheduleIn, StockAlertIn, StockIn
from marketplace.services.catalog_service import create_product, get_product, list_products, update_product
from marketplace.services.stock_service import (
    add_schedule_entry,
    get_alert_settings,
    get_stock,
    list_schedule,
    serialize_schedule,
    set_alert_settings,
    update_stock,
)

router = APIRouter(prefix='/api/products', tags=['products'])

product_editor = require_role(Role.PRODUCER, Role.ADMIN)


@router.get('')
def products(
    search: str | None = Query(None, max_length=200),
    producer_id: int | None = Query(None, alias='producerId'),
    available: bool | None = None,
    accept_deferred: bool | None = Query(None, alias='acceptDeferred'),
    min_price: Decimal | None = Query(None, alias='minPrice', ge=0),
    max_price: Decimal | None = Query(None, alias='maxPrice', ge=0),
    page_limit: tuple[int, int] = Depends(pagination),
    db: Session = Depends(get_db),
):
    page, limit = page_limit
    return list_products(
        db,
        search=search,
        producer_id=producer_id,
        available=available,
        accept_deferred=accept_deferred,
        min_price=min_price,
        max_price=max_price,
        page=page,
        limit=limit,
    )


@router.post('', status_code=status.HTTP_201_CREATED)
def new_product(payload: ProductIn, principal: Principal = Depends(require_producer_profile), db: Session = Depends(get_db)):
    fields = payload.model_dump(exclude={'initial_stock'})
    product = create_product(db, producer_id=principal.producer_id, fields=fields, initial_stock=payload.initial_stock)
    db.commit()
    return get_product(db, product.id)


@router.get('/{product_id}')
def product_detail(product_id: int, db: Session = Depends(get_db)):
    return get_product(db, product_id)


@router.patch('/{product_id}')
def patch_product(
    product_id: int,
    payload: ProductPatchIn,
    principal: Principal = Depends(product_editor),
    db: Session = Depends(get_db),
):
    update_product(db, principal=principal, product_id=product_id, fields=payload.model_dump(exclude_unset=True))
    db.commit()
    return get_product(db, product_id)


@router.get('/{product_id}/stock')
def product_stock(product_id: int, db: Session = Depends(get_db)):
    return get_stock(db, product_id=product_id)


@router.patch('/{product_id}/stock')
def patch_product_stock(
    product_id: int,
    payload: StockIn,
    principal: Principal = Depends(product_editor),
    db: Session = Depends(get_db),
):
    result = update_stock(db, principal=principal, product_id=product_id, quantity=payload.quantity)
    db.commit()
    return result


@router.get('/{product_id}/alerts')
def product_alerts(product_id: int, db: Session = Depends(get_db)):
    return get_alert_settings(db, product_id=product_id)


@router.post('/{product_id}/alerts')
def set_product_alerts(
    product_id: int,
    payload: StockAlertIn,
    principal: Principal = Depends(product_editor),
    db: Session = Depends(get_db),
):
    result = set_alert_settings(
        db,
        principal=principal,
        product_id=product_id,
        threshold=payload.threshold,
        percentage=payload.percentage,
        email_alert=payload.email_alert,
    )
    db.commit()
    return result


@router.get('/{product_id}/production-schedule')
def production_schedule(
    product_id: int,
    request: Request,
    future: bool = False,
    db: Session = Depends(get_db),
):
    principal = getattr(request.state, 'principal', None)
    return {'schedule': list_schedule(db, principal=principal, product_id=product_id, future=future)}


@router.post('/{product_id}/production-schedule', status_code=status.HTTP_201_CREATED)
def add_production_schedule(
    product_id: int,
    payload: ScheduleIn,
    principal: Principal = Depends(product_editor),
    db: Session = Depends(get_db),
):
    entry = add_schedule_entry(
        db,
        principal=principal,
        product_id=product_id,
        on=payload.on,
        quantity=payload.quantity,
        note=payload.note,
        is_public=payload.is_public,
    )
    db.commit()
    return serialize_schedule(entry)
