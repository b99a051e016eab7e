from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from marketplace.auth import Principal, Role
from marketplace.errors import ValidationFailed
from marketplace.models import NotificationType, Producer, Product, ProductionSchedule, Stock, StockAlert
from marketplace.services.catalog_service import get_editable_product, get_product_or_404
from marketplace.services.notification_service import notify

logger = logging.getLogger(__name__)

DEFAULT_ALERT = {'threshold': Decimal('0'), 'percentage': False, 'email_alert': True}


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def alert_limit(alert: StockAlert | None, peak_quantity: Decimal) -> Decimal:
    if alert is None:
        return DEFAULT_ALERT['threshold']
    if alert.percentage:
        return peak_quantity * alert.threshold / Decimal('100')
    return alert.threshold


def should_alert(quantity: Decimal, peak_quantity: Decimal, alert: StockAlert | None) -> bool:
    return quantity <= alert_limit(alert, peak_quantity)


def _get_alert(db: Session, product_id: int) -> StockAlert | None:
    return db.execute(select(StockAlert).where(StockAlert.product_id == product_id)).scalar_one_or_none()


def _get_or_create_stock(db: Session, product_id: int) -> Stock:
    stock = db.get(Stock, product_id)
    if stock is None:
        stock = Stock(product_id=product_id, quantity=Decimal('0'), peak_quantity=Decimal('0'))
        db.add(stock)
        db.flush()
    return stock


def serialize_stock(stock: Stock, alert: StockAlert | None) -> dict:
    return {
        'productId': stock.product_id,
        'quantity': stock.quantity,
        'peakQuantity': stock.peak_quantity,
        'updatedAt': stock.updated_at,
        'shouldAlert': should_alert(stock.quantity, stock.peak_quantity, alert),
        'alert': serialize_alert(alert),
    }


def serialize_alert(alert: StockAlert | None) -> dict:
    if alert is None:
        return {
            'threshold': DEFAULT_ALERT['threshold'],
            'percentage': DEFAULT_ALERT['percentage'],
            'emailAlert': DEFAULT_ALERT['email_alert'],
        }
    return {'threshold': alert.threshold, 'percentage': alert.percentage, 'emailAlert': alert.email_alert}


def get_stock(db: Session, *, product_id: int) -> dict:
    get_product_or_404(db, product_id)
    stock = _get_or_create_stock(db, product_id)
    return serialize_stock(stock, _get_alert(db, product_id))


def update_stock(db: Session, *, principal: Principal, product_id: int, quantity: Decimal) -> dict:
    product = get_editable_product(db, principal=principal, product_id=product_id)
    if quantity < 0:
        raise ValidationFailed('La quantité doit être positive', code='INVALID_QUANTITY')
    stock = _get_or_create_stock(db, product.id)
    alert = _get_alert(db, product.id)
    was_alerting = should_alert(stock.quantity, stock.peak_quantity, alert)

    stock.quantity = quantity
    if quantity > stock.peak_quantity:
        stock.peak_quantity = quantity
    stock.updated_at = _now()
    db.flush()

    alerting = should_alert(stock.quantity, stock.peak_quantity, alert)
    if alerting and not was_alerting:
        producer = db.get(Producer, product.producer_id)
        notify(
            db,
            user_id=producer.user_id,
            type=NotificationType.LOW_STOCK,
            title=f'Stock bas: {product.name}',
            message=f'Le stock de {product.name} est descendu à {quantity} {product.unit}.',
            link=f'/producer/products/{product.id}',
            data={'productId': product.id, 'quantity': str(quantity)},
        )
    return serialize_stock(stock, alert)


def get_alert_settings(db: Session, *, product_id: int) -> dict:
    get_product_or_404(db, product_id)
    return serialize_alert(_get_alert(db, product_id))


def set_alert_settings(
    db: Session,
    *,
    principal: Principal,
    product_id: int,
    threshold: Decimal,
    percentage: bool = False,
    email_alert: bool = True,
) -> dict:
    product = get_editable_product(db, principal=principal, product_id=product_id)
    if threshold < 0:
        raise ValidationFailed('Le seuil doit être positif', code='INVALID_THRESHOLD')
    if percentage and threshold > 100:
        raise ValidationFailed('Un seuil en pourcentage ne peut pas dépasser 100', code='INVALID_THRESHOLD')
    alert = _get_alert(db, product.id)
    if alert is None:
        alert = StockAlert(product_id=product.id)
        db.add(alert)
    alert.threshold = threshold
    alert.percentage = percentage
    alert.email_alert = email_alert
    alert.updated_at = _now()
    db.flush()
    return serialize_alert(alert)


# Production schedule


def serialize_schedule(entry: ProductionSchedule) -> dict:
    return {
        'id': entry.id,
        'productId': entry.product_id,
        'date': entry.date,
        'quantity': entry.quantity,
        'note': entry.note,
        'isPublic': entry.is_public,
    }


def list_schedule(db: Session, *, principal: Principal | None, product_id: int, future: bool = False) -> list[dict]:
    product = get_product_or_404(db, product_id)
    conditions = [ProductionSchedule.product_id == product.id]
    is_owner = principal is not None and (
        principal.role == Role.ADMIN
        or (principal.role == Role.PRODUCER and principal.producer_id == product.producer_id)
    )
    if not is_owner:
        conditions.append(ProductionSchedule.is_public.is_(True))
    if future:
        conditions.append(ProductionSchedule.date >= date.today())
    rows = db.execute(
        select(ProductionSchedule).where(*conditions).order_by(ProductionSchedule.date.asc(), ProductionSchedule.id)
    ).scalars().all()
    return [serialize_schedule(row) for row in rows]


def add_schedule_entry(
    db: Session,
    *,
    principal: Principal,
    product_id: int,
    on: date | None,
    quantity: Decimal | None,
    note: str | None = None,
    is_public: bool = True,
) -> ProductionSchedule:
    product: Product = get_editable_product(db, principal=principal, product_id=product_id)
    if on is None or quantity is None:
        raise ValidationFailed('Date et quantité requises', code='MISSING_FIELDS')
    if quantity <= 0:
        raise ValidationFailed('La quantité doit être positive', code='INVALID_QUANTITY')
    entry = ProductionSchedule(product_id=product.id, date=on, quantity=quantity, note=note, is_public=is_public)
    db.add(entry)
    db.flush()
    return entry
