from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from marketplace.auth import Principal, Role
from marketplace.errors import Forbidden, NotFound, ValidationFailed
from marketplace.models import DeliverySlot, Producer, Product, Stock
from marketplace.security.sessions import as_utc

logger = logging.getLogger(__name__)

EDITABLE_PRODUCT_FIELDS = (
    'name',
    'description',
    'price',
    'unit',
    'available',
    'accept_deferred',
    'min_order_quantity',
)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def serialize_product(product: Product, producer: Producer | None = None, stock: Stock | None = None) -> dict:
    payload = {
        'id': product.id,
        'producerId': product.producer_id,
        'name': product.name,
        'description': product.description,
        'price': product.price,
        'unit': product.unit,
        'available': product.available,
        'acceptDeferred': product.accept_deferred,
        'minOrderQuantity': product.min_order_quantity,
        'createdAt': product.created_at,
        'updatedAt': product.updated_at,
    }
    if producer is not None:
        payload['producer'] = {'id': producer.id, 'companyName': producer.company_name}
    if stock is not None:
        payload['stock'] = stock.quantity
    return payload


def get_product_or_404(db: Session, product_id: int) -> Product:
    product = db.get(Product, product_id)
    if not product:
        raise NotFound('Produit non trouvé', code='PRODUCT_NOT_FOUND')
    return product


def get_editable_product(db: Session, *, principal: Principal, product_id: int) -> Product:
    product = get_product_or_404(db, product_id)
    if principal.role == Role.ADMIN:
        return product
    if principal.role == Role.PRODUCER and product.producer_id == principal.producer_id:
        return product
    raise Forbidden("Ce produit ne vous appartient pas", code='FORBIDDEN_PRODUCER')


def list_products(
    db: Session,
    *,
    search: str | None = None,
    producer_id: int | None = None,
    available: bool | None = None,
    accept_deferred: bool | None = None,
    min_price: Decimal | None = None,
    max_price: Decimal | None = None,
    page: int = 1,
    limit: int = 10,
) -> dict:
    conditions = []
    term = (search or '').strip().lower()
    if term:
        pattern = f'%{term}%'
        conditions.append(or_(func.lower(Product.name).like(pattern), func.lower(Product.description).like(pattern)))
    if producer_id is not None:
        conditions.append(Product.producer_id == producer_id)
    if available is not None:
        conditions.append(Product.available.is_(available))
    if accept_deferred is not None:
        conditions.append(Product.accept_deferred.is_(accept_deferred))
    if min_price is not None:
        conditions.append(Product.price >= min_price)
    if max_price is not None:
        conditions.append(Product.price <= max_price)

    total = db.execute(select(func.count(Product.id)).where(*conditions)).scalar_one()
    rows = db.execute(
        select(Product, Producer, Stock)
        .join(Producer, Producer.id == Product.producer_id)
        .outerjoin(Stock, Stock.product_id == Product.id)
        .where(*conditions)
        .order_by(Product.name.asc(), Product.id.asc())
        .limit(limit)
        .offset((page - 1) * limit)
    ).all()
    return {
        'products': [serialize_product(product, producer, stock) for product, producer, stock in rows],
        'pagination': {'page': page, 'limit': limit, 'total': total},
    }


def get_product(db: Session, product_id: int) -> dict:
    product = get_product_or_404(db, product_id)
    producer = db.get(Producer, product.producer_id)
    stock = db.get(Stock, product.id)
    return serialize_product(product, producer, stock)


def _validate_product_fields(fields: dict) -> None:
    if 'name' in fields and not (fields['name'] or '').strip():
        raise ValidationFailed('Le nom du produit est requis')
    if 'price' in fields and (fields['price'] is None or fields['price'] < 0):
        raise ValidationFailed('Le prix doit être positif', code='INVALID_PRICE')
    if 'min_order_quantity' in fields and fields['min_order_quantity'] is not None and fields['min_order_quantity'] < 0:
        raise ValidationFailed('La quantité minimale doit être positive', code='INVALID_QUANTITY')


def create_product(db: Session, *, producer_id: int, fields: dict, initial_stock: Decimal = Decimal('0')) -> Product:
    if not (fields.get('name') or '').strip() or fields.get('price') is None:
        raise ValidationFailed('Nom et prix requis', code='MISSING_FIELDS')
    _validate_product_fields(fields)
    if initial_stock < 0:
        raise ValidationFailed('Le stock doit être positif', code='INVALID_QUANTITY')
    product = Product(producer_id=producer_id, **{k: v for k, v in fields.items() if v is not None})
    product.name = product.name.strip()
    db.add(product)
    db.flush()
    db.add(Stock(product_id=product.id, quantity=initial_stock, peak_quantity=initial_stock))
    db.flush()
    logger.info('Producer %s created product %s', producer_id, product.id)
    return product


def update_product(db: Session, *, principal: Principal, product_id: int, fields: dict) -> Product:
    product = get_editable_product(db, principal=principal, product_id=product_id)
    _validate_product_fields(fields)
    for name, value in fields.items():
        if name not in EDITABLE_PRODUCT_FIELDS:
            continue
        if value is None and name != 'description':
            continue
        setattr(product, name, value.strip() if name == 'name' else value)
    product.updated_at = _now()
    db.flush()
    return product


# Delivery slots


def serialize_slot(slot: DeliverySlot) -> dict:
    return {
        'id': slot.id,
        'productId': slot.product_id,
        'date': slot.date,
        'maxCapacity': slot.max_capacity,
        'reserved': slot.reserved,
        'remaining': slot.max_capacity - slot.reserved,
        'isAvailable': slot.is_available,
    }


def create_delivery_slot(
    db: Session, *, principal: Principal, product_id: int, date: datetime, max_capacity: Decimal
) -> DeliverySlot:
    product = get_editable_product(db, principal=principal, product_id=product_id)
    if max_capacity <= 0:
        raise ValidationFailed('La capacité doit être positive', code='INVALID_QUANTITY')
    if as_utc(date) <= _now():
        raise ValidationFailed('La date du créneau doit être dans le futur', code='SLOT_EXPIRED')
    slot = DeliverySlot(product_id=product.id, date=as_utc(date), max_capacity=max_capacity, reserved=Decimal('0'))
    db.add(slot)
    db.flush()
    return slot


def list_available_slots(db: Session, *, product_id: int | None = None) -> list[DeliverySlot]:
    conditions = [
        DeliverySlot.is_available.is_(True),
        DeliverySlot.date > _now(),
        DeliverySlot.reserved < DeliverySlot.max_capacity,
    ]
    if product_id is not None:
        conditions.append(DeliverySlot.product_id == product_id)
    return db.execute(
        select(DeliverySlot).where(*conditions).order_by(DeliverySlot.date.asc(), DeliverySlot.id.asc())
    ).scalars().all()
