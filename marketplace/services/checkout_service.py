"""Checkout: validate a cart, price it, then turn it into a real order."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from marketplace.errors import InvalidState, NotFound, ValidationFailed
from marketplace.models import Booking, BookingStatus, NotificationType, Order, OrderStatus, Producer, Stock
from marketplace.services.notification_service import notify, notify_many
from marketplace.services.order_lifecycle import ensure_invoice, transition_order
from marketplace.services.order_lines import (
    OrderLine,
    active_lines,
    apply_order_total,
    lines_for_order,
    quantities_by_product,
)
from marketplace.services.order_metadata import DeliveryInfo, OrderMetadata, update_order_metadata
from marketplace.services.order_service import expire_temporary_bookings

logger = logging.getLogger(__name__)

CHECKOUT_PAYMENT_METHODS = ('card', 'bank_transfer', 'invoice')


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _unique_names(lines: list[OrderLine]) -> list[str]:
    return list(dict.fromkeys(line.product_name for line in lines))


def _load_client_order(db: Session, *, user_id: int, order_id: int) -> Order:
    order = db.execute(select(Order).where(Order.id == order_id, Order.user_id == user_id)).scalar_one_or_none()
    if not order:
        raise NotFound('Commande non trouvée', code='ORDER_NOT_FOUND')
    return order


def _validate_and_price(
    db: Session,
    order: Order,
    *,
    delivery_type: str,
    delivery_info: DeliveryInfo | None,
    payment_method: str,
) -> tuple[OrderMetadata, list[OrderLine]]:
    if payment_method not in CHECKOUT_PAYMENT_METHODS:
        raise ValidationFailed('Mode de paiement invalide', code='INVALID_PAYMENT_METHOD')
    if delivery_type == 'delivery' and (delivery_info is None or not delivery_info.address or not delivery_info.city):
        raise ValidationFailed('Adresse de livraison requise', code='MISSING_DELIVERY_INFO')

    expire_temporary_bookings(db, order_id=order.id)
    lines = active_lines(lines_for_order(db, order.id))
    if not lines or sum(line.amount for line in lines) <= 0:
        raise ValidationFailed('La commande est vide', code='EMPTY_ORDER')

    unavailable = [line for line in lines if not line.available]
    if unavailable:
        names = _unique_names(unavailable)
        raise ValidationFailed(
            f'Produits indisponibles: {", ".join(names)}',
            code='PRODUCTS_UNAVAILABLE',
            details={'products': names},
        )

    if payment_method == 'invoice':
        not_deferred = [line for line in lines if not line.accept_deferred]
        if not_deferred:
            names = _unique_names(not_deferred)
            raise ValidationFailed(
                f'Paiement sur facture non accepté pour: {", ".join(names)}',
                code='DEFERRED_NOT_ALLOWED',
                details={'products': names},
            )

    fees = apply_order_total(order, lines, delivery_type)
    metadata = update_order_metadata(
        order,
        delivery_type=delivery_type,
        delivery_info=delivery_info if delivery_type == 'delivery' else None,
        payment_method=payment_method,
        payment_status='PENDING',
        fees=fees,
    )
    order.updated_at = _now()
    db.flush()
    return metadata, lines


def prepare_checkout(
    db: Session,
    *,
    user_id: int,
    order_id: int,
    delivery_type: str,
    delivery_info: DeliveryInfo | None,
    payment_method: str,
) -> tuple[Order, OrderMetadata]:
    order = _load_client_order(db, user_id=user_id, order_id=order_id)
    if order.status not in (OrderStatus.DRAFT, OrderStatus.PENDING):
        raise InvalidState(f'Commande non modifiable (statut {order.status.value})')
    metadata, _lines = _validate_and_price(
        db, order, delivery_type=delivery_type, delivery_info=delivery_info, payment_method=payment_method
    )
    return order, metadata


def _take_stock(db: Session, lines: list[OrderLine]) -> None:
    names = {line.product_id: line.product_name for line in lines}
    short = []
    for product_id, quantity in sorted(quantities_by_product(lines).items()):
        result = db.execute(
            update(Stock)
            .where(Stock.product_id == product_id, Stock.quantity >= quantity)
            .values(quantity=Stock.quantity - quantity, updated_at=_now())
        )
        if result.rowcount != 1:
            short.append(names[product_id])
    if short:
        raise ValidationFailed(
            f'Stock insuffisant pour: {", ".join(short)}',
            code='INSUFFICIENT_STOCK',
            details={'products': short},
        )


def _producer_user_ids(db: Session, lines: list[OrderLine]) -> list[int]:
    producer_ids = {line.producer_id for line in lines if line.producer_id is not None}
    if not producer_ids:
        return []
    return db.execute(select(Producer.user_id).where(Producer.id.in_(producer_ids))).scalars().all()


def finalize_checkout(
    db: Session,
    *,
    user_id: int,
    order_id: int,
    delivery_type: str,
    delivery_info: DeliveryInfo | None,
    payment_method: str,
) -> Order:
    order = _load_client_order(db, user_id=user_id, order_id=order_id)
    if order.status != OrderStatus.DRAFT:
        raise InvalidState(f'Commande déjà validée (statut {order.status.value})')
    metadata, lines = _validate_and_price(
        db, order, delivery_type=delivery_type, delivery_info=delivery_info, payment_method=payment_method
    )

    _take_stock(db, lines)
    db.execute(
        update(Booking)
        .where(Booking.order_id == order.id, Booking.status == BookingStatus.TEMPORARY)
        .values(status=BookingStatus.CONFIRMED, expires_at=None)
    )

    if metadata.payment_method == 'invoice':
        transition_order(db, order, OrderStatus.CONFIRMED, lines=lines)
        invoice, _created = ensure_invoice(db, order)
        notify(
            db,
            user_id=order.user_id,
            type=NotificationType.INVOICE_CREATED,
            title=f'Facture #{invoice.id} émise',
            message=f'Une facture de {invoice.amount} a été émise pour votre commande #{order.id}.',
            link=f'/invoices/{invoice.id}',
            data={'invoiceId': invoice.id, 'orderId': order.id},
        )
    else:
        transition_order(db, order, OrderStatus.PENDING, lines=lines)

    notify_many(
        db,
        user_ids=_producer_user_ids(db, lines),
        type=NotificationType.NEW_ORDER,
        title=f'Nouvelle commande #{order.id}',
        message=f'Une nouvelle commande contenant vos produits a été passée ({order.total}).',
        link=f'/producer/orders/{order.id}',
        data={'orderId': order.id},
        exclude_user_id=user_id,
    )
    logger.info('Order %s checked out: total %s, payment %s', order.id, order.total, metadata.payment_method)
    return order
