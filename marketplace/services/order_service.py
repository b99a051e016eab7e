from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from marketplace.auth import Principal, Role
from marketplace.config import settings
from marketplace.errors import Conflict, Forbidden, InvalidState, NotFound, ValidationFailed
from marketplace.models import (
    Booking,
    BookingStatus,
    DeliverySlot,
    Invoice,
    NotificationType,
    Order,
    OrderItem,
    OrderStatus,
    Product,
)
from marketplace.security.sessions import as_utc
from marketplace.services.money import money
from marketplace.services.audit_service import log_admin_action
from marketplace.services.notification_service import notify
from marketplace.services.order_lifecycle import release_booking, transition_order
from marketplace.services.order_lines import apply_order_total, lines_for_order
from marketplace.services.order_metadata import AdminNote, load_order_metadata, update_order_metadata
from marketplace.services.order_scope import OrderScope, load_visible_order

logger = logging.getLogger(__name__)

MAX_ADMIN_NOTES = 50

PRODUCER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.INVOICE_PENDING}),
}

STATUS_LABELS = {
    OrderStatus.PENDING: 'en attente',
    OrderStatus.CONFIRMED: 'confirmée',
    OrderStatus.SHIPPED: 'expédiée',
    OrderStatus.DELIVERED: 'livrée',
    OrderStatus.CANCELLED: 'annulée',
    OrderStatus.INVOICE_PENDING: 'en attente de paiement de facture',
    OrderStatus.INVOICE_PAID: 'facture payée',
    OrderStatus.INVOICE_OVERDUE: 'facture en retard',
}


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass(frozen=True)
class CartLine:
    product_id: int
    quantity: Decimal


def get_draft_order(db: Session, user_id: int) -> Order | None:
    return db.execute(
        select(Order)
        .where(Order.user_id == user_id, Order.status == OrderStatus.DRAFT)
        .order_by(Order.id.desc())
        .limit(1)
    ).scalar_one_or_none()


def get_or_create_draft_order(db: Session, user_id: int) -> Order:
    order = get_draft_order(db, user_id)
    if order:
        return order
    order = Order(user_id=user_id, status=OrderStatus.DRAFT, meta={})
    db.add(order)
    db.flush()
    return order


def _recompute_draft_total(db: Session, order: Order) -> None:
    metadata = load_order_metadata(order.meta)
    apply_order_total(order, lines_for_order(db, order.id), metadata.delivery_type)
    order.updated_at = _now()
    db.flush()


def _orderable_product(db: Session, product_id: int) -> Product:
    product = db.get(Product, product_id)
    if not product:
        raise NotFound(f'Produit {product_id} non trouvé', code='PRODUCT_NOT_FOUND')
    if not product.available:
        raise ValidationFailed(
            f'Produit indisponible: {product.name}',
            code='PRODUCTS_UNAVAILABLE',
            details={'products': [product.name]},
        )
    return product


def add_items_to_cart(db: Session, *, user_id: int, lines: list[CartLine]) -> Order:
    if not lines:
        raise ValidationFailed('Aucun article fourni', code='EMPTY_ORDER')
    order = get_or_create_draft_order(db, user_id)
    existing = {
        item.product_id: item
        for item in db.execute(select(OrderItem).where(OrderItem.order_id == order.id)).scalars().all()
    }
    for line in lines:
        if line.quantity <= 0:
            raise ValidationFailed('La quantité doit être positive', code='INVALID_QUANTITY')
        product = _orderable_product(db, line.product_id)
        item = existing.get(product.id)
        quantity = line.quantity + (item.quantity if item else Decimal('0'))
        if product.min_order_quantity and quantity < product.min_order_quantity:
            raise ValidationFailed(
                f'Quantité minimale pour {product.name}: {product.min_order_quantity}',
                code='BELOW_MIN_QUANTITY',
            )
        if item:
            item.quantity = quantity
            item.price = product.price
        else:
            item = OrderItem(
                order_id=order.id,
                product_id=product.id,
                product_name=product.name,
                quantity=quantity,
                price=product.price,
            )
            db.add(item)
            existing[product.id] = item
    db.flush()
    _recompute_draft_total(db, order)
    return order


def remove_cart_item(db: Session, *, user_id: int, item_id: int) -> Order:
    row = db.execute(
        select(OrderItem, Order)
        .join(Order, Order.id == OrderItem.order_id)
        .where(OrderItem.id == item_id, Order.user_id == user_id)
    ).one_or_none()
    if not row:
        raise NotFound('Article non trouvé', code='ITEM_NOT_FOUND')
    item, order = row
    if order.status != OrderStatus.DRAFT:
        raise InvalidState('Seules les commandes en brouillon sont modifiables')
    db.delete(item)
    db.flush()
    _recompute_draft_total(db, order)
    return order


def book_delivery_slot(db: Session, *, user_id: int, slot_id: int, quantity: Decimal) -> Booking:
    if quantity <= 0:
        raise ValidationFailed('La quantité doit être positive', code='INVALID_QUANTITY')
    slot = db.get(DeliverySlot, slot_id)
    if not slot or not slot.is_available:
        raise NotFound('Créneau non disponible', code='SLOT_NOT_FOUND')
    if as_utc(slot.date) <= _now():
        raise ValidationFailed('Ce créneau est passé', code='SLOT_EXPIRED')
    product = _orderable_product(db, slot.product_id)

    # Reserve capacity only if it is still there.
    result = db.execute(
        update(DeliverySlot)
        .where(DeliverySlot.id == slot.id, DeliverySlot.reserved + quantity <= DeliverySlot.max_capacity)
        .values(reserved=DeliverySlot.reserved + quantity)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise Conflict('Capacité du créneau insuffisante', code='SLOT_FULL')
    db.expire(slot)

    order = get_or_create_draft_order(db, user_id)
    booking = Booking(
        slot_id=slot.id,
        order_id=order.id,
        quantity=quantity,
        price=product.price,
        status=BookingStatus.TEMPORARY,
        expires_at=_now() + timedelta(minutes=settings.booking_hold_minutes),
    )
    db.add(booking)
    db.flush()
    _recompute_draft_total(db, order)
    logger.info('Booked %s on slot %s for order %s', quantity, slot.id, order.id)
    return booking


def remove_booking(db: Session, *, principal: Principal, booking_id: int) -> Order:
    row = db.execute(
        select(Booking, Order).join(Order, Order.id == Booking.order_id).where(Booking.id == booking_id)
    ).one_or_none()
    if not row or (principal.role != Role.ADMIN and row[1].user_id != principal.id):
        raise NotFound('Réservation non trouvée', code='BOOKING_NOT_FOUND')
    booking, order = row
    if order.status != OrderStatus.DRAFT:
        raise InvalidState('Seules les commandes en brouillon sont modifiables')
    release_booking(db, booking)
    db.delete(booking)
    db.flush()
    _recompute_draft_total(db, order)
    return order


def expire_temporary_bookings(db: Session, *, order_id: int | None = None) -> list[int]:
    """Cancel TEMPORARY bookings whose hold has run out and give the slot capacity back."""
    conditions = [
        Booking.status == BookingStatus.TEMPORARY,
        Booking.expires_at.is_not(None),
        Booking.expires_at < _now(),
    ]
    if order_id is not None:
        conditions.append(Booking.order_id == order_id)
    bookings = db.execute(select(Booking).where(*conditions).order_by(Booking.id)).scalars().all()
    if not bookings:
        return []
    for booking in bookings:
        release_booking(db, booking)
    db.flush()

    order_ids = {booking.order_id for booking in bookings if booking.order_id is not None}
    drafts = db.execute(
        select(Order).where(Order.id.in_(order_ids), Order.status == OrderStatus.DRAFT)
    ).scalars().all()
    for order in drafts:
        _recompute_draft_total(db, order)
    logger.info('Expired %s temporary bookings', len(bookings))
    return [booking.id for booking in bookings]


def allowed_transitions(principal: Principal, order: Order) -> frozenset[OrderStatus]:
    if principal.role == Role.ADMIN:
        if order.status == OrderStatus.CANCELLED:
            return frozenset()
        # A draft has taken no stock yet; only checkout may commit it.
        if order.status == OrderStatus.DRAFT:
            return frozenset({OrderStatus.CANCELLED})
        return frozenset(s for s in OrderStatus if s not in (OrderStatus.DRAFT, order.status))
    if principal.role == Role.PRODUCER:
        allowed = PRODUCER_TRANSITIONS.get(order.status, frozenset())
        if OrderStatus.INVOICE_PENDING in allowed and not _invoice_payment(order):
            allowed = allowed - {OrderStatus.INVOICE_PENDING}
        return allowed
    return frozenset()


def _invoice_payment(order: Order) -> bool:
    return load_order_metadata(order.meta).payment_method == 'invoice'


def change_order_status(db: Session, *, principal: Principal, order_id: int, new_status: OrderStatus) -> Order:
    if principal.role == Role.CLIENT:
        raise Forbidden('Non autorisé')
    order, customer, lines = load_visible_order(db, OrderScope(principal), order_id)
    if new_status not in allowed_transitions(principal, order):
        raise InvalidState(
            f'Transition {order.status.value} -> {new_status.value} non autorisée',
            details={'from': order.status.value, 'to': new_status.value},
        )
    if new_status == OrderStatus.INVOICE_PAID:
        invoice = db.execute(select(Invoice).where(Invoice.order_id == order.id)).scalar_one_or_none()
        if invoice is None:
            raise InvalidState('Aucune facture pour cette commande', code='INVOICE_NOT_FOUND')

    old_status = transition_order(db, order, new_status, lines=lines)
    notify(
        db,
        user_id=customer.id,
        type=NotificationType.ORDER_STATUS_CHANGED,
        title=f'Commande #{order.id} {STATUS_LABELS.get(new_status, new_status.value)}',
        message=f'Votre commande #{order.id} est maintenant {STATUS_LABELS.get(new_status, new_status.value)}.',
        link=f'/orders/{order.id}',
        data={'orderId': order.id, 'from': old_status.value, 'to': new_status.value},
    )
    logger.info('User %s changed order %s status to %s', principal.id, order.id, new_status.value)
    return order


def serialize_booking(booking: Booking) -> dict:
    return {
        'id': booking.id,
        'slotId': booking.slot_id,
        'orderId': booking.order_id,
        'quantity': booking.quantity,
        'price': money(booking.price) if booking.price is not None else None,
        'status': booking.status.value,
        'expiresAt': booking.expires_at,
    }


def list_admin_notes(db: Session, *, order_id: int) -> dict:
    order = db.get(Order, order_id)
    if not order:
        raise NotFound('Commande non trouvée', code='ORDER_NOT_FOUND')
    notes = sorted(load_order_metadata(order.meta).admin_notes or [], key=lambda note: note.created_at, reverse=True)
    return {
        'orderId': order.id,
        'adminNotes': [note.model_dump(mode='json', by_alias=True) for note in notes],
        'totalNotes': len(notes),
    }


def add_admin_note(db: Session, *, principal: Principal, order_id: int, content: str) -> AdminNote:
    order = db.get(Order, order_id)
    if not order:
        raise NotFound('Commande non trouvée', code='ORDER_NOT_FOUND')
    content = (content or '').strip()
    if not content:
        raise ValidationFailed('La note ne peut pas être vide', code='EMPTY_NOTE')

    note = AdminNote(
        id=uuid.uuid4().hex,
        content=content,
        admin_id=principal.id,
        admin_name=principal.name or principal.email,
        created_at=_now(),
    )
    notes = list(load_order_metadata(order.meta).admin_notes or [])
    notes.append(note)
    # Oldest notes fall off past the cap.
    update_order_metadata(order, admin_notes=notes[-MAX_ADMIN_NOTES:])
    order.updated_at = _now()
    db.flush()
    log_admin_action(
        db,
        admin_id=principal.id,
        action='ADD_ADMIN_NOTE',
        entity_type='ORDER',
        entity_id=order.id,
        details={'noteId': note.id, 'noteLength': len(content)},
    )
    return note
