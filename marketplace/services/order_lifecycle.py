from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from marketplace.config import settings
from marketplace.models import (
    Booking,
    BookingStatus,
    DeliverySlot,
    Invoice,
    InvoiceStatus,
    Order,
    OrderStatus,
    Stock,
)
from marketplace.services.order_lines import OrderLine, lines_for_order, quantities_by_product
from marketplace.services.wallet_service import credit_order_sale, release_order_sale, reverse_pending_sales

logger = logging.getLogger(__name__)

# Stock was taken and producers are owed money from here on.
COMMITTED_STATUSES = frozenset(
    {
        OrderStatus.CONFIRMED,
        OrderStatus.SHIPPED,
        OrderStatus.DELIVERED,
        OrderStatus.INVOICE_PENDING,
        OrderStatus.INVOICE_PAID,
        OrderStatus.INVOICE_OVERDUE,
    }
)
FULFILLED_STATUSES = frozenset(
    {OrderStatus.DELIVERED, OrderStatus.INVOICE_PENDING, OrderStatus.INVOICE_PAID, OrderStatus.INVOICE_OVERDUE}
)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def ensure_invoice(db: Session, order: Order) -> tuple[Invoice, bool]:
    invoice = db.execute(select(Invoice).where(Invoice.order_id == order.id)).scalar_one_or_none()
    if invoice:
        return invoice, False
    invoice = Invoice(
        order_id=order.id,
        user_id=order.user_id,
        amount=order.total,
        status=InvoiceStatus.PENDING,
        due_date=_now() + timedelta(days=settings.invoice_due_days),
    )
    db.add(invoice)
    db.flush()
    logger.info('Invoice %s of %s issued for order %s', invoice.id, invoice.amount, order.id)
    return invoice, True


def restore_stock(db: Session, lines: list[OrderLine]) -> None:
    for product_id, quantity in quantities_by_product(lines).items():
        db.execute(
            update(Stock)
            .where(Stock.product_id == product_id)
            .values(quantity=Stock.quantity + quantity, updated_at=_now())
        )


def release_booking(db: Session, booking: Booking) -> None:
    if booking.status == BookingStatus.CANCELLED:
        return
    db.execute(
        update(DeliverySlot)
        .where(DeliverySlot.id == booking.slot_id)
        .values(reserved=DeliverySlot.reserved - booking.quantity)
    )
    booking.status = BookingStatus.CANCELLED


def cancel_order_bookings(db: Session, order_id: int) -> int:
    bookings = db.execute(
        select(Booking).where(Booking.order_id == order_id, Booking.status != BookingStatus.CANCELLED)
    ).scalars().all()
    for booking in bookings:
        release_booking(db, booking)
    return len(bookings)


def transition_order(
    db: Session,
    order: Order,
    new_status: OrderStatus,
    *,
    lines: list[OrderLine] | None = None,
) -> OrderStatus:
    """Move `order` to `new_status` and apply the money and stock effects.

    Callers check who may perform the move; this only knows what it implies.
    """
    old_status = order.status
    lines = lines if lines is not None else lines_for_order(db, order.id)
    order.status = new_status
    order.updated_at = _now()

    if new_status in COMMITTED_STATUSES:
        credit_order_sale(db, order, lines)
    if new_status in FULFILLED_STATUSES and old_status not in FULFILLED_STATUSES:
        release_order_sale(db, order)
    if new_status == OrderStatus.INVOICE_PENDING:
        ensure_invoice(db, order)
    if new_status == OrderStatus.CANCELLED:
        if old_status != OrderStatus.DRAFT:
            restore_stock(db, [line for line in lines if line.active])
        cancel_order_bookings(db, order.id)
        reverse_pending_sales(db, order)

    db.flush()
    logger.info('Order %s moved from %s to %s', order.id, old_status.value, new_status.value)
    return old_status
