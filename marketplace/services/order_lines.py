"""Flattened view of what an order contains.

An order holds plain items and delivery-slot bookings. Pricing, producer
scoping, stock movements and wallet splits all work on the same
:class:`OrderLine` list, so they cannot disagree about what was sold.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from marketplace.config import settings
from marketplace.models import Booking, BookingStatus, DeliverySlot, Order, OrderItem, Product
from marketplace.services.money import ZERO, money
from marketplace.services.order_metadata import FeeBreakdown

ITEM = 'item'
BOOKING = 'booking'


@dataclass(frozen=True)
class OrderLine:
    kind: str
    id: int
    order_id: int
    product_id: int | None
    product_name: str
    producer_id: int | None
    quantity: Decimal
    unit_price: Decimal
    unit: str | None = None
    available: bool = False
    accept_deferred: bool = False
    slot_id: int | None = None
    slot_date: datetime | None = None
    booking_status: BookingStatus | None = None

    @property
    def amount(self) -> Decimal:
        return money(self.unit_price * self.quantity)

    @property
    def active(self) -> bool:
        return self.booking_status != BookingStatus.CANCELLED


def load_order_lines(db: Session, order_ids: list[int]) -> dict[int, list[OrderLine]]:
    lines: dict[int, list[OrderLine]] = defaultdict(list)
    if not order_ids:
        return lines

    item_rows = db.execute(
        select(OrderItem, Product)
        .outerjoin(Product, Product.id == OrderItem.product_id)
        .where(OrderItem.order_id.in_(order_ids))
        .order_by(OrderItem.id)
    ).all()
    for item, product in item_rows:
        lines[item.order_id].append(
            OrderLine(
                kind=ITEM,
                id=item.id,
                order_id=item.order_id,
                product_id=item.product_id,
                product_name=product.name if product else item.product_name,
                producer_id=product.producer_id if product else None,
                quantity=item.quantity,
                unit_price=item.price,
                unit=product.unit if product else None,
                available=bool(product and product.available),
                accept_deferred=bool(product and product.accept_deferred),
            )
        )

    booking_rows = db.execute(
        select(Booking, DeliverySlot, Product)
        .join(DeliverySlot, DeliverySlot.id == Booking.slot_id)
        .join(Product, Product.id == DeliverySlot.product_id)
        .where(Booking.order_id.in_(order_ids))
        .order_by(Booking.id)
    ).all()
    for booking, slot, product in booking_rows:
        lines[booking.order_id].append(
            OrderLine(
                kind=BOOKING,
                id=booking.id,
                order_id=booking.order_id,
                product_id=product.id,
                product_name=product.name,
                producer_id=product.producer_id,
                quantity=booking.quantity,
                unit_price=booking.price if booking.price is not None else product.price,
                unit=product.unit,
                available=product.available,
                accept_deferred=product.accept_deferred,
                slot_id=slot.id,
                slot_date=slot.date,
                booking_status=booking.status,
            )
        )
    return lines


def lines_for_order(db: Session, order_id: int) -> list[OrderLine]:
    return load_order_lines(db, [order_id]).get(order_id, [])


def active_lines(lines: list[OrderLine]) -> list[OrderLine]:
    return [line for line in lines if line.active]


def subtotal(lines: list[OrderLine]) -> Decimal:
    return money(sum((line.amount for line in lines if line.active), ZERO))


def delivery_fee_for(delivery_type: str | None) -> Decimal:
    if delivery_type == 'delivery':
        return money(settings.delivery_fee)
    return money(ZERO)


def compute_fees(lines: list[OrderLine], delivery_type: str | None) -> FeeBreakdown:
    items_total = subtotal(lines)
    fee = delivery_fee_for(delivery_type)
    return FeeBreakdown(subtotal=items_total, delivery_fee=fee, total=money(items_total + fee))


def apply_order_total(order: Order, lines: list[OrderLine], delivery_type: str | None) -> FeeBreakdown:
    # Always rebuilt from the lines; the stored total is never incremented.
    fees = compute_fees(lines, delivery_type)
    order.total = fees.total
    return fees


def lines_by_producer(lines: list[OrderLine]) -> dict[int, list[OrderLine]]:
    grouped: dict[int, list[OrderLine]] = defaultdict(list)
    for line in lines:
        if line.active and line.producer_id is not None:
            grouped[line.producer_id].append(line)
    return dict(grouped)


def quantities_by_product(lines: list[OrderLine]) -> dict[int, Decimal]:
    totals: dict[int, Decimal] = defaultdict(lambda: ZERO)
    for line in lines:
        if line.active and line.product_id is not None:
            totals[line.product_id] += line.quantity
    return dict(totals)


def serialize_line(line: OrderLine) -> dict:
    payload = {
        'id': line.id,
        'productId': line.product_id,
        'productName': line.product_name,
        'producerId': line.producer_id,
        'quantity': line.quantity,
        'price': line.unit_price,
        'unit': line.unit,
        'amount': line.amount,
    }
    if line.kind == BOOKING:
        payload['slotId'] = line.slot_id
        payload['slotDate'] = line.slot_date
        payload['status'] = line.booking_status.value if line.booking_status else None
    return payload
