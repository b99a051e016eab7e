"""Who may see which orders, and how listings are filtered.

Every order read path goes through :class:`OrderScope` so clients only see
their own orders, producers only orders carrying their products (with the
lines narrowed to those products), and admins see everything.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal

from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session

from marketplace.auth import Principal, Role
from marketplace.config import settings
from marketplace.errors import NotFound
from marketplace.models import Booking, DeliverySlot, Invoice, Order, OrderItem, OrderStatus, Product, User
from marketplace.services.money import ZERO, money
from marketplace.services.order_lines import OrderLine, load_order_lines, serialize_line
from marketplace.services.order_metadata import dump_order_metadata, load_order_metadata


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def producer_order_condition(producer_id: int):
    items = (
        select(OrderItem.order_id)
        .join(Product, Product.id == OrderItem.product_id)
        .where(Product.producer_id == producer_id)
    )
    bookings = (
        select(Booking.order_id)
        .join(DeliverySlot, DeliverySlot.id == Booking.slot_id)
        .join(Product, Product.id == DeliverySlot.product_id)
        .where(Product.producer_id == producer_id, Booking.order_id.is_not(None))
    )
    return or_(Order.id.in_(items), Order.id.in_(bookings))


@dataclass(frozen=True)
class OrderFilters:
    status: OrderStatus | None = None
    date_from: date | None = None
    date_to: date | None = None
    days: int | None = None
    search: str | None = None
    page: int = 1
    limit: int = 10


@dataclass(frozen=True)
class OrderScope:
    principal: Principal

    @property
    def producer_id(self) -> int | None:
        if self.principal.role == Role.PRODUCER:
            return self.principal.producer_id
        return None

    def condition(self):
        role = self.principal.role
        if role == Role.ADMIN:
            return None
        if role == Role.PRODUCER:
            if self.principal.producer_id is None:
                return Order.id.is_(None)
            return producer_order_condition(self.principal.producer_id)
        return Order.user_id == self.principal.id

    def visible_lines(self, lines: list[OrderLine]) -> list[OrderLine]:
        if self.producer_id is None:
            return lines
        return [line for line in lines if line.producer_id == self.producer_id]

    def can_view(self, order: Order, lines: list[OrderLine]) -> bool:
        role = self.principal.role
        if role == Role.ADMIN:
            return True
        if role == Role.PRODUCER:
            return bool(self.visible_lines(lines))
        return order.user_id == self.principal.id


def filter_conditions(filters: OrderFilters) -> list:
    conditions = []
    if filters.status is not None:
        conditions.append(Order.status == filters.status)
    else:
        conditions.append(Order.status != OrderStatus.DRAFT)
    if filters.days:
        conditions.append(Order.created_at >= _now() - timedelta(days=filters.days))
    if filters.date_from:
        conditions.append(Order.created_at >= datetime.combine(filters.date_from, time.min, tzinfo=timezone.utc))
    if filters.date_to:
        conditions.append(
            Order.created_at < datetime.combine(filters.date_to + timedelta(days=1), time.min, tzinfo=timezone.utc)
        )
    term = (filters.search or '').strip()
    if term:
        pattern = f'%{term.lower()}%'
        text_match = or_(func.lower(User.name).like(pattern), func.lower(User.email).like(pattern))
        if term.isdigit():
            conditions.append(or_(Order.id == int(term), text_match))
        else:
            conditions.append(text_match)
    return conditions


def _invoices_by_order(db: Session, order_ids: list[int]) -> dict[int, Invoice]:
    if not order_ids:
        return {}
    rows = db.execute(select(Invoice).where(Invoice.order_id.in_(order_ids))).scalars().all()
    return {invoice.order_id: invoice for invoice in rows}


def serialize_order(
    order: Order,
    customer: User | None,
    lines: list[OrderLine],
    scope: OrderScope,
    invoice: Invoice | None = None,
) -> dict:
    visible = scope.visible_lines(lines)
    payload = {
        'id': order.id,
        'status': order.status.value,
        'total': order.total,
        'platformFee': order.platform_fee,
        'metadata': dump_order_metadata(load_order_metadata(order.meta)),
        'createdAt': order.created_at,
        'updatedAt': order.updated_at,
        'items': [serialize_line(line) for line in visible if line.kind == 'item'],
        'bookings': [serialize_line(line) for line in visible if line.kind == 'booking'],
        'customer': (
            {'id': customer.id, 'name': customer.name, 'email': customer.email, 'phone': customer.phone}
            if customer
            else None
        ),
        'invoice': (
            {
                'id': invoice.id,
                'status': invoice.status.value,
                'amount': invoice.amount,
                'dueDate': invoice.due_date,
                'paidAt': invoice.paid_at,
            }
            if invoice
            else None
        ),
    }
    if scope.producer_id is not None:
        payload['producerSubtotal'] = money(sum((line.amount for line in visible if line.active), ZERO))
    return payload


def list_orders(db: Session, scope: OrderScope, filters: OrderFilters) -> dict:
    conditions = filter_conditions(filters)
    scope_condition = scope.condition()
    if scope_condition is not None:
        conditions.append(scope_condition)

    base = select(Order, User).join(User, User.id == Order.user_id).where(and_(*conditions))
    total = db.execute(
        select(func.count(Order.id)).select_from(Order).join(User, User.id == Order.user_id).where(and_(*conditions))
    ).scalar_one()
    rows = db.execute(
        base.order_by(Order.created_at.desc(), Order.id.desc())
        .limit(filters.limit)
        .offset((filters.page - 1) * filters.limit)
    ).all()

    order_ids = [order.id for order, _ in rows]
    lines = load_order_lines(db, order_ids)
    invoices = _invoices_by_order(db, order_ids)
    return {
        'orders': [
            serialize_order(order, customer, lines.get(order.id, []), scope, invoices.get(order.id))
            for order, customer in rows
        ],
        'pagination': {
            'page': filters.page,
            'limit': filters.limit,
            'total': total,
            'totalPages': (total + filters.limit - 1) // filters.limit,
        },
    }


def load_visible_order(db: Session, scope: OrderScope, order_id: int) -> tuple[Order, User, list[OrderLine]]:
    row = db.execute(
        select(Order, User).join(User, User.id == Order.user_id).where(Order.id == order_id)
    ).one_or_none()
    if not row:
        raise NotFound('Commande non trouvée', code='ORDER_NOT_FOUND')
    order, customer = row
    lines = load_order_lines(db, [order.id]).get(order.id, [])
    # Out-of-scope orders look exactly like missing ones.
    if not scope.can_view(order, lines):
        raise NotFound('Commande non trouvée', code='ORDER_NOT_FOUND')
    return order, customer, lines


def get_order_detail(db: Session, scope: OrderScope, order_id: int) -> dict:
    order, customer, lines = load_visible_order(db, scope, order_id)
    invoice = _invoices_by_order(db, [order.id]).get(order.id)
    return serialize_order(order, customer, lines, scope, invoice)


def get_order_summary(db: Session, scope: OrderScope, order_id: int) -> dict:
    order, _customer, lines = load_visible_order(db, scope, order_id)
    visible = [line for line in scope.visible_lines(lines) if line.active]
    metadata = load_order_metadata(order.meta)
    items_total = money(sum((line.amount for line in visible), ZERO))
    delivery_fee = metadata.fees.delivery_fee if metadata.fees else Decimal('0')
    return {
        'orderId': order.id,
        'status': order.status.value,
        'items': [serialize_line(line) for line in visible if line.kind == 'item'],
        'bookings': [serialize_line(line) for line in visible if line.kind == 'booking'],
        'subtotal': items_total,
        'deliveryFee': money(delivery_fee) if scope.producer_id is None else money(ZERO),
        'total': order.total if scope.producer_id is None else items_total,
        'deliveryType': metadata.delivery_type,
        'paymentMethod': metadata.payment_method,
        'paymentStatus': metadata.payment_status,
    }


def producer_pending_count(db: Session, *, producer_id: int) -> int:
    return db.execute(
        select(func.count(Order.id)).where(
            producer_order_condition(producer_id),
            Order.status == OrderStatus.PENDING,
        )
    ).scalar_one()


def admin_overview(db: Session, scope: OrderScope, filters: OrderFilters) -> dict:
    counts = dict(
        db.execute(
            select(Order.status, func.count(Order.id)).where(Order.status != OrderStatus.DRAFT).group_by(Order.status)
        ).all()
    )
    stale_before = _now() - timedelta(days=settings.attention_pending_days)
    attention_rows = db.execute(
        select(Order, User)
        .join(User, User.id == Order.user_id)
        .where(Order.status == OrderStatus.PENDING, Order.created_at < stale_before)
        .order_by(Order.created_at.asc())
        .limit(20)
    ).all()
    attention_ids = [order.id for order, _ in attention_rows]
    attention_lines = load_order_lines(db, attention_ids)

    listing = list_orders(db, scope, filters)
    return {
        'stats': {
            'total': sum(counts.values()),
            'byStatus': {status.value: counts.get(status, 0) for status in OrderStatus if status != OrderStatus.DRAFT},
        },
        'ordersNeedingAttention': [
            serialize_order(order, customer, attention_lines.get(order.id, []), scope)
            for order, customer in attention_rows
        ],
        **listing,
    }
