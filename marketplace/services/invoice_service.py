from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from marketplace.auth import Principal, Role
from marketplace.errors import Conflict, Forbidden, InvalidState, NotFound
from marketplace.models import (
    Invoice,
    InvoiceStatus,
    NotificationType,
    Order,
    OrderStatus,
    Producer,
    User,
)
from marketplace.services.notification_service import notify, notify_many
from marketplace.services.order_lifecycle import ensure_invoice, transition_order
from marketplace.services.order_lines import lines_for_order, serialize_line
from marketplace.services.order_metadata import update_order_metadata
from marketplace.services.order_scope import producer_order_condition

logger = logging.getLogger(__name__)

MARK_PAID_METHODS = ('manual', 'bank_transfer', 'cash')
INVOICEABLE_STATUSES = (
    OrderStatus.CONFIRMED,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
    OrderStatus.INVOICE_PENDING,
)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def serialize_invoice(invoice: Invoice, order: Order | None = None) -> dict:
    payload = {
        'id': invoice.id,
        'orderId': invoice.order_id,
        'userId': invoice.user_id,
        'amount': invoice.amount,
        'status': invoice.status.value,
        'dueDate': invoice.due_date,
        'paidAt': invoice.paid_at,
        'paymentMethod': invoice.payment_method,
        'metadata': invoice.meta or {},
        'createdAt': invoice.created_at,
    }
    if order is not None:
        payload['order'] = {'id': order.id, 'status': order.status.value, 'total': order.total}
    return payload


def refresh_overdue_invoices(db: Session, *, user_id: int | None = None) -> int:
    """Flag unpaid invoices past their due date, and their orders with them."""
    conditions = [Invoice.status == InvoiceStatus.PENDING, Invoice.due_date < _now()]
    if user_id is not None:
        conditions.append(Invoice.user_id == user_id)
    overdue = db.execute(select(Invoice).where(*conditions)).scalars().all()
    for invoice in overdue:
        invoice.status = InvoiceStatus.OVERDUE
        order = db.get(Order, invoice.order_id)
        if order and order.status == OrderStatus.INVOICE_PENDING:
            order.status = OrderStatus.INVOICE_OVERDUE
            order.updated_at = _now()
        notify(
            db,
            user_id=invoice.user_id,
            type=NotificationType.INVOICE_OVERDUE,
            title=f'Facture #{invoice.id} en retard',
            message=f'Votre facture de {invoice.amount} est arrivée à échéance.',
            link=f'/invoices/{invoice.id}',
            data={'invoiceId': invoice.id, 'orderId': invoice.order_id},
        )
    if overdue:
        db.flush()
        logger.info('Marked %s invoice(s) overdue', len(overdue))
    return len(overdue)


def list_invoices(db: Session, *, principal: Principal, status: InvoiceStatus | None, page: int, limit: int) -> dict:
    conditions = []
    if principal.role == Role.CLIENT:
        conditions.append(Invoice.user_id == principal.id)
    elif principal.role == Role.PRODUCER:
        if principal.producer_id is None:
            raise NotFound('Profil producteur non trouvé', code='PRODUCER_NOT_FOUND')
        conditions.append(producer_order_condition(principal.producer_id))
    if status is not None:
        conditions.append(Invoice.status == status)

    base = select(Invoice, Order).join(Order, Order.id == Invoice.order_id).where(*conditions)
    total = db.execute(
        select(func.count(Invoice.id)).select_from(Invoice).join(Order, Order.id == Invoice.order_id).where(*conditions)
    ).scalar_one()
    rows = db.execute(
        base.order_by(Invoice.created_at.desc(), Invoice.id.desc()).limit(limit).offset((page - 1) * limit)
    ).all()
    return {
        'invoices': [serialize_invoice(invoice, order) for invoice, order in rows],
        'pagination': {'page': page, 'limit': limit, 'total': total},
    }


def pending_invoice_count(db: Session, *, user_id: int) -> int:
    return db.execute(
        select(func.count(Invoice.id)).where(
            Invoice.user_id == user_id,
            Invoice.status.in_((InvoiceStatus.PENDING, InvoiceStatus.OVERDUE)),
        )
    ).scalar_one()


def _authorize_producer(principal: Principal, order: Order, lines) -> None:
    if principal.producer_id is None:
        raise NotFound('Profil producteur non trouvé', code='PRODUCER_NOT_FOUND')
    if not any(line.producer_id == principal.producer_id for line in lines):
        raise Forbidden(
            "Cette facture ne concerne aucun de vos produits",
            code='FORBIDDEN_PRODUCER',
        )


def get_invoice(db: Session, *, principal: Principal, invoice_id: int) -> dict:
    invoice = db.get(Invoice, invoice_id)
    if not invoice:
        raise NotFound('Facture non trouvée', code='INVOICE_NOT_FOUND')
    order = db.get(Order, invoice.order_id)
    lines = lines_for_order(db, order.id)
    if principal.role == Role.CLIENT and invoice.user_id != principal.id:
        raise Forbidden('Accès refusé à cette facture')
    if principal.role == Role.PRODUCER:
        _authorize_producer(principal, order, lines)
        lines = [line for line in lines if line.producer_id == principal.producer_id]
    customer = db.get(User, invoice.user_id)
    payload = serialize_invoice(invoice, order)
    payload['lines'] = [serialize_line(line) for line in lines if line.active]
    payload['customer'] = {'id': customer.id, 'name': customer.name, 'email': customer.email} if customer else None
    return payload


def create_invoice(db: Session, *, principal: Principal, order_id: int) -> Invoice:
    conditions = [Order.id == order_id]
    if principal.role != Role.ADMIN:
        conditions.append(Order.user_id == principal.id)
    order = db.execute(select(Order).where(*conditions)).scalar_one_or_none()
    if not order:
        raise NotFound('Commande non trouvée', code='ORDER_NOT_FOUND')
    if db.execute(select(Invoice.id).where(Invoice.order_id == order.id)).first():
        raise Conflict('Une facture existe déjà pour cette commande', code='INVOICE_EXISTS')
    if order.status not in INVOICEABLE_STATUSES:
        raise InvalidState(f'Impossible de facturer une commande {order.status.value}')
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
    return invoice


def mark_invoice_paid(
    db: Session,
    *,
    principal: Principal,
    invoice_id: int,
    payment_method: str = 'manual',
    notes: str | None = None,
) -> tuple[Invoice, Order]:
    invoice = db.get(Invoice, invoice_id)
    if not invoice:
        raise NotFound('Facture non trouvée', code='INVOICE_NOT_FOUND')
    order = db.get(Order, invoice.order_id)
    lines = lines_for_order(db, order.id)
    if principal.role == Role.PRODUCER:
        _authorize_producer(principal, order, lines)
    elif principal.role != Role.ADMIN:
        raise Forbidden('Non autorisé')
    if invoice.status == InvoiceStatus.PAID:
        raise Conflict('Facture déjà payée', code='ALREADY_PAID')
    if payment_method not in MARK_PAID_METHODS:
        payment_method = 'manual'

    paid_at = _now()
    meta = {
        **(invoice.meta or {}),
        'markedPaidBy': principal.id,
        'paymentNotes': notes,
    }
    # Only one concurrent caller wins the PENDING/OVERDUE -> PAID flip.
    result = db.execute(
        update(Invoice)
        .where(Invoice.id == invoice.id, Invoice.status != InvoiceStatus.PAID)
        .values(status=InvoiceStatus.PAID, paid_at=paid_at, payment_method=payment_method, meta=meta)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise Conflict('Facture déjà payée', code='ALREADY_PAID')
    db.refresh(invoice)

    update_order_metadata(
        order,
        payment_status='PAID',
        paid_at=paid_at,
        marked_paid_by=principal.id,
        payment_method=payment_method,
        payment_notes=notes,
    )
    if order.status == OrderStatus.PENDING:
        transition_order(db, order, OrderStatus.CONFIRMED, lines=lines)
    elif order.status in (OrderStatus.INVOICE_PENDING, OrderStatus.INVOICE_OVERDUE):
        transition_order(db, order, OrderStatus.INVOICE_PAID, lines=lines)
    else:
        order.updated_at = paid_at
    db.flush()
    logger.info('Invoice %s (%s) marked paid by user %s via %s', invoice.id, invoice.amount, principal.id, payment_method)

    notify(
        db,
        user_id=order.user_id,
        type=NotificationType.INVOICE_PAID,
        title=f'Facture #{invoice.id} payée',
        message=f'Le paiement de {invoice.amount} pour la commande #{order.id} a été enregistré.',
        link=f'/invoices/{invoice.id}',
        data={'invoiceId': invoice.id, 'orderId': order.id},
    )
    producer_ids = {line.producer_id for line in lines if line.producer_id is not None}
    producer_users = (
        db.execute(select(Producer.user_id).where(Producer.id.in_(producer_ids))).scalars().all() if producer_ids else []
    )
    notify_many(
        db,
        user_ids=producer_users,
        type=NotificationType.INVOICE_PAID,
        title=f'Facture #{invoice.id} payée',
        message=f'La facture de la commande #{order.id} a été marquée comme payée.',
        link=f'/producer/orders/{order.id}',
        data={'invoiceId': invoice.id, 'orderId': order.id},
        exclude_user_id=principal.id,
    )
    return invoice, order
