from __future__ import annotations

import logging
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from marketplace.auth import Principal
from marketplace.config import settings
from marketplace.errors import Forbidden, InvalidState, NotFound, ValidationFailed
from marketplace.models import Invoice, InvoiceStatus, Order, OrderStatus
from marketplace.services.money import to_cents
from marketplace.services.order_metadata import load_order_metadata, update_order_metadata
from marketplace.services.payment_gateway import PaymentGateway, PaymentIntent

logger = logging.getLogger(__name__)

MIN_AMOUNT_CENTS = 50
MAX_AMOUNT_CENTS = 99_999_999


def amount_in_cents(total: Decimal) -> int:
    cents = to_cents(total)
    if cents < MIN_AMOUNT_CENTS:
        raise ValidationFailed('Montant trop faible pour un paiement par carte', code='AMOUNT_TOO_LOW')
    if cents > MAX_AMOUNT_CENTS:
        raise ValidationFailed('Montant trop élevé pour un paiement par carte', code='AMOUNT_TOO_HIGH')
    return cents


def _reusable_intent(gateway: PaymentGateway, intent_id: str | None, cents: int) -> PaymentIntent | None:
    if not intent_id:
        return None
    intent = gateway.retrieve_intent(intent_id)
    if intent is None or not intent.reusable or intent.amount != cents:
        return None
    return intent


def _intent_payload(intent: PaymentIntent, *, reused: bool) -> dict:
    return {
        'clientSecret': intent.client_secret,
        'paymentIntentId': intent.id,
        'amount': intent.amount,
        'currency': intent.currency,
        'reused': reused,
    }


def create_order_payment_intent(
    db: Session, gateway: PaymentGateway, *, principal: Principal, order_id: int
) -> dict:
    order = db.execute(
        select(Order).where(Order.id == order_id, Order.user_id == principal.id)
    ).scalar_one_or_none()
    if not order:
        raise NotFound('Commande non trouvée', code='ORDER_NOT_FOUND')
    if order.status not in (OrderStatus.DRAFT, OrderStatus.PENDING):
        raise InvalidState(f'Commande non payable (statut {order.status.value})')

    cents = amount_in_cents(order.total)
    metadata = load_order_metadata(order.meta)
    if metadata.payment_status == 'PAID':
        raise InvalidState('Commande déjà payée', code='ALREADY_PAID')

    existing = _reusable_intent(gateway, metadata.payment_intent_id, cents)
    if existing:
        return _intent_payload(existing, reused=True)

    # Gateway first: a failure raises before anything is written.
    intent = gateway.create_intent(
        amount=cents,
        currency=settings.payment_currency,
        metadata={'orderId': str(order.id), 'userId': str(principal.id)},
        description=f'Commande #{order.id}',
        receipt_email=principal.email,
    )
    update_order_metadata(order, payment_intent_id=intent.id, payment_method='card')
    db.flush()
    logger.info('Payment intent %s for %s cents created for order %s', intent.id, cents, order.id)
    return _intent_payload(intent, reused=False)


def create_invoice_payment_intent(
    db: Session, gateway: PaymentGateway, *, principal: Principal, invoice_id: int
) -> dict:
    invoice = db.get(Invoice, invoice_id)
    if not invoice:
        raise NotFound('Facture non trouvée', code='INVOICE_NOT_FOUND')
    if invoice.user_id != principal.id:
        raise Forbidden('Accès refusé à cette facture')
    if invoice.status not in (InvoiceStatus.PENDING, InvoiceStatus.OVERDUE):
        raise InvalidState('Facture déjà payée', code='ALREADY_PAID')

    cents = amount_in_cents(invoice.amount)
    meta = dict(invoice.meta or {})
    existing = _reusable_intent(gateway, meta.get('paymentIntentId'), cents)
    if existing:
        return _intent_payload(existing, reused=True)

    intent = gateway.create_intent(
        amount=cents,
        currency=settings.payment_currency,
        metadata={'invoiceId': str(invoice.id), 'orderId': str(invoice.order_id), 'userId': str(principal.id)},
        description=f'Facture #{invoice.id}',
        receipt_email=principal.email,
    )
    meta['paymentIntentId'] = intent.id
    invoice.meta = meta
    db.flush()
    logger.info('Payment intent %s for %s cents created for invoice %s', intent.id, cents, invoice.id)
    return _intent_payload(intent, reused=False)
