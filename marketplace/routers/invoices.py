from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from marketplace.auth import Principal, Role, require_role
from marketplace.db import get_db
from marketplace.dependencies import pagination
from marketplace.models import InvoiceStatus
from marketplace.schemas import InvoiceCreateIn, MarkPaidIn
from marketplace.security.rate_limit import rate_limit
from marketplace.services.invoice_service import (
    create_invoice,
    get_invoice,
    list_invoices,
    mark_invoice_paid,
    pending_invoice_count,
    refresh_overdue_invoices,
    serialize_invoice,
)
from marketplace.services.order_metadata import dump_order_metadata, load_order_metadata
from marketplace.services.payment_service import create_invoice_payment_intent
from marketplace.services.provider_factory import get_payment_gateway

router = APIRouter(prefix='/api/invoices', tags=['invoices'])

any_role = require_role(Role.CLIENT, Role.PRODUCER, Role.ADMIN)


@router.get('')
def invoices(
    status_filter: InvoiceStatus | None = Query(None, alias='status'),
    page_limit: tuple[int, int] = Depends(pagination),
    principal: Principal = Depends(any_role),
    db: Session = Depends(get_db),
):
    if principal.role == Role.CLIENT:
        refresh_overdue_invoices(db, user_id=principal.id)
    elif principal.role == Role.ADMIN:
        refresh_overdue_invoices(db)
    db.commit()
    page, limit = page_limit
    return list_invoices(db, principal=principal, status=status_filter, page=page, limit=limit)


@router.post('', status_code=status.HTTP_201_CREATED)
def new_invoice(
    payload: InvoiceCreateIn,
    principal: Principal = Depends(require_role(Role.CLIENT, Role.ADMIN)),
    db: Session = Depends(get_db),
):
    invoice = create_invoice(db, principal=principal, order_id=payload.order_id)
    db.commit()
    return serialize_invoice(invoice)


@router.get('/pending-count')
def invoices_pending_count(principal: Principal = Depends(require_role(Role.CLIENT)), db: Session = Depends(get_db)):
    refresh_overdue_invoices(db, user_id=principal.id)
    db.commit()
    return {'count': pending_invoice_count(db, user_id=principal.id)}


@router.get('/{invoice_id}')
def invoice_detail(invoice_id: int, principal: Principal = Depends(any_role), db: Session = Depends(get_db)):
    return get_invoice(db, principal=principal, invoice_id=invoice_id)


@router.post('/{invoice_id}/payment-intent')
def invoice_payment_intent(
    invoice_id: int,
    principal: Principal = Depends(require_role(Role.CLIENT)),
    db: Session = Depends(get_db),
    gateway=Depends(get_payment_gateway),
):
    result = create_invoice_payment_intent(db, gateway, principal=principal, invoice_id=invoice_id)
    db.commit()
    return result


@router.post('/{invoice_id}/mark-paid', dependencies=[Depends(rate_limit(5, 60))])
def mark_paid(
    invoice_id: int,
    payload: MarkPaidIn | None = None,
    principal: Principal = Depends(require_role(Role.PRODUCER, Role.ADMIN)),
    db: Session = Depends(get_db),
):
    payload = payload or MarkPaidIn()
    invoice, order = mark_invoice_paid(
        db,
        principal=principal,
        invoice_id=invoice_id,
        payment_method=payload.payment_method,
        notes=payload.notes,
    )
    db.commit()
    return {
        'invoice': serialize_invoice(invoice, order),
        'order': {
            'id': order.id,
            'status': order.status.value,
            'metadata': dump_order_metadata(load_order_metadata(order.meta)),
        },
    }
