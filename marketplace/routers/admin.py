from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from marketplace.auth import Principal, Role, require_role
from marketplace.db import get_db
from marketplace.dependencies import pagination
from marketplace.models import UserRole, WithdrawalStatus
from marketplace.routers.orders import order_filters
from marketplace.schemas import AdminNoteIn, ProcessWithdrawalIn, UserPatchIn
from marketplace.services.order_scope import OrderFilters, OrderScope, admin_overview
from marketplace.services.order_service import add_admin_note, list_admin_notes
from marketplace.services.user_service import delete_user, get_user, list_users, serialize_user, update_user
from marketplace.services.wallet_service import (
    get_wallet_detail,
    list_wallets,
    list_withdrawals,
    process_withdrawal,
    serialize_withdrawal,
)

router = APIRouter(prefix='/api/admin', tags=['admin'])

admin_only = require_role(Role.ADMIN)


@router.get('/orders/overview')
def orders_overview(
    filters: OrderFilters = Depends(order_filters),
    principal: Principal = Depends(admin_only),
    db: Session = Depends(get_db),
):
    return admin_overview(db, OrderScope(principal), filters)


@router.get('/orders/{order_id}/admin-notes')
def order_admin_notes(order_id: int, principal: Principal = Depends(admin_only), db: Session = Depends(get_db)):
    return list_admin_notes(db, order_id=order_id)


@router.post('/orders/{order_id}/admin-notes', status_code=status.HTTP_201_CREATED)
def new_order_admin_note(
    order_id: int,
    payload: AdminNoteIn,
    principal: Principal = Depends(admin_only),
    db: Session = Depends(get_db),
):
    note = add_admin_note(db, principal=principal, order_id=order_id, content=payload.note)
    db.commit()
    return {'note': note.model_dump(mode='json', by_alias=True), **list_admin_notes(db, order_id=order_id)}


@router.get('/wallets')
def wallets(
    page_limit: tuple[int, int] = Depends(pagination),
    principal: Principal = Depends(admin_only),
    db: Session = Depends(get_db),
):
    page, limit = page_limit
    return list_wallets(db, page=page, limit=limit)


@router.get('/wallets/{wallet_id}')
def wallet_detail(wallet_id: int, principal: Principal = Depends(admin_only), db: Session = Depends(get_db)):
    return get_wallet_detail(db, wallet_id=wallet_id)


@router.get('/withdrawals')
def withdrawals(
    status_filter: WithdrawalStatus | None = Query(None, alias='status'),
    page_limit: tuple[int, int] = Depends(pagination),
    principal: Principal = Depends(admin_only),
    db: Session = Depends(get_db),
):
    page, limit = page_limit
    return list_withdrawals(db, status=status_filter, page=page, limit=limit)


@router.post('/withdrawals/{withdrawal_id}/process')
def process(
    withdrawal_id: int,
    payload: ProcessWithdrawalIn,
    principal: Principal = Depends(admin_only),
    db: Session = Depends(get_db),
):
    withdrawal = process_withdrawal(
        db,
        admin_id=principal.id,
        withdrawal_id=withdrawal_id,
        status=payload.withdrawal_status,
        note=payload.note,
        reference=payload.payment_reference,
    )
    db.commit()
    return serialize_withdrawal(withdrawal)


@router.get('/users')
def users(
    search: str | None = Query(None, max_length=200),
    role: UserRole | None = None,
    page_limit: tuple[int, int] = Depends(pagination),
    principal: Principal = Depends(admin_only),
    db: Session = Depends(get_db),
):
    page, limit = page_limit
    return list_users(db, search=search, role=role, page=page, limit=limit)


@router.get('/users/{user_id}')
def user_detail(user_id: int, principal: Principal = Depends(admin_only), db: Session = Depends(get_db)):
    return serialize_user(*get_user(db, user_id))


@router.patch('/users/{user_id}')
def patch_user(
    user_id: int,
    payload: UserPatchIn,
    principal: Principal = Depends(admin_only),
    db: Session = Depends(get_db),
):
    fields = payload.model_dump(exclude_unset=True, exclude={'producer'})
    producer_fields = payload.producer.model_dump(exclude_unset=True) if payload.producer else None
    update_user(db, admin_id=principal.id, user_id=user_id, fields=fields, producer_fields=producer_fields)
    db.commit()
    return serialize_user(*get_user(db, user_id))


@router.delete('/users/{user_id}', status_code=status.HTTP_204_NO_CONTENT)
def remove_user(user_id: int, principal: Principal = Depends(admin_only), db: Session = Depends(get_db)):
    delete_user(db, admin_id=principal.id, user_id=user_id)
    db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)
