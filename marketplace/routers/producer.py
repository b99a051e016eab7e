from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from marketplace.auth import Principal, require_producer_profile
from marketplace.db import get_db
from marketplace.models import Wallet
from marketplace.schemas import ProducerProfileIn, WithdrawIn
from marketplace.security.rate_limit import rate_limit
from marketplace.services.producer_stats_service import producer_stats
from marketplace.services.user_service import get_user, serialize_user, update_producer_profile
from marketplace.services.wallet_service import request_withdrawal, serialize_wallet, serialize_withdrawal, wallet_overview

router = APIRouter(tags=['producer'])


@router.get('/api/producer/wallet')
def my_wallet(principal: Principal = Depends(require_producer_profile), db: Session = Depends(get_db)):
    overview = wallet_overview(db, producer_id=principal.producer_id)
    db.commit()
    return overview


@router.post('/api/wallet/withdraw', status_code=201, dependencies=[Depends(rate_limit(3, 60))])
def withdraw(
    payload: WithdrawIn,
    principal: Principal = Depends(require_producer_profile),
    db: Session = Depends(get_db),
):
    withdrawal = request_withdrawal(
        db,
        producer_id=principal.producer_id,
        user_id=principal.id,
        amount=payload.amount,
        note=payload.note,
    )
    db.commit()
    wallet = db.get(Wallet, withdrawal.wallet_id)
    return {'withdrawal': serialize_withdrawal(withdrawal), 'wallet': serialize_wallet(wallet)}


@router.get('/api/producer/stats')
def stats(principal: Principal = Depends(require_producer_profile), db: Session = Depends(get_db)):
    return producer_stats(db, producer_id=principal.producer_id)


@router.patch('/api/producer/profile')
def update_profile(
    payload: ProducerProfileIn,
    principal: Principal = Depends(require_producer_profile),
    db: Session = Depends(get_db),
):
    producer = update_producer_profile(
        db, producer_id=principal.producer_id, fields=payload.model_dump(exclude_unset=True)
    )
    db.commit()
    user, _producer = get_user(db, principal.id)
    return serialize_user(user, producer)
