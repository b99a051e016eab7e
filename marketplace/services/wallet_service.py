from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from marketplace.config import settings
from marketplace.errors import Conflict, InvalidState, NotFound, ValidationFailed
from marketplace.models import (
    NotificationType,
    Order,
    Producer,
    User,
    Wallet,
    WalletTransaction,
    WalletTransactionStatus,
    WalletTransactionType,
    Withdrawal,
    WithdrawalStatus,
)
from marketplace.services.audit_service import log_admin_action
from marketplace.services.money import CENT, ZERO, money, percentage_of
from marketplace.services.notification_service import admin_user_ids, notify, notify_many
from marketplace.services.order_lines import OrderLine, lines_by_producer, lines_for_order

logger = logging.getLogger(__name__)

IBAN_RE = re.compile(r'^[A-Z]{2}[0-9]{2}[A-Z0-9]{8,30}$')
OPEN_WITHDRAWAL_STATUSES = (WithdrawalStatus.PENDING, WithdrawalStatus.PROCESSING)
SETTLEMENT_STATUSES = (WithdrawalStatus.PROCESSING, WithdrawalStatus.COMPLETED, WithdrawalStatus.REJECTED)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def get_or_create_wallet(db: Session, producer_id: int) -> Wallet:
    wallet = db.execute(select(Wallet).where(Wallet.producer_id == producer_id)).scalar_one_or_none()
    if wallet:
        return wallet
    wallet = Wallet(producer_id=producer_id)
    db.add(wallet)
    db.flush()
    return wallet


def _adjust_wallet(db: Session, wallet_id: int, **deltas: Decimal | int) -> None:
    values = {name: getattr(Wallet, name) + delta for name, delta in deltas.items()}
    values['updated_at'] = _now()
    db.execute(
        update(Wallet).where(Wallet.id == wallet_id).values(**values).execution_options(synchronize_session=False)
    )


def _refresh_wallets(db: Session) -> None:
    # Column arithmetic ran in SQL; drop stale identity-map values.
    db.flush()
    for obj in list(db.identity_map.values()):
        if isinstance(obj, (Wallet, WalletTransaction, Withdrawal)):
            db.expire(obj)


def _split(lines: list[OrderLine]) -> tuple[Decimal, Decimal, Decimal]:
    gross = money(sum((line.amount for line in lines), ZERO))
    fee = percentage_of(gross, settings.platform_fee_percentage)
    return gross, fee, money(gross - fee)


# Sale accounting


def credit_order_sale(db: Session, order: Order, lines: list[OrderLine] | None = None) -> int:
    """Record one pending SALE per producer in the order. Safe to call repeatedly."""
    lines = lines if lines is not None else lines_for_order(db, order.id)
    grouped = lines_by_producer(lines)

    created = 0
    total_fee = ZERO
    for producer_id, producer_lines in sorted(grouped.items()):
        gross, fee, net = _split(producer_lines)
        total_fee += fee
        wallet = get_or_create_wallet(db, producer_id)
        existing = db.execute(
            select(WalletTransaction.id).where(
                WalletTransaction.wallet_id == wallet.id,
                WalletTransaction.order_id == order.id,
                WalletTransaction.type == WalletTransactionType.SALE,
            )
        ).first()
        if existing:
            continue
        db.add(
            WalletTransaction(
                wallet_id=wallet.id,
                order_id=order.id,
                amount=net,
                type=WalletTransactionType.SALE,
                status=WalletTransactionStatus.PENDING,
                description=f'Vente commande #{order.id}',
                meta={
                    'grossAmount': str(gross),
                    'fee': str(fee),
                    'netAmount': str(net),
                    'platformFeePercentage': str(settings.platform_fee_percentage),
                    'items': [
                        {'productId': line.product_id, 'quantity': str(line.quantity), 'amount': str(line.amount)}
                        for line in producer_lines
                    ],
                },
            )
        )
        db.flush()
        _adjust_wallet(db, wallet.id, pending_balance=net, total_earned=net)
        created += 1
        logger.info('Credited %s (gross %s, fee %s) to wallet %s for order %s', net, gross, fee, wallet.id, order.id)

    order.platform_fee = money(total_fee)
    if created:
        _refresh_wallets(db)
    return created


def _order_sales(db: Session, order_id: int, status: WalletTransactionStatus) -> list[WalletTransaction]:
    return db.execute(
        select(WalletTransaction).where(
            WalletTransaction.order_id == order_id,
            WalletTransaction.type == WalletTransactionType.SALE,
            WalletTransaction.status == status,
        )
    ).scalars().all()


def _claim_transaction(db: Session, tx_id: int, new_status: WalletTransactionStatus) -> bool:
    result = db.execute(
        update(WalletTransaction)
        .where(WalletTransaction.id == tx_id, WalletTransaction.status == WalletTransactionStatus.PENDING)
        .values(status=new_status)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def release_order_sale(db: Session, order: Order) -> int:
    released = 0
    for tx in _order_sales(db, order.id, WalletTransactionStatus.PENDING):
        amount = tx.amount
        if not _claim_transaction(db, tx.id, WalletTransactionStatus.COMPLETED):
            continue
        _adjust_wallet(db, tx.wallet_id, pending_balance=-amount, balance=amount)
        released += 1
        logger.info('Released %s to wallet %s for delivered order %s', amount, tx.wallet_id, order.id)
    if released:
        _refresh_wallets(db)
    return released


def reverse_pending_sales(db: Session, order: Order) -> int:
    reversed_count = 0
    for tx in _order_sales(db, order.id, WalletTransactionStatus.PENDING):
        amount = tx.amount
        if not _claim_transaction(db, tx.id, WalletTransactionStatus.CANCELLED):
            continue
        _adjust_wallet(db, tx.wallet_id, pending_balance=-amount, total_earned=-amount)
        reversed_count += 1
        logger.info('Reversed pending sale of %s on wallet %s for order %s', amount, tx.wallet_id, order.id)
    if reversed_count:
        _refresh_wallets(db)
    return reversed_count


# Withdrawals


def normalize_iban(value: str | None) -> str:
    return re.sub(r'\s+', '', value or '').upper()


def _bank_details(producer: Producer) -> dict | None:
    iban = normalize_iban(producer.iban)
    if not producer.bank_name or not producer.bank_account_name or not iban:
        return None
    return {
        'bankName': producer.bank_name,
        'accountName': producer.bank_account_name,
        'iban': iban,
        'bic': producer.bic,
    }


def validate_withdrawal_amount(amount: Decimal) -> Decimal:
    if amount != amount.quantize(CENT):
        raise ValidationFailed('Le montant ne peut pas avoir plus de 2 décimales', code='INVALID_AMOUNT')
    if amount < settings.withdrawal_min_amount:
        raise ValidationFailed(
            f'Le montant minimum de retrait est de {settings.withdrawal_min_amount}', code='AMOUNT_TOO_LOW'
        )
    if amount > settings.withdrawal_max_amount:
        raise ValidationFailed(
            f'Le montant maximum de retrait est de {settings.withdrawal_max_amount}', code='AMOUNT_TOO_HIGH'
        )
    return money(amount)


def request_withdrawal(
    db: Session, *, producer_id: int, user_id: int, amount: Decimal, note: str | None = None
) -> Withdrawal:
    amount = validate_withdrawal_amount(amount)
    producer = db.get(Producer, producer_id)
    if not producer:
        raise NotFound('Profil producteur non trouvé', code='PRODUCER_NOT_FOUND')
    bank_details = _bank_details(producer)
    if not bank_details:
        raise ValidationFailed('Coordonnées bancaires manquantes', code='MISSING_BANK_DETAILS')
    if not IBAN_RE.match(bank_details['iban']):
        raise ValidationFailed('IBAN invalide', code='INVALID_IBAN')

    wallet = get_or_create_wallet(db, producer_id)
    open_withdrawal = db.execute(
        select(Withdrawal.id).where(Withdrawal.wallet_id == wallet.id, Withdrawal.status.in_(OPEN_WITHDRAWAL_STATUSES))
    ).first()
    if open_withdrawal:
        raise Conflict('Une demande de retrait est déjà en cours', code='WITHDRAWAL_ALREADY_PENDING')

    # Compare-and-swap: the debit only happens if the balance still covers it.
    result = db.execute(
        update(Wallet)
        .where(Wallet.id == wallet.id, Wallet.balance >= amount)
        .values(
            balance=Wallet.balance - amount,
            pending_withdrawals=Wallet.pending_withdrawals + 1,
            updated_at=_now(),
        )
        .execution_options(synchronize_session=False)
    )
    db.refresh(wallet)
    if result.rowcount != 1:
        raise ValidationFailed(
            f'Solde insuffisant (disponible: {wallet.balance})',
            code='INSUFFICIENT_BALANCE',
            details={'available': str(wallet.balance), 'requested': str(amount)},
        )

    withdrawal = Withdrawal(
        wallet_id=wallet.id,
        amount=amount,
        status=WithdrawalStatus.PENDING,
        bank_details=bank_details,
    )
    db.add(withdrawal)
    db.flush()
    db.add(
        WalletTransaction(
            wallet_id=wallet.id,
            withdrawal_id=withdrawal.id,
            amount=-amount,
            type=WalletTransactionType.WITHDRAWAL,
            status=WalletTransactionStatus.PENDING,
            description=f'Demande de retrait #{withdrawal.id}',
            meta={'iban': bank_details['iban'][-4:], 'note': note},
        )
    )
    db.flush()
    logger.info('Withdrawal %s of %s requested on wallet %s', withdrawal.id, amount, wallet.id)

    notify_many(
        db,
        user_ids=admin_user_ids(db),
        type=NotificationType.WITHDRAWAL_REQUESTED,
        title='Nouvelle demande de retrait',
        message=f'{producer.company_name or "Un producteur"} demande un retrait de {amount}',
        link=f'/admin/withdrawals/{withdrawal.id}',
        data={'withdrawalId': withdrawal.id, 'amount': str(amount)},
        exclude_user_id=user_id,
    )
    return withdrawal


def process_withdrawal(
    db: Session,
    *,
    admin_id: int,
    withdrawal_id: int,
    status: WithdrawalStatus,
    note: str | None = None,
    reference: str | None = None,
) -> Withdrawal:
    if status not in SETTLEMENT_STATUSES:
        raise ValidationFailed('Statut de retrait invalide', code='INVALID_STATUS')
    withdrawal = db.get(Withdrawal, withdrawal_id)
    if not withdrawal:
        raise NotFound('Demande de retrait non trouvée', code='WITHDRAWAL_NOT_FOUND')
    if withdrawal.status not in OPEN_WITHDRAWAL_STATUSES:
        raise InvalidState(f'Retrait déjà traité ({withdrawal.status.value})')
    if status == WithdrawalStatus.PROCESSING and withdrawal.status == WithdrawalStatus.PROCESSING:
        raise InvalidState('Retrait déjà en cours de traitement')
    if status == WithdrawalStatus.REJECTED and not (note or '').strip():
        raise ValidationFailed('Un motif est requis pour refuser un retrait', code='NOTE_REQUIRED')

    wallet = db.get(Wallet, withdrawal.wallet_id)
    producer = db.get(Producer, wallet.producer_id)
    if status == WithdrawalStatus.COMPLETED and not _bank_details(producer):
        raise ValidationFailed('Coordonnées bancaires manquantes', code='MISSING_BANK_DETAILS')

    now = _now()
    values: dict = {'status': status, 'processor_note': note or withdrawal.processor_note}
    if reference:
        values['reference'] = reference
    if status != WithdrawalStatus.PROCESSING:
        values['processed_at'] = now
    result = db.execute(
        update(Withdrawal)
        .where(Withdrawal.id == withdrawal.id, Withdrawal.status.in_(OPEN_WITHDRAWAL_STATUSES))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise Conflict('Retrait déjà traité', code='ALREADY_PROCESSED')

    amount = withdrawal.amount
    if status == WithdrawalStatus.COMPLETED:
        _adjust_wallet(db, wallet.id, total_withdrawn=amount, pending_withdrawals=-1)
        tx_status = WalletTransactionStatus.COMPLETED
    elif status == WithdrawalStatus.REJECTED:
        _adjust_wallet(db, wallet.id, balance=amount, pending_withdrawals=-1)
        tx_status = WalletTransactionStatus.CANCELLED
    else:
        tx_status = None
    if tx_status is not None:
        db.execute(
            update(WalletTransaction)
            .where(
                WalletTransaction.withdrawal_id == withdrawal.id,
                WalletTransaction.status == WalletTransactionStatus.PENDING,
            )
            .values(status=tx_status)
            .execution_options(synchronize_session=False)
        )
    _refresh_wallets(db)
    db.refresh(withdrawal)
    logger.info('Withdrawal %s of %s set to %s by admin %s', withdrawal.id, amount, status.value, admin_id)

    if status == WithdrawalStatus.COMPLETED:
        notify(
            db,
            user_id=producer.user_id,
            type=NotificationType.WITHDRAWAL_COMPLETED,
            title='Retrait effectué',
            message=f'Votre retrait de {amount} a été versé',
            link='/producer/wallet',
            data={'withdrawalId': withdrawal.id, 'amount': str(amount)},
        )
    elif status == WithdrawalStatus.REJECTED:
        notify(
            db,
            user_id=producer.user_id,
            type=NotificationType.WITHDRAWAL_REJECTED,
            title='Retrait refusé',
            message=f'Votre retrait de {amount} a été refusé: {note}',
            link='/producer/wallet',
            data={'withdrawalId': withdrawal.id, 'amount': str(amount)},
        )
    log_admin_action(
        db,
        admin_id=admin_id,
        action=f'WITHDRAWAL_{status.value}',
        entity_type='WITHDRAWAL',
        entity_id=withdrawal.id,
        details={'amount': str(amount), 'walletId': wallet.id, 'note': note, 'reference': reference},
    )
    return withdrawal


# Read side


def serialize_wallet(wallet: Wallet) -> dict:
    return {
        'id': wallet.id,
        'producerId': wallet.producer_id,
        'balance': wallet.balance,
        'pendingBalance': wallet.pending_balance,
        'totalEarned': wallet.total_earned,
        'totalWithdrawn': wallet.total_withdrawn,
        'pendingWithdrawals': wallet.pending_withdrawals,
        'updatedAt': wallet.updated_at,
    }


def serialize_transaction(tx: WalletTransaction) -> dict:
    return {
        'id': tx.id,
        'orderId': tx.order_id,
        'withdrawalId': tx.withdrawal_id,
        'amount': tx.amount,
        'type': tx.type.value,
        'status': tx.status.value,
        'description': tx.description,
        'metadata': tx.meta,
        'createdAt': tx.created_at,
    }


def serialize_withdrawal(withdrawal: Withdrawal) -> dict:
    return {
        'id': withdrawal.id,
        'walletId': withdrawal.wallet_id,
        'amount': withdrawal.amount,
        'status': withdrawal.status.value,
        'bankDetails': withdrawal.bank_details,
        'reference': withdrawal.reference,
        'requestedAt': withdrawal.requested_at,
        'processedAt': withdrawal.processed_at,
        'note': withdrawal.processor_note,
    }


def wallet_overview(db: Session, *, producer_id: int, transactions: int = 50, withdrawals: int = 20) -> dict:
    wallet = get_or_create_wallet(db, producer_id)
    tx_rows = db.execute(
        select(WalletTransaction)
        .where(WalletTransaction.wallet_id == wallet.id)
        .order_by(WalletTransaction.created_at.desc(), WalletTransaction.id.desc())
        .limit(transactions)
    ).scalars().all()
    withdrawal_rows = db.execute(
        select(Withdrawal)
        .where(Withdrawal.wallet_id == wallet.id)
        .order_by(Withdrawal.requested_at.desc(), Withdrawal.id.desc())
        .limit(withdrawals)
    ).scalars().all()
    return {
        'wallet': serialize_wallet(wallet),
        'transactions': [serialize_transaction(tx) for tx in tx_rows],
        'withdrawals': [serialize_withdrawal(w) for w in withdrawal_rows],
    }


def list_wallets(db: Session, *, page: int, limit: int) -> dict:
    rows = db.execute(
        select(Wallet, Producer, User)
        .join(Producer, Producer.id == Wallet.producer_id)
        .join(User, User.id == Producer.user_id)
        .order_by(Wallet.balance.desc(), Wallet.id)
        .limit(limit)
        .offset((page - 1) * limit)
    ).all()
    total = db.execute(select(func.count(Wallet.id))).scalar_one()
    return {
        'wallets': [
            {
                **serialize_wallet(wallet),
                'producer': {'id': producer.id, 'companyName': producer.company_name, 'email': user.email},
            }
            for wallet, producer, user in rows
        ],
        'pagination': {'page': page, 'limit': limit, 'total': total},
    }


def get_wallet_detail(db: Session, *, wallet_id: int) -> dict:
    wallet = db.get(Wallet, wallet_id)
    if not wallet:
        raise NotFound('Portefeuille non trouvé', code='WALLET_NOT_FOUND')
    producer = db.get(Producer, wallet.producer_id)
    overview = wallet_overview(db, producer_id=wallet.producer_id)
    overview['producer'] = {'id': producer.id, 'companyName': producer.company_name}
    return overview


def list_withdrawals(db: Session, *, status: WithdrawalStatus | None, page: int, limit: int) -> dict:
    conditions = []
    if status is not None:
        conditions.append(Withdrawal.status == status)
    rows = db.execute(
        select(Withdrawal, Producer)
        .join(Wallet, Wallet.id == Withdrawal.wallet_id)
        .join(Producer, Producer.id == Wallet.producer_id)
        .where(*conditions)
        .order_by(Withdrawal.requested_at.desc(), Withdrawal.id.desc())
        .limit(limit)
        .offset((page - 1) * limit)
    ).all()
    total = db.execute(select(func.count(Withdrawal.id)).where(*conditions)).scalar_one()
    return {
        'withdrawals': [
            {**serialize_withdrawal(w), 'producer': {'id': p.id, 'companyName': p.company_name}} for w, p in rows
        ],
        'pagination': {'page': page, 'limit': limit, 'total': total},
    }
