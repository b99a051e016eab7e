from __future__ import annotations

import logging
import re
from datetime import datetime, timezone

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.orm import Session

from marketplace.errors import Conflict, NotFound, ValidationFailed
from marketplace.models import (
    AuthEvent,
    Booking,
    BookingStatus,
    DeliverySlot,
    Invoice,
    Notification,
    Order,
    OrderItem,
    Producer,
    Product,
    ProductionSchedule,
    Stock,
    StockAlert,
    User,
    UserRole,
    Wallet,
    WalletTransaction,
    WebSession,
    Withdrawal,
)
from marketplace.security.passwords import check_password_policy, hash_password
from marketplace.services.audit_service import log_admin_action
from marketplace.services.money import ZERO
from marketplace.services.order_lifecycle import release_booking
from marketplace.services.wallet_service import get_or_create_wallet

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')
PHONE_RE = re.compile(r'^\+?[0-9 ().-]{6,20}$')
PRODUCER_PROFILE_FIELDS = ('company_name', 'description', 'address', 'bank_name', 'bank_account_name', 'iban', 'bic')


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def normalize_email(email: str) -> str:
    value = (email or '').strip().lower()
    if not EMAIL_RE.match(value):
        raise ValidationFailed('Adresse e-mail invalide', code='INVALID_EMAIL')
    return value


def _check_phone(phone: str | None) -> str | None:
    if phone is None or not phone.strip():
        return None
    if not PHONE_RE.match(phone.strip()):
        raise ValidationFailed('Numéro de téléphone invalide', code='INVALID_PHONE')
    return phone.strip()


def _ensure_email_free(db: Session, email: str, *, exclude_user_id: int | None = None) -> None:
    conditions = [User.email == email]
    if exclude_user_id is not None:
        conditions.append(User.id != exclude_user_id)
    if db.execute(select(User.id).where(*conditions)).first():
        raise Conflict('Cette adresse e-mail est déjà utilisée', code='EMAIL_TAKEN')


def get_producer_for_user(db: Session, user_id: int) -> Producer | None:
    return db.execute(select(Producer).where(Producer.user_id == user_id)).scalar_one_or_none()


def _create_producer_profile(db: Session, user: User, company_name: str | None) -> Producer:
    producer = Producer(user_id=user.id, company_name=(company_name or user.name or '').strip())
    db.add(producer)
    db.flush()
    get_or_create_wallet(db, producer.id)
    return producer


def register_user(
    db: Session,
    *,
    email: str,
    password: str,
    name: str | None,
    phone: str | None = None,
    role: UserRole = UserRole.CLIENT,
    company_name: str | None = None,
) -> User:
    if role == UserRole.ADMIN:
        raise ValidationFailed('Rôle invalide', code='INVALID_ROLE')
    email = normalize_email(email)
    check_password_policy(password)
    _ensure_email_free(db, email)
    user = User(
        email=email,
        name=(name or '').strip() or None,
        phone=_check_phone(phone),
        password_hash=hash_password(password),
        role=role,
    )
    db.add(user)
    db.flush()
    if role == UserRole.PRODUCER:
        _create_producer_profile(db, user, company_name)
    logger.info('Registered %s user %s', role.value, user.id)
    return user


def serialize_user(user: User, producer: Producer | None = None) -> dict:
    payload = {
        'id': user.id,
        'email': user.email,
        'name': user.name,
        'phone': user.phone,
        'role': user.role.value,
        'active': user.active,
        'createdAt': user.created_at,
    }
    if producer is not None:
        payload['producer'] = {
            'id': producer.id,
            'companyName': producer.company_name,
            'description': producer.description,
            'address': producer.address,
            'bankName': producer.bank_name,
            'bankAccountName': producer.bank_account_name,
            'iban': producer.iban,
            'bic': producer.bic,
        }
    return payload


def list_users(db: Session, *, search: str | None, role: UserRole | None, page: int, limit: int) -> dict:
    conditions = []
    term = (search or '').strip().lower()
    if term:
        pattern = f'%{term}%'
        conditions.append(or_(func.lower(User.name).like(pattern), func.lower(User.email).like(pattern)))
    if role is not None:
        conditions.append(User.role == role)
    total = db.execute(select(func.count(User.id)).where(*conditions)).scalar_one()
    rows = db.execute(
        select(User, Producer)
        .outerjoin(Producer, Producer.user_id == User.id)
        .where(*conditions)
        .order_by(User.created_at.desc(), User.id.desc())
        .limit(limit)
        .offset((page - 1) * limit)
    ).all()
    return {
        'users': [serialize_user(user, producer) for user, producer in rows],
        'pagination': {'page': page, 'limit': limit, 'total': total},
    }


def get_user(db: Session, user_id: int) -> tuple[User, Producer | None]:
    user = db.get(User, user_id)
    if not user:
        raise NotFound('Utilisateur non trouvé', code='USER_NOT_FOUND')
    return user, get_producer_for_user(db, user.id)


def _demote_producer(db: Session, producer: Producer) -> None:
    has_products = db.execute(select(Product.id).where(Product.producer_id == producer.id).limit(1)).first()
    if has_products:
        raise Conflict('Ce producteur a encore des produits', code='PRODUCER_HAS_PRODUCTS')
    wallet = db.execute(select(Wallet).where(Wallet.producer_id == producer.id)).scalar_one_or_none()
    if wallet is not None:
        has_history = db.execute(select(WalletTransaction.id).where(WalletTransaction.wallet_id == wallet.id).limit(1)).first()
        if has_history or wallet.balance != ZERO or wallet.pending_balance != ZERO:
            raise Conflict('Le portefeuille du producteur n\'est pas vide', code='WALLET_NOT_EMPTY')
        db.delete(wallet)
        db.flush()
    db.delete(producer)
    db.flush()


def update_user(db: Session, *, admin_id: int, user_id: int, fields: dict, producer_fields: dict | None = None) -> User:
    user, producer = get_user(db, user_id)
    changes: dict = {}

    if fields.get('email') is not None:
        email = normalize_email(fields['email'])
        if email != user.email:
            _ensure_email_free(db, email, exclude_user_id=user.id)
            changes['email'] = email
            user.email = email
    if fields.get('name') is not None:
        user.name = fields['name'].strip() or None
        changes['name'] = user.name
    if 'phone' in fields:
        user.phone = _check_phone(fields['phone'])
        changes['phone'] = user.phone
    if fields.get('active') is not None:
        if user.id == admin_id and not fields['active']:
            raise ValidationFailed('Vous ne pouvez pas désactiver votre propre compte', code='SELF_DEACTIVATION')
        user.active = fields['active']
        changes['active'] = user.active

    new_role = fields.get('role')
    if new_role is not None and new_role != user.role:
        if user.id == admin_id:
            raise ValidationFailed('Vous ne pouvez pas changer votre propre rôle', code='SELF_ROLE_CHANGE')
        if user.role == UserRole.PRODUCER and producer is not None:
            _demote_producer(db, producer)
            producer = None
        if new_role == UserRole.PRODUCER and producer is None:
            producer = _create_producer_profile(db, user, (producer_fields or {}).get('company_name'))
        changes['role'] = {'from': user.role.value, 'to': new_role.value}
        user.role = new_role

    if producer_fields and producer is not None:
        for name, value in producer_fields.items():
            if name in PRODUCER_PROFILE_FIELDS and value is not None:
                setattr(producer, name, value.strip())
                changes[name] = value.strip()

    user.updated_at = _now()
    db.flush()
    log_admin_action(db, admin_id=admin_id, action='USER_UPDATED', entity_type='USER', entity_id=user.id, details=changes)
    return user


def _delete_producer_data(db: Session, producer: Producer) -> dict:
    counts: dict[str, int] = {}
    wallet_ids = db.execute(select(Wallet.id).where(Wallet.producer_id == producer.id)).scalars().all()
    if wallet_ids:
        counts['walletTransactions'] = db.execute(
            delete(WalletTransaction).where(WalletTransaction.wallet_id.in_(wallet_ids))
        ).rowcount
        counts['withdrawals'] = db.execute(delete(Withdrawal).where(Withdrawal.wallet_id.in_(wallet_ids))).rowcount
        db.execute(delete(Wallet).where(Wallet.id.in_(wallet_ids)))

    product_ids = db.execute(select(Product.id).where(Product.producer_id == producer.id)).scalars().all()
    if product_ids:
        db.execute(delete(Stock).where(Stock.product_id.in_(product_ids)))
        db.execute(delete(ProductionSchedule).where(ProductionSchedule.product_id.in_(product_ids)))
        db.execute(delete(StockAlert).where(StockAlert.product_id.in_(product_ids)))
        slot_ids = select(DeliverySlot.id).where(DeliverySlot.product_id.in_(product_ids))
        counts['bookings'] = db.execute(delete(Booking).where(Booking.slot_id.in_(slot_ids))).rowcount
        db.execute(delete(DeliverySlot).where(DeliverySlot.product_id.in_(product_ids)))
        # Order lines keep their name and price snapshots.
        db.execute(update(OrderItem).where(OrderItem.product_id.in_(product_ids)).values(product_id=None))
        counts['products'] = db.execute(delete(Product).where(Product.id.in_(product_ids))).rowcount
    db.execute(delete(Producer).where(Producer.id == producer.id))
    return counts


def _delete_user_orders(db: Session, user_id: int) -> int:
    order_ids = db.execute(select(Order.id).where(Order.user_id == user_id)).scalars().all()
    if not order_ids:
        return 0
    bookings = db.execute(
        select(Booking).where(Booking.order_id.in_(order_ids), Booking.status != BookingStatus.CANCELLED)
    ).scalars().all()
    for booking in bookings:
        release_booking(db, booking)
    db.flush()
    db.execute(delete(Booking).where(Booking.order_id.in_(order_ids)))
    db.execute(delete(OrderItem).where(OrderItem.order_id.in_(order_ids)))
    db.execute(delete(Invoice).where(Invoice.order_id.in_(order_ids)))
    # Other producers' sale history outlives the order.
    db.execute(update(WalletTransaction).where(WalletTransaction.order_id.in_(order_ids)).values(order_id=None))
    return db.execute(delete(Order).where(Order.id.in_(order_ids))).rowcount


def delete_user(db: Session, *, admin_id: int, user_id: int) -> dict:
    if user_id == admin_id:
        raise ValidationFailed('Vous ne pouvez pas supprimer votre propre compte', code='SELF_DELETION')
    user, producer = get_user(db, user_id)
    email, role = user.email, user.role

    counts: dict[str, int] = {}
    if producer is not None:
        counts.update(_delete_producer_data(db, producer))

    counts['notifications'] = db.execute(delete(Notification).where(Notification.user_id == user.id)).rowcount
    counts['sessions'] = db.execute(delete(WebSession).where(WebSession.user_id == user.id)).rowcount
    db.execute(update(AuthEvent).where(AuthEvent.user_id == user.id).values(user_id=None))
    counts['orders'] = _delete_user_orders(db, user.id)
    counts['invoices'] = db.execute(delete(Invoice).where(Invoice.user_id == user.id)).rowcount
    db.execute(delete(User).where(User.id == user.id))

    logger.info('Admin %s deleted user %s (%s)', admin_id, user_id, counts)
    log_admin_action(
        db,
        admin_id=admin_id,
        action='USER_DELETED',
        entity_type='USER',
        entity_id=user_id,
        details={'email': email, 'role': role.value, **counts},
    )
    return counts


def update_producer_profile(db: Session, *, producer_id: int, fields: dict) -> Producer:
    producer = db.get(Producer, producer_id)
    if not producer:
        raise NotFound('Profil producteur non trouvé', code='PRODUCER_NOT_FOUND')
    for name, value in fields.items():
        if name not in PRODUCER_PROFILE_FIELDS or value is None:
            continue
        setattr(producer, name, value.strip())
    db.flush()
    return producer
