from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
PK = BigInteger().with_variant(Integer, 'sqlite')
Money = Numeric(12, 2)
Quantity = Numeric(12, 3)


class Base(DeclarativeBase):
    pass


class UserRole(str, Enum):
    CLIENT = 'CLIENT'
    PRODUCER = 'PRODUCER'
    ADMIN = 'ADMIN'


class OrderStatus(str, Enum):
    DRAFT = 'DRAFT'
    PENDING = 'PENDING'
    CONFIRMED = 'CONFIRMED'
    SHIPPED = 'SHIPPED'
    DELIVERED = 'DELIVERED'
    CANCELLED = 'CANCELLED'
    INVOICE_PENDING = 'INVOICE_PENDING'
    INVOICE_PAID = 'INVOICE_PAID'
    INVOICE_OVERDUE = 'INVOICE_OVERDUE'


class BookingStatus(str, Enum):
    TEMPORARY = 'TEMPORARY'
    CONFIRMED = 'CONFIRMED'
    CANCELLED = 'CANCELLED'


class InvoiceStatus(str, Enum):
    PENDING = 'PENDING'
    PAID = 'PAID'
    OVERDUE = 'OVERDUE'


class WalletTransactionType(str, Enum):
    SALE = 'SALE'
    WITHDRAWAL = 'WITHDRAWAL'


class WalletTransactionStatus(str, Enum):
    PENDING = 'PENDING'
    COMPLETED = 'COMPLETED'
    CANCELLED = 'CANCELLED'


class WithdrawalStatus(str, Enum):
    PENDING = 'PENDING'
    PROCESSING = 'PROCESSING'
    COMPLETED = 'COMPLETED'
    REJECTED = 'REJECTED'


class NotificationType(str, Enum):
    NEW_ORDER = 'NEW_ORDER'
    ORDER_STATUS_CHANGED = 'ORDER_STATUS_CHANGED'
    LOW_STOCK = 'LOW_STOCK'
    INVOICE_CREATED = 'INVOICE_CREATED'
    INVOICE_PAID = 'INVOICE_PAID'
    INVOICE_OVERDUE = 'INVOICE_OVERDUE'
    WITHDRAWAL_REQUESTED = 'WITHDRAWAL_REQUESTED'
    WITHDRAWAL_COMPLETED = 'WITHDRAWAL_COMPLETED'
    WITHDRAWAL_REJECTED = 'WITHDRAWAL_REJECTED'
    SYSTEM = 'SYSTEM'


class User(Base):
    __tablename__ = 'users'

    id: Mapped[int] = mapped_column(PK, primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    name: Mapped[str | None] = mapped_column(Text)
    phone: Mapped[str | None] = mapped_column(String(32))
    password_hash: Mapped[str] = mapped_column(Text, nullable=False)
    role: Mapped[UserRole] = mapped_column(
        SQLEnum(UserRole, name='user_role'), nullable=False, default=UserRole.CLIENT, server_default='CLIENT'
    )
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Producer(Base):
    __tablename__ = 'producers'

    id: Mapped[int] = mapped_column(PK, primary_key=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('users.id'), nullable=False, unique=True)
    company_name: Mapped[str] = mapped_column(Text, nullable=False, default='', server_default='')
    description: Mapped[str | None] = mapped_column(Text)
    address: Mapped[str | None] = mapped_column(Text)
    bank_name: Mapped[str | None] = mapped_column(Text)
    bank_account_name: Mapped[str | None] = mapped_column(Text)
    iban: Mapped[str | None] = mapped_column(String(34))
    bic: Mapped[str | None] = mapped_column(String(11))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Product(Base):
    __tablename__ = 'products'
    __table_args__ = (CheckConstraint('price >= 0', name='products_price_non_negative_ck'),)

    id: Mapped[int] = mapped_column(PK, primary_key=True)
    producer_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('producers.id'), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    unit: Mapped[str] = mapped_column(String(32), nullable=False, default='kg', server_default='kg')
    available: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    accept_deferred: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    min_order_quantity: Mapped[Decimal] = mapped_column(Quantity, nullable=False, default=Decimal('0'), server_default='0')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Stock(Base):
    __tablename__ = 'stocks'
    __table_args__ = (CheckConstraint('quantity >= 0', name='stocks_quantity_non_negative_ck'),)

    product_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('products.id'), primary_key=True)
    quantity: Mapped[Decimal] = mapped_column(Quantity, nullable=False, default=Decimal('0'), server_default='0')
    peak_quantity: Mapped[Decimal] = mapped_column(Quantity, nullable=False, default=Decimal('0'), server_default='0')
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class StockAlert(Base):
    __tablename__ = 'stock_alerts'

    id: Mapped[int] = mapped_column(PK, primary_key=True)
    product_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('products.id'), nullable=False, unique=True)
    threshold: Mapped[Decimal] = mapped_column(Quantity, nullable=False, default=Decimal('0'), server_default='0')
    percentage: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    email_alert: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class ProductionSchedule(Base):
    __tablename__ = 'production_schedules'

    id: Mapped[int] = mapped_column(PK, primary_key=True)
    product_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('products.id'), nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Quantity, nullable=False)
    note: Mapped[str | None] = mapped_column(Text)
    is_public: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class DeliverySlot(Base):
    __tablename__ = 'delivery_slots'
    __table_args__ = (CheckConstraint('reserved >= 0', name='delivery_slots_reserved_non_negative_ck'),)

    id: Mapped[int] = mapped_column(PK, primary_key=True)
    product_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('products.id'), nullable=False)
    date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    max_capacity: Mapped[Decimal] = mapped_column(Quantity, nullable=False)
    reserved: Mapped[Decimal] = mapped_column(Quantity, nullable=False, default=Decimal('0'), server_default='0')
    is_available: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Order(Base):
    __tablename__ = 'orders'

    id: Mapped[int] = mapped_column(PK, primary_key=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('users.id'), nullable=False)
    status: Mapped[OrderStatus] = mapped_column(
        SQLEnum(OrderStatus, name='order_status'), nullable=False, default=OrderStatus.DRAFT, server_default='DRAFT'
    )
    total: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal('0'), server_default='0')
    platform_fee: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal('0'), server_default='0')
    meta: Mapped[dict] = mapped_column('metadata', JSON, nullable=False, default=dict, server_default='{}')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class OrderItem(Base):
    __tablename__ = 'order_items'
    __table_args__ = (CheckConstraint('quantity > 0', name='order_items_quantity_positive_ck'),)

    id: Mapped[int] = mapped_column(PK, primary_key=True)
    order_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('orders.id', ondelete='CASCADE'), nullable=False)
    product_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('products.id', ondelete='SET NULL'))
    product_name: Mapped[str] = mapped_column(Text, nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Quantity, nullable=False)
    price: Mapped[Decimal] = mapped_column(Money, nullable=False)


class Booking(Base):
    __tablename__ = 'bookings'
    __table_args__ = (CheckConstraint('quantity > 0', name='bookings_quantity_positive_ck'),)

    id: Mapped[int] = mapped_column(PK, primary_key=True)
    slot_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('delivery_slots.id'), nullable=False)
    order_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('orders.id', ondelete='CASCADE'))
    quantity: Mapped[Decimal] = mapped_column(Quantity, nullable=False)
    price: Mapped[Decimal | None] = mapped_column(Money)
    status: Mapped[BookingStatus] = mapped_column(
        SQLEnum(BookingStatus, name='booking_status'),
        nullable=False,
        default=BookingStatus.TEMPORARY,
        server_default='TEMPORARY',
    )
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Invoice(Base):
    __tablename__ = 'invoices'

    id: Mapped[int] = mapped_column(PK, primary_key=True)
    order_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('orders.id'), nullable=False, unique=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('users.id'), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    status: Mapped[InvoiceStatus] = mapped_column(
        SQLEnum(InvoiceStatus, name='invoice_status'), nullable=False, default=InvoiceStatus.PENDING, server_default='PENDING'
    )
    due_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    payment_method: Mapped[str | None] = mapped_column(String(32))
    meta: Mapped[dict | None] = mapped_column('metadata', JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Wallet(Base):
    __tablename__ = 'wallets'
    __table_args__ = (
        CheckConstraint('balance >= 0', name='wallets_balance_non_negative_ck'),
        CheckConstraint('pending_withdrawals >= 0', name='wallets_pending_withdrawals_non_negative_ck'),
    )

    id: Mapped[int] = mapped_column(PK, primary_key=True)
    producer_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('producers.id'), nullable=False, unique=True)
    balance: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal('0'), server_default='0')
    pending_balance: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal('0'), server_default='0')
    total_earned: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal('0'), server_default='0')
    total_withdrawn: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal('0'), server_default='0')
    pending_withdrawals: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Withdrawal(Base):
    __tablename__ = 'withdrawals'

    id: Mapped[int] = mapped_column(PK, primary_key=True)
    wallet_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('wallets.id'), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    status: Mapped[WithdrawalStatus] = mapped_column(
        SQLEnum(WithdrawalStatus, name='withdrawal_status'),
        nullable=False,
        default=WithdrawalStatus.PENDING,
        server_default='PENDING',
    )
    bank_details: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict, server_default='{}')
    reference: Mapped[str | None] = mapped_column(String(100))
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    processor_note: Mapped[str | None] = mapped_column(Text)


class WalletTransaction(Base):
    __tablename__ = 'wallet_transactions'
    __table_args__ = (
        UniqueConstraint('wallet_id', 'order_id', 'type', name='wallet_transactions_wallet_order_type_uniq'),
    )

    id: Mapped[int] = mapped_column(PK, primary_key=True)
    wallet_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('wallets.id'), nullable=False)
    order_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('orders.id', ondelete='SET NULL'))
    withdrawal_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('withdrawals.id'))
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    type: Mapped[WalletTransactionType] = mapped_column(
        SQLEnum(WalletTransactionType, name='wallet_transaction_type'), nullable=False
    )
    status: Mapped[WalletTransactionStatus] = mapped_column(
        SQLEnum(WalletTransactionStatus, name='wallet_transaction_status'),
        nullable=False,
        default=WalletTransactionStatus.PENDING,
        server_default='PENDING',
    )
    description: Mapped[str | None] = mapped_column(Text)
    meta: Mapped[dict] = mapped_column('metadata', JSON, nullable=False, default=dict, server_default='{}')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Notification(Base):
    __tablename__ = 'notifications'

    id: Mapped[int] = mapped_column(PK, primary_key=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('users.id'), nullable=False)
    type: Mapped[NotificationType] = mapped_column(SQLEnum(NotificationType, name='notification_type'), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    link: Mapped[str | None] = mapped_column(String(500))
    data: Mapped[dict | None] = mapped_column(JSON)
    read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class AdminLog(Base):
    __tablename__ = 'admin_logs'

    id: Mapped[int] = mapped_column(PK, primary_key=True)
    admin_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('users.id', ondelete='SET NULL'))
    action: Mapped[str] = mapped_column(Text, nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[int | None] = mapped_column(BigInteger)
    details: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict, server_default='{}')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class AuthEvent(Base):
    __tablename__ = 'auth_events'

    id: Mapped[int] = mapped_column(PK, primary_key=True)
    attempted_email: Mapped[str] = mapped_column(String(320), nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    failure_reason: Mapped[str | None] = mapped_column(Text)
    user_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('users.id', ondelete='SET NULL'))
    ip: Mapped[str | None] = mapped_column(String(64))
    user_agent: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class WebSession(Base):
    __tablename__ = 'web_sessions'
    __table_args__ = (
        UniqueConstraint('session_token', name='web_sessions_session_token_key'),
    )

    id: Mapped[int] = mapped_column(PK, primary_key=True)
    session_token: Mapped[str] = mapped_column(String(128), nullable=False)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('users.id'), nullable=False)
    ip: Mapped[str | None] = mapped_column(String(64))
    user_agent: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
