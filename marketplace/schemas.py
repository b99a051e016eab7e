from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from marketplace.models import NotificationType, OrderStatus, UserRole, WithdrawalStatus
from marketplace.services.order_metadata import DeliveryInfo


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RegisterIn(CamelModel):
    email: str = Field(max_length=320)
    password: str = Field(max_length=200)
    name: str | None = Field(default=None, max_length=200)
    phone: str | None = None
    role: Literal['CLIENT', 'PRODUCER'] = 'CLIENT'
    company_name: str | None = Field(default=None, max_length=200)


class LoginIn(CamelModel):
    email: str
    password: str


class CartItemIn(CamelModel):
    product_id: int
    quantity: Decimal = Field(gt=0)


class AddToCartIn(CamelModel):
    items: list[CartItemIn] = Field(min_length=1)


class CheckoutIn(CamelModel):
    delivery_type: Literal['pickup', 'delivery']
    delivery_info: DeliveryInfo | None = None
    payment_method: Literal['card', 'bank_transfer', 'invoice']


class StatusChangeIn(CamelModel):
    status: OrderStatus


class InvoiceCreateIn(CamelModel):
    order_id: int


class MarkPaidIn(CamelModel):
    payment_method: Literal['manual', 'bank_transfer', 'cash'] = 'manual'
    notes: str | None = Field(default=None, max_length=500)


class WithdrawIn(CamelModel):
    amount: Decimal = Field(gt=0, decimal_places=2)
    note: str | None = Field(default=None, max_length=500)


class ProcessWithdrawalIn(CamelModel):
    status: Literal['PROCESSING', 'COMPLETED', 'REJECTED']
    note: str | None = Field(default=None, max_length=1000)
    payment_reference: str | None = Field(default=None, max_length=100)

    @property
    def withdrawal_status(self) -> WithdrawalStatus:
        return WithdrawalStatus(self.status)


class ProductIn(CamelModel):
    name: str = Field(min_length=1, max_length=200)
    description: str | None = None
    price: Decimal = Field(ge=0, decimal_places=2)
    unit: str = Field(default='kg', max_length=32)
    available: bool = True
    accept_deferred: bool = False
    min_order_quantity: Decimal = Field(default=Decimal('0'), ge=0)
    initial_stock: Decimal = Field(default=Decimal('0'), ge=0)


class ProductPatchIn(CamelModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = None
    price: Decimal | None = Field(default=None, ge=0, decimal_places=2)
    unit: str | None = Field(default=None, max_length=32)
    available: bool | None = None
    accept_deferred: bool | None = None
    min_order_quantity: Decimal | None = Field(default=None, ge=0)


class StockIn(CamelModel):
    quantity: Decimal = Field(ge=0)


class StockAlertIn(CamelModel):
    threshold: Decimal = Field(ge=0)
    percentage: bool = False
    email_alert: bool = True


class ScheduleIn(CamelModel):
    on: date | None = Field(default=None, alias='date')
    quantity: Decimal | None = None
    note: str | None = Field(default=None, max_length=500)
    is_public: bool = True


class SlotIn(CamelModel):
    product_id: int
    date: datetime
    max_capacity: Decimal = Field(gt=0)


class BookingIn(CamelModel):
    quantity: Decimal = Field(gt=0)


class NotificationIn(CamelModel):
    user_id: int
    type: NotificationType = NotificationType.SYSTEM
    title: str = Field(min_length=1, max_length=200)
    message: str = Field(min_length=1)
    link: str | None = Field(default=None, max_length=500)
    data: dict | None = None


class ProducerProfileIn(CamelModel):
    company_name: str | None = Field(default=None, max_length=200)
    description: str | None = None
    address: str | None = None
    bank_name: str | None = None
    bank_account_name: str | None = None
    iban: str | None = Field(default=None, max_length=42)
    bic: str | None = Field(default=None, max_length=11)


class UserPatchIn(CamelModel):
    email: str | None = Field(default=None, max_length=320)
    name: str | None = Field(default=None, max_length=200)
    phone: str | None = None
    role: UserRole | None = None
    active: bool | None = None
    producer: ProducerProfileIn | None = None


class AdminNoteIn(CamelModel):
    model_config = ConfigDict(extra='forbid')

    note: str = Field(min_length=1, max_length=1000)
