"""Typed view over the JSON metadata stored on each order.

Delivery and payment choices live in ``orders.metadata``. Writers go through
:func:`store_order_metadata` / :func:`update_order_metadata`, which validate the
payload; readers use :func:`load_order_metadata`, which also accepts the legacy
string-encoded blobs. A field that fails validation is dropped on its own so
the rest of the blob survives the next write; anything unreadable as a whole
degrades to an empty object.
"""

from __future__ import annotations

import copy
import json
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from marketplace.errors import ValidationFailed
from marketplace.models import Order

logger = logging.getLogger(__name__)

DeliveryType = Literal['pickup', 'delivery']
PaymentMethod = Literal['card', 'bank_transfer', 'invoice', 'manual', 'cash']
PaymentStatus = Literal['PENDING', 'PAID', 'FAILED']


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra='allow', coerce_numbers_to_str=True)


class DeliveryInfo(_CamelModel):
    full_name: str | None = Field(default=None, max_length=200)
    company: str | None = Field(default=None, max_length=200)
    address: str | None = Field(default=None, max_length=300)
    postal_code: str | None = Field(default=None, max_length=20)
    city: str | None = Field(default=None, max_length=100)
    phone: str | None = Field(default=None, max_length=32)
    notes: str | None = Field(default=None, max_length=500)


class FeeBreakdown(_CamelModel):
    subtotal: Decimal
    delivery_fee: Decimal
    total: Decimal


class AdminNote(_CamelModel):
    id: str
    content: str = Field(min_length=1, max_length=1000)
    admin_id: int | None = None
    admin_name: str | None = None
    created_at: datetime


class OrderMetadata(_CamelModel):
    delivery_type: DeliveryType | None = None
    delivery_info: DeliveryInfo | None = None
    payment_method: PaymentMethod | None = None
    payment_status: PaymentStatus | None = None
    fees: FeeBreakdown | None = None
    payment_intent_id: str | None = None
    paid_at: datetime | None = None
    marked_paid_by: int | None = None
    payment_notes: str | None = Field(default=None, max_length=500)
    admin_notes: list[AdminNote] | None = None


def load_order_metadata(raw: Any) -> OrderMetadata:
    if raw is None or raw == '':
        return OrderMetadata()
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            logger.warning('Unreadable order metadata string, ignoring it')
            return OrderMetadata()
    if not isinstance(raw, dict):
        logger.warning('Order metadata is a %s, expected an object', type(raw).__name__)
        return OrderMetadata()
    try:
        return OrderMetadata.model_validate(raw)
    except ValidationError as exc:
        errors = exc.errors(include_url=False)
    logger.warning('Dropping invalid order metadata fields: %s', errors)
    pruned = copy.deepcopy(raw)
    for error in errors:
        _drop_path(pruned, error['loc'])
    try:
        return OrderMetadata.model_validate(pruned)
    except ValidationError:
        logger.warning('Invalid order metadata ignored')
        return OrderMetadata()


def _drop_path(data: dict, loc: tuple) -> None:
    parent, key, node = None, None, data
    for part in loc:
        if not isinstance(node, dict) or part not in node:
            break
        parent, key, node = node, part, node[part]
    if parent is not None:
        del parent[key]


def dump_order_metadata(metadata: OrderMetadata) -> dict:
    return metadata.model_dump(mode='json', by_alias=True, exclude_none=True)


def store_order_metadata(order: Order, metadata: OrderMetadata) -> OrderMetadata:
    if metadata.delivery_type == 'delivery' and metadata.delivery_info is None:
        raise ValidationFailed('Informations de livraison requises', code='MISSING_DELIVERY_INFO')
    if metadata.delivery_type == 'pickup' and metadata.delivery_info is not None:
        metadata = metadata.model_copy(update={'delivery_info': None})
    # Round-trip through validation so model_copy() results are checked too.
    validated = OrderMetadata.model_validate(dump_order_metadata(metadata))
    order.meta = dump_order_metadata(validated)
    return validated


def update_order_metadata(order: Order, **changes: Any) -> OrderMetadata:
    current = load_order_metadata(order.meta)
    merged = {**current.model_dump(exclude_none=True), **changes}
    return store_order_metadata(order, OrderMetadata.model_validate(merged))
