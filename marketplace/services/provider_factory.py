from __future__ import annotations

from functools import lru_cache

from marketplace.config import settings
from marketplace.services.mock_payment_gateway import MockPaymentGateway
from marketplace.services.stripe_payment_gateway import StripePaymentGateway


@lru_cache(maxsize=1)
def get_payment_gateway():
    provider = settings.payment_provider.strip().lower()
    if provider == 'stripe':
        return StripePaymentGateway()
    return MockPaymentGateway()
