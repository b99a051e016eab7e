from __future__ import annotations

import logging

import stripe

from marketplace.config import settings
from marketplace.errors import PaymentGatewayError
from marketplace.services.payment_gateway import PaymentIntent

logger = logging.getLogger(__name__)


def _to_intent(obj) -> PaymentIntent:
    return PaymentIntent(
        id=obj.id,
        client_secret=getattr(obj, 'client_secret', None),
        status=obj.status,
        amount=int(obj.amount),
        currency=obj.currency,
    )


class StripePaymentGateway:
    def __init__(self) -> None:
        if not settings.stripe_secret_key:
            raise ValueError('STRIPE_SECRET_KEY is required when PAYMENT_PROVIDER=stripe')
        self.api_key = settings.stripe_secret_key

    def create_intent(
        self,
        *,
        amount: int,
        currency: str,
        metadata: dict[str, str],
        description: str,
        receipt_email: str | None,
    ) -> PaymentIntent:
        params = {
            'amount': amount,
            'currency': currency,
            'automatic_payment_methods': {'enabled': True},
            'metadata': metadata,
            'description': description,
        }
        if receipt_email:
            params['receipt_email'] = receipt_email
        try:
            intent = stripe.PaymentIntent.create(api_key=self.api_key, **params)
        except stripe.StripeError as exc:
            logger.error('Stripe refused payment intent for %s %s: %s', amount, currency, exc.user_message or exc)
            raise PaymentGatewayError('Erreur lors de la création du paiement') from exc
        return _to_intent(intent)

    def retrieve_intent(self, intent_id: str) -> PaymentIntent | None:
        try:
            intent = stripe.PaymentIntent.retrieve(intent_id, api_key=self.api_key)
        except stripe.InvalidRequestError:
            logger.warning('Stored payment intent %s is unknown to Stripe', intent_id)
            return None
        except stripe.StripeError as exc:
            raise PaymentGatewayError('Erreur lors de la récupération du paiement') from exc
        return _to_intent(intent)
