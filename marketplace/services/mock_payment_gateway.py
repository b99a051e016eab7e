from __future__ import annotations

import secrets

from marketplace.services.payment_gateway import PaymentIntent


class MockPaymentGateway:
    """In-process stand-in used for local runs and tests."""

    def __init__(self) -> None:
        self.intents: dict[str, PaymentIntent] = {}
        self.created: list[dict] = []

    def create_intent(
        self,
        *,
        amount: int,
        currency: str,
        metadata: dict[str, str],
        description: str,
        receipt_email: str | None,
    ) -> PaymentIntent:
        intent_id = f'pi_mock_{secrets.token_hex(8)}'
        intent = PaymentIntent(
            id=intent_id,
            client_secret=f'{intent_id}_secret_{secrets.token_hex(8)}',
            status='requires_payment_method',
            amount=amount,
            currency=currency,
        )
        self.intents[intent_id] = intent
        self.created.append({'amount': amount, 'currency': currency, 'metadata': metadata, 'description': description})
        return intent

    def retrieve_intent(self, intent_id: str) -> PaymentIntent | None:
        return self.intents.get(intent_id)

    def set_status(self, intent_id: str, status: str) -> None:
        intent = self.intents[intent_id]
        self.intents[intent_id] = PaymentIntent(
            id=intent.id,
            client_secret=intent.client_secret,
            status=status,
            amount=intent.amount,
            currency=intent.currency,
        )
