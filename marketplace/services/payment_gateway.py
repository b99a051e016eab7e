from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

REUSABLE_INTENT_STATUSES = frozenset({'requires_payment_method', 'requires_confirmation', 'requires_action'})


@dataclass(frozen=True)
class PaymentIntent:
    id: str
    client_secret: str | None
    status: str
    amount: int
    currency: str

    @property
    def reusable(self) -> bool:
        return self.status in REUSABLE_INTENT_STATUSES


class PaymentGateway(Protocol):
    def create_intent(
        self,
        *,
        amount: int,
        currency: str,
        metadata: dict[str, str],
        description: str,
        receipt_email: str | None,
    ) -> PaymentIntent: ...

    def retrieve_intent(self, intent_id: str) -> PaymentIntent | None: ...
