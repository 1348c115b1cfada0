"""In-memory payment gateway for development and tests.

Keeps intents in a dict, can be told to fail the next calls with any payment
error or to behave as unreachable, and signs webhook payloads with the same
scheme Stripe uses so ``construct_event`` is exercised for real.
"""

import hashlib
import hmac
import json
import time
from typing import Dict, List, Optional
from uuid import uuid4

from ..utils.errors import InvalidPaymentRequestError, PaymentError, ProviderOutageError
from .payment_gateway import CANCELED, REQUIRES_PAYMENT_METHOD, SUCCEEDED, IntentResult, PaymentGateway


class FakeGateway(PaymentGateway):
    def __init__(self, webhook_secret: str = "whsec_fake", webhook_tolerance: int = 300) -> None:
        super().__init__(webhook_secret=webhook_secret, webhook_tolerance=webhook_tolerance)
        self.intents: Dict[str, IntentResult] = {}
        self.calls: List[dict] = []
        self.failure: Optional[PaymentError] = None
        self.unreachable = False
        self._by_idempotency_key: Dict[str, str] = {}

    def configure(self, failure: Optional[PaymentError] = None, unreachable: bool = False) -> None:
        self.failure = failure
        self.unreachable = unreachable

    def _check(self, method: str, **fields) -> None:
        self.calls.append({"method": method, **fields})
        if self.unreachable:
            raise ProviderOutageError("Payment provider is temporarily unavailable")
        if self.failure is not None:
            raise self.failure

    def create_intent(
        self,
        *,
        amount_cents: int,
        currency: str,
        metadata: Dict[str, str],
        description: str,
        receipt_email: Optional[str],
        idempotency_key: str,
    ) -> IntentResult:
        self._check("create_intent", amount_cents=amount_cents, idempotency_key=idempotency_key, metadata=metadata)
        if amount_cents <= 0:
            raise InvalidPaymentRequestError("Amount must be positive")
        existing = self._by_idempotency_key.get(idempotency_key)
        if existing:
            return self.intents[existing]
        intent_id = f"pi_fake_{uuid4().hex[:16]}"
        intent = IntentResult(
            intent_id=intent_id,
            client_secret=f"{intent_id}_secret_{uuid4().hex[:8]}",
            status=REQUIRES_PAYMENT_METHOD,
            amount=amount_cents,
            metadata=dict(metadata),
        )
        self.intents[intent_id] = intent
        self._by_idempotency_key[idempotency_key] = intent_id
        return intent

    def retrieve_intent(self, intent_id: str) -> IntentResult:
        self._check("retrieve_intent", intent_id=intent_id)
        if intent_id not in self.intents:
            raise InvalidPaymentRequestError(f"No such payment_intent: {intent_id}")
        return self.intents[intent_id]

    def cancel_intent(self, intent_id: str) -> IntentResult:
        self._check("cancel_intent", intent_id=intent_id)
        intent = self.intents.get(intent_id)
        if intent is None:
            raise InvalidPaymentRequestError(f"No such payment_intent: {intent_id}")
        if intent.status == SUCCEEDED:
            raise InvalidPaymentRequestError("A succeeded payment_intent cannot be canceled")
        return self.set_status(intent_id, CANCELED)

    def set_status(self, intent_id: str, status: str) -> IntentResult:
        """Move an intent as the provider would after client-side confirmation."""
        current = self.intents[intent_id]
        updated = IntentResult(
            intent_id=current.intent_id,
            client_secret=current.client_secret,
            status=status,
            amount=current.amount,
            metadata=current.metadata,
        )
        self.intents[intent_id] = updated
        return updated

    def sign_payload(self, payload, timestamp: Optional[int] = None) -> str:
        raw = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        ts = int(timestamp if timestamp is not None else time.time())
        signature = hmac.new(
            self.webhook_secret.encode("utf-8"), f"{ts}.{raw}".encode("utf-8"), hashlib.sha256
        ).hexdigest()
        return f"t={ts},v1={signature}"

    def build_event(self, event_type: str, intent_id: str, event_id: Optional[str] = None) -> str:
        """Serialise a provider-shaped event for ``intent_id`` (used by tests and local tooling)."""
        intent = self.intents[intent_id]
        event = {
            "id": event_id or f"evt_fake_{uuid4().hex[:16]}",
            "object": "event",
            "type": event_type,
            "created": int(time.time()),
            "data": {
                "object": {
                    "id": intent.intent_id,
                    "object": "payment_intent",
                    "status": intent.status,
                    "amount": intent.amount,
                    "metadata": intent.metadata,
                }
            },
        }
        return json.dumps(event)
