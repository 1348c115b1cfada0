"""Payment provider adapter.

``PaymentGateway`` is the synchronous contract the checkout core talks to:
create/retrieve/cancel a payment intent and verify inbound webhook payloads.
``StripeGateway`` backs it with the stripe SDK and translates provider
exceptions into the payment error taxonomy (card-declined, invalid-request,
provider-outage, auth-failure).
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Optional

import stripe

from ..utils.errors import (
    CardDeclinedError,
    InvalidPaymentRequestError,
    PaymentError,
    ProviderAuthError,
    ProviderOutageError,
    WebhookSignatureError,
)


SUCCEEDED = "succeeded"
PROCESSING = "processing"
CANCELED = "canceled"
REQUIRES_PAYMENT_METHOD = "requires_payment_method"


@dataclass(frozen=True)
class IntentResult:
    intent_id: str
    client_secret: Optional[str]
    status: str
    amount: Optional[int] = None
    metadata: Dict[str, str] = field(default_factory=dict)


class PaymentGateway(ABC):
    """Abstract payment gateway interface."""

    def __init__(self, webhook_secret: str = "", webhook_tolerance: int = 300) -> None:
        self.webhook_secret = webhook_secret
        self.webhook_tolerance = webhook_tolerance

    @abstractmethod
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
        ...

    @abstractmethod
    def retrieve_intent(self, intent_id: str) -> IntentResult:
        ...

    @abstractmethod
    def cancel_intent(self, intent_id: str) -> IntentResult:
        ...

    def construct_event(self, payload, signature: Optional[str]) -> Dict:
        """Verify the signature header against the raw payload and return the event as a dict."""
        if not signature:
            raise WebhookSignatureError("Missing webhook signature header")
        if not self.webhook_secret:
            raise ProviderAuthError("Webhook signing secret is not configured")
        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret, tolerance=self.webhook_tolerance)
        except stripe.SignatureVerificationError as exc:
            raise WebhookSignatureError(f"Webhook signature verification failed: {exc}") from exc
        except ValueError as exc:
            raise WebhookSignatureError(f"Webhook payload is not valid JSON: {exc}") from exc
        raw = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        return json.loads(raw)


def translate_stripe_error(exc: Exception) -> PaymentError:
    message = getattr(exc, "user_message", None) or str(exc) or exc.__class__.__name__
    details = {"provider_error": exc.__class__.__name__}
    code = getattr(exc, "code", None)
    if code:
        details["provider_code"] = code
    if isinstance(exc, stripe.CardError):
        return CardDeclinedError(message, details)
    if isinstance(exc, stripe.InvalidRequestError):
        return InvalidPaymentRequestError(message, details)
    if isinstance(exc, (stripe.AuthenticationError, stripe.PermissionError)):
        return ProviderAuthError("Payment provider rejected our credentials", details)
    if isinstance(exc, (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)):
        return ProviderOutageError("Payment provider is temporarily unavailable", details)
    return ProviderOutageError(message, details)


def _to_result(intent) -> IntentResult:
    return IntentResult(
        intent_id=intent.id,
        client_secret=getattr(intent, "client_secret", None),
        status=intent.status,
        amount=getattr(intent, "amount", None),
        metadata=dict(getattr(intent, "metadata", None) or {}),
    )


class StripeGateway(PaymentGateway):
    """Stripe PaymentIntents adapter."""

    def __init__(self, api_key: str, webhook_secret: str = "", webhook_tolerance: int = 300) -> None:
        super().__init__(webhook_secret=webhook_secret, webhook_tolerance=webhook_tolerance)
        self.api_key = api_key

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
        params = {
            "amount": amount_cents,
            "currency": currency.lower(),
            "metadata": metadata,
            "description": description,
            "automatic_payment_methods": {"enabled": True},
        }
        if receipt_email:
            params["receipt_email"] = receipt_email
        try:
            intent = stripe.PaymentIntent.create(api_key=self.api_key, idempotency_key=idempotency_key, **params)
        except stripe.StripeError as exc:
            raise translate_stripe_error(exc) from exc
        return _to_result(intent)

    def retrieve_intent(self, intent_id: str) -> IntentResult:
        try:
            intent = stripe.PaymentIntent.retrieve(intent_id, api_key=self.api_key)
        except stripe.StripeError as exc:
            raise translate_stripe_error(exc) from exc
        return _to_result(intent)

    def cancel_intent(self, intent_id: str) -> IntentResult:
        try:
            intent = stripe.PaymentIntent.cancel(intent_id, api_key=self.api_key)
        except stripe.StripeError as exc:
            raise translate_stripe_error(exc) from exc
        return _to_result(intent)


def build_gateway(config) -> Optional[PaymentGateway]:
    """Return the gateway selected by configuration, or None when payments are not configured."""
    if config.payment_provider == "fake":
        from .fake_gateway import FakeGateway

        return FakeGateway(
            webhook_secret=config.stripe_webhook_secret or "whsec_fake",
            webhook_tolerance=config.webhook_tolerance_seconds,
        )
    if not config.stripe_secret_key:
        return None
    return StripeGateway(
        api_key=config.stripe_secret_key,
        webhook_secret=config.stripe_webhook_secret,
        webhook_tolerance=config.webhook_tolerance_seconds,
    )
