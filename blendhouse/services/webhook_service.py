"""Inbound payment-provider events.

Deliveries are deduplicated on the provider's event id: the event row is
recorded first, then claimed (``processed`` flipped false -> true) in the same
transaction that applies the order transition, so the claim and its effect
commit or roll back together. Handler failures are recorded on the event row
and still acknowledged to the provider.
"""

from typing import Dict, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..db.session import DEFAULT_MAX_WAIT_MS, DEFAULT_TIMEOUT_MS, get_session, transaction
from ..models.order import CANCELLED, PAID, PAYMENT_FAILED, PAYMENT_PROCESSING, Order
from ..models.webhook_event import WebhookEvent
from ..utils.dto import to_webhook_event_dto
from ..utils.errors import (
    PaymentsUnavailableError,
    ValidationError,
    WebhookProcessingError,
    WebhookSignatureError,
)
from ..utils.pagination import normalize_paging, paging_meta
from ..utils.timeutil import utcnow
from . import order_lifecycle
from .logging import log_event
from .payment_gateway import PaymentGateway


EVENT_TO_ORDER_STATUS = {
    "payment_intent.processing": PAYMENT_PROCESSING,
    "payment_intent.succeeded": PAID,
    "payment_intent.payment_failed": PAYMENT_FAILED,
    "payment_intent.canceled": CANCELLED,
}

WEBHOOK_ACTOR = "webhook"


class WebhookService:
    def __init__(
        self,
        gateway: Optional[PaymentGateway],
        session_factory=get_session,
        transaction_factory=transaction,
        *,
        max_wait_ms: int = DEFAULT_MAX_WAIT_MS,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
    ):
        self._gateway = gateway
        self._session_factory = session_factory
        self._transaction = transaction_factory
        self._max_wait_ms = max_wait_ms
        self._timeout_ms = timeout_ms

    def receive_webhook(self, payload, signature: Optional[str]) -> Dict:
        """Verify, record and apply one delivery; returns the acknowledgement body."""
        if self._gateway is None:
            raise PaymentsUnavailableError("Payments are not configured")
        try:
            event = self._gateway.construct_event(payload, signature)
        except WebhookSignatureError as exc:
            log_event("warning", "webhook.signature_invalid", error=exc.message)
            raise

        event_id = event.get("id")
        event_type = event.get("type") or "unknown"
        if not event_id:
            raise ValidationError("Webhook event has no id")
        log_event("info", "webhook.received", event_id=event_id, event_type=event_type)

        if self._record(event_id, event_type, event):
            log_event("info", "webhook.duplicate", event_id=event_id, event_type=event_type)
            return {"received": True, "duplicate": True}

        try:
            with self._transaction(max_wait_ms=self._max_wait_ms, timeout_ms=self._timeout_ms) as session:
                claimed = session.execute(
                    update(WebhookEvent)
                    .where(WebhookEvent.event_id == event_id, WebhookEvent.processed.is_(False))
                    .values(
                        processed=True,
                        processed_at=utcnow(),
                        error=None,
                        attempts=WebhookEvent.attempts + 1,
                    )
                ).rowcount
                if claimed != 1:
                    outcome = None
                else:
                    outcome = self._apply(session, event_id, event_type, event)
        except Exception as exc:  # recorded on the event row and acknowledged below
            failure = WebhookProcessingError(
                f"{exc.__class__.__name__}: {exc}",
                {"event_id": event_id, "event_type": event_type, "cause": exc.__class__.__name__},
            )
            if not self._record_failure(event_id, failure):
                # a concurrent delivery applied the event; this attempt lost the race
                log_event("info", "webhook.duplicate", event_id=event_id, event_type=event_type)
                return {"received": True, "duplicate": True}
            log_event(
                "error",
                "webhook.failed",
                event_id=event_id,
                event_type=event_type,
                error=failure.code,
                message=failure.message,
            )
            return {"received": True, "processed": False}

        if outcome is None:
            log_event("info", "webhook.duplicate", event_id=event_id, event_type=event_type)
            return {"received": True, "duplicate": True}
        log_event("info", "webhook.processed", event_id=event_id, event_type=event_type, **outcome)
        return {"received": True, "processed": True}

    def _record(self, event_id: str, event_type: str, event: Dict) -> bool:
        """Insert the event row if new; returns True when it was already processed."""
        try:
            with self._session_factory() as session:
                existing = session.get(WebhookEvent, event_id)
                if existing is not None:
                    return bool(existing.processed)
                session.add(WebhookEvent(event_id=event_id, event_type=event_type, payload=event))
        except IntegrityError:
            # a concurrent delivery inserted the row first; the claim decides who applies it
            return False
        return False

    def _apply(self, session, event_id: str, event_type: str, event: Dict) -> Dict:
        target = EVENT_TO_ORDER_STATUS.get(event_type)
        if target is None:
            return {"result": "unhandled_type"}

        obj = (event.get("data") or {}).get("object") or {}
        intent_id = obj.get("id")
        order_id = (obj.get("metadata") or {}).get("order_id")

        q = session.query(Order)
        if order_id:
            q = q.filter(Order.id == order_id)
        elif intent_id:
            q = q.filter(Order.payment_intent_id == intent_id)
        else:
            log_event("warning", "webhook.ignored", event_id=event_id, reason="no_order_reference")
            return {"result": "ignored"}
        order = q.with_for_update().first()
        if order is None:
            log_event(
                "warning",
                "webhook.ignored",
                event_id=event_id,
                reason="order_not_found",
                order_id=order_id,
                intent_id=intent_id,
            )
            return {"result": "ignored"}
        if intent_id and order.payment_intent_id != intent_id:
            log_event(
                "info",
                "webhook.ignored",
                event_id=event_id,
                reason="stale_intent",
                order_id=order.id,
                intent_id=intent_id,
                current_intent_id=order.payment_intent_id,
            )
            return {"result": "ignored", "order_id": order.id}

        if obj.get("status"):
            order.payment_status = obj["status"]
        notes = f"Webhook {event_type}"
        failure = (obj.get("last_payment_error") or {}).get("message")
        if target == PAYMENT_FAILED and failure:
            notes = f"{notes}: {failure}"
        entered = order_lifecycle.apply_payment_outcome(session, order, target, changed_by=WEBHOOK_ACTOR, notes=notes)
        return {"result": "applied", "order_id": order.id, "entered": entered}

    def _record_failure(self, event_id: str, failure: WebhookProcessingError) -> bool:
        """Store the failure on a still-unprocessed event row; returns False once the event was applied."""
        with self._session_factory() as session:
            return (
                session.execute(
                    update(WebhookEvent)
                    .where(WebhookEvent.event_id == event_id, WebhookEvent.processed.is_(False))
                    .values(error=failure.message[:2000], attempts=WebhookEvent.attempts + 1)
                ).rowcount
                == 1
            )

    def list_failed_events(self, *, page: int = 1, page_size: int = 20) -> Dict:
        p, ps = normalize_paging(page, page_size)
        with self._session_factory() as session:
            q = session.query(WebhookEvent).filter(
                WebhookEvent.processed.is_(False), WebhookEvent.error.isnot(None)
            )
            total = q.count()
            rows = q.order_by(WebhookEvent.created_at.desc()).offset((p - 1) * ps).limit(ps).all()
            return {"events": [to_webhook_event_dto(r) for r in rows], "pagination": paging_meta(p, ps, total)}
