from typing import Dict, Optional

from ..db.session import DEFAULT_MAX_WAIT_MS, DEFAULT_TIMEOUT_MS, get_session, transaction
from ..models.order import (
    CANCELLED,
    COMPLETED,
    PAYABLE_STATUSES,
    PAYMENT_FAILED,
    PAYMENT_PROCESSING,
    PENDING,
    Order,
)
from ..utils.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PaymentsUnavailableError,
    ProviderOutageError,
    ValidationError,
)
from ..utils.identity import Identity
from . import order_lifecycle
from .logging import log_event
from .payment_gateway import CANCELED, SUCCEEDED, PaymentGateway
from .pricing_service import to_cents


NO_PAYMENT = "no_payment"


class PaymentService:
    """Creates payment intents for orders and keeps order payment state in sync with the provider.

    Provider calls never run inside a database transaction: state is read,
    the provider is called, then the result is written back under a row lock.
    """

    def __init__(
        self,
        gateway: Optional[PaymentGateway],
        session_factory=get_session,
        transaction_factory=transaction,
        *,
        currency: str = "USD",
        max_wait_ms: int = DEFAULT_MAX_WAIT_MS,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
    ):
        self._gateway = gateway
        self._session_factory = session_factory
        self._transaction = transaction_factory
        self._currency = currency
        self._max_wait_ms = max_wait_ms
        self._timeout_ms = timeout_ms

    def _tx(self):
        return self._transaction(max_wait_ms=self._max_wait_ms, timeout_ms=self._timeout_ms)

    def _require_gateway(self) -> PaymentGateway:
        if self._gateway is None:
            raise PaymentsUnavailableError("Payments are not configured")
        return self._gateway

    @staticmethod
    def _owner(identity: Optional[Identity]) -> Dict:
        if identity is None or identity.is_admin:
            return {}
        if not identity.user_id and not identity.session_id:
            raise ValidationError("Either authentication or a guest session id is required")
        return {"user_id": identity.user_id, "session_id": identity.session_id}

    def _snapshot(self, order_id: str, owner: Dict) -> Dict:
        with self._session_factory() as session:
            q = session.query(Order).filter(Order.id == order_id)
            if owner.get("user_id"):
                q = q.filter(Order.user_id == owner["user_id"])
            elif owner.get("session_id"):
                q = q.filter(Order.session_id == owner["session_id"])
            order = q.first()
            if order is None:
                raise NotFoundError("Order not found", {"order_id": order_id})
            return {
                "id": order.id,
                "order_number": order.order_number,
                "status": order.status,
                "total_amount": order.total_amount,
                "currency": order.currency,
                "guest_email": order.guest_email,
                "payment_intent_id": order.payment_intent_id,
                "payment_status": order.payment_status,
                "payment_attempts": order.payment_attempts or 0,
            }

    @staticmethod
    def _ensure_payable(status: str) -> None:
        if status in (CANCELLED, COMPLETED):
            raise ConflictError(f"Order is {status} and cannot be paid", {"status": status})
        if status not in PAYABLE_STATUSES:
            raise ConflictError("Order has already been paid", {"status": status})

    def create_payment_intent(self, order_id: str, identity: Optional[Identity] = None) -> Dict:
        """Return a client secret for paying ``order_id``, reusing the order's live intent when it has one."""
        gateway = self._require_gateway()
        owner = self._owner(identity)
        snap = self._snapshot(order_id, owner)
        self._ensure_payable(snap["status"])

        if snap["payment_intent_id"]:
            intent = gateway.retrieve_intent(snap["payment_intent_id"])
            if intent.status == SUCCEEDED:
                self._sync(order_id, intent)
                raise ConflictError("Order has already been paid", {"payment_intent_id": intent.intent_id})
            if intent.status != CANCELED and intent.client_secret:
                self._sync(order_id, intent)
                log_event("info", "payment.intent_reused", order_id=order_id, intent_id=intent.intent_id)
                return self._intent_payload(snap, intent)

        attempt = snap["payment_attempts"] + 1
        intent = gateway.create_intent(
            amount_cents=to_cents(snap["total_amount"]),
            currency=snap["currency"] or self._currency,
            metadata={"order_id": snap["id"], "order_number": snap["order_number"]},
            description=f"Order {snap['order_number']}",
            receipt_email=snap["guest_email"],
            idempotency_key=f"order-{snap['id']}-attempt-{attempt}",
        )

        with self._tx() as session:
            order = order_lifecycle.lock_order(session, order_id, **owner)
            if order.payment_intent_id == intent.intent_id:
                # a concurrent call for the same attempt already recorded this intent
                return self._intent_payload(snap, intent)
            self._ensure_payable(order.status)
            order.payment_intent_id = intent.intent_id
            order.payment_client_secret = intent.client_secret
            order.payment_status = intent.status
            order.payment_attempts = attempt
            if order.status in (PENDING, PAYMENT_FAILED):
                order_lifecycle.transition(
                    session,
                    order,
                    PAYMENT_PROCESSING,
                    changed_by=identity.actor if identity else None,
                    notes=f"Payment attempt {attempt} started",
                )
        log_event(
            "info",
            "payment.intent_created",
            order_id=order_id,
            intent_id=intent.intent_id,
            attempt=attempt,
            amount_cents=intent.amount,
        )
        return self._intent_payload(snap, intent)

    @staticmethod
    def _intent_payload(snap: Dict, intent) -> Dict:
        return {
            "order_id": snap["id"],
            "intent_id": intent.intent_id,
            "client_secret": intent.client_secret,
            "status": intent.status,
        }

    def _sync(self, order_id: str, intent) -> str:
        """Write the provider's view of ``intent`` back to the order; returns the order status."""
        with self._tx() as session:
            order = order_lifecycle.lock_order(session, order_id)
            if order.payment_intent_id != intent.intent_id:
                return order.status
            if order.payment_status == intent.status:
                return order.status
            try:
                order_lifecycle.apply_intent_status(session, order, intent.status, notes="Payment status refreshed")
            except InvalidTransitionError as exc:
                # keep the provider status on record even when the order cannot follow it
                order.payment_status = intent.status
                log_event(
                    "warning",
                    "payment.status_unsynced",
                    order_id=order_id,
                    intent_id=intent.intent_id,
                    intent_status=intent.status,
                    order_status=order.status,
                    error=exc.message,
                )
            return order.status

    def get_payment_status(self, order_id: str, identity: Optional[Identity] = None) -> Dict:
        snap = self._snapshot(order_id, self._owner(identity))
        return self._status_for(snap)

    def get_order_by_payment_intent(self, intent_id: str, identity: Optional[Identity] = None) -> Dict:
        """Resolve the order behind ``intent_id`` (redirect return) and refresh its payment status."""
        if not intent_id:
            raise ValidationError("payment intent id required")
        owner = self._owner(identity)
        with self._session_factory() as session:
            order_id = session.query(Order.id).filter(Order.payment_intent_id == intent_id).scalar()
        if order_id is None:
            raise NotFoundError("Order not found", {"payment_intent_id": intent_id})
        snap = self._snapshot(order_id, owner)
        result = self._status_for(snap)
        result["order_number"] = snap["order_number"]
        return result

    def _status_for(self, snap: Dict) -> Dict:
        result = {
            "order_id": snap["id"],
            "payment_intent_id": snap["payment_intent_id"],
            "order_status": snap["status"],
            "status": snap["payment_status"] or NO_PAYMENT,
            "stale": False,
        }
        if not snap["payment_intent_id"]:
            result["status"] = NO_PAYMENT
            return result
        gateway = self._require_gateway()
        try:
            intent = gateway.retrieve_intent(snap["payment_intent_id"])
        except ProviderOutageError as exc:
            log_event(
                "warning",
                "payment.status_stale",
                order_id=snap["id"],
                intent_id=snap["payment_intent_id"],
                error=exc.message,
            )
            result["stale"] = True
            return result
        result["status"] = intent.status
        if intent.status != snap["payment_status"]:
            result["order_status"] = self._sync(snap["id"], intent)
        return result
