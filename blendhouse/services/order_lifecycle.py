"""Order status transitions shared by checkout, payments, webhooks and the back office.

Every helper here runs inside the caller's transaction and never commits.
"""

from typing import List, Optional
from uuid import uuid4

from sqlalchemy import func, update

from ..models.order import (
    CANCELLED,
    COMPLETED,
    PAID,
    PAYMENT_FAILED,
    PAYMENT_PROCESSING,
    PENDING,
    PROCESSING,
    SHIPPED,
    TERMINAL_STATUSES,
    Order,
    can_transition,
)
from ..models.order_status_log import OrderStatusLog
from ..models.product import Product
from ..utils.errors import InvalidTransitionError, NotFoundError, ValidationError
from ..utils.timeutil import utcnow
from .logging import log_event
from .payment_gateway import CANCELED, PROCESSING as INTENT_PROCESSING, SUCCEEDED


# provider intent status -> order status; other intent statuses leave the order alone
INTENT_STATUS_TO_ORDER_STATUS = {
    SUCCEEDED: PAID,
    INTENT_PROCESSING: PAYMENT_PROCESSING,
    CANCELED: CANCELLED,
}

SETTLED_STATUSES = frozenset({PAID, PROCESSING, SHIPPED, COMPLETED})


def lock_order(session, order_id: str, **owner) -> Order:
    """Load an order with a row lock, optionally scoped to ``user_id`` / ``session_id``.

    Passing owner keys that are all empty is refused rather than treated as unscoped.
    """
    if owner and not any(owner.values()):
        raise ValidationError("Either authentication or a guest session id is required")
    q = session.query(Order).filter(Order.id == order_id)
    if owner.get("user_id"):
        q = q.filter(Order.user_id == owner["user_id"])
    elif owner.get("session_id"):
        q = q.filter(Order.session_id == owner["session_id"])
    order = q.with_for_update().first()
    if order is None:
        raise NotFoundError("Order not found", {"order_id": order_id})
    return order


def append_status_log(
    session,
    order: Order,
    from_status: Optional[str],
    to_status: str,
    *,
    changed_by: Optional[str] = None,
    notes: Optional[str] = None,
) -> OrderStatusLog:
    sequence = (
        session.query(func.coalesce(func.max(OrderStatusLog.sequence), 0))
        .filter(OrderStatusLog.order_id == order.id)
        .scalar()
    )
    entry = OrderStatusLog(
        id=str(uuid4()),
        order_id=order.id,
        from_status=from_status,
        to_status=to_status,
        changed_by=changed_by,
        notes=notes,
        sequence=sequence + 1,
    )
    session.add(entry)
    session.flush()
    return entry


def transition(
    session,
    order: Order,
    to_status: str,
    *,
    changed_by: Optional[str] = None,
    notes: Optional[str] = None,
) -> bool:
    """Move ``order`` to ``to_status``; returns False when it is already there."""
    from_status = order.status
    if from_status == to_status:
        return False
    if not can_transition(from_status, to_status):
        raise InvalidTransitionError(from_status, to_status)
    order.status = to_status
    now = utcnow()
    if to_status == SHIPPED:
        order.shipped_at = order.shipped_at or now
    elif to_status == COMPLETED:
        order.completed_at = now
    elif to_status == CANCELLED:
        order.cancelled_at = now
    append_status_log(session, order, from_status, to_status, changed_by=changed_by, notes=notes)
    log_event(
        "info",
        "order.status_changed",
        order_id=order.id,
        from_status=from_status,
        to_status=to_status,
        changed_by=changed_by,
    )
    return True


def restock(session, order: Order) -> None:
    # product-id order keeps concurrent restocks and decrements from deadlocking
    for item in sorted(order.items, key=lambda it: it.product_id):
        session.execute(
            update(Product)
            .where(Product.id == item.product_id)
            .values(stock=Product.stock + item.quantity)
        )


def cancel(session, order: Order, *, changed_by: Optional[str] = None, notes: Optional[str] = None) -> None:
    """Cancel a non-terminal order and put its reserved stock back."""
    if order.status in TERMINAL_STATUSES:
        raise InvalidTransitionError(order.status, CANCELLED)
    restock(session, order)
    transition(session, order, CANCELLED, changed_by=changed_by, notes=notes or "Order cancelled")
    log_event("info", "order.cancelled", order_id=order.id, items=len(order.items))


def payment_path(from_status: str, to_status: str) -> List[str]:
    """Status hops needed to record a payment outcome.

    A payment outcome for an order still in pending or payment_failed is
    recorded through payment_processing first.
    """
    if from_status == to_status:
        return []
    if can_transition(from_status, to_status):
        return [to_status]
    if (
        to_status in (PAID, PAYMENT_FAILED)
        and from_status in (PENDING, PAYMENT_FAILED)
        and can_transition(PAYMENT_PROCESSING, to_status)
    ):
        return [PAYMENT_PROCESSING, to_status]
    raise InvalidTransitionError(from_status, to_status)


def apply_payment_outcome(
    session,
    order: Order,
    target: str,
    *,
    changed_by: Optional[str] = None,
    notes: Optional[str] = None,
) -> List[str]:
    """Drive ``order`` to a payment-derived ``target`` status; returns the statuses entered."""
    # late or out-of-order outcomes never roll back a settled payment
    if order.status in SETTLED_STATUSES and target in (PAID, PAYMENT_PROCESSING, PAYMENT_FAILED):
        return []
    if target == CANCELLED:
        if order.status == CANCELLED:
            return []
        cancel(session, order, changed_by=changed_by, notes=notes)
        return [CANCELLED]
    entered = []
    for step in payment_path(order.status, target):
        transition(session, order, step, changed_by=changed_by, notes=notes)
        entered.append(step)
    return entered


def apply_intent_status(
    session,
    order: Order,
    intent_status: str,
    *,
    changed_by: Optional[str] = None,
    notes: Optional[str] = None,
) -> List[str]:
    """Record the provider's intent status on the order and move the order accordingly."""
    order.payment_status = intent_status
    target = INTENT_STATUS_TO_ORDER_STATUS.get(intent_status)
    if target is None:
        return []
    return apply_payment_outcome(
        session, order, target, changed_by=changed_by, notes=notes or f"Payment status: {intent_status}"
    )
