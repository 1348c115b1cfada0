from sqlalchemy import Column, DateTime, Integer, JSON, Numeric, String, Text, func
from sqlalchemy.orm import relationship
from ..utils.timeutil import utcnow
from .base import Base


PENDING = "pending"
PAYMENT_PROCESSING = "payment_processing"
PAID = "paid"
PAYMENT_FAILED = "payment_failed"
PROCESSING = "processing"
SHIPPED = "shipped"
COMPLETED = "completed"
CANCELLED = "cancelled"

ORDER_STATUSES = (
    PENDING,
    PAYMENT_PROCESSING,
    PAID,
    PAYMENT_FAILED,
    PROCESSING,
    SHIPPED,
    COMPLETED,
    CANCELLED,
)

TERMINAL_STATUSES = frozenset({COMPLETED, CANCELLED})

# cancelled is reachable from every non-terminal status
ALLOWED_TRANSITIONS = {
    PENDING: frozenset({PAYMENT_PROCESSING, CANCELLED}),
    PAYMENT_PROCESSING: frozenset({PAID, PAYMENT_FAILED, CANCELLED}),
    PAYMENT_FAILED: frozenset({PAYMENT_PROCESSING, CANCELLED}),
    PAID: frozenset({PROCESSING, CANCELLED}),
    PROCESSING: frozenset({SHIPPED, CANCELLED}),
    SHIPPED: frozenset({COMPLETED, CANCELLED}),
    COMPLETED: frozenset(),
    CANCELLED: frozenset(),
}

PAYABLE_STATUSES = frozenset({PENDING, PAYMENT_PROCESSING, PAYMENT_FAILED})


def can_transition(from_status: str, to_status: str) -> bool:
    return to_status in ALLOWED_TRANSITIONS.get(from_status, frozenset())


class Order(Base):
    __tablename__ = "order"

    id = Column(String(36), primary_key=True)
    order_number = Column(String(32), nullable=False, unique=True)
    user_id = Column(String(128), nullable=True, index=True)
    session_id = Column(String(128), nullable=True, index=True)
    guest_email = Column(String(255), nullable=True)
    status = Column(String(32), nullable=False, default=PENDING, index=True)
    subtotal = Column(Numeric(12, 2), nullable=False)
    shipping_method = Column(String(64), nullable=True)
    shipping_cost = Column(Numeric(12, 2), nullable=False, default=0)
    tax_amount = Column(Numeric(12, 2), nullable=False, default=0)
    discount_code = Column(String(64), nullable=True)
    discount_amount = Column(Numeric(12, 2), nullable=False, default=0)
    total_amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    shipping_address = Column(JSON, nullable=False)
    customer_notes = Column(Text, nullable=True)
    idempotency_key = Column(String(128), nullable=True, unique=True)
    payment_intent_id = Column(String(128), nullable=True, unique=True)
    payment_status = Column(String(64), nullable=True)
    payment_client_secret = Column(String(255), nullable=True)
    payment_attempts = Column(Integer, nullable=False, default=0)
    tracking_number = Column(String(128), nullable=True)
    carrier_name = Column(String(128), nullable=True)
    shipped_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, default=utcnow, server_default=func.now(), onupdate=utcnow)

    items = relationship("OrderItem", back_populates="order", order_by="OrderItem.product_id")
    status_logs = relationship("OrderStatusLog", back_populates="order", order_by="OrderStatusLog.sequence")
