import secrets
import string
from decimal import Decimal
from typing import Dict, List, Optional
from uuid import uuid4

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..db.session import DEFAULT_MAX_WAIT_MS, DEFAULT_TIMEOUT_MS, get_session, transaction
from ..models.discount_code import DiscountCode
from ..models.order import CANCELLED, ORDER_STATUSES, PENDING, SHIPPED, Order
from ..models.order_item import OrderItem
from ..models.product import Product
from ..utils.dto import to_order_dto
from ..utils.errors import (
    CheckoutError,
    ConflictError,
    DiscountCodeError,
    InsufficientStockError,
    NotFoundError,
    PaymentError,
    ProductUnavailableError,
    ValidationError,
)
from ..utils.identity import CartRef, Identity
from ..utils.pagination import normalize_paging, paging_meta
from ..utils.timeutil import utcnow
from ..utils.validators import validate_email, validate_shipping_info
from . import order_lifecycle
from .cart_service import CartService
from .logging import log_event
from .payment_gateway import SUCCEEDED
from .pricing_service import PricingService, to_money


_ORDER_NUMBER_ALPHABET = string.ascii_uppercase + string.digits


def generate_order_number(prefix: str = "BLD") -> str:
    """Human readable order number: PREFIX-YYMMDD-XXXXXX."""
    suffix = "".join(secrets.choice(_ORDER_NUMBER_ALPHABET) for _ in range(6))
    return f"{prefix}-{utcnow():%y%m%d}-{suffix}"


def _cart_signature(lines: List[Dict]):
    return sorted((ln["product_id"], ln["quantity"]) for ln in lines)


class OrderService:
    """Turns carts into orders and moves orders through their lifecycle."""

    def __init__(
        self,
        session_factory=get_session,
        transaction_factory=transaction,
        *,
        cart_service: Optional[CartService] = None,
        pricing: Optional[PricingService] = None,
        gateway=None,
        currency: str = "USD",
        order_number_prefix: str = "BLD",
        max_wait_ms: int = DEFAULT_MAX_WAIT_MS,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
    ):
        self._session_factory = session_factory
        self._transaction = transaction_factory
        self._carts = cart_service or CartService(session_factory, transaction_factory)
        self._pricing = pricing or PricingService()
        self._gateway = gateway
        self._currency = currency
        self._order_number_prefix = order_number_prefix
        self._max_wait_ms = max_wait_ms
        self._timeout_ms = timeout_ms

    def _tx(self):
        return self._transaction(max_wait_ms=self._max_wait_ms, timeout_ms=self._timeout_ms)

    # -- placement -----------------------------------------------------------------

    def place_order(
        self,
        cart_ref: CartRef,
        shipping_info: Dict,
        discount_code: Optional[str] = None,
        *,
        shipping_method: Optional[str] = None,
        guest_email: Optional[str] = None,
        customer_notes: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict:
        """Create an order from the cart behind ``cart_ref``.

        Cheap checks run first without touching the cart. The order, its item
        snapshots, the stock decrements, the discount use, the first status-log
        row and the cart clear then commit in one bounded transaction, or not at
        all. Replaying an ``idempotency_key`` returns the order it created.
        """
        try:
            address = validate_shipping_info(shipping_info)
            email = validate_email(guest_email) if cart_ref.is_guest else None
            if idempotency_key:
                existing = self._find_by_idempotency_key(idempotency_key, cart_ref)
                if existing is not None:
                    log_event("info", "order.idempotent_replay", order_id=existing["id"])
                    return existing

            with self._session_factory() as session:
                cart = self._carts.find_cart(session, cart_ref)
                lines = self._carts.load_lines(session, cart)
            self._prevalidate(lines)

            subtotal = sum((to_money(ln["unit_price"]) * ln["quantity"] for ln in lines), Decimal("0.00"))
            with self._session_factory() as session:
                quote = self._pricing.quote(
                    session,
                    subtotal=subtotal,
                    shipping_method=shipping_method,
                    region=address.get("state"),
                    discount_code=(discount_code or "").strip() or None,
                )

            try:
                order = self._commit_order(
                    cart_ref,
                    lines,
                    quote,
                    address=address,
                    shipping_method=shipping_method,
                    guest_email=email,
                    customer_notes=customer_notes,
                    idempotency_key=idempotency_key,
                )
            except IntegrityError:
                # a concurrent attempt with the same key won the unique constraint
                existing = self._find_by_idempotency_key(idempotency_key, cart_ref) if idempotency_key else None
                if existing is None:
                    raise
                return existing
        except CheckoutError as exc:
            log_event(
                "warning",
                "order.place_failed",
                owner_kind=cart_ref.owner_kind,
                owner_id=cart_ref.owner_id,
                error=exc.code,
                message=exc.message,
                details=exc.details,
            )
            raise
        log_event(
            "info",
            "order.placed",
            order_id=order["id"],
            order_number=order["order_number"],
            items=len(order["items"]),
            total=order["total_amount"],
        )
        return order

    def _prevalidate(self, lines: List[Dict]) -> None:
        """Optimistic checks against the cart snapshot; the binding stock check runs in the transaction."""
        if not lines:
            raise ValidationError("Cart is empty")
        for ln in lines:
            if not ln["is_active"]:
                raise ProductUnavailableError(
                    f"{ln['name']} is no longer available", {"product_id": ln["product_id"]}
                )
        for ln in lines:
            if ln["stock"] < ln["quantity"]:
                raise InsufficientStockError(
                    ln["product_id"],
                    available=ln["stock"],
                    requested=ln["quantity"],
                    message=f"Insufficient stock for {ln['name']}",
                )

    def _reserve_stock(self, session, lines: List[Dict]) -> None:
        # decrement-if-available is the authoritative check; product-id order avoids deadlocks
        for ln in sorted(lines, key=lambda it: it["product_id"]):
            result = session.execute(
                update(Product)
                .where(
                    Product.id == ln["product_id"],
                    Product.is_active.is_(True),
                    Product.stock >= ln["quantity"],
                )
                .values(stock=Product.stock - ln["quantity"])
            )
            if result.rowcount == 1:
                continue
            current = (
                session.query(Product.stock, Product.is_active)
                .filter(Product.id == ln["product_id"])
                .one_or_none()
            )
            if current is None or not current.is_active:
                raise ProductUnavailableError(
                    f"{ln['name']} is no longer available", {"product_id": ln["product_id"]}
                )
            raise InsufficientStockError(
                ln["product_id"],
                available=current.stock,
                requested=ln["quantity"],
                message=f"Insufficient stock for {ln['name']}",
            )

    @staticmethod
    def _consume_discount(session, discount_id: str, code: str) -> None:
        result = session.execute(
            update(DiscountCode)
            .where(
                DiscountCode.id == discount_id,
                DiscountCode.is_active.is_(True),
                (DiscountCode.max_uses.is_(None)) | (DiscountCode.used_count < DiscountCode.max_uses),
            )
            .values(used_count=DiscountCode.used_count + 1)
        )
        if result.rowcount != 1:
            raise DiscountCodeError("Discount code has reached its usage limit", {"code": code})

    def _commit_order(
        self,
        cart_ref: CartRef,
        lines: List[Dict],
        quote,
        *,
        address: Dict,
        shipping_method: Optional[str],
        guest_email: Optional[str],
        customer_notes: Optional[str],
        idempotency_key: Optional[str],
    ) -> Dict:
        with self._tx() as session:
            cart = self._carts.find_cart(session, cart_ref, lock=True)
            if _cart_signature(self._carts.load_lines(session, cart)) != _cart_signature(lines):
                raise ValidationError("Cart changed during checkout, please review it and try again")

            self._reserve_stock(session, lines)
            if quote.discount_id:
                self._consume_discount(session, quote.discount_id, quote.discount_code)

            order = Order(
                id=str(uuid4()),
                order_number=generate_order_number(self._order_number_prefix),
                user_id=cart_ref.user_id,
                session_id=cart_ref.session_id,
                guest_email=guest_email,
                status=PENDING,
                subtotal=quote.subtotal,
                shipping_method=shipping_method,
                shipping_cost=quote.shipping_cost,
                tax_amount=quote.tax_amount,
                discount_code=quote.discount_code,
                discount_amount=quote.discount_amount,
                total_amount=quote.total,
                currency=self._currency,
                shipping_address=address,
                customer_notes=customer_notes,
                idempotency_key=idempotency_key,
                payment_attempts=0,
            )
            order.items = [
                OrderItem(
                    id=str(uuid4()),
                    product_id=ln["product_id"],
                    name=ln["name"],
                    price=to_money(ln["unit_price"]),
                    quantity=ln["quantity"],
                )
                for ln in lines
            ]
            session.add(order)
            session.flush()
            order_lifecycle.append_status_log(
                session,
                order,
                None,
                PENDING,
                changed_by=cart_ref.user_id,
                notes="Guest order placed" if cart_ref.is_guest else "Order placed",
            )
            self._carts.clear(session, cart)
            return to_order_dto(order)

    def _find_by_idempotency_key(self, key: str, cart_ref: CartRef) -> Optional[Dict]:
        with self._session_factory() as session:
            order = session.query(Order).filter(Order.idempotency_key == key).first()
            if order is None:
                return None
            if order.user_id != cart_ref.user_id or order.session_id != cart_ref.session_id:
                raise ConflictError("Idempotency key was already used for another order")
            return to_order_dto(order)

    # -- reads ---------------------------------------------------------------------

    @staticmethod
    def _owned(q, identity: Identity):
        if identity.user_id:
            return q.filter(Order.user_id == identity.user_id)
        if identity.session_id:
            return q.filter(Order.session_id == identity.session_id)
        raise ValidationError("Either authentication or a guest session id is required")

    def get_order(self, order_id: str, identity: Identity) -> Dict:
        with self._session_factory() as session:
            order = self._owned(session.query(Order).filter(Order.id == order_id), identity).first()
            if order is None:
                raise NotFoundError("Order not found", {"order_id": order_id})
            return to_order_dto(order, include_logs=True)

    def list_orders(self, identity: Identity, *, page: int = 1, page_size: int = 20, status: Optional[str] = None) -> Dict:
        return self._list(lambda q: self._owned(q, identity), page=page, page_size=page_size, status=status)

    def admin_list_orders(self, *, page: int = 1, page_size: int = 20, status: Optional[str] = None) -> Dict:
        return self._list(lambda q: q, page=page, page_size=page_size, status=status)

    def admin_get_order(self, order_id: str) -> Dict:
        with self._session_factory() as session:
            order = session.query(Order).filter(Order.id == order_id).first()
            if order is None:
                raise NotFoundError("Order not found", {"order_id": order_id})
            return to_order_dto(order, include_logs=True)

    def _list(self, scope, *, page: int, page_size: int, status: Optional[str]) -> Dict:
        p, ps = normalize_paging(page, page_size)
        if status and status not in ORDER_STATUSES:
            raise ValidationError("Unknown order status", {"status": status})
        with self._session_factory() as session:
            q = scope(session.query(Order))
            if status:
                q = q.filter(Order.status == status)
            total = q.count()
            rows = q.order_by(Order.created_at.desc()).offset((p - 1) * ps).limit(ps).all()
            return {"orders": [to_order_dto(r) for r in rows], "pagination": paging_meta(p, ps, total)}

    # -- lifecycle -----------------------------------------------------------------

    def cancel_order(
        self,
        order_id: str,
        identity: Optional[Identity] = None,
        *,
        changed_by: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Dict:
        """Cancel a non-terminal order, restocking its items; ``identity`` scopes the lookup to its owner."""
        owner = {}
        if identity is not None and not identity.is_admin:
            if not identity.user_id and not identity.session_id:
                raise ValidationError("Either authentication or a guest session id is required")
            owner = {"user_id": identity.user_id, "session_id": identity.session_id}
            changed_by = changed_by or identity.user_id
        with self._tx() as session:
            order = order_lifecycle.lock_order(session, order_id, **owner)
            order_lifecycle.cancel(session, order, changed_by=changed_by, notes=notes)
            intent_id, payment_status = order.payment_intent_id, order.payment_status
            dto = to_order_dto(order)
        self._release_intent(order_id, intent_id, payment_status)
        return dto

    def _release_intent(self, order_id: str, intent_id: Optional[str], payment_status: Optional[str]) -> None:
        if self._gateway is None or not intent_id or payment_status in (SUCCEEDED, "canceled"):
            return
        try:
            self._gateway.cancel_intent(intent_id)
        except PaymentError as exc:
            # the order is already cancelled locally; a stray intent is left for the provider to expire
            log_event(
                "warning",
                "payment.cancel_intent_failed",
                order_id=order_id,
                intent_id=intent_id,
                error=exc.code,
                message=exc.message,
            )

    def update_status(self, order_id: str, to_status: str, *, changed_by: Optional[str] = None, notes: Optional[str] = None) -> Dict:
        if to_status not in ORDER_STATUSES:
            raise ValidationError("Unknown order status", {"status": to_status})
        if to_status == CANCELLED:
            return self.cancel_order(order_id, changed_by=changed_by, notes=notes)
        with self._tx() as session:
            order = order_lifecycle.lock_order(session, order_id)
            order_lifecycle.transition(session, order, to_status, changed_by=changed_by, notes=notes)
            return to_order_dto(order)

    def mark_shipped(
        self,
        order_id: str,
        *,
        tracking_number: str,
        carrier_name: str,
        changed_by: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Dict:
        tracking_number = (tracking_number or "").strip()
        carrier_name = (carrier_name or "").strip()
        if not tracking_number or not carrier_name:
            raise ValidationError("tracking_number and carrier_name are required")
        with self._tx() as session:
            order = order_lifecycle.lock_order(session, order_id)
            order.tracking_number = tracking_number
            order.carrier_name = carrier_name
            order_lifecycle.transition(
                session,
                order,
                SHIPPED,
                changed_by=changed_by,
                notes=notes or f"Shipped via {carrier_name}. Tracking: {tracking_number}",
            )
            return to_order_dto(order)
