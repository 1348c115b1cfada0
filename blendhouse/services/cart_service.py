from typing import Dict, List, Optional
from uuid import uuid4

from ..db.session import DEFAULT_MAX_WAIT_MS, DEFAULT_TIMEOUT_MS, get_session, transaction
from ..models.cart import Cart
from ..models.cart_item import CartItem
from ..models.product import Product
from ..utils.dto import to_cart_dto
from ..utils.errors import NotFoundError, ProductUnavailableError, ValidationError
from ..utils.identity import CartRef
from ..utils.validators import ensure_non_negative_int, ensure_positive_int
from .logging import log_event


class CartService:
    """Cart operations backed by DB, addressed by an explicit CartRef."""

    def __init__(
        self,
        session_factory=get_session,
        transaction_factory=transaction,
        max_wait_ms: int = DEFAULT_MAX_WAIT_MS,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
    ):
        self._session_factory = session_factory
        self._transaction = transaction_factory
        self._max_wait_ms = max_wait_ms
        self._timeout_ms = timeout_ms

    @staticmethod
    def find_cart(session, ref: CartRef, *, lock: bool = False) -> Optional[Cart]:
        q = session.query(Cart)
        if ref.is_guest:
            q = q.filter(Cart.session_id == ref.owner_id)
        else:
            q = q.filter(Cart.user_id == ref.owner_id)
        if lock:
            q = q.with_for_update()
        return q.first()

    def _get_or_create_cart(self, session, ref: CartRef) -> Cart:
        cart = self.find_cart(session, ref)
        if cart is None:
            cart = Cart(id=str(uuid4()), user_id=ref.user_id, session_id=ref.session_id)
            session.add(cart)
            session.flush()
        return cart

    @staticmethod
    def load_lines(session, cart: Optional[Cart]) -> List[Dict]:
        """Snapshot of the cart joined with current product data, ordered by product id."""
        if cart is None:
            return []
        rows = (
            session.query(CartItem, Product)
            .join(Product, Product.id == CartItem.product_id)
            .filter(CartItem.cart_id == cart.id)
            .order_by(CartItem.product_id)
            .all()
        )
        return [
            {
                "item_id": it.id,
                "product_id": prod.id,
                "name": prod.name,
                "quantity": it.quantity,
                "unit_price": prod.price,
                "currency": prod.currency,
                "stock": prod.stock,
                "is_active": bool(prod.is_active),
            }
            for it, prod in rows
        ]

    def get_cart(self, ref: CartRef) -> Dict:
        with self._session_factory() as session:
            cart = self.find_cart(session, ref)
            lines = self.load_lines(session, cart)
            items = [
                {
                    "id": ln["item_id"],
                    "product_id": ln["product_id"],
                    "name": ln["name"],
                    "quantity": ln["quantity"],
                    "unit_price": float(ln["unit_price"]),
                    "currency": ln["currency"],
                }
                for ln in lines
            ]
            return to_cart_dto(cart, items)

    def add_item(self, ref: CartRef, *, product_id: str, quantity: int = 1) -> Dict:
        if not product_id:
            raise ValidationError("product_id required")
        qnty = ensure_positive_int(quantity if quantity is not None else 1, "quantity")
        with self._session_factory() as session:
            prod = (
                session.query(Product)
                .filter(Product.id == product_id, Product.is_active.is_(True))
                .first()
            )
            if not prod:
                raise ProductUnavailableError("Product not found or inactive", {"product_id": product_id})
            cart = self._get_or_create_cart(session, ref)
            existing = (
                session.query(CartItem)
                .filter(CartItem.cart_id == cart.id, CartItem.product_id == product_id)
                .first()
            )
            if existing:
                existing.quantity = existing.quantity + qnty
                item_id = existing.id
            else:
                item = CartItem(id=str(uuid4()), cart_id=cart.id, product_id=product_id, quantity=qnty)
                session.add(item)
                item_id = item.id
            session.flush()
            return {"status": "added", "item_id": item_id}

    def update_item(self, ref: CartRef, *, product_id: str, quantity: int) -> Dict:
        qnty = ensure_non_negative_int(quantity, "quantity")
        with self._session_factory() as session:
            cart = self.find_cart(session, ref)
            it = None
            if cart is not None:
                it = (
                    session.query(CartItem)
                    .filter(CartItem.cart_id == cart.id, CartItem.product_id == product_id)
                    .first()
                )
            if not it:
                raise NotFoundError("Cart item not found", {"product_id": product_id})
            if qnty == 0:
                session.delete(it)
            else:
                it.quantity = qnty
            session.flush()
            return {"status": "updated", "product_id": product_id, "quantity": qnty}

    def remove_item(self, ref: CartRef, *, product_id: str) -> None:
        with self._session_factory() as session:
            cart = self.find_cart(session, ref)
            if cart is None:
                return None
            session.query(CartItem).filter(
                CartItem.cart_id == cart.id, CartItem.product_id == product_id
            ).delete(synchronize_session=False)
        return None

    @staticmethod
    def clear(session, cart: Cart) -> int:
        return (
            session.query(CartItem)
            .filter(CartItem.cart_id == cart.id)
            .delete(synchronize_session=False)
        )

    def merge_guest_cart(self, guest_session_id: str, user_id: str) -> None:
        """Fold the guest session's cart into the user's cart and drop the guest cart.

        Quantities of products present in both carts are added together; stock is
        checked at checkout, not here. Without a guest cart this is a no-op.
        """
        guest_ref = CartRef.for_guest(guest_session_id)
        user_ref = CartRef.for_user(user_id)
        with self._transaction(max_wait_ms=self._max_wait_ms, timeout_ms=self._timeout_ms) as session:
            guest_cart = self.find_cart(session, guest_ref, lock=True)
            if guest_cart is None:
                return None
            user_cart = self._get_or_create_cart(session, user_ref)
            user_items = {
                it.product_id: it
                for it in session.query(CartItem).filter(CartItem.cart_id == user_cart.id).all()
            }
            guest_items = session.query(CartItem).filter(CartItem.cart_id == guest_cart.id).all()
            merged = moved = 0
            for guest_item in guest_items:
                existing = user_items.get(guest_item.product_id)
                if existing is not None:
                    existing.quantity = existing.quantity + guest_item.quantity
                    session.delete(guest_item)
                    merged += 1
                else:
                    guest_item.cart_id = user_cart.id
                    moved += 1
            session.flush()
            session.expire(guest_cart, ["items"])
            session.delete(guest_cart)
            log_event(
                "info",
                "cart.merged",
                user_id=user_id,
                guest_session_id=guest_session_id,
                merged=merged,
                moved=moved,
            )
        return None
