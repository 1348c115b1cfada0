import threading
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import update

from blendhouse.db.session import get_session
from blendhouse.models.discount_code import FIXED, PERCENTAGE, DiscountCode
from blendhouse.models.order import Order
from blendhouse.models.product import Product
from blendhouse.models.shipping_method import ShippingMethod
from blendhouse.models.tax_rate import TaxRate
from blendhouse.services.order_service import OrderService
from blendhouse.utils.errors import (
    ConflictError,
    DiscountCodeError,
    InsufficientStockError,
    InvalidTransitionError,
    NotFoundError,
    ProductUnavailableError,
    TransactionError,
    ValidationError,
)
from blendhouse.utils.identity import CartRef, Identity

from conftest import SHIPPING, guest_ref, order_row, owner_of, status_log, stock_of


def _order_count():
    with get_session() as session:
        return session.query(Order).count()


def test_place_order_reserves_stock_and_clears_cart(make_product, cart_service, order_service):
    product_id = make_product(stock=5, price="10.00")
    ref = guest_ref()
    cart_service.add_item(ref, product_id=product_id, quantity=3)

    order = order_service.place_order(ref, SHIPPING, guest_email="ada@example.com")

    assert order["status"] == "pending"
    assert order["total_amount"] == 30.0
    assert order["order_number"].startswith("BLD-")
    assert [(it["product_id"], it["quantity"], it["price"]) for it in order["items"]] == [(product_id, 3, 10.0)]
    assert stock_of(product_id) == 2
    assert cart_service.get_cart(ref)["items"] == []
    assert status_log(order["id"]) == [(None, "pending")]


def test_insufficient_stock_leaves_cart_and_stock_untouched(make_product, cart_service, order_service):
    product_id = make_product(stock=2)
    ref = guest_ref()
    cart_service.add_item(ref, product_id=product_id, quantity=3)

    with pytest.raises(InsufficientStockError) as exc:
        order_service.place_order(ref, SHIPPING, guest_email="ada@example.com")

    assert exc.value.available == 2
    assert exc.value.requested == 3
    assert exc.value.to_dict()["details"]["product_id"] == product_id
    assert stock_of(product_id) == 2
    assert [it["quantity"] for it in cart_service.get_cart(ref)["items"]] == [3]
    assert _order_count() == 0


def test_empty_cart_is_rejected(database, order_service):
    with pytest.raises(ValidationError, match="Cart is empty"):
        order_service.place_order(guest_ref(), SHIPPING, guest_email="ada@example.com")


def test_missing_shipping_fields_are_listed(make_product, cart_service, order_service):
    ref = guest_ref()
    cart_service.add_item(ref, product_id=make_product(), quantity=1)
    partial = {k: v for k, v in SHIPPING.items() if k not in ("city", "zip_code")}

    with pytest.raises(ValidationError) as exc:
        order_service.place_order(ref, partial, guest_email="ada@example.com")

    assert exc.value.details["missing"] == ["city", "zip_code"]


def test_guest_checkout_requires_email(make_product, cart_service, order_service):
    ref = guest_ref()
    cart_service.add_item(ref, product_id=make_product(), quantity=1)

    with pytest.raises(ValidationError):
        order_service.place_order(ref, SHIPPING, guest_email="not-an-email")


def test_user_checkout_logs_user_as_actor(make_product, cart_service, order_service):
    ref = CartRef.for_user("user-1")
    cart_service.add_item(ref, product_id=make_product(), quantity=1)

    order = order_service.place_order(ref, SHIPPING)

    assert order["user_id"] == "user-1"
    assert order["guest_email"] is None
    detail = order_service.get_order(order["id"], Identity(user_id="user-1"))
    assert detail["status_logs"][0]["changed_by"] == "user-1"
    assert detail["status_logs"][0]["notes"] == "Order placed"


def test_deactivated_product_is_unavailable(make_product, cart_service, order_service):
    product_id = make_product()
    ref = guest_ref()
    cart_service.add_item(ref, product_id=product_id, quantity=1)
    with get_session() as session:
        session.execute(update(Product).where(Product.id == product_id).values(is_active=False))

    with pytest.raises(ProductUnavailableError):
        order_service.place_order(ref, SHIPPING, guest_email="ada@example.com")


def test_total_includes_shipping_tax_and_discount(make_product, cart_service, order_service):
    with get_session() as session:
        session.add(TaxRate(id=str(uuid4()), region="CA", rate=Decimal("0.0825")))
        session.add(ShippingMethod(id=str(uuid4()), name="standard", price=Decimal("5.99")))
        session.add(
            DiscountCode(
                id=str(uuid4()),
                code="SAVE10",
                discount_type=PERCENTAGE,
                discount_value=Decimal("10"),
                max_uses=5,
            )
        )
    product_id = make_product(price="12.50")
    ref = guest_ref()
    cart_service.add_item(ref, product_id=product_id, quantity=2)

    order = order_service.place_order(
        ref, SHIPPING, "SAVE10", shipping_method="standard", guest_email="ada@example.com"
    )

    assert order["subtotal"] == 25.0
    assert order["shipping_cost"] == 5.99
    assert order["tax_amount"] == 2.06
    assert order["discount_amount"] == 2.5
    assert order["discount_code"] == "SAVE10"
    row = order_row(order["id"])
    items_total = sum(Decimal(str(it["price"])) * it["quantity"] for it in order["items"])
    assert row.total_amount == items_total + row.shipping_cost + row.tax_amount - row.discount_amount
    with get_session() as session:
        assert session.query(DiscountCode.used_count).filter(DiscountCode.code == "SAVE10").scalar() == 1


def test_fixed_discount_never_exceeds_subtotal(make_product, cart_service, order_service):
    with get_session() as session:
        session.add(
            DiscountCode(id=str(uuid4()), code="BIGFIX", discount_type=FIXED, discount_value=Decimal("50.00"))
        )
    ref = guest_ref()
    cart_service.add_item(ref, product_id=make_product(price="10.00"), quantity=1)

    order = order_service.place_order(ref, SHIPPING, "BIGFIX", guest_email="ada@example.com")

    assert order["discount_amount"] == 10.0
    assert order["total_amount"] == 0.0


def test_exhausted_discount_code_is_rejected(make_product, cart_service, order_service):
    with get_session() as session:
        session.add(
            DiscountCode(
                id=str(uuid4()),
                code="ONCE",
                discount_type=PERCENTAGE,
                discount_value=Decimal("10"),
                max_uses=1,
            )
        )
    product_id = make_product(stock=10)
    first, second = guest_ref(), guest_ref()
    for ref in (first, second):
        cart_service.add_item(ref, product_id=product_id, quantity=1)

    order_service.place_order(first, SHIPPING, "ONCE", guest_email="ada@example.com")
    with pytest.raises(DiscountCodeError):
        order_service.place_order(second, SHIPPING, "ONCE", guest_email="ada@example.com")

    assert stock_of(product_id) == 9


def test_unknown_shipping_method_is_rejected(make_product, cart_service, order_service):
    ref = guest_ref()
    cart_service.add_item(ref, product_id=make_product(), quantity=1)

    with pytest.raises(ValidationError, match="shipping method"):
        order_service.place_order(ref, SHIPPING, shipping_method="teleport", guest_email="ada@example.com")


def test_idempotency_key_returns_the_first_order(make_product, cart_service, order_service):
    product_id = make_product(stock=5)
    ref = guest_ref()
    cart_service.add_item(ref, product_id=product_id, quantity=2)

    first = order_service.place_order(ref, SHIPPING, guest_email="ada@example.com", idempotency_key="key-1")
    again = order_service.place_order(ref, SHIPPING, guest_email="ada@example.com", idempotency_key="key-1")

    assert again["id"] == first["id"]
    assert _order_count() == 1
    assert stock_of(product_id) == 3


def test_idempotency_key_of_another_owner_conflicts(make_product, cart_service, order_service):
    product_id = make_product(stock=5)
    first, second = guest_ref(), guest_ref()
    cart_service.add_item(first, product_id=product_id, quantity=1)
    order_service.place_order(first, SHIPPING, guest_email="ada@example.com", idempotency_key="shared")

    with pytest.raises(ConflictError):
        order_service.place_order(second, SHIPPING, guest_email="bob@example.com", idempotency_key="shared")


def test_competing_checkout_between_check_and_commit(monkeypatch, make_product, cart_service, order_service):
    product_id = make_product(stock=1)
    loser, winner = guest_ref(), guest_ref()
    for ref in (loser, winner):
        cart_service.add_item(ref, product_id=product_id, quantity=1)

    original = OrderService._prevalidate
    raced = []

    def racing_prevalidate(self, lines):
        original(self, lines)
        if not raced:
            raced.append(True)
            order_service.place_order(winner, SHIPPING, guest_email="win@example.com")

    monkeypatch.setattr(OrderService, "_prevalidate", racing_prevalidate)

    with pytest.raises(InsufficientStockError) as exc:
        order_service.place_order(loser, SHIPPING, guest_email="lose@example.com")

    assert exc.value.available == 0
    assert stock_of(product_id) == 0
    assert [it["quantity"] for it in cart_service.get_cart(loser)["items"]] == [1]
    assert _order_count() == 1


def test_cart_edited_during_checkout_aborts(monkeypatch, make_product, cart_service, order_service):
    first_product, second_product = make_product(), make_product()
    ref = guest_ref()
    cart_service.add_item(ref, product_id=first_product, quantity=1)

    original = OrderService._prevalidate

    def editing_prevalidate(self, lines):
        original(self, lines)
        cart_service.add_item(ref, product_id=second_product, quantity=1)

    monkeypatch.setattr(OrderService, "_prevalidate", editing_prevalidate)

    with pytest.raises(ValidationError, match="Cart changed"):
        order_service.place_order(ref, SHIPPING, guest_email="ada@example.com")

    assert stock_of(first_product) == 5
    assert _order_count() == 0


def test_concurrent_checkouts_never_oversell(make_product, cart_service, order_service):
    product_id = make_product(stock=1)
    refs = [guest_ref() for _ in range(5)]
    for ref in refs:
        cart_service.add_item(ref, product_id=product_id, quantity=1)

    results = {}
    barrier = threading.Barrier(len(refs))

    def checkout(ref):
        barrier.wait()
        try:
            results[ref] = order_service.place_order(ref, SHIPPING, guest_email="race@example.com")
        except (InsufficientStockError, TransactionError) as exc:
            results[ref] = exc

    threads = [threading.Thread(target=checkout, args=(ref,)) for ref in refs]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    winners = [ref for ref, res in results.items() if isinstance(res, dict)]
    assert len(results) == len(refs)
    assert len(winners) == 1
    assert stock_of(product_id) == 0
    assert _order_count() == 1
    for ref, res in results.items():
        if isinstance(res, InsufficientStockError):
            assert [it["quantity"] for it in cart_service.get_cart(ref)["items"]] == [1]


def test_cancel_pending_order_restocks(placed_order, order_service):
    order, ref, product_id = placed_order
    assert stock_of(product_id) == 2

    cancelled = order_service.cancel_order(order["id"], owner_of(ref))

    assert cancelled["status"] == "cancelled"
    assert cancelled["cancelled_at"] is not None
    assert stock_of(product_id) == 5
    assert status_log(order["id"]) == [(None, "pending"), ("pending", "cancelled")]
    with pytest.raises(InvalidTransitionError):
        order_service.cancel_order(order["id"], owner_of(ref))
    assert stock_of(product_id) == 5


def test_cancel_releases_open_payment_intent(placed_order, order_service, payment_service, gateway):
    order, ref, _ = placed_order
    intent = payment_service.create_payment_intent(order["id"], owner_of(ref))

    order_service.cancel_order(order["id"], owner_of(ref))

    assert gateway.intents[intent["intent_id"]].status == "canceled"


def test_orders_are_scoped_to_their_owner(placed_order, order_service):
    order, ref, _ = placed_order
    stranger = Identity(session_id=str(uuid4()))

    with pytest.raises(NotFoundError):
        order_service.get_order(order["id"], stranger)
    with pytest.raises(NotFoundError):
        order_service.cancel_order(order["id"], stranger)
    assert order_service.list_orders(stranger)["orders"] == []

    mine = order_service.list_orders(owner_of(ref))
    assert [o["id"] for o in mine["orders"]] == [order["id"]]
    assert mine["pagination"]["total"] == 1


def test_cancel_without_identity_is_refused(placed_order, order_service):
    order, _, product_id = placed_order

    with pytest.raises(ValidationError):
        order_service.cancel_order(order["id"], Identity())

    assert order_row(order["id"]).status == "pending"
    assert stock_of(product_id) == 2


def test_fulfilment_flow_to_completed(placed_order, order_service):
    order, _, _ = placed_order
    for status in ("payment_processing", "paid", "processing"):
        order_service.update_status(order["id"], status, changed_by="admin-1")

    shipped = order_service.mark_shipped(
        order["id"], tracking_number="1Z999", carrier_name="UPS", changed_by="admin-1"
    )
    assert shipped["status"] == "shipped"
    assert shipped["tracking_number"] == "1Z999"
    assert shipped["shipped_at"] is not None

    done = order_service.update_status(order["id"], "completed", changed_by="admin-1")
    assert done["status"] == "completed"
    detail = order_service.admin_get_order(order["id"])
    assert [log["to_status"] for log in detail["status_logs"]] == [
        "pending",
        "payment_processing",
        "paid",
        "processing",
        "shipped",
        "completed",
    ]


def test_forbidden_transitions_are_refused(placed_order, order_service):
    order, _, _ = placed_order

    with pytest.raises(InvalidTransitionError):
        order_service.update_status(order["id"], "shipped")
    with pytest.raises(InvalidTransitionError):
        order_service.mark_shipped(order["id"], tracking_number="1Z", carrier_name="UPS")
    with pytest.raises(ValidationError):
        order_service.update_status(order["id"], "teleported")

    assert order_row(order["id"]).status == "pending"


def test_admin_list_filters_by_status(placed_order, order_service):
    order, _, _ = placed_order

    assert [o["id"] for o in order_service.admin_list_orders(status="pending")["orders"]] == [order["id"]]
    assert order_service.admin_list_orders(status="paid")["orders"] == []
