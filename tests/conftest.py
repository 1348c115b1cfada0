from decimal import Decimal
from uuid import uuid4

import pytest

from app import create_app
from blendhouse.config import AppConfig
from blendhouse.db.session import get_session, init_db, init_engine
from blendhouse.models.order import Order
from blendhouse.models.order_status_log import OrderStatusLog
from blendhouse.models.product import Product
from blendhouse.services.cart_service import CartService
from blendhouse.services.fake_gateway import FakeGateway
from blendhouse.services.order_service import OrderService
from blendhouse.services.payment_service import PaymentService
from blendhouse.services.webhook_service import WebhookService
from blendhouse.utils.identity import CartRef, Identity
from routes.context import default_identity_resolver


SHIPPING = {
    "first_name": "Ada",
    "last_name": "Lovelace",
    "address_line1": "12 Analytical Way",
    "city": "Sacramento",
    "state": "CA",
    "zip_code": "95814",
    "country": "US",
}

WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite:///{tmp_path / 'checkout.db'}"


@pytest.fixture
def database(db_url):
    engine = init_engine(db_url)
    init_db()
    yield engine
    engine.dispose()


@pytest.fixture
def make_product(database):
    def _make(stock=5, price="10.00", name=None, is_active=True):
        product_id = str(uuid4())
        with get_session() as session:
            session.add(
                Product(
                    id=product_id,
                    sku=f"SKU-{product_id[:8]}",
                    name=name or f"House Blend {product_id[:4]}",
                    price=Decimal(price),
                    currency="USD",
                    stock=stock,
                    is_active=is_active,
                )
            )
        return product_id

    return _make


def stock_of(product_id):
    with get_session() as session:
        return session.query(Product.stock).filter(Product.id == product_id).scalar()


def status_log(order_id):
    with get_session() as session:
        rows = (
            session.query(OrderStatusLog)
            .filter(OrderStatusLog.order_id == order_id)
            .order_by(OrderStatusLog.sequence)
            .all()
        )
        return [(r.from_status, r.to_status) for r in rows]


def order_row(order_id):
    with get_session() as session:
        return session.get(Order, order_id)


def guest_ref():
    return CartRef.for_guest(str(uuid4()))


def owner_of(ref):
    return Identity(user_id=ref.user_id, session_id=ref.session_id)


@pytest.fixture
def gateway():
    return FakeGateway(webhook_secret=WEBHOOK_SECRET)


@pytest.fixture
def cart_service(database):
    return CartService()


@pytest.fixture
def order_service(database, cart_service, gateway):
    return OrderService(cart_service=cart_service, gateway=gateway)


@pytest.fixture
def payment_service(database, gateway):
    return PaymentService(gateway)


@pytest.fixture
def webhook_service(database, gateway):
    return WebhookService(gateway)


@pytest.fixture
def placed_order(make_product, cart_service, order_service):
    """A pending guest order for three units of a $10 product; returns (order, ref, product_id)."""
    product_id = make_product(stock=5, price="10.00")
    ref = guest_ref()
    cart_service.add_item(ref, product_id=product_id, quantity=3)
    order = order_service.place_order(ref, SHIPPING, guest_email="ada@example.com")
    return order, ref, product_id


@pytest.fixture
def config(db_url):
    return AppConfig(
        database_url=db_url,
        secret_key="test",
        log_level="ERROR",
        currency="USD",
        payment_provider="fake",
        stripe_secret_key="",
        stripe_webhook_secret=WEBHOOK_SECRET,
        webhook_tolerance_seconds=300,
        tx_max_wait_ms=5000,
        tx_timeout_ms=15000,
        order_number_prefix="BLD",
        default_tax_region="Global",
    )


def header_identity(req):
    # stands in for upstream auth: X-User-Id and X-Admin headers
    guest = default_identity_resolver(req)
    return Identity(
        user_id=req.headers.get("X-User-Id"),
        session_id=guest.session_id,
        is_admin=req.headers.get("X-Admin") == "1",
    )


@pytest.fixture
def app(config, gateway):
    app = create_app(config, gateway=gateway, identity_resolver=header_identity)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()
