"""Blendhouse checkout Flask application."""

from __future__ import annotations

from typing import Callable, Optional

from flask import Flask

from blendhouse.config import AppConfig, load_env
from blendhouse.db.session import init_db, init_engine
from blendhouse.services.cart_service import CartService
from blendhouse.services.logging import configure_logging, log_event
from blendhouse.services.order_service import OrderService
from blendhouse.services.payment_gateway import PaymentGateway, build_gateway
from blendhouse.services.payment_service import PaymentService
from blendhouse.services.pricing_service import PricingService
from blendhouse.services.webhook_service import WebhookService
from routes import admin, api
from routes.context import default_identity_resolver, register_error_handlers


def create_app(
    config: Optional[AppConfig] = None,
    *,
    gateway: Optional[PaymentGateway] = None,
    identity_resolver: Optional[Callable] = None,
) -> Flask:
    config = config or load_env()
    configure_logging(config.log_level)
    init_engine(config.database_url)
    init_db()

    app = Flask(__name__)
    app.config["SECRET_KEY"] = config.secret_key
    app.config["BLENDHOUSE_CONFIG"] = config

    gateway = gateway or build_gateway(config)
    limits = {"max_wait_ms": config.tx_max_wait_ms, "timeout_ms": config.tx_timeout_ms}
    cart_service = CartService(**limits)
    components = {
        "gateway": gateway,
        "identity_resolver": identity_resolver or default_identity_resolver,
        "cart_service": cart_service,
        "order_service": OrderService(
            cart_service=cart_service,
            pricing=PricingService(default_tax_region=config.default_tax_region),
            gateway=gateway,
            currency=config.currency,
            order_number_prefix=config.order_number_prefix,
            **limits,
        ),
        "payment_service": PaymentService(gateway, currency=config.currency, **limits),
        "webhook_service": WebhookService(gateway, **limits),
    }
    app.extensions["blendhouse"] = components

    register_error_handlers(app)
    app.register_blueprint(api.api_bp)
    app.register_blueprint(admin.admin_bp)

    log_event(
        "info",
        "app.started",
        payment_provider=config.payment_provider if gateway else None,
        currency=config.currency,
    )
    return app


def main() -> None:
    app = create_app()
    app.run(host="0.0.0.0", port=6055, debug=False)


if __name__ == "__main__":
    main()
