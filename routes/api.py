"""Storefront API: cart, checkout, payments and the provider webhook."""

from __future__ import annotations

from flask import Blueprint, jsonify, request

from blendhouse.utils.errors import AuthorizationError, ValidationError
from blendhouse.utils.validators import is_valid_session_id, sanitize_session_id

from .context import components, current_identity, int_arg, payload


api_bp = Blueprint("blendhouse_api", __name__, url_prefix="/api")


# -- cart ---------------------------------------------------------------------------


@api_bp.get("/cart")
def get_cart():
    ref = current_identity().cart_ref()
    return jsonify(components()["cart_service"].get_cart(ref))


@api_bp.post("/cart/items")
def add_cart_item():
    body = payload()
    ref = current_identity().cart_ref()
    result = components()["cart_service"].add_item(
        ref,
        product_id=str(body.get("product_id") or "").strip(),
        quantity=body.get("quantity", 1),
    )
    return jsonify(result), 201


@api_bp.patch("/cart/items/<product_id>")
def update_cart_item(product_id: str):
    body = payload()
    if "quantity" not in body:
        raise ValidationError("quantity required", {"field": "quantity"})
    ref = current_identity().cart_ref()
    return jsonify(components()["cart_service"].update_item(ref, product_id=product_id, quantity=body["quantity"]))


@api_bp.delete("/cart/items/<product_id>")
def remove_cart_item(product_id: str):
    ref = current_identity().cart_ref()
    components()["cart_service"].remove_item(ref, product_id=product_id)
    return jsonify({"status": "removed", "product_id": product_id})


@api_bp.post("/cart/merge")
def merge_cart():
    identity = current_identity()
    if not identity.is_authenticated:
        raise AuthorizationError("Sign in to merge a guest cart")
    guest_session_id = identity.session_id or sanitize_session_id(str(payload().get("guest_session_id") or ""))
    if not is_valid_session_id(guest_session_id):
        raise ValidationError("A guest session id (UUID v4) is required", {"field": "guest_session_id"})
    cart_service = components()["cart_service"]
    cart_service.merge_guest_cart(guest_session_id, identity.user_id)
    return jsonify(cart_service.get_cart(identity.cart_ref()))


# -- orders -------------------------------------------------------------------------


@api_bp.post("/orders")
def place_order():
    body = payload()
    identity = current_identity()
    order = components()["order_service"].place_order(
        identity.cart_ref(),
        body.get("shipping_info") or body.get("shipping_address"),
        body.get("discount_code"),
        shipping_method=body.get("shipping_method"),
        guest_email=body.get("guest_email"),
        customer_notes=body.get("customer_notes"),
        idempotency_key=request.headers.get("Idempotency-Key") or body.get("idempotency_key"),
    )
    return jsonify(order), 201


@api_bp.get("/orders")
def list_orders():
    result = components()["order_service"].list_orders(
        current_identity(),
        page=int_arg("page", 1),
        page_size=int_arg("page_size", 20),
        status=request.args.get("status") or None,
    )
    return jsonify(result)


@api_bp.get("/orders/<order_id>")
def get_order(order_id: str):
    return jsonify(components()["order_service"].get_order(order_id, current_identity()))


@api_bp.post("/orders/<order_id>/cancel")
def cancel_order(order_id: str):
    notes = payload().get("reason")
    return jsonify(components()["order_service"].cancel_order(order_id, current_identity(), notes=notes))


# -- payments -----------------------------------------------------------------------


@api_bp.post("/payments/intent")
def create_payment_intent():
    order_id = str(payload().get("order_id") or "").strip()
    if not order_id:
        raise ValidationError("order_id required", {"field": "order_id"})
    return jsonify(components()["payment_service"].create_payment_intent(order_id, current_identity()))


@api_bp.get("/payments/status/<order_id>")
def payment_status(order_id: str):
    return jsonify(components()["payment_service"].get_payment_status(order_id, current_identity()))


@api_bp.get("/payments/by-intent/<intent_id>")
def order_by_intent(intent_id: str):
    return jsonify(components()["payment_service"].get_order_by_payment_intent(intent_id, current_identity()))


@api_bp.post("/payments/webhook")
def payment_webhook():
    ack = components()["webhook_service"].receive_webhook(
        request.get_data(), request.headers.get("Stripe-Signature")
    )
    return jsonify(ack)
