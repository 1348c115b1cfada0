"""Back-office routes for order fulfilment and webhook triage."""

from __future__ import annotations

from flask import Blueprint, jsonify, request

from blendhouse.utils.errors import ValidationError

from .context import components, int_arg, payload, require_admin


admin_bp = Blueprint("blendhouse_admin", __name__, url_prefix="/admin")


@admin_bp.before_request
def guard_private_routes():
    require_admin()
    return None


@admin_bp.get("/orders")
def list_orders():
    result = components()["order_service"].admin_list_orders(
        page=int_arg("page", 1),
        page_size=int_arg("page_size", 20),
        status=request.args.get("status") or None,
    )
    return jsonify(result)


@admin_bp.get("/orders/<order_id>")
def get_order(order_id: str):
    return jsonify(components()["order_service"].admin_get_order(order_id))


@admin_bp.post("/orders/<order_id>/status")
def update_status(order_id: str):
    body = payload()
    status = str(body.get("status") or "").strip()
    if not status:
        raise ValidationError("status required", {"field": "status"})
    order = components()["order_service"].update_status(
        order_id, status, changed_by=require_admin().actor, notes=body.get("notes")
    )
    return jsonify(order)


@admin_bp.post("/orders/<order_id>/ship")
def ship_order(order_id: str):
    body = payload()
    order = components()["order_service"].mark_shipped(
        order_id,
        tracking_number=str(body.get("tracking_number") or ""),
        carrier_name=str(body.get("carrier_name") or ""),
        changed_by=require_admin().actor,
        notes=body.get("notes"),
    )
    return jsonify(order)


@admin_bp.post("/orders/<order_id>/cancel")
def cancel_order(order_id: str):
    body = payload()
    order = components()["order_service"].cancel_order(
        order_id, changed_by=require_admin().actor, notes=body.get("reason") or body.get("notes")
    )
    return jsonify(order)


@admin_bp.get("/webhooks/failed")
def failed_webhooks():
    result = components()["webhook_service"].list_failed_events(
        page=int_arg("page", 1), page_size=int_arg("page_size", 20)
    )
    return jsonify(result)
