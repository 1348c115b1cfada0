from typing import Any, Dict, Iterable


def _money(value) -> float:
    return float(value or 0)


def _ts(value):
    return value.isoformat() if value else None


def to_cart_dto(cart: Any, lines: Iterable[Dict]) -> Dict:
    items = list(lines)
    subtotal = sum(_money(it["unit_price"]) * it["quantity"] for it in items)
    return {
        "id": getattr(cart, "id", None),
        "user_id": getattr(cart, "user_id", None),
        "session_id": getattr(cart, "session_id", None),
        "items": items,
        "subtotal": round(subtotal, 2),
        "item_count": sum(it["quantity"] for it in items),
    }


def to_order_item_dto(row: Any) -> Dict:
    return {
        "id": row.id,
        "product_id": row.product_id,
        "name": row.name,
        "price": _money(row.price),
        "quantity": row.quantity,
    }


def to_status_log_dto(row: Any) -> Dict:
    return {
        "from_status": row.from_status,
        "to_status": row.to_status,
        "changed_by": row.changed_by,
        "notes": row.notes,
        "created_at": _ts(row.created_at),
    }


def to_order_dto(row: Any, *, include_items: bool = True, include_logs: bool = False) -> Dict:
    dto = {
        "id": row.id,
        "order_number": row.order_number,
        "status": row.status,
        "user_id": row.user_id,
        "guest_email": row.guest_email,
        "subtotal": _money(row.subtotal),
        "shipping_method": row.shipping_method,
        "shipping_cost": _money(row.shipping_cost),
        "tax_amount": _money(row.tax_amount),
        "discount_code": row.discount_code,
        "discount_amount": _money(row.discount_amount),
        "total_amount": _money(row.total_amount),
        "currency": row.currency,
        "shipping_address": row.shipping_address or {},
        "customer_notes": row.customer_notes,
        "payment_intent_id": row.payment_intent_id,
        "payment_status": row.payment_status,
        "tracking_number": row.tracking_number,
        "carrier_name": row.carrier_name,
        "shipped_at": _ts(row.shipped_at),
        "cancelled_at": _ts(row.cancelled_at),
        "created_at": _ts(row.created_at),
    }
    if include_items:
        dto["items"] = [to_order_item_dto(it) for it in row.items]
    if include_logs:
        dto["status_logs"] = [to_status_log_dto(log) for log in row.status_logs]
    return dto


def to_webhook_event_dto(row: Any) -> Dict:
    return {
        "event_id": row.event_id,
        "event_type": row.event_type,
        "processed": bool(row.processed),
        "failed": row.failed,
        "error": row.error,
        "attempts": row.attempts,
        "created_at": _ts(row.created_at),
        "processed_at": _ts(row.processed_at),
    }
