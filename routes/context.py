"""Request-scoped helpers shared by the API and admin blueprints."""

from __future__ import annotations

from typing import Any, Dict

from flask import current_app, g, jsonify, request
from werkzeug.exceptions import HTTPException

from blendhouse.services.logging import log_event
from blendhouse.utils.errors import AuthorizationError, CheckoutError, ValidationError
from blendhouse.utils.identity import Identity
from blendhouse.utils.validators import is_valid_session_id, sanitize_session_id


SESSION_HEADER = "X-Session-Id"


def components() -> Dict[str, Any]:
    return current_app.extensions["blendhouse"]


def default_identity_resolver(req) -> Identity:
    """Identity from upstream auth (``g.user_id`` / ``g.is_admin``) plus the guest session header."""
    raw = req.headers.get(SESSION_HEADER)
    session_id = None
    if raw:
        session_id = sanitize_session_id(raw)
        if not is_valid_session_id(session_id):
            raise ValidationError("X-Session-Id must be a UUID v4", {"header": SESSION_HEADER})
    return Identity(
        user_id=getattr(g, "user_id", None),
        session_id=session_id,
        is_admin=bool(getattr(g, "is_admin", False)),
    )


def current_identity() -> Identity:
    return components()["identity_resolver"](request)


def require_admin() -> Identity:
    identity = current_identity()
    if not identity.is_admin:
        raise AuthorizationError("Admin access required")
    return identity


def payload() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def int_arg(name: str, default: int) -> int:
    value = request.args.get(name)
    if value in (None, ""):
        return default
    try:
        return int(value)
    except ValueError:
        raise ValidationError(f"{name} must be an integer", {"field": name}) from None


def register_error_handlers(app) -> None:
    @app.errorhandler(CheckoutError)
    def handle_checkout_error(exc: CheckoutError):
        return jsonify(exc.to_dict()), exc.status_code

    @app.errorhandler(Exception)
    def handle_unexpected(exc: Exception):
        if isinstance(exc, HTTPException):
            return exc
        log_event(
            "error",
            "http.unhandled_error",
            path=request.path,
            method=request.method,
            error=exc.__class__.__name__,
            message=str(exc),
        )
        return jsonify({"error": "INTERNAL_ERROR", "message": "Internal server error", "status_code": 500}), 500
