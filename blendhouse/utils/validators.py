import re
from typing import Dict, Optional

from .errors import ValidationError


REQUIRED_SHIPPING_FIELDS = ("first_name", "last_name", "address_line1", "city", "state", "zip_code", "country")
OPTIONAL_SHIPPING_FIELDS = ("address_line2", "phone")

_SESSION_ID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$", re.IGNORECASE)
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def ensure_positive_int(value, field: str) -> int:
    try:
        n = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer", {"field": field}) from None
    if n <= 0:
        raise ValidationError(f"{field} must be > 0", {"field": field})
    return n


def ensure_non_negative_int(value, field: str) -> int:
    try:
        n = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer", {"field": field}) from None
    if n < 0:
        raise ValidationError(f"{field} must be >= 0", {"field": field})
    return n


def sanitize_session_id(session_id: str) -> str:
    return re.sub(r"[^a-zA-Z0-9-]", "", session_id or "")


def is_valid_session_id(session_id: Optional[str]) -> bool:
    return bool(session_id) and bool(_SESSION_ID_RE.match(session_id))


def validate_email(value: Optional[str], field: str = "guest_email") -> str:
    v = (value or "").strip()
    if not _EMAIL_RE.match(v):
        raise ValidationError(f"{field} must be a valid email address", {"field": field})
    return v


def validate_shipping_info(info: Optional[Dict]) -> Dict:
    """Return a cleaned copy of the shipping address or raise ValidationError listing missing fields."""
    if not isinstance(info, dict):
        raise ValidationError("Shipping address is required", {"missing": list(REQUIRED_SHIPPING_FIELDS)})
    cleaned = {}
    missing = []
    for field in REQUIRED_SHIPPING_FIELDS:
        value = str(info.get(field) or "").strip()
        if not value:
            missing.append(field)
        cleaned[field] = value
    if missing:
        raise ValidationError("Missing shipping fields", {"missing": missing})
    for field in OPTIONAL_SHIPPING_FIELDS:
        value = str(info.get(field) or "").strip()
        if value:
            cleaned[field] = value
    return cleaned
