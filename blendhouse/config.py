import os
from dataclasses import dataclass, replace
from pathlib import Path
import json
from typing import Dict, List, Optional

from dotenv import load_dotenv


@dataclass
class AppConfig:
    database_url: str
    secret_key: str
    log_level: str
    currency: str
    payment_provider: str
    stripe_secret_key: str
    stripe_webhook_secret: str
    webhook_tolerance_seconds: int
    tx_max_wait_ms: int
    tx_timeout_ms: int
    order_number_prefix: str
    default_tax_region: str

    @property
    def payments_configured(self) -> bool:
        if self.payment_provider == "fake":
            return True
        return bool(self.stripe_secret_key)


ALLOWED_HOT_KEYS = {"CURRENCY", "DEFAULT_TAX_REGION"}
SENSITIVE_KEYS = {"SECRET_KEY", "STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET", "DATABASE_URL"}
PAYMENT_PROVIDERS = {"stripe", "fake"}


def validate_currency(value: Optional[str]) -> str:
    v = (value or "USD").strip().upper()
    if len(v) != 3:
        raise ValueError("Invalid currency code: expected ISO4217 length 3")
    return v


def validate_payment_provider(value: Optional[str]) -> str:
    v = (value or "stripe").strip().lower()
    if v not in PAYMENT_PROVIDERS:
        raise ValueError(f"Unknown payment provider: {v}")
    return v


def _positive_int(value, default: int, field: str) -> int:
    if value in (None, ""):
        return default
    n = int(value)
    if n <= 0:
        raise ValueError(f"{field} must be > 0")
    return n


def _load_settings_file(path: Optional[Path] = None) -> dict:
    path = path or Path(__file__).resolve().parents[1] / "data" / "settings.json"
    if not path.exists():
        return {}
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid settings file {path}: {exc}") from exc


def load_env(settings_path: Optional[Path] = None, env_file: Optional[Path] = None) -> AppConfig:
    # data/settings.json wins for non-secret keys, the environment supplies the rest
    load_dotenv(env_file)
    s = _load_settings_file(settings_path)
    return AppConfig(
        database_url=os.getenv("DATABASE_URL", "sqlite:///data/app.db"),
        secret_key=os.getenv("SECRET_KEY", "dev_secret"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        currency=validate_currency(s.get("CURRENCY") or os.getenv("CURRENCY")),
        payment_provider=validate_payment_provider(s.get("PAYMENT_PROVIDER") or os.getenv("PAYMENT_PROVIDER")),
        stripe_secret_key=os.getenv("STRIPE_SECRET_KEY", ""),
        stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET", ""),
        webhook_tolerance_seconds=_positive_int(
            os.getenv("WEBHOOK_TOLERANCE_SECONDS"), 300, "WEBHOOK_TOLERANCE_SECONDS"
        ),
        tx_max_wait_ms=_positive_int(os.getenv("TX_MAX_WAIT_MS"), 5000, "TX_MAX_WAIT_MS"),
        tx_timeout_ms=_positive_int(os.getenv("TX_TIMEOUT_MS"), 15000, "TX_TIMEOUT_MS"),
        order_number_prefix=(s.get("ORDER_NUMBER_PREFIX") or os.getenv("ORDER_NUMBER_PREFIX") or "BLD").strip().upper(),
        default_tax_region=(s.get("DEFAULT_TAX_REGION") or os.getenv("DEFAULT_TAX_REGION") or "Global").strip(),
    )


def refresh_non_sensitive(overrides: Dict[str, str], current: AppConfig) -> AppConfig:
    updates = {k: v for k, v in (overrides or {}).items() if k in ALLOWED_HOT_KEYS}
    return replace(
        current,
        currency=validate_currency(updates.get("CURRENCY", current.currency)),
        default_tax_region=(updates.get("DEFAULT_TAX_REGION") or current.default_tax_region).strip(),
    )


def requires_restart(changed_keys: List[str]) -> bool:
    if not changed_keys:
        return False
    return any(k in SENSITIVE_KEYS for k in changed_keys)
