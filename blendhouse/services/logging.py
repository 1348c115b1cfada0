import json
import sys
from datetime import datetime, timezone


LEVELS = {"debug": 10, "info": 20, "warning": 30, "error": 40, "critical": 50}

_min_level = LEVELS["info"]


def configure_logging(level: str) -> None:
    global _min_level
    _min_level = LEVELS.get((level or "info").lower(), LEVELS["info"])


def log_event(level: str, event: str, **fields) -> None:
    lvl = level.lower()
    if LEVELS.get(lvl, LEVELS["info"]) < _min_level:
        return
    payload = {
        "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "level": lvl,
        "event": event,
    }
    payload.update(fields or {})
    # Decimal, datetime and UUID values are rendered as strings
    sys.stdout.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")
