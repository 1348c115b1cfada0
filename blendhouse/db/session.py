from contextlib import contextmanager
import os
import time
from pathlib import Path
from typing import Optional

from sqlalchemy import create_engine, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from ..utils.errors import TransactionConflictError, TransactionTimeoutError


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///data/app.db")

DEFAULT_MAX_WAIT_MS = 5000
DEFAULT_TIMEOUT_MS = 15000

# SQLSTATEs raised by PostgreSQL when a lock wait or statement outlives its limit
_TIMEOUT_SQLSTATES = {"55P03", "57014"}
_CONFLICT_SQLSTATES = {"40001", "40P01"}


def _ensure_sqlite_dir(url: str) -> None:
    # sqlite cannot create the parent directory of its database file
    if url.startswith("sqlite:///") and ":memory:" not in url:
        db_path = url.split("sqlite:///")[-1]
        Path(db_path).expanduser().resolve().parent.mkdir(parents=True, exist_ok=True)


def build_engine(url: str):
    _ensure_sqlite_dir(url)
    if url.startswith("sqlite"):
        return create_engine(
            url,
            future=True,
            connect_args={"timeout": DEFAULT_MAX_WAIT_MS / 1000, "check_same_thread": False},
        )
    return create_engine(url, future=True, pool_pre_ping=True)


engine = None
SessionLocal = sessionmaker(autoflush=False, expire_on_commit=False, future=True)


def init_engine(url: Optional[str] = None):
    """Bind the session factory to ``url`` (defaults to DATABASE_URL) and return the engine."""
    global engine
    if engine is not None:
        engine.dispose()
    engine = build_engine(url or DATABASE_URL)
    SessionLocal.configure(bind=engine)
    return engine


def init_db() -> None:
    from ..models.base import Base
    from ..models import (  # noqa: F401  registers every table on Base.metadata
        cart,
        cart_item,
        discount_code,
        order,
        order_item,
        order_status_log,
        product,
        shipping_method,
        tax_rate,
        webhook_event,
    )

    Base.metadata.create_all(engine)


@contextmanager
def get_session():
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def _apply_limits(session, max_wait_ms: int, timeout_ms: int, isolation_level: Optional[str]) -> None:
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        options = {"isolation_level": isolation_level} if isolation_level else {}
        conn = session.connection(execution_options=options)
        conn.execute(text(f"SET LOCAL lock_timeout = {int(max_wait_ms)}"))
        conn.execute(text(f"SET LOCAL statement_timeout = {int(timeout_ms)}"))
    elif dialect == "sqlite":
        session.execute(text(f"PRAGMA busy_timeout = {int(max_wait_ms)}"))


def _translate_operational_error(exc: OperationalError, timeout_ms: int):
    sqlstate = getattr(exc.orig, "pgcode", None) or getattr(exc.orig, "sqlstate", None)
    message = str(exc.orig).lower()
    if sqlstate in _CONFLICT_SQLSTATES or "deadlock" in message:
        return TransactionConflictError(
            "Transaction conflict, please try again", {"reason": str(exc.orig)}
        )
    if sqlstate in _TIMEOUT_SQLSTATES or "database is locked" in message or "timeout" in message:
        return TransactionTimeoutError(
            "Transaction timed out waiting for the database, please try again",
            {"timeout_ms": timeout_ms, "reason": str(exc.orig)},
        )
    return None


@contextmanager
def transaction(
    *,
    max_wait_ms: int = DEFAULT_MAX_WAIT_MS,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    isolation_level: Optional[str] = "READ COMMITTED",
):
    """All-or-nothing unit of work with a lock-wait ceiling and a hard deadline.

    The body either commits as a whole or is rolled back; a body that runs past
    ``timeout_ms`` is rolled back and raises TransactionTimeoutError, and driver
    level lock timeouts / deadlocks surface as retryable transaction errors.
    """
    session = SessionLocal()
    deadline = time.monotonic() + timeout_ms / 1000
    try:
        _apply_limits(session, max_wait_ms, timeout_ms, isolation_level)
        yield session
        if time.monotonic() > deadline:
            raise TransactionTimeoutError(
                "Transaction exceeded its time limit and was rolled back",
                {"timeout_ms": timeout_ms},
            )
        session.commit()
    except OperationalError as exc:
        session.rollback()
        translated = _translate_operational_error(exc, timeout_ms)
        if translated is None:
            raise
        raise translated from exc
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
