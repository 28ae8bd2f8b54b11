import logging
import time
from typing import Callable, TypeVar

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, SQLModel, create_engine

from toolcrib.config import settings
from toolcrib.error import ConcurrencyConflictError, StoreUnavailableError, ToolcribError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# transient errors worth another attempt; domain errors are never retried
TRANSIENT_ERRORS = (OperationalError, ConcurrencyConflictError)


def _connect_args(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"check_same_thread": False, "timeout": settings.store_timeout_seconds}
    if url.startswith("postgresql"):
        timeout_ms = int(settings.store_timeout_seconds * 1000)
        return {"options": f"-c statement_timeout={timeout_ms}"}
    return {}


def configure_engine(engine: Engine) -> Engine:
    """Make SAVEPOINTs behave on pysqlite (the driver defers BEGIN on its own)."""
    if engine.dialect.name != "sqlite":
        return engine

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


engine = configure_engine(
    create_engine(settings.database_url, connect_args=_connect_args(settings.database_url))
)


def create_db_and_tables() -> None:
    SQLModel.metadata.create_all(engine)


def get_session():
    session = Session(engine)
    try:
        yield session
    except ToolcribError:
        # business errors already rolled back inside the transaction runner
        raise
    except Exception as e:
        # anything else looks like a program / DB error
        session.rollback()
        logger.exception("rollback after %s: %s", type(e).__name__, e)
        raise
    finally:
        session.close()


def backoff_delay(attempt: int) -> float:
    return min(settings.store_retry_base_delay * (2 ** (attempt - 1)), settings.store_retry_max_delay)


def retry_transient(operation: Callable[[], T], *, on_retry: Callable[[], None] | None = None) -> T:
    """Run ``operation`` up to ``store_retry_attempts`` times on transient store errors."""
    attempts = max(1, settings.store_retry_attempts)
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except TRANSIENT_ERRORS as exc:
            if on_retry is not None:
                on_retry()
            if attempt == attempts:
                if isinstance(exc, ConcurrencyConflictError):
                    raise
                raise StoreUnavailableError(
                    f"Store unavailable after {attempts} attempts: {exc}"
                ) from exc
            delay = backoff_delay(attempt)
            logger.warning(
                "transient store error (attempt %s/%s), retrying in %.2fs: %s",
                attempt, attempts, delay, exc,
            )
            time.sleep(delay)
    raise AssertionError("unreachable")


def run_in_transaction(session: Session, operation: Callable[[], T]) -> T:
    """Run ``operation`` and commit as one unit, retrying transient failures.

    Domain errors roll back and propagate on the first attempt.
    """

    def _attempt() -> T:
        try:
            result = operation()
            session.commit()
            return result
        except TRANSIENT_ERRORS:
            raise
        except Exception:
            session.rollback()
            raise

    return retry_transient(_attempt, on_retry=session.rollback)
