import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from config import get_settings
from errors import StoreError

logger = logging.getLogger(__name__)


def _create_engine() -> Engine:
    settings = get_settings()
    connect_args: dict[str, object] = {}
    if settings.database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = settings.store_timeout_secs
    elif settings.database_url.startswith("postgresql"):
        timeout_ms = int(settings.store_timeout_secs * 1000)
        connect_args["options"] = (
            f"-c statement_timeout={timeout_ms} -c lock_timeout={timeout_ms}"
        )
    from sqlalchemy import create_engine

    eng = create_engine(settings.database_url, connect_args=connect_args)
    if settings.database_url.startswith("sqlite"):
        event.listen(eng, "connect", _enable_sqlite_pragmas)
    return eng


def _enable_sqlite_pragmas(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


engine = _create_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


@contextmanager
def session_scope() -> Iterator[Session]:
    session: Session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def atomic(session: Session) -> Iterator[Session]:
    """Run the enclosed writes as one unit: commit them all or none.

    Store failures (lock timeouts, lost optimistic updates, constraint
    violations) surface as ``StoreError`` once the rollback has happened.
    """
    try:
        yield session
        session.commit()
    except StaleDataError as exc:
        session.rollback()
        logger.warning(f"atomic_unit: concurrent update detected: {exc}")
        raise StoreError(
            "The record was modified concurrently, retry the operation",
            retryable=True,
        ) from exc
    except OperationalError as exc:
        session.rollback()
        logger.warning(f"atomic_unit: store unavailable: {exc}")
        raise StoreError("The store did not respond in time", retryable=True) from exc
    except SQLAlchemyError as exc:
        session.rollback()
        logger.exception("atomic_unit: store failure")
        raise StoreError("The store rejected the operation") from exc
    except Exception:
        session.rollback()
        raise
