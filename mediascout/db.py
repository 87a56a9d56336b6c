from __future__ import annotations

import logging
import time
from typing import Callable, Optional, Type

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .backoff import BackoffStrategy
from .entities import Base
from .exceptions import MediaScoutError, PersistenceError
from .metrics import log_event

logger = logging.getLogger(__name__)


def create_db_engine(url: str, **kwargs) -> Engine:
    """Create an engine; SQLite gets thread-shareable connections, in-memory SQLite a single one."""
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs.setdefault("poolclass", StaticPool)
    else:
        kwargs.setdefault("pool_pre_ping", True)
    return create_engine(url, **kwargs)


def make_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    Base.metadata.create_all(engine)


def ping(engine: Engine) -> bool:
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError as exc:
        logger.warning("Database ping failed: %s", exc)
        return False


def connect_with_retry(
    engine: Engine,
    max_attempts: int = 10,
    backoff: Optional[BackoffStrategy] = None,
    error_cls: Type[MediaScoutError] = PersistenceError,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """Block until `SELECT 1` succeeds, retrying with capped backoff.

    Raises `error_cls` once `max_attempts` connection attempts have failed."""
    backoff = backoff or BackoffStrategy(base_seconds=0.5, max_seconds=5.0, jitter=0.1)
    attempt = 0
    while True:
        attempt += 1
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return
        except SQLAlchemyError as exc:
            if attempt >= max_attempts:
                raise error_cls(f"Database unreachable after {attempt} attempts: {exc}") from exc
            delay = backoff.get_sleep(attempt)
            log_event(
                logger, "db_reconnect", logging.WARNING,
                attempt=attempt, delay_s=round(delay, 2), error=type(exc).__name__,
            )
            sleep(delay)
