from __future__ import annotations

from contextlib import contextmanager
from collections.abc import Generator

from flask import Flask, g
from sqlalchemy import create_engine, event
from sqlalchemy import exc as sa_exc
from sqlalchemy.orm import Session, sessionmaker


def _engine_kwargs(db_url: str, timeout_seconds: int) -> dict[str, object]:
    engine_kwargs: dict[str, object] = {
        "future": True,
        "pool_pre_ping": True,
    }
    if db_url.startswith("postgres"):
        engine_kwargs.update(
            {
                "pool_recycle": 1800,
                "pool_size": 5,
                "max_overflow": 10,
                "pool_timeout": timeout_seconds,
                "connect_args": {
                    "connect_timeout": timeout_seconds,
                    "options": f"-c statement_timeout={timeout_seconds * 1000}",
                },
            }
        )
    elif db_url.startswith("sqlite"):
        # busy timeout: a writer waiting on a lock gives up instead of hanging
        engine_kwargs["connect_args"] = {"timeout": timeout_seconds, "check_same_thread": False}
    return engine_kwargs


def init_db(app: Flask) -> None:
    db_url = app.config["DATABASE_URL"]
    timeout_seconds = int(app.config.get("STORE_TIMEOUT_SECONDS") or 10)
    engine = create_engine(db_url, **_engine_kwargs(db_url, timeout_seconds))
    if app.config.get("ENV") != "production":
        @event.listens_for(engine, "checkout")
        def _receive_checkout(dbapi_connection, connection_record, connection_proxy):  # type: ignore[no-redef]
            app.logger.debug("DB connection checkout from pool")
    app.extensions["sqlalchemy_engine"] = engine
    app.extensions["sqlalchemy_sessionmaker"] = sessionmaker(
        bind=engine,
        class_=Session,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )


def db_session(app: Flask | None = None) -> Session:
    """
    Request-scoped session. Use inside request handlers.
    """
    if hasattr(g, "db_session") and g.db_session is not None:
        return g.db_session
    if app is None:
        from flask import current_app

        app = current_app
    sm = app.extensions["sqlalchemy_sessionmaker"]
    g.db_session = sm()  # type: ignore[assignment]
    return g.db_session


def teardown_db_session(_exc: BaseException | None) -> None:
    s: Session | None = getattr(g, "db_session", None)
    if s is not None:
        try:
            s.close()
        finally:
            g.db_session = None


@contextmanager
def session_scope(app: Flask) -> Generator[Session, None, None]:
    """
    Non-request helper for scripts and tests: yields a session and commits/rolls back.
    """
    sm = app.extensions["sqlalchemy_sessionmaker"]
    s: Session = sm()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()


_TIMEOUT_MARKERS = (
    "database is locked",
    "statement timeout",
    "canceling statement due to",
    "timeout expired",
    "timed out",
)


def is_timeout_error(e: BaseException) -> bool:
    """True when a driver/pool error means the store did not answer in time."""
    if isinstance(e, sa_exc.TimeoutError):
        return True
    if isinstance(e, sa_exc.OperationalError):
        text = str(e.orig or e).lower()
        return any(marker in text for marker in _TIMEOUT_MARKERS)
    return False
