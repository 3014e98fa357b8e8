"""
Engine and session plumbing.

Services never hold a session across operations; they are constructed with
a session factory and open a ``session_scope`` per unit of work.  The
module keeps one process-wide engine for callers that do not manage their
own (``init_engine_from_url`` / ``get_session_factory``); tests build
private engines with ``build_engine`` instead.

Dialect notes:
    PostgreSQL connections run at READ COMMITTED; batch claims rely on
    ``SELECT ... FOR UPDATE``, the row version counter and the batch's
    claim token.
    SQLite is used for tests and local tooling.  It ignores FOR UPDATE and
    serializes writers on the database file, so writers wait up to
    ``sqlite_busy_timeout`` seconds instead of failing immediately.
"""

import atexit
from contextlib import contextmanager
from typing import Callable, Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from series_kernel.logging_config import configure_logging, get_logger

logger = get_logger("db.engine")

_NOT_READY = "Database engine not initialized; call init_engine_from_url() first"

_engine: Engine | None = None
_factory: sessionmaker[Session] | None = None


def build_engine(
    database_url: str,
    *,
    echo: bool = False,
    sqlite_busy_timeout: float = 30.0,
    pool_size: int = 10,
    max_overflow: int = 10,
    pool_timeout: int = 30,
) -> Engine:
    """Create an engine tuned for the URL's dialect. Nothing is registered globally."""
    if database_url.startswith("sqlite"):
        # Worker threads share file-backed connections during bulk approval.
        return create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": sqlite_busy_timeout},
        )
    return create_engine(
        database_url,
        echo=echo,
        isolation_level="READ COMMITTED",
        pool_pre_ping=True,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_timeout=pool_timeout,
    )


def init_engine_from_url(database_url: str, **engine_options) -> Engine:
    """Build the process-wide engine and its session factory.

    ``engine_options`` are passed through to ``build_engine``.  Calling
    this again replaces (and disposes) the previous engine.
    """
    global _engine, _factory

    reset_engine()
    _engine = build_engine(database_url, **engine_options)
    _factory = sessionmaker(bind=_engine, expire_on_commit=False)

    configure_logging()
    logger.info(
        "engine_initialized",
        extra={"dialect": _engine.dialect.name, "echo": bool(engine_options.get("echo"))},
    )
    return _engine


def get_engine() -> Engine:
    if _engine is None:
        raise RuntimeError(_NOT_READY)
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    """Factory bound to the process-wide engine, for wiring services."""
    if _factory is None:
        raise RuntimeError(_NOT_READY)
    return _factory


def is_postgres() -> bool:
    return _engine is not None and _engine.dialect.name == "postgresql"


@contextmanager
def session_scope(
    session_factory: Callable[[], Session] | None = None,
) -> Iterator[Session]:
    """One transaction: commit when the block exits cleanly, roll back otherwise.

    The session always closes.  Exceptions propagate after the rollback.
    Without ``session_factory`` the process-wide factory is used.
    """
    session = (session_factory or get_session_factory())()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        logger.debug("transaction_rolled_back", exc_info=True)
        raise
    finally:
        session.close()


def create_tables(engine: Engine | None = None) -> None:
    """Create every table. All ORM modules are imported first."""
    from series_batch.models import import_all_orm_models
    from series_kernel.db.base import Base

    import_all_orm_models()
    Base.metadata.create_all(engine or get_engine())


def drop_tables(engine: Engine | None = None) -> None:
    from series_kernel.db.base import Base

    Base.metadata.drop_all(engine or get_engine())


def reset_engine() -> None:
    """Dispose the process-wide engine and forget the factory."""
    global _engine, _factory

    if _engine is not None:
        _engine.dispose()
    _engine = None
    _factory = None


atexit.register(reset_engine)
