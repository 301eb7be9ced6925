"""
Engine, session factory, and transaction scope for the billing database.

``init_engine_from_url()`` is called once per process (the orchestrator's
``from_config()`` does it).  Services never commit.  Whoever opens the
session owns the transaction, normally through ``session_scope()``:

    with session_scope() as session:
        PaymentService(session, clock, events).record_payment(...)

PostgreSQL runs at READ COMMITTED; invoice and definition rows are
serialized with ``SELECT ... FOR UPDATE`` rather than a stricter isolation
level.  SQLite URLs get the dialect's own pool and are meant for tests and
local runs.
"""

import atexit
from contextlib import contextmanager
from typing import Callable, Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from billing_kernel.logging_config import configure_logging, get_logger

logger = get_logger("db.engine")

_engine: Engine | None = None
_SessionFactory: sessionmaker[Session] | None = None


def init_engine_from_url(
    database_url: str,
    echo: bool = False,
    pool_size: int = 10,
    max_overflow: int = 10,
    pool_recycle: int = 1800,
) -> Engine:
    """Create the process-wide engine and session factory."""
    global _engine, _SessionFactory

    if database_url.startswith("sqlite"):
        _engine = create_engine(database_url, echo=echo)
    else:
        _engine = create_engine(
            database_url,
            echo=echo,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_pre_ping=True,
            pool_recycle=pool_recycle,
            isolation_level="READ COMMITTED",
        )
    _SessionFactory = sessionmaker(bind=_engine, expire_on_commit=False)

    configure_logging()
    logger.info(
        "engine_initialized",
        extra={"dialect": _engine.dialect.name, "echo": echo},
    )
    return _engine


def get_engine() -> Engine:
    if _engine is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    """Factory handed to the scheduler, generation engine and delivery workers.

    Each of them opens a fresh session per unit of work.
    """
    if _SessionFactory is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _SessionFactory


@contextmanager
def session_scope(
    session_factory: Callable[[], Session] | None = None,
) -> Generator[Session, None, None]:
    """Commit on success; roll back and re-raise on any exception; always close."""
    session = (session_factory or get_session_factory())()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        logger.warning("transaction_rolled_back", exc_info=True)
        raise
    finally:
        session.close()


def _register_models() -> None:
    # Side-effect imports: every table must be on Base.metadata.
    import billing_batch.models.schedule  # noqa: F401
    import billing_kernel.models  # noqa: F401
    import billing_kernel.services.sequence_service  # noqa: F401


def create_tables(engine: Engine | None = None) -> None:
    """Create any missing billing tables."""
    from billing_kernel.db.base import Base

    _register_models()
    Base.metadata.create_all(engine or get_engine())


def drop_tables(engine: Engine | None = None) -> None:
    from billing_kernel.db.base import Base

    _register_models()
    Base.metadata.drop_all(engine or get_engine())


def reset_engine() -> None:
    """Dispose the engine and forget the session factory (test cleanup)."""
    global _engine, _SessionFactory

    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionFactory = None


@atexit.register
def _dispose_at_exit() -> None:
    if _engine is not None:
        _engine.dispose()
