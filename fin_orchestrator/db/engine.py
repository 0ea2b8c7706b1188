# =============================================================================
# Database Engine & Session Management
# =============================================================================
#
# The planner, executors, sweeps and API all run synchronous code, so one
# sync SQLAlchemy engine serves every process. Executors bridge into async
# worker code with asyncio.run(), never the other way round.
#
# SESSIONS: the Job Store opens one short session per operation from the
# factory below and commits or rolls back inside it.
#
# The engine is created lazily so that importing the package (e.g. to run
# unit tests against SQLite) never needs a PostgreSQL driver.
# =============================================================================

from __future__ import annotations

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from fin_orchestrator.config import settings

_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None


def build_engine(database_url: str, *, echo: bool = False) -> Engine:
    """
    Create an engine for the given URL.

    SQLite (tests, local demos) gets foreign keys enabled and a generous
    busy timeout so concurrent executor threads wait instead of failing.
    """
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
        return engine

    return create_engine(
        database_url,
        echo=echo,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_pre_ping=True,
    )


def get_engine() -> Engine:
    """Lazily create and cache the process-wide engine."""
    global _engine
    if _engine is None:
        _engine = build_engine(settings.database_url, echo=settings.debug)
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    """Lazily create and cache the session factory."""
    global _session_factory
    if _session_factory is None:
        _session_factory = make_session_factory(get_engine())
    return _session_factory


def make_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, class_=Session, expire_on_commit=False)


def init_db(engine: Engine | None = None) -> None:
    """Create all tables. Used by tests and the API lifespan."""
    from fin_orchestrator.db.models import Base

    Base.metadata.create_all(engine or get_engine())


def _enable_sqlite_foreign_keys(dbapi_connection, _connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys = ON")
    cursor.close()
