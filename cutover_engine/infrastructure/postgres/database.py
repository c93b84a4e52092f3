#cutover_engine\infrastructure\postgres\database.py

"""Engine and session factory for the lock, record and registry tables."""

from functools import lru_cache
from typing import Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from cutover_engine.infrastructure.postgres.config import settings


# ============================================
# Base for ORM models
# ============================================
Base = declarative_base()


# ============================================
# Engine configuration
# ============================================
def create_db_engine(database_url: Optional[str] = None) -> Engine:
    """
    Build an engine for PostgreSQL (production) or SQLite (tests, local runs).

    PostgreSQL sessions get a lock_timeout so a row held FOR UPDATE by a
    stuck peer fails the lease call instead of hanging the heartbeat.
    """
    url = database_url or settings.database_url

    if url in ("sqlite://", "sqlite:///:memory:"):
        # Single shared connection so ":memory:" survives across sessions
        return create_engine(
            url,
            echo=settings.echo_sql,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    if url.startswith("sqlite"):
        return create_engine(
            url,
            echo=settings.echo_sql,
            connect_args={"check_same_thread": False, "timeout": 30},
        )

    engine = create_engine(
        url,
        echo=settings.echo_sql,
        pool_pre_ping=True,
        pool_size=settings.pool_size,
        max_overflow=settings.max_overflow,
        pool_timeout=settings.pool_timeout,
        pool_recycle=settings.pool_recycle,
    )

    @event.listens_for(engine, "connect")
    def set_lock_timeout(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute(f"SET lock_timeout = {int(settings.lock_timeout_ms)}")
        cursor.close()

    return engine


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    """Process-wide engine, created on first use."""
    return create_db_engine()


def get_session_factory(engine_instance: Optional[Engine] = None) -> sessionmaker:
    """Sessions bound to `engine_instance`, or to the process-wide engine."""
    return sessionmaker(
        autoflush=False,
        bind=engine_instance or get_engine(),
        expire_on_commit=False,
    )


# ============================================
# Schema (tests and local runs; Alembic in production)
# ============================================
def init_db(engine_instance: Optional[Engine] = None) -> None:
    # Register ORM tables on the metadata
    from cutover_engine.infrastructure.postgres import models  # noqa: F401

    Base.metadata.create_all(bind=engine_instance or get_engine())


def drop_db(engine_instance: Optional[Engine] = None) -> None:
    Base.metadata.drop_all(bind=engine_instance or get_engine())
