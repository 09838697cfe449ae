"""
Engine, session factory and declarative base for the stockroom database.
"""
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from typing import Generator
from contextlib import contextmanager

from stockroom.core.config import settings
from stockroom.core.logging import get_logger

logger = get_logger(__name__)


def enable_sqlite_savepoints(engine: Engine) -> None:
    """
    Let SQLAlchemy own BEGIN on pysqlite connections.

    The driver otherwise defers BEGIN until the first DML statement, which
    breaks SAVEPOINT handling used by per-item withdrawal deductions.
    """
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def build_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        engine = create_engine(url, connect_args={"check_same_thread": False})
        enable_sqlite_savepoints(engine)
        return engine

    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
        pool_timeout=30,
        pool_recycle=1800,
    )


engine = build_engine(settings.DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency: one session per request, closed afterwards."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_db_context() -> Generator[Session, None, None]:
    """Session for scripts: commit on success, roll back on error."""
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db():
    """
    Startup hook: preflight, schema check, then optional demo seed.

    Alembic owns the schema. Missing tables are created from metadata only
    when DEBUG is on; otherwise startup continues and requests will fail
    until ``alembic upgrade head`` has run.
    """
    from sqlalchemy import inspect

    from stockroom.db import models  # noqa: F401
    from stockroom.db.preflight import run_db_preflight

    run_db_preflight()

    missing = sorted(set(Base.metadata.tables) - set(inspect(engine).get_table_names()))
    if missing:
        logger.warning(f"Schema incomplete, missing tables: {missing}")
        if not settings.DEBUG:
            return
        logger.warning("DEBUG=true: creating missing tables from metadata")
        Base.metadata.create_all(bind=engine)
    else:
        logger.info(f"Schema verified: {len(Base.metadata.tables)} tables")

    if settings.SEED_DEMO:
        from stockroom.db.seed import seed_demo_data
        seed_demo_data()
