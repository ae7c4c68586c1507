# lotledger/db.py
"""Database engine and session utilities.

Centralized SQLAlchemy engine creation, the portable column types the models
share, and the session dependency helper for FastAPI.
"""
from sqlalchemy import JSON, BigInteger, DateTime, Integer, create_engine, event
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator

from .config import settings
from .utils import as_utc

Base = declarative_base()

# raw payload documents: JSONB on postgres, plain JSON elsewhere
JSONDocument = JSON().with_variant(JSONB(), "postgresql")

# high-volume surrogate keys; sqlite only autoincrements INTEGER
BigId = BigInteger().with_variant(Integer(), "sqlite")


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime stored as UTC on every backend."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        value = as_utc(value)
        if value is not None and dialect.name == "sqlite":
            # sqlite has no tz support; store naive UTC
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        return as_utc(value)


def _enable_sqlite_savepoints(engine):
    # pysqlite defers BEGIN, which breaks SAVEPOINT; take over transaction control
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def make_engine(url: str, **kwargs):
    if url.startswith("sqlite"):
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs.setdefault("poolclass", StaticPool)
        kwargs.setdefault("connect_args", {"check_same_thread": False})
        engine = create_engine(url, **kwargs)
        _enable_sqlite_savepoints(engine)
        return engine
    # tuned pool settings for cloud DB
    return create_engine(
        url,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_pre_ping=True,
        **kwargs,
    )


SessionLocal = sessionmaker(autocommit=False, autoflush=False)

_engine = None


def get_engine():
    global _engine
    if _engine is None:
        if not settings.DATABASE_URL:
            raise RuntimeError("DATABASE_URL not set")
        _engine = make_engine(settings.DATABASE_URL)
        SessionLocal.configure(bind=_engine)
    return _engine


def init_db(engine=None):
    # models must be imported so tables are known
    from . import models  # noqa: F401
    Base.metadata.create_all(bind=engine or get_engine())


def get_db():
    get_engine()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def dialect_insert(db, table):
    """Dialect-specific INSERT that supports ON CONFLICT clauses."""
    if db.get_bind().dialect.name == "postgresql":
        return pg_insert(table)
    return sqlite_insert(table)
