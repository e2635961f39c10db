import logging

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

Base = declarative_base()


def make_engine(database_url: str) -> Engine:
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            # one shared connection, otherwise every session sees an empty db
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)
    return create_engine(database_url)


def make_session_factory(engine: Engine):
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def init_db(engine: Engine) -> None:
    from . import models  # noqa: F401
    Base.metadata.create_all(bind=engine)
    ensure_schema(engine)


# table -> [(column, DDL type)] added after the first release
_ADDED_COLUMNS = {
    "habits": [
        ("decay_severity_applied", "INTEGER DEFAULT 0"),
        ("shield_day", "VARCHAR NULL"),
        ("shield_used_at", "TIMESTAMP NULL"),
    ],
    "user_accounts": [
        ("last_shield_refill_at", "TIMESTAMP NULL"),
        ("vacation_days_remaining", "INTEGER DEFAULT 0"),
    ],
    "sync_operations": [
        ("last_attempt_at", "TIMESTAMP NULL"),
        ("increment_due", "BOOLEAN DEFAULT FALSE"),
    ],
}


def ensure_schema(engine: Engine) -> None:
    """Idempotent schema migration: add columns that older databases lack."""
    try:
        inspector = inspect(engine)
        with engine.begin() as conn:
            for table, columns in _ADDED_COLUMNS.items():
                if not inspector.has_table(table):
                    continue
                existing = [c["name"] for c in inspector.get_columns(table)]
                for name, ddl in columns:
                    if name not in existing:
                        conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {name} {ddl}"))
                        logger.info("Added column %s.%s", table, name)
    except SQLAlchemyError:
        logger.exception("Schema migration failed")
        raise
