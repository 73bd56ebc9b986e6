"""Database bootstrap helpers shared by the payment API and processor."""

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from paystream.common.config import settings


class Base(DeclarativeBase):
    """Declarative base for SQLAlchemy models."""

    pass


def make_engine(dsn: str = settings.postgres_dsn, timeout_seconds: float = settings.store_timeout_seconds):
    """Create the process engine with connect and statement timeouts applied."""

    timeout_ms = int(timeout_seconds * 1000)
    return create_engine(
        dsn,
        pool_pre_ping=True,
        pool_timeout=timeout_seconds,
        connect_args={
            "connect_timeout": max(1, int(timeout_seconds)),
            "options": f"-c statement_timeout={timeout_ms}",
        },
    )


def make_session_factory(engine):
    # `expire_on_commit=False` keeps ORM objects readable after commit in handlers.
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
