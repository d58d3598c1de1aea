"""Database bootstrap helpers for the payments service."""

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from creohub.common.config import settings


def make_engine(url: str):
    """Create an engine; SQLite connections are shared across worker threads."""

    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url, pool_pre_ping=True)


# Single SQLAlchemy engine per process.
engine = make_engine(settings.database_url)
# `expire_on_commit=False` keeps ORM objects readable after commit in handlers.
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


class Base(DeclarativeBase):
    """Declarative base for SQLAlchemy models."""

    pass
