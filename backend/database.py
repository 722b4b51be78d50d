"""
Database configuration and session management.
"""
import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from models import Base

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./attendance.db")


def make_engine(url: str = DATABASE_URL):
    """Create an engine; SQLite connections are shared across threads."""
    if not url.startswith("sqlite"):
        return create_engine(url)
    kwargs = {"connect_args": {"check_same_thread": False}}
    if url in ("sqlite://", "sqlite:///:memory:"):
        # In-memory databases only exist on a single connection
        kwargs["poolclass"] = StaticPool
    return create_engine(url, **kwargs)


engine = make_engine()

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(bind=None):
    """Initialize database tables."""
    Base.metadata.create_all(bind=bind or engine)
