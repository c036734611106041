"""Database session management with connection pooling"""

from functools import lru_cache
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from auction_gateway.config import settings


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    # Connection pool: max 20 connections, recycle after 1 hour to avoid stale connections
    return create_engine(
        settings.database_url,
        pool_pre_ping=True,  # Verify connections before using
        pool_size=10,
        max_overflow=10,
        pool_recycle=3600,
    )


@lru_cache(maxsize=1)
def get_sessionmaker() -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=get_engine())


def get_db() -> Session:
    """Dependency injection for database sessions"""
    db = get_sessionmaker()()
    try:
        yield db
    finally:
        db.close()
