"""
Database engine, session factory and declarative base
"""
import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from app.config import settings

logger = logging.getLogger(__name__)

_db_url = settings.DATABASE_URL
if _db_url.startswith("sqlite"):
    # In-memory / file SQLite for local runs and tests
    sqlite_kwargs = {"connect_args": {"check_same_thread": False}}
    if ":memory:" in _db_url:
        sqlite_kwargs["poolclass"] = StaticPool
    engine = create_engine(_db_url, **sqlite_kwargs)
else:
    engine = create_engine(
        _db_url,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10,
        pool_recycle=300,
    )

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """Get database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
