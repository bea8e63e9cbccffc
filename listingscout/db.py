"""Database engine and session utilities.

Centralized SQLAlchemy engine creation and the session dependency helper for
FastAPI. PostgreSQL is the production target; SQLite works for local runs
and the test-suite.
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from .config import get_settings

Base = declarative_base()


def make_engine(database_url, pool_size=5, max_overflow=10):
    if database_url.startswith("sqlite"):
        return create_engine(database_url, connect_args={"check_same_thread": False})
    # tuned pool settings for cloud DB
    return create_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True
    )


_settings = get_settings()
engine = make_engine(_settings.database_url, _settings.db_pool_size, _settings.db_max_overflow)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
