"""Database connection."""
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from sqlalchemy.pool import StaticPool

from tanam.backend.config import get_settings


def get_database_url() -> str:
    s = get_settings()
    return (
        f"postgresql://{s.postgres_user}:{s.postgres_password}@"
        f"{s.postgres_host}:{s.postgres_port}/{s.postgres_db}"
    )


def get_engine():
    url = get_database_url()
    return create_engine(url, pool_pre_ping=True)


def get_test_engine():
    return create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )


class Base(DeclarativeBase):
    pass


_factory = None


def get_session_factory(engine=None):
    global _factory
    if engine is not None:
        return sessionmaker(autocommit=False, autoflush=False, bind=engine)
    if _factory is None:
        _factory = sessionmaker(autocommit=False, autoflush=False, bind=get_engine())
    return _factory
