"""FastAPI dependencies."""
from typing import Generator

from sqlalchemy.orm import Session, sessionmaker

from tanam.backend.database import get_session_factory


def get_db() -> Generator[Session, None, None]:
    factory = get_session_factory()
    sess = factory()
    try:
        yield sess
    finally:
        sess.close()


def get_db_factory() -> sessionmaker:
    """Session factory for code that opens one session per concurrent read."""
    return get_session_factory()
