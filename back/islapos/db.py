from functools import lru_cache

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine

from .settings import settings


@lru_cache
def get_engine() -> Engine:
    """Process-wide engine, created on first use."""
    return create_engine(settings.database_url, pool_pre_ping=True)


def create_db_and_tables() -> None:
    # Import table modules so their metadata is registered.
    from . import models  # noqa: F401

    SQLModel.metadata.create_all(get_engine())


def check_db_connection() -> None:
    with get_engine().connect() as conn:
        conn.execute(text("SELECT 1"))


def get_session():
    with Session(get_engine()) as session:
        yield session
