"""Database connection and session management."""
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase


class Base(DeclarativeBase):
    """SQLAlchemy declarative base."""
    pass


def create_session_factory(database_url: str) -> sessionmaker:
    """Build an engine and a session factory for the given URL."""
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False  # SQLite specific

    engine = create_engine(database_url, connect_args=connect_args)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(session_factory: sessionmaker):
    """Initialize database tables."""
    from . import models  # noqa: F401
    Base.metadata.create_all(bind=session_factory.kw["bind"])
