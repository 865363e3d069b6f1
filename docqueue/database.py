"""Database configuration for the job engine."""

from contextlib import contextmanager
from typing import Callable, Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from docqueue.config import settings

# Base class for models
Base = declarative_base()

SessionFactory = Callable[[], Session]


def build_engine(database_url: str) -> Engine:
    """Create an engine with settings suited to the target database."""
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url == "sqlite://":
            # One shared connection so every session sees the same in-memory database
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)

    return create_engine(
        database_url,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10,
        pool_recycle=3600,
    )


def build_session_factory(engine: Engine) -> sessionmaker:
    """Session factory whose objects stay readable after commit."""
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=engine,
    )


engine = build_engine(settings.DATABASE_URL)

SessionLocal = build_session_factory(engine)


def init_db(bind: Engine = engine) -> None:
    """Create all tables."""
    # Import models to register them with Base
    from docqueue import models  # noqa: F401

    Base.metadata.create_all(bind=bind)


@contextmanager
def session_scope(session_factory: SessionFactory) -> Generator[Session, None, None]:
    """Session that commits on success and rolls back on error."""
    db = session_factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
