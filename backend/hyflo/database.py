"""Database engine, session factory and declarative base."""
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from .config import settings


def build_engine(url: str, *, echo: bool = False) -> Engine:
    connect_args = {}
    if url.startswith("sqlite"):
        # Sessions are opened from worker threads.
        connect_args["check_same_thread"] = False
    return create_engine(url, echo=echo, pool_pre_ping=True, future=True, connect_args=connect_args)


engine = build_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)

Base = declarative_base()


def init_db(bind: Engine | None = None) -> None:
    """Create missing tables for every registered model."""
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
