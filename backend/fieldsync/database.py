"""SQLAlchemy engine, session factory and declarative base."""

from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from fieldsync.config import settings

Base = declarative_base()


def make_engine(database_url: str) -> Engine:
    """Build an engine; in-memory SQLite shares one connection across sessions."""
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, echo=False, **kwargs)
    return create_engine(database_url, echo=False, pool_pre_ping=True)


def make_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=bind)


engine = make_engine(settings.database_url)
SessionLocal = make_session_factory(engine)


def init_db(bind: Optional[Engine] = None) -> None:
    """Create all tables. Call once on startup."""
    import fieldsync.models  # noqa: F401  register models
    Base.metadata.create_all(bind=bind or engine)


@contextmanager
def session_scope(factory: sessionmaker = SessionLocal) -> Generator[Session, None, None]:
    db = factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
