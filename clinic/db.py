from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from . import config


def build_engine(url: str) -> Engine:
    kwargs: dict = {"echo": config.SQL_ECHO, "future": True}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        # SQLite in memoria: una sola connessione condivisa, altrimenti ogni sessione vede un DB vuoto
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    return create_engine(url, **kwargs)


engine = build_engine(config.DATABASE_URL)

SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False,
    future=True,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    """Base ORM per tutti i modelli."""
    pass


def init_db() -> None:
    """Crea le tabelle se non esistono."""
    # import necessario per registrare tutti i modelli nel metadata
    from . import auth_models, models  # noqa: F401

    Base.metadata.create_all(bind=engine)


def drop_db() -> None:
    Base.metadata.drop_all(bind=engine)


@contextmanager
def db_session() -> Iterator[Session]:
    """
    Context manager per gestire correttamente la sessione:
    - commit se tutto ok
    - rollback su eccezioni
    - close sempre
    """
    session: Session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
