"""
Database connection using SQLAlchemy.

Only the "sql" proof store backend touches this. The default is a local
SQLite file, but any SQLAlchemy URL works (e.g. a hosted PostgreSQL):
the proof_entries table is plain key → JSON text, no dialect features.

The engine is sync on purpose: ProofStore serializes every write under a
threading.Lock, and the work done while holding it is a couple of
primary-key lookups.
"""

from pathlib import Path

from sqlalchemy import Engine, create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Engine for database_url, creating the parent directory of a SQLite file.

    check_same_thread is off for SQLite because FastAPI may run the store
    from different worker threads; ProofStore's lock does the serializing.
    """
    url = make_url(database_url)
    connect_args = {}

    if url.get_backend_name() == "sqlite":
        connect_args["check_same_thread"] = False
        if url.database and url.database != ":memory:":
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)

    return create_engine(database_url, echo=echo, connect_args=connect_args)


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    """
    Factory that creates database sessions.

    expire_on_commit=False keeps loaded rows readable after commit.
    """
    return sessionmaker(engine, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create all tables defined in our models (no-op if they exist)."""
    # Import models so SQLAlchemy knows about them when creating tables
    from receiptproof.models.proof_entry import ProofEntry  # noqa: F401

    Base.metadata.create_all(engine)
