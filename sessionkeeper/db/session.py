from __future__ import annotations
from pathlib import Path
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool

Base = declarative_base()

def build_engine(database_url: str) -> Engine:
    """
    Create the engine for DATABASE_URL. File-backed SQLite gets its parent
    directory created; in-memory SQLite shares one connection across threads.
    """
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite":
        return create_engine(database_url, pool_pre_ping=True)

    # check_same_thread=False required for SQLite + threaded servers
    connect_args = {"check_same_thread": False}
    if not url.database or url.database == ":memory:":
        return create_engine(database_url, connect_args=connect_args, poolclass=StaticPool)

    Path(url.database).expanduser().resolve().parent.mkdir(parents=True, exist_ok=True)
    return create_engine(database_url, connect_args=connect_args)

def build_session_factory(engine: Engine) -> sessionmaker:
    # expire_on_commit=False so snapshots can be taken after commit
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)

def create_schema(engine: Engine) -> None:
    from . import models  # noqa: F401  (registers tables on Base)
    Base.metadata.create_all(bind=engine)
