from functools import lru_cache

from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine, Session

from .settings import settings

def make_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url in ("sqlite://", "sqlite:///"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url, pool_pre_ping=True)

@lru_cache()
def get_engine() -> Engine:
    return make_engine(settings.database_url)

def init_db(engine: Engine | None = None):
    SQLModel.metadata.create_all(engine or get_engine())

def get_session(engine: Engine | None = None) -> Session:
    # prevent attribute expiration so simple reads after commit are safe
    return Session(engine or get_engine(), expire_on_commit=False)
