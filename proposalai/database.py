# proposalai/database.py

from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

from proposalai.config import settings


def create_db_engine(url: str = None, echo: bool = False) -> Engine:
    """
    Build the SQLAlchemy engine the store runs on.

    SQLite connections are shared across scheduler worker threads, so
    `check_same_thread` is disabled; in-memory databases additionally need a
    single static connection or every checkout would see an empty database.
    """
    url = url or settings.DB_URL
    kwargs = {"echo": echo}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    return create_engine(url, **kwargs)


def init_db(engine: Engine) -> None:
    # 👇 import all models so they're registered on the metadata
    from proposalai import models  # noqa: F401

    SQLModel.metadata.create_all(engine)

