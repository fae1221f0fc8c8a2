"""SQLAlchemy declarative base and engine setup for the local stores."""

from __future__ import annotations

import logging
from typing import Annotated

from sqlalchemy import Engine, String, create_engine
from sqlalchemy.orm import DeclarativeBase, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)


AddressColumn = Annotated[str, mapped_column(String(42))]
HashColumn = Annotated[str, mapped_column(String(66))]


class Base(DeclarativeBase):
    pass


def create_db_engine(url: str = "sqlite://") -> Engine:
    """
    Engine with every table created.

    In-memory SQLite uses a single shared connection so worker threads see
    the same database.
    """
    if url.startswith("sqlite"):
        kwargs: dict = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        engine = create_engine(url, **kwargs)
    else:
        engine = create_engine(url)

    Base.metadata.create_all(engine)
    logger.debug("database ready at %s", engine.url.render_as_string(hide_password=True))
    return engine


def session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False)
