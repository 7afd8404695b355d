from __future__ import annotations

from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine

from . import models  # noqa: F401  (register tables on SQLModel.metadata)


def make_engine(url: str) -> Engine:
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, echo=False, connect_args=connect_args)


def init_db(bind: Engine) -> None:
    """Initialise tables (idempotent)."""
    SQLModel.metadata.create_all(bind)
