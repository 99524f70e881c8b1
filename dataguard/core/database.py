from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from dataguard.core.config import get_settings


def create_session_factory(database_url: str | None = None) -> sessionmaker[Session]:
    """Session factory for the rule store, defaulting to ``settings.database_url``."""

    url = database_url or get_settings().database_url
    engine_kwargs: dict[str, object] = {"pool_pre_ping": True}
    if url.startswith("sqlite"):
        engine_kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in url:
            engine_kwargs["poolclass"] = StaticPool
    engine = create_engine(url, **engine_kwargs)
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)
