from __future__ import annotations

from collections.abc import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from chatstream.core.config import settings


def _engine_kwargs(uri: str) -> dict[str, object]:
    if uri.startswith("sqlite"):
        # Store writes run in worker threads via asyncio.to_thread.
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True}


engine = create_engine(
    settings.sqlalchemy_database_uri, **_engine_kwargs(settings.sqlalchemy_database_uri)
)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
