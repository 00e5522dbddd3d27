from __future__ import annotations

from collections.abc import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from bulkops.config import settings

# API routes and Celery workers share the sync engine; routes are plain
# ``def`` endpoints and run in FastAPI's threadpool.
sync_url = settings.DATABASE_URL.replace("+asyncpg", "+psycopg2")
sync_engine = create_engine(sync_url, echo=False, pool_pre_ping=True)
sync_session_factory = sessionmaker(sync_engine, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


def get_sync_db() -> Generator[Session]:
    with sync_session_factory() as session:
        yield session
