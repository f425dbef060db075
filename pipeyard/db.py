from __future__ import annotations

from collections.abc import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from pipeyard.config import settings
from pipeyard.models import Base

engine = create_engine(settings.database_url_normalized, pool_pre_ping=True, future=True)

SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


if engine.dialect.name == 'sqlite':

    @event.listens_for(engine, 'connect')
    def _enable_sqlite_foreign_keys(dbapi_connection, _):
        cursor = dbapi_connection.cursor()
        cursor.execute('PRAGMA foreign_keys=ON')
        cursor.close()


def get_db() -> Iterator[Session]:
    # Closing without commit rolls back whatever a failed handler left behind.
    with SessionLocal() as db:
        yield db


def init_models() -> None:
    Base.metadata.create_all(bind=engine)
