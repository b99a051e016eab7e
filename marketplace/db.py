from __future__ import annotations

from collections.abc import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from marketplace.config import settings


def build_engine(url: str) -> Engine:
    if not url.startswith('sqlite'):
        return create_engine(url, pool_pre_ping=True)

    kwargs: dict = {'connect_args': {'check_same_thread': False}}
    if ':memory:' in url or url.rstrip('/') in {'sqlite:', 'sqlite+pysqlite:'}:
        kwargs['poolclass'] = StaticPool
    engine = create_engine(url, **kwargs)

    # pysqlite defers BEGIN on its own, which breaks SAVEPOINT handling.
    @event.listens_for(engine, 'connect')
    def _disable_pysqlite_transactions(dbapi_connection, _record) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, 'begin')
    def _emit_begin(conn) -> None:
        conn.exec_driver_sql('BEGIN')

    return engine


engine = build_engine(settings.database_url_normalized)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def get_db() -> Iterator[Session]:
    with SessionLocal() as db:
        yield db
