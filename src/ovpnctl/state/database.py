"""SQLite database handle built on SQLAlchemy 2.x.

A :class:`Database` is created once by the CLI and passed to every component
that persists state; nothing in ovpnctl reaches for a global session.
"""
from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool


class Base(DeclarativeBase):
    """Declarative base for all ovpnctl tables."""


def utcnow() -> datetime:
    """Return the current UTC time as a naive datetime, as stored in SQLite."""
    return datetime.now(UTC).replace(tzinfo=None)


def _install_sqlite_hooks(engine: Engine) -> None:
    # pysqlite opens transactions lazily and commits before DDL; take over
    # transaction control so migrations are all-or-nothing.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: Any, _record: Any) -> None:
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(connection: Any) -> None:
        connection.exec_driver_sql("BEGIN")


@dataclass(slots=True)
class Database:
    """Engine plus session factory for one SQLite file."""

    engine: Engine
    session_factory: sessionmaker[Session]

    @classmethod
    def open(cls, path: Path) -> Database:
        """Open (creating the parent directory for) the database at *path*."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        engine = create_engine(
            f"sqlite:///{path}",
            connect_args={"check_same_thread": False},
        )
        return cls._from_engine(engine)

    @classmethod
    def in_memory(cls) -> Database:
        """Return a private in-memory database sharing one connection."""
        engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        return cls._from_engine(engine)

    @classmethod
    def _from_engine(cls, engine: Engine) -> Database:
        _install_sqlite_hooks(engine)
        factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
        return cls(engine=engine, session_factory=factory)

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Yield a session committed on success and rolled back on error."""
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        """Close pooled connections."""
        self.engine.dispose()


__all__ = ["Base", "Database", "utcnow"]
