"""
Shared SQLAlchemy plumbing for the engine's own tables.

Retention policies, legal holds, audit entries, purge jobs, category locks
and compliance reports all live on the same declarative base so a single
``create_all`` provisions the schema.
"""

import threading
import weakref
from contextlib import contextmanager, nullcontext
from typing import Any, ContextManager, Dict, Iterator, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .exceptions import SystemUnavailableError

Base = declarative_base()

_connection_locks: "weakref.WeakKeyDictionary[Engine, Any]" = weakref.WeakKeyDictionary()


def session_lock(engine: Engine) -> ContextManager[Any]:
    """
    Lock serializing sessions on an engine with a single shared connection.

    Blocking calls run in worker threads, and sessions on a ``StaticPool``
    engine would otherwise interleave statements on the one connection.
    """
    if not isinstance(engine.pool, StaticPool):
        return nullcontext()
    return _connection_locks.setdefault(engine, threading.RLock())


class Database:
    """Engine and session factory for the lifecycle tables."""

    def __init__(self, url: str, create_tables: bool = True):
        """
        Initialize the database.

        Args:
            url: SQLAlchemy connection string
            create_tables: Create missing tables immediately
        """
        self.url = url
        self.engine: Engine = self._create_engine(url)
        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine
        )

        if create_tables:
            self.create_all()

    @staticmethod
    def _create_engine(url: str) -> Engine:
        if url.startswith("sqlite"):
            kwargs: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
            if url in ("sqlite://", "sqlite:///:memory:"):
                # One shared connection, otherwise every session sees an empty db
                kwargs["poolclass"] = StaticPool
            return create_engine(url, **kwargs)

        return create_engine(url, pool_pre_ping=True, pool_size=10, max_overflow=20)

    def create_all(self) -> None:
        """Create all lifecycle tables."""
        # Models register themselves on Base when their modules are imported
        from .audit_trail import log  # noqa: F401
        from .compliance import store  # noqa: F401
        from .jobs import tracker  # noqa: F401
        from .legal_hold import registry  # noqa: F401
        from .policies import store as policy_store  # noqa: F401

        Base.metadata.create_all(bind=self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Open a new session."""
        with session_lock(self.engine):
            with self.SessionLocal() as session:
                yield session

    def ping(self, component: Optional[str] = None) -> None:
        """
        Check that the database answers.

        Raises:
            SystemUnavailableError: If no connection can be made
        """
        try:
            with session_lock(self.engine), self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            name = component or "lifecycle database"
            raise SystemUnavailableError(f"{name} is unreachable: {e}") from e

    def dispose(self) -> None:
        self.engine.dispose()
