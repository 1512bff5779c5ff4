"""
Database plumbing shared by every table of the workflow engine.

All cases, timeline entries, audit entries and signatures live in one
SQLAlchemy metadata so that a transition can write all of them inside a
single transaction.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, Optional, Type

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .exceptions import ImmutableRecordError

logger = logging.getLogger(__name__)

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, stored identically on every backend."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def insert_only(cls: Type[Any]) -> Type[Any]:
    """Class decorator refusing any UPDATE or DELETE of a mapped row."""

    def _refuse_update(mapper: Any, connection: Any, target: Any) -> None:
        logger.warning("Blocked update of insert-only row in %s", cls.__tablename__)
        raise ImmutableRecordError(cls.__tablename__, "update")

    def _refuse_delete(mapper: Any, connection: Any, target: Any) -> None:
        logger.warning("Blocked delete of insert-only row in %s", cls.__tablename__)
        raise ImmutableRecordError(cls.__tablename__, "delete")

    event.listen(cls, "before_update", _refuse_update)
    event.listen(cls, "before_delete", _refuse_delete)
    return cls


class Database:
    """Engine and session factory with a transactional scope."""

    def __init__(self, url: str, echo: bool = False, engine: Optional[Engine] = None):
        self.url = url
        if engine is not None:
            self.engine = engine
        elif url.startswith("sqlite"):
            # SQLite doesn't support pool_size and max_overflow
            self.engine = create_engine(
                url, echo=echo, connect_args={"check_same_thread": False}
            )
        else:
            self.engine = create_engine(
                url, echo=echo, pool_pre_ping=True, pool_size=10, max_overflow=20
            )
        self.SessionLocal = sessionmaker(
            bind=self.engine, autoflush=False, expire_on_commit=False
        )

    @classmethod
    def from_config(cls, config: Any) -> "Database":
        return cls(config.database_url, echo=config.database_echo)

    def create_all(self) -> None:
        """Create all tables known to the shared metadata."""
        # Import models so their tables are registered on Base.metadata
        from . import access_control  # noqa: F401
        from .audit_trail import storage  # noqa: F401
        from .cases import models  # noqa: F401
        from .electronic_signatures import models as signature_models  # noqa: F401

        Base.metadata.create_all(bind=self.engine)

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Yield a session that commits on success and rolls back on error."""
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def reader(self) -> Iterator[Session]:
        """Yield a session for read-only work."""
        session = self.SessionLocal()
        try:
            yield session
        finally:
            session.close()
