from contextlib import contextmanager
from typing import Iterator, Optional
import logging

from sqlalchemy.exc import IntegrityError, OperationalError, TimeoutError as PoolTimeoutError
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine

from labflow import config
from labflow.errors import OperationFailed

logger = logging.getLogger(__name__)


def get_engine(url: Optional[str] = None, echo: Optional[bool] = None, timeout: Optional[float] = None):
    url = url or config.DATABASE_URL
    timeout = config.TX_TIMEOUT_SECONDS if timeout is None else timeout
    kwargs = {"echo": config.SQL_ECHO if echo is None else echo}

    if url.startswith("sqlite"):
        # busy timeout bounds how long a writer waits for the database lock
        kwargs["connect_args"] = {"check_same_thread": False, "timeout": timeout}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    elif url.startswith("postgresql"):
        kwargs["connect_args"] = {"options": f"-c statement_timeout={int(timeout * 1000)}"}
        kwargs["pool_timeout"] = timeout

    return create_engine(url, **kwargs)


class Database:
    """Owns the engine and hands out sessions and transactions."""

    def __init__(self, engine):
        self.engine = engine

    @classmethod
    def from_url(cls, url: Optional[str] = None, **kwargs) -> "Database":
        return cls(get_engine(url, **kwargs))

    def create_all(self) -> None:
        # table models register themselves on import
        from labflow.models import audit, billing, marketplace, notification, order  # noqa: F401

        SQLModel.metadata.create_all(self.engine)

    def session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """One unit of work: commit on success, roll back on any error.

        Lock waits, statement timeouts and uniqueness races from the driver
        surface as OperationFailed.
        """
        session = self.session()
        try:
            yield session
            session.commit()
        except (OperationalError, PoolTimeoutError) as e:
            session.rollback()
            logger.warning("Transaction failed on infrastructure error: %s", e)
            raise OperationFailed("TransactionFailed", str(e)) from e
        except IntegrityError as e:
            # a concurrent writer got there first; a retry sees its row
            session.rollback()
            logger.warning("Transaction hit a uniqueness conflict: %s", e.orig)
            raise OperationFailed("TransactionConflict", str(e.orig)) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        self.engine.dispose()
