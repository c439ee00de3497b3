"""
Unit-of-work sessions over the portfolio store.

Every sync run, recalculation batch and API request opens its own session
through SessionManager.session_scope(); sessions are never shared between
threads.
"""

import logging
from contextlib import contextmanager
from typing import Generator

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker


logger = logging.getLogger(__name__)


class SessionManager:
    """
    Hands out sessions bound to one engine.

    Objects stay loaded after commit so run records and client rows can be
    serialized once the scope has closed.
    """

    def __init__(self, engine: Engine):
        self.engine = engine
        self.Session = sessionmaker(bind=engine, expire_on_commit=False)

    @property
    def single_writer(self) -> bool:
        """
        True when a second session cannot write while another transaction is open.

        SQLite locks the whole database for a writer, and in memory every
        session runs on the same connection.
        """
        return self.engine.dialect.name == 'sqlite'

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """
        Commit on success, roll back and re-raise on error, close either way.

        Yields:
            Session: Fresh session for one unit of work
        """
        session = self.Session()
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error(f"Rolled back {self.engine.dialect.name} transaction: {e}")
            raise
        finally:
            session.close()
