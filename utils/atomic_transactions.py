"""Atomic transaction utilities for ledger operations and admin actions"""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Generator, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from database import SessionLocal
from utils.exception_handler import PersistenceError

logger = logging.getLogger(__name__)


@contextmanager
def atomic_transaction(
    session_factory: Optional[sessionmaker] = None,
) -> Generator[Session, None, None]:
    """
    Context manager for one atomic ledger transaction.

    Commits on success. On any error the session is rolled back and the error
    re-raised; SQLAlchemy errors surface as PersistenceError so callers treat
    the mutation as not committed.
    """
    session = (session_factory or SessionLocal)()
    try:
        yield session
        session.commit()
        logger.debug("Atomic transaction committed successfully")
    except SQLAlchemyError as e:
        session.rollback()
        logger.error(f"Transaction rolled back due to database error: {e}")
        raise PersistenceError("Could not save your request. Please try again.") from e
    except Exception as e:
        session.rollback()
        logger.debug(f"Transaction rolled back: {type(e).__name__}: {e}")
        raise
    finally:
        session.close()


class UserLockRegistry:
    """Re-entrant lock per phone number, created on first use"""

    def __init__(self):
        self._locks: Dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def get(self, phone: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(phone)
            if lock is None:
                lock = threading.RLock()
                self._locks[phone] = lock
            return lock

    @contextmanager
    def hold(self, *phones: str):
        # Sorted acquisition so two-user operations never deadlock
        ordered = sorted({p for p in phones if p})
        acquired = []
        try:
            for phone in ordered:
                lock = self.get(phone)
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


_user_locks = UserLockRegistry()


def user_lock(*phones: str):
    """Hold the ledger lock(s) for the given phone number(s)"""
    return _user_locks.hold(*phones)
