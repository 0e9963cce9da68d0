"""Server-side session stores keyed by an opaque session id."""

import logging
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Tuple

from sqlalchemy.orm import Session

from .database import AuthSession


logger = logging.getLogger(__name__)


class SessionStore(ABC):
    """Maps session ids to user ids with an idle expiry."""

    def __init__(self, ttl_seconds: int):
        self.ttl_seconds = ttl_seconds

    @abstractmethod
    def get(self, session_id: str) -> Optional[int]:
        """Return the user id for a live session and refresh its expiry."""

    @abstractmethod
    def set(self, session_id: str, user_id: int) -> None:
        """Bind ``session_id`` to ``user_id``."""

    @abstractmethod
    def destroy(self, session_id: str) -> None:
        """Forget ``session_id``; unknown ids are ignored."""


class MemorySessionStore(SessionStore):
    """Process-local store, suitable for a single worker.

    Endpoints run in a threadpool, so every access holds ``_lock``.
    """

    def __init__(self, ttl_seconds: int, clock: Callable[[], float] = time.monotonic):
        super().__init__(ttl_seconds)
        self._clock = clock
        self._entries: Dict[str, Tuple[int, float]] = {}
        self._lock = threading.Lock()
        self._next_purge = float("-inf")

    def get(self, session_id: str) -> Optional[int]:
        with self._lock:
            entry = self._entries.get(session_id)
            if entry is None:
                return None
            user_id, expires_at = entry
            now = self._clock()
            if expires_at <= now:
                del self._entries[session_id]
                return None
            self._entries[session_id] = (user_id, now + self.ttl_seconds)
            return user_id

    def set(self, session_id: str, user_id: int) -> None:
        with self._lock:
            self._entries[session_id] = (user_id, self._clock() + self.ttl_seconds)
            self._purge()

    def destroy(self, session_id: str) -> None:
        with self._lock:
            self._entries.pop(session_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _purge(self) -> None:
        # caller holds _lock; sweeps at most once per ttl
        now = self._clock()
        if now < self._next_purge:
            return
        self._next_purge = now + self.ttl_seconds
        expired = [sid for sid, (_, exp) in self._entries.items() if exp <= now]
        for sid in expired:
            del self._entries[sid]


class DatabaseSessionStore(SessionStore):
    """Store sessions in the ``auth_sessions`` table so workers can share them."""

    def __init__(self, session_factory: Callable[[], Session], ttl_seconds: int):
        super().__init__(ttl_seconds)
        self.session_factory = session_factory

    def _expiry(self) -> datetime:
        return datetime.utcnow() + timedelta(seconds=self.ttl_seconds)

    def get(self, session_id: str) -> Optional[int]:
        db = self.session_factory()
        try:
            row = db.get(AuthSession, session_id)
            if row is None:
                return None
            if row.expires_at <= datetime.utcnow():
                db.delete(row)
                db.commit()
                return None
            row.expires_at = self._expiry()
            db.commit()
            return row.user_id
        except Exception:
            db.rollback()
            logger.exception("session lookup failed")
            raise
        finally:
            db.close()

    def set(self, session_id: str, user_id: int) -> None:
        db = self.session_factory()
        try:
            db.merge(AuthSession(id=session_id, user_id=user_id, expires_at=self._expiry()))
            db.query(AuthSession).filter(
                AuthSession.expires_at <= datetime.utcnow()
            ).delete(synchronize_session=False)
            db.commit()
        except Exception:
            db.rollback()
            logger.exception("session write failed")
            raise
        finally:
            db.close()

    def destroy(self, session_id: str) -> None:
        db = self.session_factory()
        try:
            db.query(AuthSession).filter(AuthSession.id == session_id).delete(
                synchronize_session=False
            )
            db.commit()
        except Exception:
            db.rollback()
            logger.exception("session delete failed")
            raise
        finally:
            db.close()


def build_session_store(backend: str, ttl_seconds: int, session_factory=None) -> SessionStore:
    """Return the configured session store implementation."""
    if backend == "memory":
        return MemorySessionStore(ttl_seconds)
    if backend == "database":
        if session_factory is None:
            raise ValueError("database session backend needs a session factory")
        return DatabaseSessionStore(session_factory, ttl_seconds)
    raise ValueError(f"unknown session backend: {backend}")
