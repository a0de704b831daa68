"""
sap_b1.session.store - Single-slot session storage
==================================================
"""

from __future__ import annotations

from typing import Optional
import logging

from sap_b1.session.data import SessionData
from sap_b1.storage.backend import StorageBackend

logger = logging.getLogger("sap_b1.session")


class SessionStore:
    """
    One session per connection, plus the named refresh lock.

    The stored key expires together with the session, so an expired
    session reads as absent.

    Parameters
    ----------
    backend : StorageBackend
        Shared key-value backend
    prefix : str
        Key prefix
    """

    def __init__(self, backend: StorageBackend, prefix: str = "sap_b1_session:") -> None:
        self.backend = backend
        self.prefix = prefix

    def _key(self, connection: str) -> str:
        return f"{self.prefix}{connection}"

    def _lock_key(self, connection: str) -> str:
        return f"{self.prefix}{connection}:lock"

    def get(self, connection: str) -> Optional[SessionData]:
        raw = self.backend.get(self._key(connection))
        if raw is None:
            return None
        try:
            session = SessionData.from_json(raw)
        except (ValueError, KeyError):
            logger.warning("discarding unreadable session for connection=%s", connection)
            self.forget(connection)
            return None
        if session.is_expired():
            self.forget(connection)
            return None
        return session

    def put(self, connection: str, session: SessionData) -> None:
        ttl = session.remaining_ttl()
        if ttl <= 0:
            return
        self.backend.set(self._key(connection), session.to_json(), ttl=ttl)

    def forget(self, connection: str) -> None:
        self.backend.delete(self._key(connection))

    def forget_if(self, connection: str, session_id: str) -> bool:
        """
        Forget the stored session only while it is still ``session_id``.

        A session stored by a concurrent worker after ``session_id`` was
        rejected is left in place. True if the entry was removed.
        """
        raw = self.backend.get(self._key(connection))
        if raw is None:
            return False
        try:
            stored_id = SessionData.from_json(raw).session_id
        except (ValueError, KeyError):
            return False
        if stored_id != session_id:
            return False
        return self.backend.delete_if_equals(self._key(connection), raw)

    def acquire_lock(self, connection: str, seconds: float = 10) -> Optional[str]:
        return self.backend.acquire_lock(self._lock_key(connection), seconds)

    def release_lock(self, connection: str, token: Optional[str]) -> None:
        self.backend.release_lock(self._lock_key(connection), token)

    def flush(self) -> None:
        """Remove every stored session (locks included)."""
        keys = self.backend.keys(self.prefix)
        if keys:
            self.backend.delete(*keys)
