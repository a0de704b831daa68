"""
sap_b1.session.manager - Login, refresh and logout
==================================================

Keeps one shared session per connection alive:

- Proactive refresh once the remaining TTL drops below the threshold
- Reactive re-login when the backend rejects the session
- Race-safe refresh: a short-lived named lock makes concurrent workers
  reuse one login instead of burning extra license slots
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Union
import json
import logging
import re
import time

from sap_b1.core.config import ConnectionConfig
from sap_b1.core.errors import AuthenticationError, ConnectionFailure, SapB1Error
from sap_b1.core.events import EventDispatcher, SessionCreated, SessionExpired
from sap_b1.core.transport import HttpTransport, extract_sap_error
from sap_b1.session.data import SessionData
from sap_b1.session.store import SessionStore

logger = logging.getLogger("sap_b1.session")

SESSION_ERROR_CODES = (301, -301)
SESSION_ERROR_KEYWORDS = ("session", "login", "unauthorized")

_ROUTEID_RE = re.compile(r"ROUTEID=([^;,\s]+)")


def is_session_error(payload: Any, keyword_fallback: bool = True) -> bool:
    """
    Does an error payload say the session itself was rejected?

    The numeric error code is authoritative. Message keywords are a
    best-effort fallback only, since messages are localized.

    Examples
    --------
    >>> is_session_error({"error": {"code": -301, "message": {"value": "Invalid session"}}})
    True
    >>> is_session_error({"error": {"code": -5002, "message": "Quantity too large"}})
    False
    """
    code, message = extract_sap_error(payload)
    if code is not None:
        try:
            if int(code) in SESSION_ERROR_CODES:
                return True
        except ValueError:
            pass
    if keyword_fallback and message:
        lowered = message.lower()
        return any(k in lowered for k in SESSION_ERROR_KEYWORDS)
    return False


class SessionManager:
    """
    Session lifecycle for one or more configured connections.

    Parameters
    ----------
    configs : ConnectionConfig or mapping or iterable of ConnectionConfig
        Connection settings, keyed by ``ConnectionConfig.name``
    store : SessionStore
        Shared single-slot session storage
    transport : HttpTransport, optional
        HTTP transport; one is built from the first config if omitted
    events : EventDispatcher, optional
        Receives ``SessionCreated`` / ``SessionExpired``

    Examples
    --------
    >>> manager = SessionManager(cfg, SessionStore(MemoryBackend()))
    >>> session = manager.get_session("default")
    >>> session.headers()
    {'Cookie': 'B1SESSION=...; ROUTEID=.node1'}
    """

    def __init__(
        self,
        configs: Union[ConnectionConfig, Mapping[str, ConnectionConfig], Iterable[ConnectionConfig]],
        store: SessionStore,
        transport: Optional[HttpTransport] = None,
        events: Optional[EventDispatcher] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if isinstance(configs, ConnectionConfig):
            self._configs: Dict[str, ConnectionConfig] = {configs.name: configs}
        elif isinstance(configs, Mapping):
            self._configs = dict(configs)
        else:
            self._configs = {c.name: c for c in configs}
        if not self._configs:
            raise ValueError("At least one connection must be configured")

        first = next(iter(self._configs.values()))
        self.store = store
        self.transport = transport or HttpTransport(verify=first.verify, user_agent=first.user_agent)
        self.events = events or EventDispatcher()
        self._sleep = sleep
        self._clock = clock

    # ---------------- config ----------------

    def config(self, connection: str = "default") -> ConnectionConfig:
        try:
            return self._configs[connection]
        except KeyError:
            raise SapB1Error(
                f"SAP B1 connection [{connection}] not configured",
                {"connection": connection},
            ) from None

    @property
    def connections(self) -> list:
        return list(self._configs)

    # ---------------- public ops ----------------

    def get_session(self, connection: str = "default") -> SessionData:
        """Cached session, or a fresh one if absent or due for refresh."""
        threshold = self.config(connection).session.refresh_threshold
        session = self.store.get(connection)
        if session is not None and not session.is_near_expiry(threshold):
            return session
        return self._refresh_with_lock(connection)

    def refresh_session(self, connection: str = "default") -> SessionData:
        """Refresh unless a concurrent worker already did."""
        return self._refresh_with_lock(connection)

    def invalidate_and_refresh(self, connection: str = "default", rejected_id: Optional[str] = None) -> SessionData:
        """
        Drop the rejected session and log in again.

        Called when a response shows the backend rejected the session.
        A session that a concurrent worker stored in the meantime is reused.

        Parameters
        ----------
        connection : str
            Connection name
        rejected_id : str, optional
            Id of the session the backend rejected. Defaults to whatever
            session is stored right now.
        """
        if rejected_id is None:
            current = self.store.get(connection)
            rejected_id = current.session_id if current is not None else None
        if rejected_id is not None and self.store.forget_if(connection, rejected_id):
            self.events.dispatch(SessionExpired(connection, rejected_id))
        return self._refresh_with_lock(connection, stale_id=rejected_id)

    def logout(self, connection: str = "default") -> None:
        """Log out remotely (best effort) and forget the stored session."""
        session = self.store.get(connection)
        if session is None:
            return
        self.logout_session(connection, session)
        self.store.forget(connection)
        self.events.dispatch(SessionExpired(connection, session.session_id))

    def logout_session(self, connection: str, session: SessionData) -> bool:
        """
        Best-effort remote logout of one session. Remote failures are logged
        and reported as False, never raised.
        """
        cfg = self.config(connection)
        try:
            r = self.transport.request(
                "POST",
                cfg.service_root + "Logout",
                headers=session.headers(),
                timeout=(cfg.connect_timeout, cfg.timeout),
            )
        except ConnectionFailure as e:
            logger.info("logout failed for connection=%s session=%s: %s", connection, session.short_id, e)
            return False
        if not r.ok:
            logger.info("logout for connection=%s session=%s returned %s", connection, session.short_id, r.status)
            return False
        logger.info("logged out connection=%s session=%s", connection, session.short_id)
        return True

    def has_valid_session(self, connection: str = "default") -> bool:
        session = self.store.get(connection)
        return session is not None and not session.is_expired()

    def clear_session(self, connection: str = "default") -> None:
        session = self.store.get(connection)
        self.store.forget(connection)
        if session is not None:
            self.events.dispatch(SessionExpired(connection, session.session_id))

    def clear_all_sessions(self) -> None:
        self.store.flush()

    def is_session_error(self, payload: Any, connection: str = "default") -> bool:
        return is_session_error(payload, self.config(connection).session.keyword_fallback)

    def create_new_session(self, connection: str = "default") -> SessionData:
        """Log in without touching the single-slot store (used by the pool)."""
        return self._login(connection)

    # ---------------- refresh protocol ----------------

    def _refresh_with_lock(self, connection: str, stale_id: Optional[str] = None) -> SessionData:
        cfg = self.config(connection).session
        deadline = self._clock() + cfg.lock_timeout + cfg.lock_wait

        token = self.store.acquire_lock(connection, cfg.lock_timeout)
        while token is None:
            # Another worker is logging in; wait for its result.
            self._sleep(cfg.lock_wait)
            session = self.store.get(connection)
            if self._usable(session, stale_id):
                logger.debug("reusing session refreshed concurrently for connection=%s", connection)
                return session
            if self._clock() >= deadline:
                logger.warning("refresh lock for connection=%s still held after %ss, logging in", connection, cfg.lock_timeout)
                return self._login_and_store(connection)
            token = self.store.acquire_lock(connection, cfg.lock_timeout)

        try:
            session = self.store.get(connection)
            if self._usable(session, stale_id) and not session.is_near_expiry(cfg.refresh_threshold):
                return session
            return self._login_and_store(connection)
        finally:
            self.store.release_lock(connection, token)

    @staticmethod
    def _usable(session: Optional[SessionData], stale_id: Optional[str]) -> bool:
        return session is not None and not session.is_expired() and session.session_id != stale_id

    def _login_and_store(self, connection: str) -> SessionData:
        session = self._login(connection)
        self.store.put(connection, session)
        return session

    def _login(self, connection: str) -> SessionData:
        cfg = self.config(connection)
        payload = {
            "CompanyDB": cfg.company_db,
            "UserName": cfg.username,
            "Password": cfg.password,
            "Language": cfg.language,
        }
        try:
            r = self.transport.request(
                "POST",
                cfg.service_root + "Login",
                headers={"Content-Type": "application/json"},
                body=json.dumps(payload),
                timeout=(cfg.connect_timeout, cfg.timeout),
            )
        except ConnectionFailure as e:
            raise AuthenticationError(
                f"Failed to login to SAP B1: {e}", {"connection": connection}
            ) from e

        data = r.json()
        if not r.ok or not isinstance(data, dict) or not data.get("SessionId"):
            code, message = extract_sap_error(data)
            raise AuthenticationError(
                f"Failed to login to SAP B1: status={r.status} code={code} message={message or r.text[:200]}",
                {"connection": connection, "status": r.status, "code": code},
            )

        session = SessionData.from_login_response(
            data,
            cfg.company_db,
            ttl=cfg.session.ttl,
            route_id=self._route_id(r),
        )
        logger.info("logged in connection=%s company=%s session=%s", connection, cfg.company_db, session.short_id)
        self.events.dispatch(SessionCreated(connection, session.session_id, session.company_db))
        return session

    @staticmethod
    def _route_id(response) -> Optional[str]:
        route = (getattr(response, "cookies", None) or {}).get("ROUTEID")
        if route:
            return route
        m = _ROUTEID_RE.search(response.headers.get("Set-Cookie", "") or "")
        return m.group(1) if m else None
