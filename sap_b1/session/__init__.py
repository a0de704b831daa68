"""
sap_b1.session - Session lifecycle
==================================

- SessionData: immutable authenticated-session value
- SessionStore: single-slot storage plus refresh lock
- SessionManager: login, proactive/reactive refresh, logout
"""

from sap_b1.session.data import SessionData
from sap_b1.session.store import SessionStore
from sap_b1.session.manager import SessionManager, is_session_error

__all__ = [
    "SessionData",
    "SessionStore",
    "SessionManager",
    "is_session_error",
]
