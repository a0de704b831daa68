"""
Pytest configuration and shared fixtures.
"""

import json
import threading
import time
import pytest
from unittest.mock import Mock
from typing import Any, Dict, Optional

from requests.structures import CaseInsensitiveDict

from sap_b1.core.config import (
    CircuitBreakerConfig,
    ConnectionConfig,
    PoolConfig,
    RetryConfig,
    SessionConfig,
)
from sap_b1.core.events import EventDispatcher
from sap_b1.core.transport import TransportResponse
from sap_b1.session.manager import SessionManager
from sap_b1.session.store import SessionStore
from sap_b1.storage.backend import MemoryBackend


BASE_URL = "https://sap.test.local:50000"


def make_response(
    status: int = 200,
    body: Any = None,
    headers: Optional[Dict[str, str]] = None,
    cookies: Optional[Dict[str, str]] = None,
    url: str = "",
) -> TransportResponse:
    """Build a TransportResponse; dict/list bodies are JSON-encoded."""
    hdrs = CaseInsensitiveDict(headers or {})
    if isinstance(body, (dict, list)):
        content = json.dumps(body).encode("utf-8")
        hdrs.setdefault("Content-Type", "application/json")
    elif isinstance(body, str):
        content = body.encode("utf-8")
    else:
        content = body or b""
    return TransportResponse(status=status, headers=hdrs, content=content, url=url, cookies=cookies or {})


def login_response(session_id: str = "sess-0001", route: str = ".node1") -> TransportResponse:
    return make_response(
        200,
        {"SessionId": session_id, "Version": "1000190", "SessionTimeout": 30},
        cookies={"B1SESSION": session_id, "ROUTEID": route},
    )


# ---------------- $batch response builders ----------------

CRLF = "\r\n"


def http_part(status_line: str, body: Any = None, content_id: Optional[int] = None) -> str:
    """One embedded HTTP response as the Service Layer writes it."""
    lines = ["Content-Type: application/http", "Content-Transfer-Encoding: binary"]
    if content_id is not None:
        lines.append(f"Content-ID: {content_id}")
    lines += ["", status_line]
    if body is not None:
        lines += ["Content-Type: application/json;odata=minimalmetadata;charset=utf-8", "", json.dumps(body)]
    else:
        lines.append("")
    return CRLF.join(lines) + CRLF


def multipart(boundary: str, parts) -> str:
    return "".join(f"--{boundary}{CRLF}{p}" for p in parts) + f"--{boundary}--{CRLF}"


def changeset_part(boundary: str, members) -> str:
    return f"Content-Type: multipart/mixed;boundary={boundary}{CRLF}{CRLF}" + multipart(boundary, members)


class FakeTransport:
    """
    Transport double: Login issues numbered sessions, every other URL is
    answered by ``handler(method, url, headers, body)``.
    """

    def __init__(self, handler=None):
        self.handler = handler or (lambda method, url, headers, body: make_response(200, {"value": []}))
        self.logins = 0
        self.calls = []
        self.login_delay = 0.0
        self._lock = threading.Lock()

    def request(self, method, url, headers=None, body=None, timeout=None):
        with self._lock:
            self.calls.append((method, url, dict(headers or {}), body))
        if url.endswith("/Login"):
            with self._lock:
                self.logins += 1
                number = self.logins
            if self.login_delay:
                time.sleep(self.login_delay)
            return login_response(f"sess-{number:04d}")
        if url.endswith("/Logout"):
            return make_response(204)
        return self.handler(method, url, dict(headers or {}), body)

    def close(self):
        pass


@pytest.fixture
def backend():
    return MemoryBackend()


@pytest.fixture
def events():
    return EventDispatcher()


@pytest.fixture
def recorded_events(events):
    """List collecting every dispatched event."""
    seen = []
    events.subscribe(seen.append)
    return seen


@pytest.fixture
def config():
    return ConnectionConfig(
        base_url=BASE_URL,
        company_db="SBODEMOUS",
        username="manager",
        password="secret",
        session=SessionConfig(lock_timeout=2, lock_wait=0.01),
        retry=RetryConfig(times=3, sleep_ms=1),
        circuit_breaker=CircuitBreakerConfig(failure_threshold=3, open_duration=30),
        pool=PoolConfig(enabled=True, min_size=2, max_size=3, wait_timeout=0.2, poll_interval=0.01),
    )


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def manager(config, backend, transport, events):
    return SessionManager(config, SessionStore(backend), transport=transport, events=events)


@pytest.fixture
def mock_transport():
    """Plain Mock transport for call-level assertions."""
    return Mock()
