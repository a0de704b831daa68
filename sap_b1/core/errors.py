"""
sap_b1.core.errors - Exception taxonomy
=======================================

Every failure the engine surfaces derives from ``SapB1Error``. The split
matters to callers because recovery differs: scale the pool on
``PoolExhaustedError``, wait on ``CircuitOpenError``, fix credentials on
``AuthenticationError``.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class SapB1Error(RuntimeError):
    """
    Base class for all errors raised by sap_b1.

    Attributes
    ----------
    context : dict
        Free-form diagnostic details (connection, endpoint, ...)
    """

    def __init__(self, message: str = "SAP B1 Service Layer error", context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.context = context or {}


class ConnectionFailure(SapB1Error):
    """The request never got a response: connect error or total timeout."""

    def __init__(self, message: str, *, url: str = "", timeout: bool = False, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, context)
        self.url = url
        self.timeout = timeout


class ServiceLayerError(SapB1Error):
    """
    Exception raised when the Service Layer answers with an error status.

    Attributes
    ----------
    status : int
        HTTP status code
    body : str
        Response body (truncated for display)
    url : str
        The URL that was called
    headers : dict
        Response headers
    code : str, optional
        Service Layer error code from the ``error.code`` field
    """

    def __init__(
        self,
        status: int,
        body: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        code: Optional[str] = None,
    ):
        snippet = (body or "")[:1200]
        super().__init__(f"Service Layer error {status} for {url}: {snippet}")
        self.status = status
        self.body = body or ""
        self.url = url
        self.headers = headers or {}
        self.code = code


class ClientError(ServiceLayerError):
    """4xx response. Never retried and never counted against the breaker."""


class ServerError(ServiceLayerError):
    """5xx response."""


class AuthenticationError(SapB1Error):
    """Login failed, or a forced re-login did not recover the session."""


class SessionExpiredError(AuthenticationError):
    """The backend rejected the session itself, even after a fresh login."""


class PoolConfigurationError(SapB1Error, ValueError):
    """Invalid pool settings."""


class PoolExhaustedError(SapB1Error):
    """No pooled session became available within the wait timeout."""

    def __init__(self, connection: str, timeout: float, message: Optional[str] = None):
        super().__init__(
            message
            or f"No session available in pool for connection '{connection}' within {timeout} seconds",
            {"connection": connection, "timeout": timeout},
        )
        self.connection = connection
        self.timeout = timeout


class CircuitOpenError(SapB1Error):
    """The circuit for ``scope`` is open; calls fail fast until it recovers."""

    def __init__(self, scope: str = "*", retry_after: float = 30.0):
        super().__init__(
            f"Circuit breaker is open for scope '{scope}', retry after {retry_after:.0f}s",
            {"scope": scope, "retry_after": retry_after},
        )
        self.scope = scope
        self.retry_after = retry_after


class RetryExhaustedError(SapB1Error):
    """All attempts failed with retryable errors."""

    def __init__(self, attempts: int, last_error: Optional[BaseException] = None, description: str = ""):
        what = f" for {description}" if description else ""
        super().__init__(
            f"Giving up after {attempts} attempt(s){what}: {last_error}",
            {"attempts": attempts},
        )
        self.attempts = attempts
        self.last_error = last_error


class BatchError(SapB1Error):
    """The ``$batch`` request itself failed or could not be decoded."""

    def __init__(self, message: str = "Batch operation failed", status: int = 0, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, context)
        self.status = status


class BatchPartialFailureError(BatchError):
    """The batch was delivered but one or more sub-requests failed."""

    def __init__(self, message: str, failures: List[Any], status: int = 0):
        super().__init__(message, status, {"failed": len(failures)})
        self.failures = failures
