"""
sap_b1.core.client - Service Layer client
=========================================

Every call goes through the same path:

1. take a session from the pool (if enabled) or the session manager
2. run the HTTP call through the retry executor and circuit breaker
3. if the backend rejected the session, invalidate it and try once more
   with a fresh one
4. give a pooled session back
5. raise ``ClientError`` / ``ServerError`` for error statuses
"""

from __future__ import annotations

from typing import Any, Dict, Iterator, Mapping, Optional, Tuple, Union
from urllib.parse import urlencode
import json
import logging

from sap_b1.batch.request import BatchRequest
from sap_b1.batch.response import BatchResponse
from sap_b1.core.config import ConnectionConfig
from sap_b1.core.errors import (
    BatchError,
    ClientError,
    PoolExhaustedError,
    ServerError,
    ServiceLayerError,
    SessionExpiredError,
)
from sap_b1.core.transport import HttpTransport, TransportResponse, describe_error, extract_sap_error
from sap_b1.pool.pool import SessionPool
from sap_b1.pool.pooled import PooledSession
from sap_b1.resilience.retry import RetryExecutor
from sap_b1.session.data import SessionData
from sap_b1.session.manager import SessionManager

logger = logging.getLogger("sap_b1.client")

_REDIRECTS = (301, 302, 303, 307, 308)


def format_key(key: Union[int, str, Mapping[str, Any]]) -> str:
    """
    Render an entity key for use in a path.

    Examples
    --------
    >>> format_key(42)
    '42'
    >>> format_key("O'Neil")
    "'O''Neil'"
    >>> format_key({"DocEntry": 1, "LineNum": 0})
    'DocEntry=1,LineNum=0'
    """
    if isinstance(key, Mapping):
        return ",".join(f"{k}={_format_single(v)}" for k, v in key.items())
    return _format_single(key)


def _format_single(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str):
        return "'" + value.replace("'", "''") + "'"
    return str(value)


class ServiceLayerClient:
    """
    Resilient client for SAP Business One Service Layer.

    Parameters
    ----------
    manager : SessionManager
        Session lifecycle and connection configs
    executors : RetryExecutor or mapping of RetryExecutor, optional
        Retry/breaker policy, per connection when a mapping is given. A
        breaker-less executor from the connection's ``RetryConfig`` is
        used when missing.
    pool : SessionPool, optional
        Used for connections whose ``PoolConfig.enabled`` is set
    transport : HttpTransport, optional
        Defaults to the manager's transport
    connection : str
        Connection used when a call does not name one

    Examples
    --------
    >>> client = ServiceLayerClient(manager, executor)
    >>> client.get("Items", params={"$top": 5, "$select": "ItemCode,ItemName"})
    {'value': [...]}
    >>> client.patch("Items('A001')", {"ItemName": "Widget"})
    """

    def __init__(
        self,
        manager: SessionManager,
        executors: Optional[Union[RetryExecutor, Mapping[str, RetryExecutor]]] = None,
        pool: Optional[SessionPool] = None,
        transport: Optional[HttpTransport] = None,
        connection: str = "default",
    ) -> None:
        self.manager = manager
        self.pool = pool
        self.transport = transport or manager.transport
        self.connection = connection
        if isinstance(executors, RetryExecutor):
            self._executors: Dict[str, RetryExecutor] = {connection: executors}
        else:
            self._executors = dict(executors or {})

    def executor(self, connection: str) -> RetryExecutor:
        if connection not in self._executors:
            self._executors[connection] = RetryExecutor(self.manager.config(connection).retry)
        return self._executors[connection]

    def using(self, connection: str) -> "ServiceLayerClient":
        """Same engine, different default connection."""
        return ServiceLayerClient(self.manager, self._executors, self.pool, self.transport, connection)

    # ---------------- helpers ----------------

    def _url(self, cfg: ConnectionConfig, path: str, params: Optional[Mapping[str, Any]] = None) -> str:
        url = cfg.service_root + path.lstrip("/")
        if params:
            url += ("&" if "?" in url else "?") + urlencode(params, safe="$,'()")
        return url

    def _pooled(self, connection: str) -> bool:
        return self.pool is not None and self.manager.config(connection).pool.enabled

    def _checkout(self, connection: str) -> Tuple[SessionData, Optional[PooledSession]]:
        if self._pooled(connection):
            pooled = self.pool.acquire(connection)
            if pooled is None:
                raise PoolExhaustedError(connection, self.pool.config(connection).wait_timeout)
            return pooled.session, pooled
        return self.manager.get_session(connection), None

    def _checkin(self, connection: str, pooled: Optional[PooledSession], invalidate: bool) -> None:
        if pooled is not None:
            self.pool.release(connection, pooled, invalidate=invalidate)

    def _session_rejected(self, response: TransportResponse, connection: str) -> bool:
        if response.status == 401:
            return True
        return response.client_error and self.manager.is_session_error(response.json(), connection)

    def _dispatch(
        self,
        connection: str,
        method: str,
        url: str,
        body: Optional[Union[str, bytes]],
        headers: Optional[Mapping[str, str]],
        description: str,
    ) -> TransportResponse:
        response, rejected, session, pooled = self._send(connection, method, url, body, headers, description)
        if not rejected:
            return response

        logger.info("session %s rejected for %s, logging in again", session.short_id, description)
        if pooled is None:
            self.manager.invalidate_and_refresh(connection, session.session_id)
        response, rejected, _, _ = self._send(connection, method, url, body, headers, description)
        if rejected:
            raise SessionExpiredError(
                f"Session rejected again after re-login for {description}",
                {"connection": connection, "status": response.status},
            )
        return response

    def _send(self, connection, method, url, body, headers, description):
        cfg = self.manager.config(connection)
        session, pooled = self._checkout(connection)
        merged = {"Content-Type": "application/json", **session.headers(), **(headers or {})}
        rejected = False
        try:
            response = self.executor(connection).execute(
                lambda: self.transport.request(
                    method, url, headers=merged, body=body,
                    timeout=(cfg.connect_timeout, cfg.timeout),
                ),
                description=description,
            )
            rejected = self._session_rejected(response, connection)
        finally:
            self._checkin(connection, pooled, invalidate=rejected)
        return response, rejected, session, pooled

    def _raise_for_error(self, response: TransportResponse) -> None:
        if response.status < 400 and response.status not in _REDIRECTS:
            return
        code, _ = extract_sap_error(response.json())
        args = (response.status, describe_error(response), response.url, dict(response.headers), code)
        if response.server_error:
            raise ServerError(*args)
        if response.client_error:
            raise ClientError(*args)
        raise ServiceLayerError(*args)

    @staticmethod
    def _json_or_text(r: TransportResponse) -> Any:
        if r.status == 204 or not r.content:
            return None
        ctype = (r.headers.get("Content-Type") or "").lower()
        if "json" in ctype:
            data = r.json()
            if data is not None:
                return data
        return {"raw": r.text, "content_type": r.headers.get("Content-Type", "")}

    # ---------------- public ops ----------------

    def request(
        self,
        method: str,
        path: str,
        params: Optional[Mapping[str, Any]] = None,
        json_body: Any = None,
        *,
        headers: Optional[Mapping[str, str]] = None,
        connection: Optional[str] = None,
    ) -> TransportResponse:
        """
        Execute one Service Layer call.

        Parameters
        ----------
        method : str
            HTTP method
        path : str
            Path below the service root, e.g. "Orders(12)"
        params : dict, optional
            Query parameters such as ``$filter`` or ``$top``
        json_body : any, optional
            Serialized as JSON
        headers : dict, optional
            Extra headers, e.g. ``Prefer: odata.maxpagesize=100``
        connection : str, optional
            Overrides the default connection

        Returns
        -------
        TransportResponse
            The successful response

        Raises
        ------
        ClientError, ServerError
            For error statuses that are not retried (or when retries are off)
        RetryExhaustedError, CircuitOpenError, PoolExhaustedError
            From the resilience layers
        AuthenticationError
            If login fails
        SessionExpiredError
            If the session is rejected again after a fresh login
        """
        conn = connection or self.connection
        cfg = self.manager.config(conn)
        url = self._url(cfg, path, params)
        body = json.dumps(json_body, ensure_ascii=False) if json_body is not None else None
        response = self._dispatch(conn, method.upper(), url, body, headers, f"{method.upper()} {path}")
        self._raise_for_error(response)
        return response

    def get(self, path: str, params: Optional[Mapping[str, Any]] = None, **kwargs) -> Any:
        return self._json_or_text(self.request("GET", path, params, **kwargs))

    def post(self, path: str, data: Any = None, **kwargs) -> Any:
        return self._json_or_text(self.request("POST", path, json_body={} if data is None else data, **kwargs))

    def put(self, path: str, data: Any = None, **kwargs) -> Any:
        return self._json_or_text(self.request("PUT", path, json_body={} if data is None else data, **kwargs))

    def patch(self, path: str, data: Any = None, **kwargs) -> Any:
        return self._json_or_text(self.request("PATCH", path, json_body={} if data is None else data, **kwargs))

    def delete(self, path: str, **kwargs) -> Any:
        return self._json_or_text(self.request("DELETE", path, **kwargs))

    # ---------------- entity helpers ----------------

    def find(self, entity: str, key: Union[int, str, Mapping[str, Any]], params=None, **kwargs) -> Any:
        """GET ``entity(key)``."""
        return self.get(f"{entity}({format_key(key)})", params, **kwargs)

    def create(self, entity: str, data: Mapping[str, Any], **kwargs) -> Any:
        return self.post(entity, data, **kwargs)

    def update(self, entity: str, key: Union[int, str, Mapping[str, Any]], data: Mapping[str, Any], **kwargs) -> Any:
        return self.patch(f"{entity}({format_key(key)})", data, **kwargs)

    def remove(self, entity: str, key: Union[int, str, Mapping[str, Any]], **kwargs) -> Any:
        return self.delete(f"{entity}({format_key(key)})", **kwargs)

    def paginate(self, path: str, params: Optional[Mapping[str, Any]] = None, **kwargs) -> Iterator[Any]:
        """
        Yield each page of a collection, following ``odata.nextLink``.

        Examples
        --------
        >>> for page in client.paginate("BusinessPartners", {"$select": "CardCode"}):
        ...     codes.extend(bp["CardCode"] for bp in page["value"])
        """
        service_path = self.manager.config(kwargs.get("connection") or self.connection).service_path
        page = self.get(path, params, **kwargs)
        while True:
            yield page
            link = _next_link(page, service_path)
            if not link:
                return
            page = self.get(link, **kwargs)

    # ---------------- batch ----------------

    def batch(self, connection: Optional[str] = None) -> BatchRequest:
        """New batch bound to this client."""
        return BatchRequest(self, connection or self.connection)

    def execute_batch(self, batch: BatchRequest, connection: Optional[str] = None) -> BatchResponse:
        """
        Send a batch and decode the per-request results.

        Raises
        ------
        BatchError
            If the $batch call itself failed or the answer cannot be decoded.
            Failed sub-requests do not raise; see
            ``BatchResponse.raise_for_failures``.
        """
        conn = connection or batch.connection or self.connection
        cfg = self.manager.config(conn)
        encoded = batch.encode(cfg.service_path)
        response = self._dispatch(
            conn,
            "POST",
            cfg.service_root + "$batch",
            encoded.payload,
            {"Content-Type": encoded.content_type},
            f"$batch ({len(batch)} requests)",
        )
        if response.status >= 400:
            raise BatchError(
                f"Batch request failed with status {response.status}: {describe_error(response)}",
                response.status,
                {"requests": len(batch)},
            )
        return BatchResponse.decode(response.content, response.headers.get("Content-Type"), encoded, response.status)

    # ---------------- session ops ----------------

    def logout(self, connection: Optional[str] = None) -> None:
        self.manager.logout(connection or self.connection)

    def refresh_session(self, connection: Optional[str] = None) -> SessionData:
        return self.manager.refresh_session(connection or self.connection)

    def has_valid_session(self, connection: Optional[str] = None) -> bool:
        return self.manager.has_valid_session(connection or self.connection)


def _next_link(page: Any, service_path: str) -> Optional[str]:
    if not isinstance(page, dict):
        return None
    link = page.get("odata.nextLink") or page.get("@odata.nextLink")
    if not link:
        return None
    marker = service_path.rstrip("/") + "/"
    if marker in link:
        return link.split(marker, 1)[1]
    return link.lstrip("/")
