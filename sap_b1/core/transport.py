"""
sap_b1.core.transport - Blocking HTTP transport
===============================================

Thin wrapper over ``requests`` that performs exactly one physical HTTP call:

- Connection pooling through ``HTTPAdapter``
- Separate connect / total timeouts
- Connect errors and timeouts mapped to ``ConnectionFailure``
- Tolerant JSON decoding and Service Layer error extraction

Retries are deliberately disabled at this level; ``RetryExecutor`` owns
the retry policy so that it can consult the circuit breaker.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple, Union
import json
import logging
import time

import requests
from requests import Session
from requests.adapters import HTTPAdapter
from requests.structures import CaseInsensitiveDict
from urllib3.util.retry import Retry

from sap_b1.core.errors import ConnectionFailure

Timeout = Union[float, Tuple[float, float]]


@dataclass
class TransportResponse:
    """
    Result of one HTTP call.

    Attributes
    ----------
    status : int
        HTTP status code
    headers : CaseInsensitiveDict
        Response headers
    content : bytes
        Raw response body
    url : str
        The URL that was called
    cookies : dict
        Cookies set by the response
    """
    status: int
    headers: CaseInsensitiveDict = field(default_factory=CaseInsensitiveDict)
    content: bytes = b""
    url: str = ""
    cookies: Dict[str, str] = field(default_factory=dict)

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def client_error(self) -> bool:
        return 400 <= self.status < 500

    @property
    def server_error(self) -> bool:
        return self.status >= 500

    def json(self) -> Optional[Any]:
        """Decoded JSON body, or None when the body is empty or not JSON."""
        if not self.content:
            return None
        try:
            return json.loads(self.text)
        except ValueError:
            return None


def extract_sap_error(payload: Any) -> Tuple[Optional[str], Optional[str]]:
    """
    Pull ``(code, message)`` out of a Service Layer error payload.

    Handles both ``{"error": {"code": .., "message": {"value": ..}}}`` and
    the flat ``"message": ".."`` variant.
    """
    if not isinstance(payload, dict):
        return None, None
    err = payload.get("error")
    if not isinstance(err, dict):
        return None, None

    code = err.get("code")
    message = None
    if isinstance(err.get("message"), dict):
        message = err["message"].get("value")
    elif isinstance(err.get("message"), str):
        message = err.get("message")
    return (str(code) if code is not None else None), message


def describe_error(response: TransportResponse) -> str:
    """One-line ``code=.. | message=..`` summary of an error response."""
    data = response.json()
    code, message = extract_sap_error(data)
    parts = []
    if code:
        parts.append(f"code={code}")
    if message:
        parts.append(f"message={message}")
    err = data.get("error") if isinstance(data, dict) else None
    inner = err.get("innererror") if isinstance(err, dict) else None
    if isinstance(inner, dict) and inner.get("transactionid"):
        parts.append(f"txid={inner['transactionid']}")
    return " | ".join(parts) or response.text


class HttpTransport:
    """
    Blocking HTTP transport used by every component that talks to the
    Service Layer.

    Parameters
    ----------
    verify : bool or str
        SSL verification (True, False, or path to CA bundle)
    user_agent : str
        User-Agent header value
    pool_connections, pool_maxsize : int
        urllib3 connection pool sizing

    Examples
    --------
    >>> with HttpTransport() as http:
    ...     r = http.request("GET", "https://sap.example.com:50000/b1s/v1/Items", timeout=(10, 30))
    """

    def __init__(
        self,
        *,
        verify: Union[bool, str] = True,
        user_agent: str = "sap-b1-sdk/0.1",
        pool_connections: int = 20,
        pool_maxsize: int = 50,
    ) -> None:
        self.verify = verify
        self.user_agent = user_agent
        self.logger = logging.getLogger("sap_b1.transport")
        self.session = self._build_session(pool_connections, pool_maxsize)

    def close(self) -> None:
        """Close the underlying HTTP session."""
        self.session.close()

    def __enter__(self) -> "HttpTransport":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _build_session(self, pool_connections: int, pool_maxsize: int) -> Session:
        sess = requests.Session()
        sess.headers.update({
            "Accept": "application/json",
            "User-Agent": self.user_agent,
        })

        retry = Retry(total=0, connect=0, read=0, redirect=0, status=0, raise_on_status=False)
        adapter = HTTPAdapter(max_retries=retry, pool_connections=pool_connections, pool_maxsize=pool_maxsize)
        sess.mount("https://", adapter)
        sess.mount("http://", adapter)
        return sess

    def request(
        self,
        method: str,
        url: str,
        headers: Optional[Mapping[str, str]] = None,
        body: Optional[Union[str, bytes]] = None,
        timeout: Timeout = 30.0,
    ) -> TransportResponse:
        """
        Perform one HTTP call.

        Returns
        -------
        TransportResponse
            Any status code, including 4xx/5xx

        Raises
        ------
        ConnectionFailure
            On connect errors and on timeout expiry
        """
        t0 = time.perf_counter()
        try:
            r = self.session.request(
                method=method.upper(),
                url=url,
                headers=dict(headers or {}),
                data=body.encode("utf-8") if isinstance(body, str) else body,
                timeout=timeout,
                verify=self.verify,
                allow_redirects=False,
            )
        except requests.exceptions.Timeout as e:
            raise ConnectionFailure(f"Request to {url} timed out: {e}", url=url, timeout=True) from e
        except requests.exceptions.ConnectionError as e:
            raise ConnectionFailure(f"Failed to connect to {url}: {e}", url=url) from e

        dt = (time.perf_counter() - t0) * 1000.0
        self.logger.debug("%s %s %s %sms", method.upper(), url, r.status_code, round(dt, 1))
        return TransportResponse(
            status=r.status_code,
            headers=CaseInsensitiveDict(r.headers),
            content=r.content or b"",
            url=url,
            cookies=requests.utils.dict_from_cookiejar(r.cookies),
        )
