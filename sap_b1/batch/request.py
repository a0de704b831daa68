"""
sap_b1.batch.request - $batch builder and multipart encoder
===========================================================

Collects sub-requests in order and encodes them into one
``multipart/mixed`` body. Writes issued between ``begin_changeset`` and
``end_changeset`` are nested in a changeset part, which the Service Layer
commits or rolls back as a unit. GET requests are never part of a
changeset; a GET issued while a changeset is open ends the current wire
changeset, and the following writes start a new one.

Wire layout::

    --batch_<uuid>
    Content-Type: application/http
    Content-Transfer-Encoding: binary

    GET /b1s/v1/Items('A') HTTP/1.1
    ...
    --batch_<uuid>
    Content-Type: multipart/mixed; boundary=changeset_<uuid>

    --changeset_<uuid>
    Content-Type: application/http
    Content-Transfer-Encoding: binary
    Content-ID: 1

    POST /b1s/v1/Orders HTTP/1.1
    ...
    --changeset_<uuid>--
    --batch_<uuid>--
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Iterator, List, Optional, Tuple
import json
import uuid

from sap_b1.core.errors import BatchError

if TYPE_CHECKING:
    from sap_b1.batch.response import BatchResponse

CRLF = "\r\n"


@dataclass(frozen=True)
class BatchItem:
    """One sub-request. ``changeset`` is the logical changeset id, if any."""
    method: str
    path: str
    body: Optional[Any] = None
    changeset: Optional[int] = None
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class BatchPart:
    """
    One top-level part of the encoded body.

    ``indices`` are positions in the submitted request list: one index for
    a plain part, the members in order for a changeset part.
    """
    indices: Tuple[int, ...]
    changeset_boundary: Optional[str] = None

    @property
    def is_changeset(self) -> bool:
        return self.changeset_boundary is not None


@dataclass(frozen=True)
class EncodedBatch:
    body: str
    content_type: str
    boundary: str
    layout: Tuple[BatchPart, ...]
    items: Tuple[BatchItem, ...]

    @property
    def payload(self) -> bytes:
        return self.body.encode("utf-8")


def _serialize(body: Any) -> Optional[str]:
    if body is None:
        return None
    if isinstance(body, (bytes, bytearray)):
        return bytes(body).decode("utf-8")
    if isinstance(body, str):
        return body
    return json.dumps(body, ensure_ascii=False)


class BatchRequest:
    """
    Ordered $batch builder.

    Parameters
    ----------
    client : ServiceLayerClient, optional
        Enables ``execute()``
    connection : str
        Connection the batch is sent on

    Examples
    --------
    >>> batch = BatchRequest()
    >>> batch.get("Items('A001')")
    >>> with batch.changeset():
    ...     batch.post("Orders", {"CardCode": "C001"})
    ...     batch.patch("BusinessPartners('C001')", {"Notes": "ordered"})
    >>> len(batch)
    3
    """

    def __init__(self, client=None, connection: str = "default") -> None:
        self.client = client
        self.connection = connection
        self._items: List[BatchItem] = []
        self._changeset: Optional[int] = None
        self._changesets = 0

    def __len__(self) -> int:
        return len(self._items)

    @property
    def items(self) -> List[BatchItem]:
        return list(self._items)

    @property
    def in_changeset(self) -> bool:
        return self._changeset is not None

    # ---------------- builder ----------------

    def _add(self, method: str, path: str, body: Any = None, headers: Optional[Dict[str, str]] = None) -> "BatchRequest":
        changeset = None if method == "GET" else self._changeset
        self._items.append(BatchItem(method, path, body, changeset, dict(headers or {})))
        return self

    def get(self, path: str, headers: Optional[Dict[str, str]] = None) -> "BatchRequest":
        return self._add("GET", path, None, headers)

    def post(self, path: str, body: Any = None, headers: Optional[Dict[str, str]] = None) -> "BatchRequest":
        return self._add("POST", path, {} if body is None else body, headers)

    def put(self, path: str, body: Any = None, headers: Optional[Dict[str, str]] = None) -> "BatchRequest":
        return self._add("PUT", path, {} if body is None else body, headers)

    def patch(self, path: str, body: Any = None, headers: Optional[Dict[str, str]] = None) -> "BatchRequest":
        return self._add("PATCH", path, {} if body is None else body, headers)

    def delete(self, path: str, headers: Optional[Dict[str, str]] = None) -> "BatchRequest":
        return self._add("DELETE", path, None, headers)

    def begin_changeset(self) -> "BatchRequest":
        """
        Start grouping writes into one atomic changeset.

        Raises
        ------
        BatchError
            If a changeset is already open
        """
        if self._changeset is not None:
            raise BatchError("Changesets cannot be nested")
        self._changesets += 1
        self._changeset = self._changesets
        return self

    def end_changeset(self) -> "BatchRequest":
        if self._changeset is None:
            raise BatchError("No changeset is open")
        self._changeset = None
        return self

    @contextmanager
    def changeset(self) -> Iterator["BatchRequest"]:
        """Open a changeset for the duration of the block."""
        self.begin_changeset()
        try:
            yield self
        finally:
            self._changeset = None

    def clear(self) -> "BatchRequest":
        self._items = []
        self._changeset = None
        self._changesets = 0
        return self

    def execute(self) -> "BatchResponse":
        """Send through the bound client."""
        if self.client is None:
            raise BatchError("BatchRequest is not bound to a client")
        return self.client.execute_batch(self, connection=self.connection)

    # ---------------- encoding ----------------

    def layout(self) -> List[Tuple[int, ...]]:
        """Indices grouped into top-level parts; contiguous changeset members share one."""
        groups: List[List[int]] = []
        current: Optional[int] = None
        for i, item in enumerate(self._items):
            if item.changeset is not None and item.changeset == current:
                groups[-1].append(i)
            else:
                groups.append([i])
            current = item.changeset
        return [tuple(g) for g in groups]

    def encode(self, service_path: str = "/b1s/v1") -> EncodedBatch:
        """
        Build the multipart body.

        Parameters
        ----------
        service_path : str
            Path prefix of each sub-request line

        Raises
        ------
        BatchError
            If no requests were added
        """
        if not self._items:
            raise BatchError("No requests added to batch")

        boundary = f"batch_{uuid.uuid4()}"
        out: List[str] = []
        layout: List[BatchPart] = []

        for indices in self.layout():
            out.append(f"--{boundary}{CRLF}")
            if self._items[indices[0]].changeset is None:
                out.append(self._encode_item(self._items[indices[0]], service_path))
                layout.append(BatchPart(indices))
                continue

            cs_boundary = f"changeset_{uuid.uuid4()}"
            out.append(f"Content-Type: multipart/mixed; boundary={cs_boundary}{CRLF}{CRLF}")
            for content_id, index in enumerate(indices, start=1):
                out.append(f"--{cs_boundary}{CRLF}")
                out.append(self._encode_item(self._items[index], service_path, content_id))
            out.append(f"--{cs_boundary}--{CRLF}")
            layout.append(BatchPart(indices, cs_boundary))

        out.append(f"--{boundary}--{CRLF}")
        return EncodedBatch(
            body="".join(out),
            content_type=f"multipart/mixed; boundary={boundary}",
            boundary=boundary,
            layout=tuple(layout),
            items=tuple(self._items),
        )

    @staticmethod
    def _encode_item(item: BatchItem, service_path: str, content_id: Optional[int] = None) -> str:
        lines = ["Content-Type: application/http", "Content-Transfer-Encoding: binary"]
        if content_id is not None:
            lines.append(f"Content-ID: {content_id}")
        lines.append("")

        path = service_path.rstrip("/") + "/" + item.path.lstrip("/")
        lines.append(f"{item.method} {path} HTTP/1.1")
        payload = _serialize(item.body)
        headers = {"Content-Type": "application/json", **item.headers}
        if payload is not None:
            headers["Content-Length"] = str(len(payload.encode("utf-8")))
        lines.extend(f"{k}: {v}" for k, v in headers.items())
        lines.append("")
        lines.append(payload or "")
        return CRLF.join(lines) + CRLF
