"""
sap_b1.batch.response - $batch multipart decoder
================================================

Splits a ``multipart/mixed`` $batch response and maps every embedded HTTP
response back to the sub-request it answers. Results come out in
submission order even though changeset members sit one level deeper in
the wire format.

When the Service Layer rolls back a changeset it answers the whole
changeset with a single error response; that result is then attached to
every member of the changeset.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union
import json
import logging
import re

from sap_b1.batch.request import BatchItem, BatchPart, EncodedBatch
from sap_b1.core.errors import BatchError, BatchPartialFailureError
from sap_b1.core.transport import extract_sap_error

logger = logging.getLogger("sap_b1.batch")

_BOUNDARY_RE = re.compile(r'boundary="?([^";\s]+)"?', re.IGNORECASE)
_STATUS_RE = re.compile(r"HTTP/\d(?:\.\d)?\s+(\d{3})")
_BLANK_LINE_RE = re.compile(r"\r?\n\r?\n")


@dataclass(frozen=True)
class BatchResult:
    """
    Outcome of one sub-request.

    Attributes
    ----------
    index : int
        Position of the sub-request in the batch
    item : BatchItem
        The sub-request this result answers
    status : int
        Embedded HTTP status
    body : Any
        Decoded JSON body, raw text if not JSON, or None if empty
    coupled : bool
        True when the changeset failed as a unit and this is the shared
        changeset response rather than an individual one
    """
    index: int
    item: BatchItem
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: Any = None
    coupled: bool = False

    @property
    def success(self) -> bool:
        return 200 <= self.status < 300

    @property
    def changeset(self) -> Optional[int]:
        return self.item.changeset

    @property
    def error_code(self) -> Optional[str]:
        return extract_sap_error(self.body)[0]

    @property
    def error_message(self) -> Optional[str]:
        return extract_sap_error(self.body)[1]


@dataclass(frozen=True)
class _Part:
    mime_headers: Dict[str, str]
    content: str


# ---------------- multipart parsing ----------------

def boundary_from_content_type(content_type: Optional[str]) -> Optional[str]:
    if not content_type:
        return None
    m = _BOUNDARY_RE.search(content_type)
    return m.group(1) if m else None


def _parse_headers(block: str) -> Dict[str, str]:
    headers: Dict[str, str] = {}
    for line in block.splitlines():
        if ":" not in line:
            continue
        k, v = line.split(":", 1)
        headers[k.strip().lower()] = v.strip()
    return headers


def _split_head(text: str) -> Tuple[str, str]:
    """Split a header block from what follows the first blank line."""
    if text.startswith("\r\n") or text.startswith("\n"):
        return "", text.lstrip("\r\n")
    pieces = _BLANK_LINE_RE.split(text, 1)
    return pieces[0], (pieces[1] if len(pieces) > 1 else "")


def split_multipart(text: str, boundary: str) -> List[_Part]:
    """Parts between ``--boundary`` delimiters, up to the closing delimiter."""
    delimiter = f"--{boundary}"
    parts: List[_Part] = []
    for segment in text.split(delimiter)[1:]:
        if segment.startswith("--"):
            break
        # drop the remainder of the delimiter line and the CRLF before the next delimiter
        segment = segment[segment.find("\n") + 1:] if "\n" in segment else ""
        head, content = _split_head(segment.rstrip("\r\n"))
        parts.append(_Part(_parse_headers(head), content))
    return parts


def _parse_http(content: str) -> Tuple[int, Dict[str, str], Any]:
    m = _STATUS_RE.search(content)
    if m is None:
        raise BatchError("Batch part has no HTTP status line", context={"part": content[:200]})
    rest = content[m.end():]
    rest = rest[rest.find("\n") + 1:] if "\n" in rest else ""
    head, raw_body = _split_head(rest)
    headers = _parse_headers(head)
    raw_body = raw_body.strip()
    if not raw_body:
        return int(m.group(1)), headers, None
    try:
        return int(m.group(1)), headers, json.loads(raw_body)
    except ValueError:
        return int(m.group(1)), headers, raw_body


# ---------------- response ----------------

class BatchResponse:
    """
    Ordered results of a $batch call.

    Examples
    --------
    >>> response = BatchResponse.decode(raw, content_type, encoded)
    >>> [r.status for r in response]
    [200, 201, 204, 200]
    >>> response.raise_for_failures()
    """

    def __init__(self, results: List[BatchResult], status: int = 200) -> None:
        self.results = results
        self.status = status

    def __iter__(self) -> Iterator[BatchResult]:
        return iter(self.results)

    def __len__(self) -> int:
        return len(self.results)

    def __getitem__(self, index: int) -> BatchResult:
        return self.results[index]

    @classmethod
    def decode(
        cls,
        raw: Union[str, bytes],
        content_type: Optional[str],
        encoded: EncodedBatch,
        status: int = 200,
    ) -> "BatchResponse":
        """
        Decode a multipart response against the request it answers.

        The boundary is taken from the response ``Content-Type``; the
        request boundary is used when the header carries none.

        Raises
        ------
        BatchError
            If the response does not have one part per request part, or a
            changeset answer does not match its members
        """
        text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
        boundary = boundary_from_content_type(content_type) or encoded.boundary
        parts = split_multipart(text, boundary)
        if len(parts) != len(encoded.layout):
            raise BatchError(
                f"Batch response has {len(parts)} part(s), expected {len(encoded.layout)}",
                status,
                {"boundary": boundary},
            )

        results: List[BatchResult] = []
        for layout_part, part in zip(encoded.layout, parts):
            results.extend(cls._decode_part(layout_part, part, encoded.items))
        results.sort(key=lambda r: r.index)
        logger.debug("decoded %s batch result(s)", len(results))
        return cls(results, status)

    @classmethod
    def _decode_part(cls, layout_part: BatchPart, part: _Part, items: Tuple[BatchItem, ...]) -> List[BatchResult]:
        inner_boundary = None
        if part.mime_headers.get("content-type", "").lower().startswith("multipart/mixed"):
            inner_boundary = boundary_from_content_type(part.mime_headers["content-type"])

        if not layout_part.is_changeset:
            if inner_boundary is not None:
                raise BatchError("Unexpected changeset in answer to a single request")
            index = layout_part.indices[0]
            status, headers, body = _parse_http(part.content)
            return [BatchResult(index, items[index], status, headers, body)]

        if inner_boundary is None:
            return cls._coupled(layout_part, part.content, items)

        inner = split_multipart(part.content, inner_boundary)
        if len(inner) == 1 and len(layout_part.indices) > 1:
            return cls._coupled(layout_part, inner[0].content, items)
        if len(inner) != len(layout_part.indices):
            raise BatchError(
                f"Changeset answer has {len(inner)} part(s), expected {len(layout_part.indices)}"
            )

        by_content_id = {p.mime_headers.get("content-id"): p for p in inner}
        results = []
        for position, index in enumerate(layout_part.indices, start=1):
            member = by_content_id.get(str(position), inner[position - 1])
            status, headers, body = _parse_http(member.content)
            results.append(BatchResult(index, items[index], status, headers, body))
        return results

    @staticmethod
    def _coupled(layout_part: BatchPart, content: str, items: Tuple[BatchItem, ...]) -> List[BatchResult]:
        status, headers, body = _parse_http(content)
        coupled = len(layout_part.indices) > 1
        return [
            BatchResult(index, items[index], status, headers, body, coupled=coupled)
            for index in layout_part.indices
        ]

    # ---------------- inspection ----------------

    @property
    def successful(self) -> bool:
        """True when there are results and all of them succeeded."""
        return bool(self.results) and all(r.success for r in self.results)

    @property
    def has_errors(self) -> bool:
        return any(not r.success for r in self.results)

    def failed(self) -> List[BatchResult]:
        return [r for r in self.results if not r.success]

    def succeeded(self) -> List[BatchResult]:
        return [r for r in self.results if r.success]

    def changeset(self, changeset_id: int) -> List[BatchResult]:
        return [r for r in self.results if r.changeset == changeset_id]

    def bodies(self) -> List[Any]:
        return [r.body for r in self.results]

    def raise_for_failures(self) -> "BatchResponse":
        """
        Raises
        ------
        BatchPartialFailureError
            If any sub-request failed; message from the first failure
        """
        failures = self.failed()
        if not failures:
            return self
        first = failures[0]
        message = first.error_message or f"Batch sub-request {first.index} failed with status {first.status}"
        raise BatchPartialFailureError(message, failures, first.status)
