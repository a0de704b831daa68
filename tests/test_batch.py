"""
Tests for sap_b1.batch module.
"""

import pytest
from unittest.mock import Mock

from sap_b1.batch.request import CRLF, BatchRequest
from sap_b1.batch.response import BatchResponse, boundary_from_content_type, split_multipart
from sap_b1.core.errors import BatchError, BatchPartialFailureError

from conftest import changeset_part, http_part, multipart


RESPONSE_BOUNDARY = "batchresponse_6f1c"
RESPONSE_CT = f"multipart/mixed;boundary={RESPONSE_BOUNDARY}"


def _error(code, message):
    return {"error": {"code": code, "message": {"lang": "en-us", "value": message}}}


@pytest.fixture
def mixed_batch():
    """[GET A, begin, POST B, PATCH C, end, GET D]"""
    batch = BatchRequest()
    batch.get("Items('A')")
    batch.begin_changeset()
    batch.post("Orders", {"CardCode": "C1"})
    batch.patch("BusinessPartners('C1')", {"Notes": "x"})
    batch.end_changeset()
    batch.get("Items('D')")
    return batch


class TestBatchRequest:
    """Tests for BatchRequest builder."""

    def test_items_keep_order(self, mixed_batch):
        assert [i.method for i in mixed_batch.items] == ["GET", "POST", "PATCH", "GET"]
        assert [i.changeset for i in mixed_batch.items] == [None, 1, 1, None]
        assert len(mixed_batch) == 4

    def test_write_bodies_default_to_empty_object(self):
        batch = BatchRequest().post("Orders").delete("Orders(1)")
        assert batch.items[0].body == {}
        assert batch.items[1].body is None

    def test_nested_changeset_raises(self):
        batch = BatchRequest().begin_changeset()
        with pytest.raises(BatchError, match="nested"):
            batch.begin_changeset()

    def test_end_without_begin_raises(self):
        with pytest.raises(BatchError, match="No changeset"):
            BatchRequest().end_changeset()

    def test_changeset_context_manager(self):
        batch = BatchRequest()
        with batch.changeset():
            assert batch.in_changeset
            batch.post("Orders", {})
        assert not batch.in_changeset
        batch.post("Orders", {})
        assert [i.changeset for i in batch.items] == [1, None]

    def test_changeset_closes_on_error(self):
        batch = BatchRequest()
        with pytest.raises(KeyError):
            with batch.changeset():
                raise KeyError("boom")
        assert not batch.in_changeset

    def test_get_inside_changeset_is_standalone(self):
        batch = BatchRequest()
        with batch.changeset():
            batch.post("Orders", {})
            batch.get("Orders(1)")
            batch.patch("Orders(1)", {})
        assert [i.changeset for i in batch.items] == [1, None, 1]
        assert batch.layout() == [(0,), (1,), (2,)]

    def test_clear(self, mixed_batch):
        mixed_batch.clear()
        assert len(mixed_batch) == 0
        assert mixed_batch.begin_changeset().in_changeset

    def test_execute_requires_client(self, mixed_batch):
        with pytest.raises(BatchError, match="not bound"):
            mixed_batch.execute()

    def test_execute_delegates_to_client(self):
        client = Mock()
        batch = BatchRequest(client, connection="eu")
        batch.get("Items")
        assert batch.execute() is client.execute_batch.return_value
        client.execute_batch.assert_called_once_with(batch, connection="eu")


class TestBatchEncoding:
    """Tests for the multipart encoder."""

    def test_empty_batch_raises(self):
        with pytest.raises(BatchError, match="No requests"):
            BatchRequest().encode()

    def test_layout(self, mixed_batch):
        encoded = mixed_batch.encode()
        assert [p.indices for p in encoded.layout] == [(0,), (1, 2), (3,)]
        assert [p.is_changeset for p in encoded.layout] == [False, True, False]

    def test_content_type_and_closing_delimiter(self, mixed_batch):
        encoded = mixed_batch.encode()
        assert encoded.boundary.startswith("batch_")
        assert encoded.content_type == f"multipart/mixed; boundary={encoded.boundary}"
        assert encoded.body.endswith(f"--{encoded.boundary}--{CRLF}")
        assert encoded.body.count(f"--{encoded.boundary}{CRLF}") == 3

    def test_request_lines(self, mixed_batch):
        body = mixed_batch.encode().body
        assert f"GET /b1s/v1/Items('A') HTTP/1.1{CRLF}" in body
        assert f"POST /b1s/v1/Orders HTTP/1.1{CRLF}" in body
        assert f"PATCH /b1s/v1/BusinessPartners('C1') HTTP/1.1{CRLF}" in body

    def test_changeset_members_are_numbered(self, mixed_batch):
        encoded = mixed_batch.encode()
        cs_boundary = encoded.layout[1].changeset_boundary
        assert cs_boundary.startswith("changeset_")
        assert f"Content-Type: multipart/mixed; boundary={cs_boundary}" in encoded.body
        assert f"Content-ID: 1{CRLF}" in encoded.body
        assert f"Content-ID: 2{CRLF}" in encoded.body
        assert encoded.body.count("Content-ID:") == 2
        assert f"--{cs_boundary}--{CRLF}" in encoded.body

    def test_content_length_counts_utf8_bytes(self):
        body = BatchRequest().post("BusinessPartners", {"Name": "Müller"}).encode().body
        assert f"Content-Length: 19{CRLF}" in body
        assert '{"Name": "Müller"}' in body

    def test_get_has_no_body(self):
        body = BatchRequest().get("Items").encode().body
        assert "Content-Length" not in body

    def test_custom_service_path(self):
        body = BatchRequest().get("/Items").encode(service_path="/b1s/v2/").body
        assert "GET /b1s/v2/Items HTTP/1.1" in body

    def test_get_splits_wire_changeset(self):
        batch = BatchRequest()
        with batch.changeset():
            batch.post("Orders", {})
            batch.get("Orders(1)")
            batch.patch("Orders(1)", {})
        encoded = batch.encode()
        assert [p.is_changeset for p in encoded.layout] == [True, False, True]
        assert encoded.body.count("boundary=changeset_") == 2

    def test_payload_is_bytes(self, mixed_batch):
        encoded = mixed_batch.encode()
        assert encoded.payload == encoded.body.encode("utf-8")


class TestMultipartParsing:
    """Tests for low-level multipart helpers."""

    @pytest.mark.parametrize("header,expected", [
        ("multipart/mixed;boundary=batchresponse_1", "batchresponse_1"),
        ('multipart/mixed; boundary="b_2"', "b_2"),
        ("application/json", None),
        (None, None),
    ])
    def test_boundary_from_content_type(self, header, expected):
        assert boundary_from_content_type(header) == expected

    def test_split_multipart_ignores_preamble_and_epilogue(self):
        text = "preamble" + CRLF + multipart("b", [http_part("HTTP/1.1 200 OK", {"a": 1})]) + "epilogue"
        parts = split_multipart(text, "b")
        assert len(parts) == 1
        assert parts[0].mime_headers["content-type"] == "application/http"


class TestBatchResponse:
    """Tests for BatchResponse decoding."""

    def test_decodes_in_submission_order(self, mixed_batch):
        encoded = mixed_batch.encode()
        raw = multipart(RESPONSE_BOUNDARY, [
            http_part("HTTP/1.1 200 OK", {"ItemCode": "A"}),
            changeset_part("changesetresponse_1", [
                http_part("HTTP/1.1 201 Created", {"DocEntry": 7}, content_id=1),
                http_part("HTTP/1.1 204 No Content", content_id=2),
            ]),
            http_part("HTTP/1.1 200 OK", {"ItemCode": "D"}),
        ])
        response = BatchResponse.decode(raw.encode("utf-8"), RESPONSE_CT, encoded)

        assert len(response) == 4
        assert [r.status for r in response] == [200, 201, 204, 200]
        assert [r.index for r in response] == [0, 1, 2, 3]
        assert response[0].body == {"ItemCode": "A"}
        assert response[1].body == {"DocEntry": 7}
        assert response[2].body is None
        assert response[3].body == {"ItemCode": "D"}
        assert response[1].item.method == "POST"
        assert response.successful
        assert not response.has_errors
        assert response.changeset(1) == [response[1], response[2]]

    def test_members_matched_by_content_id(self, mixed_batch):
        encoded = mixed_batch.encode()
        raw = multipart(RESPONSE_BOUNDARY, [
            http_part("HTTP/1.1 200 OK", {}),
            changeset_part("cs", [
                http_part("HTTP/1.1 204 No Content", content_id=2),
                http_part("HTTP/1.1 201 Created", {"DocEntry": 7}, content_id=1),
            ]),
            http_part("HTTP/1.1 200 OK", {}),
        ])
        response = BatchResponse.decode(raw, RESPONSE_CT, encoded)
        assert response[1].status == 201
        assert response[2].status == 204

    def test_rolled_back_changeset_is_coupled(self, mixed_batch):
        encoded = mixed_batch.encode()
        raw = multipart(RESPONSE_BOUNDARY, [
            http_part("HTTP/1.1 200 OK", {}),
            http_part("HTTP/1.1 400 Bad Request", _error(-5002, "Quantity falls into negative inventory")),
            http_part("HTTP/1.1 200 OK", {}),
        ])
        response = BatchResponse.decode(raw, RESPONSE_CT, encoded)

        assert [r.status for r in response] == [200, 400, 400, 200]
        assert response[1].coupled and response[2].coupled
        assert not response[0].coupled
        assert response[2].error_code == "-5002"
        assert len(response.failed()) == 2
        assert len(response.succeeded()) == 2

    def test_single_response_inside_changeset_is_coupled(self, mixed_batch):
        encoded = mixed_batch.encode()
        raw = multipart(RESPONSE_BOUNDARY, [
            http_part("HTTP/1.1 200 OK", {}),
            changeset_part("cs", [http_part("HTTP/1.1 400 Bad Request", _error(-10, "Invalid"))]),
            http_part("HTTP/1.1 200 OK", {}),
        ])
        response = BatchResponse.decode(raw, RESPONSE_CT, encoded)
        assert [r.status for r in response] == [200, 400, 400, 200]
        assert response[1].coupled

    def test_single_member_changeset_is_not_coupled(self):
        batch = BatchRequest()
        with batch.changeset():
            batch.post("Orders", {})
        encoded = batch.encode()
        raw = multipart(RESPONSE_BOUNDARY, [
            changeset_part("cs", [http_part("HTTP/1.1 201 Created", {"DocEntry": 1}, content_id=1)]),
        ])
        response = BatchResponse.decode(raw, RESPONSE_CT, encoded)
        assert response[0].status == 201
        assert not response[0].coupled

    def test_part_count_mismatch_raises(self, mixed_batch):
        encoded = mixed_batch.encode()
        raw = multipart(RESPONSE_BOUNDARY, [http_part("HTTP/1.1 200 OK", {})])
        with pytest.raises(BatchError, match="expected 3"):
            BatchResponse.decode(raw, RESPONSE_CT, encoded)

    def test_changeset_member_mismatch_raises(self):
        batch = BatchRequest()
        with batch.changeset():
            batch.post("A", {})
            batch.post("B", {})
            batch.post("C", {})
        encoded = batch.encode()
        raw = multipart(RESPONSE_BOUNDARY, [
            changeset_part("cs", [
                http_part("HTTP/1.1 201 Created", {}, content_id=1),
                http_part("HTTP/1.1 201 Created", {}, content_id=2),
            ]),
        ])
        with pytest.raises(BatchError, match="expected 3"):
            BatchResponse.decode(raw, RESPONSE_CT, encoded)

    def test_falls_back_to_request_boundary(self):
        batch = BatchRequest().get("Items")
        encoded = batch.encode()
        raw = multipart(encoded.boundary, [http_part("HTTP/1.1 200 OK", {"value": []})])
        response = BatchResponse.decode(raw, None, encoded)
        assert response[0].body == {"value": []}

    def test_non_json_body_kept_as_text(self):
        encoded = BatchRequest().get("Items").encode()
        part = CRLF.join([
            "Content-Type: application/http",
            "Content-Transfer-Encoding: binary",
            "",
            "HTTP/1.1 500 Internal Server Error",
            "Content-Type: text/plain",
            "",
            "upstream exploded",
        ]) + CRLF
        response = BatchResponse.decode(multipart(RESPONSE_BOUNDARY, [part]), RESPONSE_CT, encoded)
        assert response[0].status == 500
        assert response[0].body == "upstream exploded"

    def test_part_without_status_line_raises(self):
        encoded = BatchRequest().get("Items").encode()
        part = "Content-Type: application/http" + CRLF + CRLF + "garbage" + CRLF
        with pytest.raises(BatchError, match="status line"):
            BatchResponse.decode(multipart(RESPONSE_BOUNDARY, [part]), RESPONSE_CT, encoded)

    def test_raise_for_failures(self, mixed_batch):
        encoded = mixed_batch.encode()
        raw = multipart(RESPONSE_BOUNDARY, [
            http_part("HTTP/1.1 404 Not Found", _error(-2028, "No matching records found")),
            changeset_part("cs", [
                http_part("HTTP/1.1 201 Created", {}, content_id=1),
                http_part("HTTP/1.1 204 No Content", content_id=2),
            ]),
            http_part("HTTP/1.1 200 OK", {}),
        ])
        response = BatchResponse.decode(raw, RESPONSE_CT, encoded)
        with pytest.raises(BatchPartialFailureError, match="No matching records") as exc:
            response.raise_for_failures()
        assert exc.value.status == 404
        assert [f.index for f in exc.value.failures] == [0]

    def test_raise_for_failures_returns_self_when_clean(self):
        encoded = BatchRequest().get("Items").encode()
        raw = multipart(RESPONSE_BOUNDARY, [http_part("HTTP/1.1 200 OK", {})])
        response = BatchResponse.decode(raw, RESPONSE_CT, encoded)
        assert response.raise_for_failures() is response
        assert response.bodies() == [{}]
