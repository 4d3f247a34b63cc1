"""Unit tests for HTTP response serialization."""

import pytest

from response import HTTPResponse, error_response


def test_response_serialization_is_status_length_and_body_only() -> None:
    response = HTTPResponse(status_code=200, body="hello")

    raw = response.to_bytes()

    assert raw == b"HTTP/1.1 200 OK\r\nContent-Length: 5\r\n\r\nhello"


def test_content_length_counts_bytes_not_characters() -> None:
    body = "héllo wörld"
    response = HTTPResponse(status_code=200, body=body)

    raw = response.to_bytes()

    head, payload = raw.split(b"\r\n\r\n", 1)
    assert f"Content-Length: {len(body.encode('utf-8'))}".encode("ascii") in head
    assert payload == body.encode("utf-8")


def test_extra_headers_precede_content_length() -> None:
    response = HTTPResponse(
        status_code=404,
        headers={"Content-Type": "text/html; charset=utf-8"},
        body=b"<h1>Not Found</h1>",
    )

    raw = response.to_bytes()

    assert raw.startswith(
        b"HTTP/1.1 404 Not Found\r\n"
        b"Content-Type: text/html; charset=utf-8\r\n"
        b"Content-Length: 18\r\n\r\n"
    )


def test_explicit_content_length_header_is_rejected() -> None:
    with pytest.raises(ValueError):
        HTTPResponse(status_code=200, headers={"content-length": "3"}, body=b"abc")


def test_error_response_uses_reason_as_body() -> None:
    raw = error_response(500).to_bytes()

    assert raw == (
        b"HTTP/1.1 500 Internal Server Error\r\n"
        b"Content-Length: 21\r\n\r\n"
        b"Internal Server Error"
    )
