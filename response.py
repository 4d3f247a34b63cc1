"""HTTP response model and serializer."""

from dataclasses import dataclass, field

REASON_PHRASES: dict[int, str] = {
    200: "OK",
    400: "Bad Request",
    404: "Not Found",
    500: "Internal Server Error",
    503: "Service Unavailable",
}


@dataclass(slots=True)
class HTTPResponse:
    status_code: int
    reason_phrase: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes | str = b""

    def __post_init__(self) -> None:
        if isinstance(self.body, str):
            self.body = self.body.encode("utf-8")
        if any(key.lower() == "content-length" for key in self.headers):
            raise ValueError("Content-Length is derived from the body")

    def to_bytes(self) -> bytes:
        """Serialize into a status line, headers, Content-Length and the body."""
        reason = self.reason_phrase or REASON_PHRASES.get(self.status_code, "Unknown")
        header_lines = [f"HTTP/1.1 {self.status_code} {reason}"]
        header_lines.extend(f"{key}: {value}" for key, value in self.headers.items())
        header_lines.append(f"Content-Length: {len(self.body)}")
        head = "\r\n".join(header_lines).encode("iso-8859-1") + b"\r\n\r\n"
        return head + bytes(self.body)


def error_response(status_code: int) -> HTTPResponse:
    return HTTPResponse(
        status_code=status_code,
        body=REASON_PHRASES.get(status_code, "Error"),
    )
