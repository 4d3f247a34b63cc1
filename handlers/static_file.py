"""Request processor that answers every request with one static file."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

from response import HTTPResponse

RequestProcessor = Callable[[bytes], bytes]


class ProcessorError(Exception):
    """Raised when a request processor cannot build a response."""


class ResourceUnavailableError(ProcessorError):
    """Raised when the designated resource cannot be read."""


class StaticFileResponder:
    """Serve the verbatim bytes of ``path`` regardless of the request.

    The file is read again for every request so edits on disk show up
    without a restart.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def __call__(self, request: bytes) -> bytes:
        _ = request
        try:
            contents = self.path.read_bytes()
        except OSError as exc:
            raise ResourceUnavailableError(f"cannot read {self.path}: {exc}") from exc
        return HTTPResponse(status_code=200, body=contents).to_bytes()
