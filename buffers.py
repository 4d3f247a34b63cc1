"""Owned scatter-gather buffers handed between the event loop and the I/O engine."""

from __future__ import annotations


class BufferStateError(BufferError):
    """Raised when a buffer is used in a state that does not allow it."""


class MultiSegmentError(BufferStateError):
    """Raised when a single-segment buffer is required but more segments exist."""


class BufferOverflowError(BufferStateError):
    """Raised when a write would run past the end of a segment."""


class BufferReleasedError(BufferStateError):
    """Raised when a buffer is touched after it has been released."""


class BufferInUseError(BufferStateError):
    """Raised when a buffer is released while a send still references it."""


class ScatterGatherArray:
    """A memory region described by one or more owned byte segments."""

    __slots__ = ("_segments", "_released", "in_flight")

    def __init__(self, segments: list[bytearray]) -> None:
        if not segments:
            raise ValueError("at least one segment is required")
        self._segments = segments
        self._released = False
        self.in_flight = False

    @classmethod
    def allocate(cls, size: int) -> "ScatterGatherArray":
        if size < 0:
            raise ValueError("size cannot be negative")
        return cls([bytearray(size)])

    @classmethod
    def from_bytes(cls, data: bytes) -> "ScatterGatherArray":
        return cls([bytearray(data)])

    @property
    def numsegs(self) -> int:
        return len(self._segments)

    @property
    def nbytes(self) -> int:
        return sum(len(segment) for segment in self._segments)

    @property
    def released(self) -> bool:
        return self._released

    def single_segment(self) -> memoryview:
        """Return a view of the only segment, enforcing the single-segment case."""
        self._check_live()
        if len(self._segments) != 1:
            raise MultiSegmentError(f"expected 1 segment, got {len(self._segments)}")
        return memoryview(self._segments[0])

    def write(self, data: bytes, offset: int = 0) -> int:
        view = self.single_segment()
        end = offset + len(data)
        if offset < 0 or end > len(view):
            raise BufferOverflowError(
                f"write of {len(data)} bytes at offset {offset} exceeds segment of {len(view)}"
            )
        view[offset:end] = data
        return len(data)

    def to_bytes(self) -> bytes:
        self._check_live()
        return b"".join(bytes(segment) for segment in self._segments)

    def release(self) -> None:
        self._check_live()
        if self.in_flight:
            raise BufferInUseError("buffer is still referenced by an outstanding send")
        self._segments = []
        self._released = True

    def _check_live(self) -> None:
        if self._released:
            raise BufferReleasedError("buffer has already been released")

    def __repr__(self) -> str:
        if self._released:
            return "ScatterGatherArray(<released>)"
        return f"ScatterGatherArray(numsegs={self.numsegs}, nbytes={self.nbytes})"
