"""Exceptions raised while loading DFF model files."""
from typing import Optional


class DFFError(ValueError):
    """Base class for malformed or unsupported DFF data.

    Attributes:
        offset: Absolute byte offset where the problem was detected
        chunk_type: Chunk type id being read, if known
    """

    def __init__(self, message: str, offset: Optional[int] = None,
                 chunk_type: Optional[int] = None):
        self.offset = offset
        self.chunk_type = chunk_type
        context = []
        if chunk_type is not None:
            context.append(f"chunk 0x{chunk_type:X}")
        if offset is not None:
            context.append(f"offset 0x{offset:X}")
        if context:
            message = f"{message} ({', '.join(context)})"
        super().__init__(message)


class TruncatedError(DFFError):
    """Fewer bytes available than a declared or required field needs."""


class UnexpectedChunkError(DFFError):
    """A chunk kind appears where the fixed chunk order forbids it."""


class ReferenceOutOfRangeError(DFFError):
    """A vertex, material, frame or geometry index is out of range."""


class UnsupportedVersionError(DFFError):
    """A chunk uses a format version or layout this loader cannot read."""
