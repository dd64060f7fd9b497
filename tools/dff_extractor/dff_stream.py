"""Bounded cursor over RenderWare chunk data."""
import struct
from typing import Optional, Tuple, Union

from dff_errors import TruncatedError, UnexpectedChunkError
from dff_types import ChunkHeader, ChunkType

Buffer = Union[bytes, bytearray, memoryview]

_HEADER = struct.Struct("<III")
_U8 = struct.Struct("<B")
_U16 = struct.Struct("<H")
_U32 = struct.Struct("<I")
_I32 = struct.Struct("<i")
_F32 = struct.Struct("<f")
_VEC2 = struct.Struct("<2f")
_VEC3 = struct.Struct("<3f")


class ChunkStream:
    """Read-only cursor over the payload of one chunk.

    A cursor never reads outside ``[start, end)``. ``child()`` carves out a
    cursor for the payload of the chunk whose header was just read and moves
    this cursor past the whole declared payload, however much of it the
    child ends up reading.
    """

    HEADER_SIZE = _HEADER.size

    def __init__(self, data: Buffer, start: int = 0, end: Optional[int] = None,
                 chunk_type: Optional[int] = None):
        self._data = memoryview(data)
        self._end = len(self._data) if end is None else end
        self._pos = start
        self._chunk_type = chunk_type  # chunk whose payload this is
        self._current: Optional[ChunkHeader] = None

    @property
    def position(self) -> int:
        """Absolute offset of the next byte to read."""
        return self._pos

    @property
    def remaining(self) -> int:
        return self._end - self._pos

    @property
    def current(self) -> Optional[ChunkHeader]:
        """Header returned by the last ``read_header`` call."""
        return self._current

    def has_next(self) -> bool:
        """Whether another chunk header fits in the remaining bytes."""
        return self.remaining >= self.HEADER_SIZE

    def _require(self, size: int, what: str):
        if size > self.remaining:
            raise TruncatedError(
                f"Need {size} bytes for {what}, {self.remaining} left",
                offset=self._pos,
                chunk_type=self._chunk_type,
            )

    def read_header(self) -> ChunkHeader:
        """Consume the next chunk header."""
        offset = self._pos
        type_id, size, library_id = self.unpack(_HEADER, "chunk header")
        self._current = ChunkHeader(type_id, size, library_id, offset)
        return self._current

    def expect(self, chunk_type: ChunkType) -> ChunkHeader:
        """Read the next header and check that it is ``chunk_type``."""
        header = self.read_header()
        if header.type_id != chunk_type:
            raise UnexpectedChunkError(
                f"Expected {chunk_type.name} chunk, found 0x{header.type_id:X}",
                offset=header.offset,
                chunk_type=header.type_id,
            )
        return header

    def child(self) -> "ChunkStream":
        """Return a cursor over the payload of the current chunk."""
        header = self._take_current()
        stream = ChunkStream(self._data, self._pos, self._pos + header.size,
                             chunk_type=header.type_id)
        self._pos += header.size
        return stream

    def skip_chunk(self):
        """Advance past the payload of the current chunk."""
        header = self._take_current()
        self._pos += header.size

    def _take_current(self) -> ChunkHeader:
        header = self._current
        if header is None:
            raise RuntimeError("No chunk header has been read")
        if header.size > self.remaining:
            raise TruncatedError(
                f"Chunk declares {header.size} bytes, {self.remaining} left",
                offset=header.offset,
                chunk_type=header.type_id,
            )
        self._current = None
        return header

    def skip(self, count: int):
        self._require(count, "skip")
        self._pos += count

    def unpack(self, fmt: struct.Struct, what: str = "field") -> Tuple:
        self._require(fmt.size, what)
        values = fmt.unpack_from(self._data, self._pos)
        self._pos += fmt.size
        return values

    def read_bytes(self, count: int) -> bytes:
        self._require(count, "data")
        data = self._data[self._pos:self._pos + count].tobytes()
        self._pos += count
        return data

    def u8(self) -> int:
        return self.unpack(_U8, "uint8")[0]

    def u16(self) -> int:
        return self.unpack(_U16, "uint16")[0]

    def u32(self) -> int:
        return self.unpack(_U32, "uint32")[0]

    def i32(self) -> int:
        return self.unpack(_I32, "int32")[0]

    def f32(self) -> float:
        return self.unpack(_F32, "float")[0]

    def vec2(self) -> Tuple[float, float]:
        return self.unpack(_VEC2, "vec2")

    def vec3(self) -> Tuple[float, float, float]:
        return self.unpack(_VEC3, "vec3")

    def floats(self, count: int) -> Tuple[float, ...]:
        return self.unpack(struct.Struct(f"<{count}f"), f"{count} floats")

    def array(self, fmt: str, count: int, what: str = "array") -> Tuple:
        """Read ``count`` consecutive records of struct format ``fmt``.

        The whole run is bounds checked before decoding, so a declared count
        larger than the payload fails without partial reads.
        """
        record = struct.Struct("<" + fmt)
        self._require(record.size * count, what)
        values = tuple(record.iter_unpack(
            self._data[self._pos:self._pos + record.size * count]))
        self._pos += record.size * count
        return values

    def string(self, size: Optional[int] = None) -> str:
        """Read a fixed-size, NUL-padded string (default: rest of chunk)."""
        if size is None:
            size = self.remaining
        raw = self.read_bytes(size)
        end = raw.find(b"\x00")
        if end != -1:
            raw = raw[:end]
        return raw.decode("latin-1")
