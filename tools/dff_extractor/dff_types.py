"""Type definitions for RenderWare DFF model files.

Every chunk starts with a 12 byte little-endian header:
- type id (uint32)
- payload size in bytes (uint32)
- library id stamp (uint32), encodes the RenderWare version

A DFF file holds a single Clump chunk:
- Struct (atomic count [, light count, camera count])
- FrameList (Struct + one Extension per frame)
- GeometryList (Struct + Geometry chunks)
- Atomic chunks, one per declared atomic
- optional Extension
"""
from dataclasses import dataclass, field
from enum import IntEnum, IntFlag
from typing import Any, List, Optional, Tuple

Vec2 = Tuple[float, float]
Vec3 = Tuple[float, float, float]
Color = Tuple[int, int, int, int]


class ChunkType(IntEnum):
    """Chunk type ids understood by the loader."""
    STRUCT = 0x0001
    STRING = 0x0002
    EXTENSION = 0x0003
    TEXTURE = 0x0006
    MATERIAL = 0x0007
    MATERIAL_LIST = 0x0008
    FRAME_LIST = 0x000E
    GEOMETRY = 0x000F
    CLUMP = 0x0010
    ATOMIC = 0x0014
    GEOMETRY_LIST = 0x001A
    BIN_MESH_PLG = 0x050E
    NODE_NAME = 0x0253F2FE


class GeometryFlags(IntFlag):
    """Format flags stored in the low 16 bits of the geometry struct."""
    TRISTRIP = 0x01
    POSITIONS = 0x02
    TEXTURED = 0x04
    PRELIT = 0x08
    NORMALS = 0x10
    LIGHT = 0x20
    MODULATE_MATERIAL_COLOR = 0x40
    TEXTURED2 = 0x80


class AtomicFlags(IntFlag):
    COLLISION_TEST = 0x01
    RENDER = 0x04


def decode_version(library_id: int) -> int:
    """Decode a library id stamp into a version like 0x36003.

    Stamps written by RenderWare 3.1 and later pack the version into the
    upper 16 bits; older files store it shifted right by 8.
    """
    if library_id & 0xFFFF0000:
        return (((library_id >> 14) & 0x3FF00) + 0x30000) | ((library_id >> 16) & 0x3F)
    return library_id << 8


@dataclass(frozen=True)
class ChunkHeader:
    """Header of a single chunk."""

    type_id: int
    size: int
    library_id: int
    offset: int = 0  # absolute offset of the header

    @property
    def version(self) -> int:
        return decode_version(self.library_id)

    @property
    def chunk_type(self) -> Optional[ChunkType]:
        if self.type_id in ChunkType._value2member_map_:
            return ChunkType(self.type_id)
        return None

    @property
    def payload_offset(self) -> int:
        return self.offset + 12


@dataclass(frozen=True)
class Frame:
    """Node of the transform hierarchy."""
    index: int
    rotation: Tuple[Vec3, Vec3, Vec3]  # right, up, at
    translation: Vec3
    parent: Optional[int]  # None for root frames
    flags: int = 0
    name: Optional[str] = None

    @property
    def is_root(self) -> bool:
        return self.parent is None

    @property
    def matrix(self) -> List[float]:
        """Local transform as a 4x4 column-major matrix (16 floats)."""
        right, up, at = self.rotation
        return [
            right[0], right[1], right[2], 0.0,
            up[0], up[1], up[2], 0.0,
            at[0], at[1], at[2], 0.0,
            self.translation[0], self.translation[1], self.translation[2], 1.0,
        ]


@dataclass(frozen=True)
class Triangle:
    a: int
    b: int
    c: int
    material: int

    @property
    def vertices(self) -> Tuple[int, int, int]:
        return (self.a, self.b, self.c)


@dataclass(frozen=True)
class TextureReference:
    """Texture named by a material, resolved through the lookup callback."""
    name: str
    mask_name: str = ""
    filter_mode: int = 0
    address_u: int = 0
    address_v: int = 0
    handle: Any = None  # opaque, None when the lookup found nothing

    @property
    def resolved(self) -> bool:
        return self.handle is not None


@dataclass(frozen=True)
class Material:
    color: Color = (255, 255, 255, 255)
    ambient: float = 1.0
    specular: float = 1.0
    diffuse: float = 1.0
    textures: Tuple[TextureReference, ...] = ()

    @property
    def is_textured(self) -> bool:
        return bool(self.textures)


@dataclass(frozen=True)
class MeshBin:
    """Indices drawn with a single material."""
    material: int
    indices: Tuple[int, ...]


@dataclass(frozen=True)
class BinMesh:
    """Per-material partition of a geometry's indices (BinMeshPLG)."""
    strip: bool
    total_indices: int
    bins: Tuple[MeshBin, ...] = ()

    @property
    def primitive_count(self) -> int:
        """Number of triangles described by all bins."""
        if self.strip:
            return sum(max(len(b.indices) - 2, 0) for b in self.bins)
        return sum(len(b.indices) // 3 for b in self.bins)


@dataclass(frozen=True)
class BoundingSphere:
    center: Vec3 = (0.0, 0.0, 0.0)
    radius: float = 0.0


@dataclass(frozen=True)
class Geometry:
    """Vertex, triangle and material data of a single mesh.

    Every vertex attribute sequence that is present has exactly
    ``vertex_count`` entries.
    """
    flags: int
    positions: Tuple[Vec3, ...]
    triangles: Tuple[Triangle, ...]
    materials: Tuple[Material, ...]
    normals: Optional[Tuple[Vec3, ...]] = None
    colors: Optional[Tuple[Color, ...]] = None
    uv_sets: Tuple[Tuple[Vec2, ...], ...] = ()
    bounding_sphere: BoundingSphere = field(default_factory=BoundingSphere)
    morph_target_count: int = 1
    surface_properties: Optional[Tuple[float, float, float]] = None
    bin_mesh: Optional[BinMesh] = None

    @property
    def vertex_count(self) -> int:
        return len(self.positions)

    @property
    def triangle_count(self) -> int:
        return len(self.triangles)

    @property
    def material_count(self) -> int:
        return len(self.materials)

    @property
    def has_normals(self) -> bool:
        return self.normals is not None

    @property
    def is_tristrip(self) -> bool:
        return bool(self.flags & GeometryFlags.TRISTRIP)


@dataclass(frozen=True)
class Atomic:
    """Binds one frame to one geometry.

    ``geometry`` is the same object held by the clump, shared between every
    atomic that instances it.
    """
    frame_index: int
    geometry_index: int
    flags: int
    frame: Frame
    geometry: Geometry

    @property
    def renders(self) -> bool:
        return bool(self.flags & AtomicFlags.RENDER)


@dataclass(frozen=True)
class Clump:
    """Complete scene graph loaded from a DFF file."""
    frames: Tuple[Frame, ...] = ()
    geometries: Tuple[Geometry, ...] = ()
    atomics: Tuple[Atomic, ...] = ()
    light_count: int = 0
    camera_count: int = 0

    @property
    def root_frames(self) -> List[Frame]:
        return [f for f in self.frames if f.is_root]

    def get_frame(self, index: int) -> Optional[Frame]:
        """Get frame by index."""
        if 0 <= index < len(self.frames):
            return self.frames[index]
        return None

    def get_children(self, frame: Frame) -> List[Frame]:
        """Get direct children of a frame."""
        return [f for f in self.frames if f.parent == frame.index]

    def find_frame(self, name: str) -> Optional[Frame]:
        """Find a frame by name (names are stored lower-case)."""
        name = name.lower()
        return next((f for f in self.frames if f.name == name), None)

    def get_hierarchy_depth(self, frame: Frame) -> int:
        """Get depth of frame in hierarchy (0 for root)."""
        depth = 0
        current = frame
        while current.parent is not None:
            depth += 1
            current = self.frames[current.parent]
        return depth

    def atomics_for_frame(self, frame: Frame) -> List[Atomic]:
        return [a for a in self.atomics if a.frame_index == frame.index]

    def world_matrix(self, index: int) -> List[float]:
        """Concatenate local matrices from the root down to ``index``."""
        frame = self.frames[index]
        matrix = frame.matrix
        while frame.parent is not None:
            frame = self.frames[frame.parent]
            matrix = multiply_matrices(frame.matrix, matrix)
        return matrix


def multiply_matrices(a: List[float], b: List[float]) -> List[float]:
    """Multiply two 4x4 column-major matrices (a * b)."""
    result = [0.0] * 16
    for col in range(4):
        for row in range(4):
            result[col * 4 + row] = sum(
                a[k * 4 + row] * b[col * 4 + k] for k in range(4)
            )
    return result
