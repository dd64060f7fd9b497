"""Loader for RenderWare DFF model files.

DFF chunk layout handled here (all integers little-endian):

Clump
  Struct          atomic count [, light count, camera count]  (3.3+)
  FrameList
    Struct        frame count, then 56 byte records
                  (3x3 rotation, translation, parent index, flags)
    Extension *   one per frame, may hold a NodeName chunk
  GeometryList
    Struct        geometry count
    Geometry *
      Struct      flags, triangle/vertex/morph counts, [surface props],
                  [colors], uv sets, triangles, bounding sphere,
                  positions, [normals]
      MaterialList
        Struct    count, then one int32 per entry (-1 = new material)
        Material *
          Struct  flags, RGBA, unused, texture count, [surface props]
          Texture
            Struct  filter/addressing
            String  texture name
            String  mask name
      Extension   BinMeshPLG and other plugins
  Atomic *
    Struct        frame index, geometry index, flags, unused
  Extension       (optional)
"""
import struct
from typing import Any, Callable, List, Optional, Sequence, Tuple

from dff_errors import ReferenceOutOfRangeError, UnexpectedChunkError, UnsupportedVersionError
from dff_stream import Buffer, ChunkStream
from dff_types import (
    Atomic,
    BinMesh,
    BoundingSphere,
    ChunkHeader,
    ChunkType,
    Clump,
    Frame,
    Geometry,
    GeometryFlags,
    Material,
    MeshBin,
    TextureReference,
    Triangle,
)

# Called with (texture name, mask name), returns a texture handle or None
TextureLookup = Callable[[str, str], Optional[Any]]

_COUNTS = struct.Struct("<III")
_MORPH_TARGET = struct.Struct("<4fII")
_MATERIAL = struct.Struct("<I4BiI")
_BIN_MESH_HEADER = struct.Struct("<III")
_MESH_BIN = struct.Struct("<II")
_ATOMIC = struct.Struct("<III")


class DFFLoader:
    """Builds a Clump from the bytes of a DFF file.

    The loader keeps no state between calls apart from the texture lookup,
    so one instance can load any number of files.
    """

    MIN_VERSION = 0x30000
    MAX_VERSION = 0x3FFFF
    # Geometry structs before 3.4 carry ambient/specular/diffuse factors
    GEOMETRY_SURFACE_PROPS_BEFORE = 0x34000
    # Material structs after 3.0.4 carry ambient/specular/diffuse factors
    MATERIAL_SURFACE_PROPS_AFTER = 0x30400
    # Clump structs after 3.3 carry light and camera counts
    CLUMP_LIGHTS_AFTER = 0x33000

    FRAME_RECORD = "9f3fiI"  # 56 bytes
    FRAME_RECORD_SIZE = struct.calcsize("<" + FRAME_RECORD)
    NATIVE_GEOMETRY = 0x01000000

    def __init__(self, texture_lookup: Optional[TextureLookup] = None):
        self.texture_lookup = texture_lookup

    def set_texture_lookup_callback(self, texture_lookup: Optional[TextureLookup]):
        """Set the callable used to resolve texture names to handles."""
        self.texture_lookup = texture_lookup

    def load_from_memory(self, data: Buffer) -> Clump:
        """Parse a complete DFF file.

        Args:
            data: Contents of the file

        Returns:
            Clump with frames, geometries and atomics

        Raises:
            TruncatedError: If a chunk claims more bytes than are available
            UnexpectedChunkError: If a chunk is out of order or unknown
            ReferenceOutOfRangeError: If an index points outside its list
            UnsupportedVersionError: If a chunk version cannot be read
        """
        root = ChunkStream(data)
        root.expect(ChunkType.CLUMP)
        clump = root.child()

        header = clump.expect(ChunkType.STRUCT)
        self._check_version(header)
        info = clump.child()
        atomic_count = info.u32()
        light_count = camera_count = 0
        if header.version > self.CLUMP_LIGHTS_AFTER:
            light_count = info.u32()
            camera_count = info.u32()

        clump.expect(ChunkType.FRAME_LIST)
        frames = self.read_frame_list(clump.child())

        clump.expect(ChunkType.GEOMETRY_LIST)
        geometries = self.read_geometry_list(clump.child())

        atomics = []
        for _ in range(atomic_count):
            clump.expect(ChunkType.ATOMIC)
            atomics.append(self.read_atomic(frames, geometries, clump.child()))

        if clump.has_next():
            clump.expect(ChunkType.EXTENSION)
            clump.skip_chunk()
        if clump.has_next():
            extra = clump.read_header()
            raise UnexpectedChunkError(
                "Chunk after the end of the clump",
                offset=extra.offset,
                chunk_type=extra.type_id,
            )

        return Clump(
            frames=tuple(frames),
            geometries=tuple(geometries),
            atomics=tuple(atomics),
            light_count=light_count,
            camera_count=camera_count,
        )

    def read_frame_list(self, stream: ChunkStream) -> List[Frame]:
        """Parse the frames of a FrameList chunk, in declared order.

        Args:
            stream: Cursor over the FrameList payload

        Returns:
            List of frames; ``Frame.parent`` indexes into the same list
        """
        header = stream.expect(ChunkType.STRUCT)
        data = stream.child()
        count = data.u32()
        records = data.array(self.FRAME_RECORD, count, "frame records")

        parents: List[Optional[int]] = []
        for index, record in enumerate(records):
            parent = record[12]
            if parent == -1:
                parents.append(None)
            elif 0 <= parent < count and parent != index:
                parents.append(parent)
            else:
                raise ReferenceOutOfRangeError(
                    f"Frame {index} has parent {parent} of {count} frames",
                    offset=header.payload_offset + 4 + index * self.FRAME_RECORD_SIZE,
                    chunk_type=ChunkType.FRAME_LIST,
                )
        self._check_frame_cycles(parents, header)

        names: List[Optional[str]] = [None] * count
        position = 0
        while stream.has_next():
            stream.expect(ChunkType.EXTENSION)
            extension = stream.child()
            if position < count:
                names[position] = self._read_frame_name(extension)
            position += 1

        frames = []
        for index, record in enumerate(records):
            frames.append(Frame(
                index=index,
                rotation=(record[0:3], record[3:6], record[6:9]),
                translation=record[9:12],
                parent=parents[index],
                flags=record[13],
                name=names[index],
            ))
        return frames

    def _check_frame_cycles(self, parents: Sequence[Optional[int]], header: ChunkHeader):
        """Reject parent chains that never reach a root.

        Each frame is walked at most once: a chain stops at the first frame
        already known to reach a root.
        """
        done = [False] * len(parents)
        for index in range(len(parents)):
            chain = []
            on_chain = set()
            current: Optional[int] = index
            while current is not None and not done[current]:
                if current in on_chain:
                    raise ReferenceOutOfRangeError(
                        f"Frame {current} is part of a parent cycle",
                        offset=header.offset,
                        chunk_type=ChunkType.FRAME_LIST,
                    )
                on_chain.add(current)
                chain.append(current)
                current = parents[current]
            for frame in chain:
                done[frame] = True

    def _read_frame_name(self, stream: ChunkStream) -> Optional[str]:
        name = None
        while stream.has_next():
            header = stream.read_header()
            if header.type_id == ChunkType.NODE_NAME:
                name = stream.child().string().lower()
            else:
                stream.skip_chunk()
        return name

    def read_geometry_list(self, stream: ChunkStream) -> List[Geometry]:
        """Parse every Geometry chunk of a GeometryList."""
        stream.expect(ChunkType.STRUCT)
        count = stream.child().u32()

        geometries = []
        for _ in range(count):
            stream.expect(ChunkType.GEOMETRY)
            geometries.append(self.read_geometry(stream.child()))
        self._check_list_end(stream, "geometry list")
        return geometries

    def _check_list_end(self, stream: ChunkStream, what: str):
        if stream.has_next():
            extra = stream.read_header()
            raise UnexpectedChunkError(
                f"Chunk after the end of the {what}",
                offset=extra.offset,
                chunk_type=extra.type_id,
            )

    def read_geometry(self, stream: ChunkStream) -> Geometry:
        """Parse a Geometry chunk.

        Args:
            stream: Cursor over the Geometry payload

        Returns:
            Geometry with vertex attributes, triangles, materials and the
            optional bin mesh
        """
        header = stream.expect(ChunkType.STRUCT)
        self._check_version(header)
        data = stream.child()

        format_flags = data.u32()
        if format_flags & self.NATIVE_GEOMETRY:
            raise UnsupportedVersionError(
                "Native platform geometry is not supported",
                offset=header.offset,
                chunk_type=ChunkType.GEOMETRY,
            )
        flags = format_flags & 0xFFFF
        uv_count = (format_flags >> 16) & 0xFF
        if uv_count == 0:
            if flags & GeometryFlags.TEXTURED2:
                uv_count = 2
            elif flags & GeometryFlags.TEXTURED:
                uv_count = 1

        triangle_count, vertex_count, morph_target_count = data.unpack(_COUNTS, "geometry counts")

        surface_properties = None
        if header.version < self.GEOMETRY_SURFACE_PROPS_BEFORE:
            surface_properties = data.floats(3)

        colors = None
        if flags & GeometryFlags.PRELIT:
            colors = data.array("4B", vertex_count, "vertex colors")

        uv_sets = tuple(
            data.array("2f", vertex_count, "texture coordinates")
            for _ in range(uv_count)
        )

        # Stored as (b, a, material, c)
        triangles = tuple(
            Triangle(a, b, c, material)
            for b, a, material, c in data.array("4H", triangle_count, "triangles")
        )

        # Only the first morph target holds the base mesh
        x, y, z, radius, _has_positions, _has_normals = data.unpack(_MORPH_TARGET, "bounding sphere")
        positions = data.array("3f", vertex_count, "vertex positions")
        normals = None
        if flags & GeometryFlags.NORMALS:
            normals = data.array("3f", vertex_count, "vertex normals")

        materials: Tuple[Material, ...] = ()
        bin_mesh = None
        seen_materials = False
        while stream.has_next():
            child = stream.read_header()
            if child.type_id == ChunkType.MATERIAL_LIST and not seen_materials:
                materials = self.read_material_list(stream.child())
                seen_materials = True
            elif child.type_id == ChunkType.EXTENSION:
                bin_mesh = self.read_geometry_extension(stream.child()) or bin_mesh
            else:
                raise UnexpectedChunkError(
                    "Unexpected chunk inside geometry",
                    offset=child.offset,
                    chunk_type=child.type_id,
                )

        geometry = Geometry(
            flags=flags,
            positions=positions,
            triangles=triangles,
            materials=materials,
            normals=normals,
            colors=colors,
            uv_sets=uv_sets,
            bounding_sphere=BoundingSphere(center=(x, y, z), radius=abs(radius)),
            morph_target_count=morph_target_count,
            surface_properties=surface_properties,
            bin_mesh=bin_mesh,
        )
        self._check_geometry_references(geometry, header)
        return geometry

    def _check_geometry_references(self, geometry: Geometry, header: ChunkHeader):
        vertex_count = geometry.vertex_count
        material_count = geometry.material_count

        def out_of_range(message):
            return ReferenceOutOfRangeError(
                message, offset=header.offset, chunk_type=ChunkType.GEOMETRY
            )

        for index, triangle in enumerate(geometry.triangles):
            for vertex in triangle.vertices:
                if vertex >= vertex_count:
                    raise out_of_range(
                        f"Triangle {index} uses vertex {vertex} of {vertex_count}")
            if triangle.material >= material_count:
                raise out_of_range(
                    f"Triangle {index} uses material {triangle.material} of {material_count}")

        if geometry.bin_mesh is None:
            return
        for index, mesh_bin in enumerate(geometry.bin_mesh.bins):
            if mesh_bin.material >= material_count:
                raise out_of_range(
                    f"Mesh bin {index} uses material {mesh_bin.material} of {material_count}")
            for vertex in mesh_bin.indices:
                if vertex >= vertex_count:
                    raise out_of_range(
                        f"Mesh bin {index} uses vertex {vertex} of {vertex_count}")

    def read_material_list(self, stream: ChunkStream) -> Tuple[Material, ...]:
        """Parse a MaterialList chunk.

        Each entry of the struct is either -1, meaning the next Material
        chunk, or the index of an earlier entry to reuse.

        Returns:
            Materials in entry order
        """
        header = stream.expect(ChunkType.STRUCT)
        data = stream.child()
        count = data.u32()
        entries = data.array("i", count, "material indices")

        materials: List[Material] = []
        for position, (entry,) in enumerate(entries):
            if entry == -1:
                stream.expect(ChunkType.MATERIAL)
                materials.append(self.read_material(stream.child()))
            elif 0 <= entry < position:
                materials.append(materials[entry])
            else:
                raise ReferenceOutOfRangeError(
                    f"Material entry {position} refers to entry {entry}",
                    offset=header.offset,
                    chunk_type=ChunkType.MATERIAL_LIST,
                )
        self._check_list_end(stream, "material list")
        return tuple(materials)

    def read_material(self, stream: ChunkStream) -> Material:
        """Parse a Material chunk and resolve its textures."""
        header = stream.expect(ChunkType.STRUCT)
        self._check_version(header)
        data = stream.child()
        _flags, r, g, b, a, _unused, _texture_count = data.unpack(_MATERIAL, "material")

        ambient = specular = diffuse = 1.0
        if header.version > self.MATERIAL_SURFACE_PROPS_AFTER:
            ambient, specular, diffuse = data.floats(3)

        textures = []
        while stream.has_next():
            child = stream.read_header()
            if child.type_id == ChunkType.TEXTURE:
                textures.append(self.read_texture(stream.child()))
            else:
                # material effects, reflection and other plugins
                stream.skip_chunk()

        return Material(
            color=(r, g, b, a),
            ambient=ambient,
            specular=specular,
            diffuse=diffuse,
            textures=tuple(textures),
        )

    def read_texture(self, stream: ChunkStream) -> TextureReference:
        """Parse a Texture chunk and look the texture up.

        A lookup returning None leaves the reference unresolved; it does not
        fail the load.
        """
        stream.expect(ChunkType.STRUCT)
        settings = stream.child().u32()

        stream.expect(ChunkType.STRING)
        name = stream.child().string().lower()
        stream.expect(ChunkType.STRING)
        mask_name = stream.child().string().lower()

        handle = None
        if self.texture_lookup is not None:
            handle = self.texture_lookup(name, mask_name)

        return TextureReference(
            name=name,
            mask_name=mask_name,
            filter_mode=settings & 0xFF,
            address_u=(settings >> 8) & 0xF,
            address_v=(settings >> 12) & 0xF,
            handle=handle,
        )

    def read_geometry_extension(self, stream: ChunkStream) -> Optional[BinMesh]:
        """Parse a geometry Extension chunk.

        Only BinMeshPLG is understood; other plugins are skipped.
        """
        bin_mesh = None
        while stream.has_next():
            header = stream.read_header()
            if header.type_id == ChunkType.BIN_MESH_PLG:
                bin_mesh = self.read_bin_mesh_plg(stream.child())
            else:
                stream.skip_chunk()
        return bin_mesh

    def read_bin_mesh_plg(self, stream: ChunkStream) -> BinMesh:
        """Parse a BinMeshPLG chunk into per-material index runs.

        The declared total index count is kept as stored. Bins are sized by
        their own counts, which are bounds checked, so a total that
        disagrees with them is not an error.
        """
        mode, bin_count, total_indices = stream.unpack(_BIN_MESH_HEADER, "bin mesh header")

        bins = []
        for _ in range(bin_count):
            index_count, material = stream.unpack(_MESH_BIN, "mesh bin")
            indices = stream.array("I", index_count, "mesh bin indices")
            bins.append(MeshBin(material=material, indices=tuple(i for (i,) in indices)))

        return BinMesh(strip=bool(mode & 1), total_indices=total_indices, bins=tuple(bins))

    def read_atomic(self, frames: Sequence[Frame], geometries: Sequence[Geometry],
                    stream: ChunkStream) -> Atomic:
        """Parse an Atomic chunk and bind it to its frame and geometry.

        Args:
            frames: Frames of the clump
            geometries: Geometries of the clump
            stream: Cursor over the Atomic payload

        Raises:
            ReferenceOutOfRangeError: If the frame or geometry index is out of range
        """
        header = stream.expect(ChunkType.STRUCT)
        frame_index, geometry_index, flags = stream.child().unpack(_ATOMIC, "atomic")

        if frame_index >= len(frames):
            raise ReferenceOutOfRangeError(
                f"Atomic frame {frame_index} out of range ({len(frames)} frames)",
                offset=header.payload_offset,
                chunk_type=ChunkType.ATOMIC,
            )
        if geometry_index >= len(geometries):
            raise ReferenceOutOfRangeError(
                f"Atomic geometry {geometry_index} out of range ({len(geometries)} geometries)",
                offset=header.payload_offset + 4,
                chunk_type=ChunkType.ATOMIC,
            )

        return Atomic(
            frame_index=frame_index,
            geometry_index=geometry_index,
            flags=flags,
            frame=frames[frame_index],
            geometry=geometries[geometry_index],
        )

    def _check_version(self, header: ChunkHeader):
        version = header.version
        if not self.MIN_VERSION <= version <= self.MAX_VERSION:
            raise UnsupportedVersionError(
                f"Unsupported RenderWare version 0x{version:X}",
                offset=header.offset,
                chunk_type=header.type_id,
            )
