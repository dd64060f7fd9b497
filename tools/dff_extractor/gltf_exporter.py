"""glTF exporter for loaded DFF clumps."""
import os
import struct
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

from pygltflib import (
    GLTF2,
    Accessor,
    Asset,
    Attributes,
    Buffer,
    BufferView,
    Image,
    Material,
    Mesh,
    Node,
    PbrMetallicRoughness,
    Primitive,
    Scene,
    Texture,
    TextureInfo,
)

from dff_types import Clump, Geometry

ARRAY_BUFFER = 34962
ELEMENT_ARRAY_BUFFER = 34963
UNSIGNED_BYTE = 5121
UNSIGNED_INT = 5125
FLOAT = 5126
MODE_TRIANGLES = 4
MODE_TRIANGLE_STRIP = 5


class GLTFExporter:
    """Exports a Clump to glTF/GLB format.

    Frames become nodes carrying their local matrix, each geometry becomes a
    mesh with one primitive per material, and each atomic becomes a node
    under its frame pointing at the geometry's mesh. Instanced geometries
    share a single mesh.
    """

    def __init__(self, clump: Clump, name: str = "clump"):
        """Initialize exporter with a loaded clump.

        Args:
            clump: Clump returned by DFFLoader.load_from_memory
            name: Used for the root scene name
        """
        self.clump = clump
        self.name = name
        self._buffer = bytearray()
        self._gltf: Optional[GLTF2] = None
        self._images: Dict[str, int] = {}

    def _add_view(self, data: bytes, target: Optional[int] = None) -> int:
        """Append data to the binary buffer and return its buffer view index."""
        if len(self._buffer) % 4:
            self._buffer += b"\x00" * (4 - len(self._buffer) % 4)
        offset = len(self._buffer)
        self._buffer += data
        self._gltf.bufferViews.append(
            BufferView(buffer=0, byteOffset=offset, byteLength=len(data), target=target)
        )
        return len(self._gltf.bufferViews) - 1

    def _add_accessor(self, data: bytes, component_type: int, count: int, kind: str,
                      target: Optional[int] = None, **kwargs) -> int:
        view = self._add_view(data, target)
        self._gltf.accessors.append(
            Accessor(bufferView=view, componentType=component_type, count=count, type=kind, **kwargs)
        )
        return len(self._gltf.accessors) - 1

    def _compute_bounds(self, vertices: Sequence[Tuple[float, float, float]]) -> Tuple[List[float], List[float]]:
        """Compute min/max bounds for vertices."""
        if not vertices:
            return [0, 0, 0], [0, 0, 0]

        min_bounds = [min(v[i] for v in vertices) for i in range(3)]
        max_bounds = [max(v[i] for v in vertices) for i in range(3)]
        return min_bounds, max_bounds

    def _material_groups(self, geometry: Geometry) -> Dict[Tuple[int, int], Tuple[int, List[int]]]:
        """Index runs keyed by (material, bin) as {key: (mode, indices)}."""
        groups: Dict[Tuple[int, int], Tuple[int, List[int]]] = {}
        if geometry.bin_mesh is not None:
            mode = MODE_TRIANGLE_STRIP if geometry.bin_mesh.strip else MODE_TRIANGLES
            for index, mesh_bin in enumerate(geometry.bin_mesh.bins):
                if mesh_bin.indices:
                    # Strips for the same material cannot be concatenated
                    groups[(mesh_bin.material, index)] = (mode, list(mesh_bin.indices))
            return groups

        for triangle in geometry.triangles:
            key = (triangle.material, 0)
            if key not in groups:
                groups[key] = (MODE_TRIANGLES, [])
            groups[key][1].extend(triangle.vertices)
        return groups

    def _image_index(self, handle, output_dir: Path) -> Optional[int]:
        """Return the glTF texture index for a texture handle that is a file path."""
        if not isinstance(handle, (str, Path)):
            return None
        uri = Path(os.path.relpath(Path(handle).resolve(), output_dir.resolve())).as_posix()
        if uri not in self._images:
            self._gltf.images.append(Image(uri=uri))
            self._gltf.textures.append(Texture(source=len(self._gltf.images) - 1))
            self._images[uri] = len(self._gltf.textures) - 1
        return self._images[uri]

    def _add_materials(self, geometry: Geometry, output_dir: Path) -> int:
        """Append glTF materials for a geometry, returning the first index."""
        first = len(self._gltf.materials)
        for material in geometry.materials:
            r, g, b, a = material.color
            pbr = PbrMetallicRoughness(
                baseColorFactor=[r / 255.0, g / 255.0, b / 255.0, a / 255.0],
                metallicFactor=0.0,
                roughnessFactor=1.0,
            )
            for texture in material.textures:
                texture_index = self._image_index(texture.handle, output_dir)
                if texture_index is not None:
                    pbr.baseColorTexture = TextureInfo(index=texture_index)
                    break

            self._gltf.materials.append(
                Material(
                    name=material.textures[0].name if material.textures else None,
                    pbrMetallicRoughness=pbr,
                    alphaMode="BLEND" if a < 255 else "OPAQUE",
                    doubleSided=True,
                )
            )
        return first

    def _add_mesh(self, geometry: Geometry, index: int, output_dir: Path) -> Optional[int]:
        """Append a glTF mesh for a geometry, or return None when it draws nothing."""
        groups = self._material_groups(geometry)
        if not geometry.positions or not groups:
            return None

        vertex_count = geometry.vertex_count
        min_bounds, max_bounds = self._compute_bounds(geometry.positions)
        attributes = Attributes(
            POSITION=self._add_accessor(
                b"".join(struct.pack("<3f", *v) for v in geometry.positions),
                FLOAT, vertex_count, "VEC3", ARRAY_BUFFER, min=min_bounds, max=max_bounds,
            )
        )
        if geometry.normals is not None:
            attributes.NORMAL = self._add_accessor(
                b"".join(struct.pack("<3f", *n) for n in geometry.normals),
                FLOAT, vertex_count, "VEC3", ARRAY_BUFFER,
            )
        if geometry.colors is not None:
            attributes.COLOR_0 = self._add_accessor(
                b"".join(struct.pack("<4B", *c) for c in geometry.colors),
                UNSIGNED_BYTE, vertex_count, "VEC4", ARRAY_BUFFER, normalized=True,
            )
        # glTF core attributes only name two texture coordinate sets
        for set_index, uvs in enumerate(geometry.uv_sets[:2]):
            setattr(attributes, f"TEXCOORD_{set_index}", self._add_accessor(
                b"".join(struct.pack("<2f", *uv) for uv in uvs),
                FLOAT, vertex_count, "VEC2", ARRAY_BUFFER,
            ))

        first_material = self._add_materials(geometry, output_dir)
        primitives = []
        for (material, _), (mode, indices) in groups.items():
            primitives.append(
                Primitive(
                    attributes=attributes,
                    indices=self._add_accessor(
                        struct.pack(f"<{len(indices)}I", *indices),
                        UNSIGNED_INT, len(indices), "SCALAR", ELEMENT_ARRAY_BUFFER,
                    ),
                    material=first_material + material,
                    mode=mode,
                )
            )

        self._gltf.meshes.append(Mesh(name=f"geometry_{index}", primitives=primitives))
        return len(self._gltf.meshes) - 1

    def build(self, output_dir: Union[str, Path] = ".") -> GLTF2:
        """Build the glTF document without writing it.

        Args:
            output_dir: Directory texture URIs are made relative to

        Raises:
            ValueError: If no geometry in the clump has drawable triangles
        """
        output_dir = Path(output_dir)
        self._buffer = bytearray()
        self._images = {}
        self._gltf = gltf = GLTF2()
        gltf.asset = Asset(version="2.0", generator="DFF Extractor")

        mesh_indices = [
            self._add_mesh(geometry, index, output_dir)
            for index, geometry in enumerate(self.clump.geometries)
        ]
        if all(m is None for m in mesh_indices):
            raise ValueError("No mesh data found in clump")

        # Frame nodes first, so node index == frame index
        for frame in self.clump.frames:
            gltf.nodes.append(
                Node(name=frame.name or f"frame_{frame.index}", matrix=frame.matrix, children=[])
            )
        for frame in self.clump.frames:
            if frame.parent is not None:
                gltf.nodes[frame.parent].children.append(frame.index)

        for index, atomic in enumerate(self.clump.atomics):
            mesh = mesh_indices[atomic.geometry_index]
            if mesh is None:
                continue
            gltf.nodes.append(Node(name=f"atomic_{index}", mesh=mesh, children=[]))
            gltf.nodes[atomic.frame_index].children.append(len(gltf.nodes) - 1)

        gltf.scenes = [Scene(name=self.name, nodes=[f.index for f in self.clump.root_frames])]
        gltf.scene = 0

        gltf.buffers = [Buffer(byteLength=len(self._buffer))]
        gltf.set_binary_blob(bytes(self._buffer))
        return gltf

    def export(self, output_path: Union[str, Path]):
        """Export the clump to a glTF/GLB file.

        Args:
            output_path: Path for output .glb file

        Raises:
            ValueError: If no mesh data found in the clump
        """
        output_path = Path(output_path)
        gltf = self.build(output_path.parent)
        gltf.save(str(output_path))
