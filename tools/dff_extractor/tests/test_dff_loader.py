"""Tests for loading complete DFF clumps."""
import struct
import pytest
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dff_errors import (
    DFFError,
    ReferenceOutOfRangeError,
    TruncatedError,
    UnexpectedChunkError,
    UnsupportedVersionError,
)
from dff_loader import DFFLoader
from dff_types import ChunkType

from dff_builder import (
    TRIANGLE_POSITIONS,
    TRIANGLE_UVS,
    atomic_chunk,
    chunk,
    clump_chunk,
    extension_chunk,
    frame_list_chunk,
    geometry_chunk,
    geometry_list_chunk,
    geometry_struct_payload,
    minimal_clump,
)


def triangle_geometry(**kwargs):
    return geometry_chunk(TRIANGLE_POSITIONS, [(0, 1, 2, 0)], uv_sets=[TRIANGLE_UVS], **kwargs)


def test_load_minimal_clump():
    """One frame, one triangle geometry and one atomic binding them."""
    clump = DFFLoader().load_from_memory(minimal_clump())

    assert len(clump.frames) == 1
    assert clump.frames[0].is_root
    assert len(clump.geometries) == 1

    geometry = clump.geometries[0]
    assert geometry.vertex_count == 3
    assert geometry.triangle_count == 1
    assert geometry.normals is None
    assert geometry.colors is None
    assert len(geometry.uv_sets) == 1
    assert geometry.material_count == 1
    assert not geometry.materials[0].is_textured

    assert len(clump.atomics) == 1
    atomic = clump.atomics[0]
    assert atomic.frame_index == 0
    assert atomic.geometry_index == 0
    assert atomic.frame is clump.frames[0]
    assert atomic.geometry is geometry
    assert atomic.renders


def test_atomic_geometry_out_of_range():
    """An atomic pointing at geometry 1 of a one-entry list must fail."""
    with pytest.raises(ReferenceOutOfRangeError, match="geometry 1"):
        DFFLoader().load_from_memory(minimal_clump(geometry_index=1))


def test_atomic_frame_out_of_range():
    """An atomic pointing at a missing frame must fail."""
    with pytest.raises(ReferenceOutOfRangeError, match="frame 3"):
        DFFLoader().load_from_memory(minimal_clump(frame_index=3))


def test_geometry_struct_short_of_positions():
    """A geometry struct 4 bytes short of its position data must fail as truncated."""
    payload = geometry_struct_payload(TRIANGLE_POSITIONS, [(0, 1, 2, 0)], uv_sets=[TRIANGLE_UVS])
    geometry = geometry_chunk(None, None, struct_payload=payload[:-4])
    data = clump_chunk(
        frame_list_chunk([-1]),
        geometry_list_chunk([geometry]),
        [atomic_chunk(0, 0)],
    )

    with pytest.raises(TruncatedError):
        DFFLoader().load_from_memory(data)


def test_clump_declares_more_than_file():
    """A clump size larger than the buffer must fail as truncated."""
    data = bytearray(minimal_clump())
    struct.pack_into("<I", data, 4, len(data))

    with pytest.raises(TruncatedError):
        DFFLoader().load_from_memory(bytes(data))


def test_geometry_declares_more_than_list():
    """A geometry chunk claiming bytes beyond its list must fail as truncated."""
    geometry = bytearray(triangle_geometry())
    struct.pack_into("<I", geometry, 4, len(geometry))
    data = clump_chunk(
        frame_list_chunk([-1]),
        geometry_list_chunk([bytes(geometry)]),
        [atomic_chunk(0, 0)],
    )

    with pytest.raises(TruncatedError):
        DFFLoader().load_from_memory(data)


def test_truncated_file():
    """Cutting the file short must fail as truncated, never load partially."""
    data = minimal_clump()
    for cut in (8, 40, len(data) // 2, len(data) - 1):
        with pytest.raises(TruncatedError):
            DFFLoader().load_from_memory(data[:cut])


def test_load_is_deterministic():
    """Identical buffers should produce identical clumps."""
    loader = DFFLoader()
    data = minimal_clump()
    assert loader.load_from_memory(data) == loader.load_from_memory(data)


def test_accepts_bytearray_and_memoryview():
    """Any contiguous buffer should load."""
    data = minimal_clump()
    loader = DFFLoader()
    expected = loader.load_from_memory(data)
    assert loader.load_from_memory(bytearray(data)) == expected
    assert loader.load_from_memory(memoryview(data)) == expected


def test_zero_atomics_is_valid():
    """A clump without atomics should load as an empty but valid clump."""
    data = clump_chunk(frame_list_chunk([-1]), geometry_list_chunk([triangle_geometry()]))
    clump = DFFLoader().load_from_memory(data)

    assert clump.atomics == ()
    assert len(clump.geometries) == 1


def test_instanced_geometry_is_shared():
    """Atomics using the same geometry should share one geometry object."""
    data = clump_chunk(
        frame_list_chunk([-1, 0]),
        geometry_list_chunk([triangle_geometry()]),
        [atomic_chunk(0, 0), atomic_chunk(1, 0)],
    )
    clump = DFFLoader().load_from_memory(data)

    assert clump.atomics[0].geometry is clump.atomics[1].geometry
    assert clump.atomics[0].geometry is clump.geometries[0]
    assert clump.atomics_for_frame(clump.frames[1]) == [clump.atomics[1]]


def test_root_must_be_clump():
    """A file not starting with a clump chunk must fail."""
    data = frame_list_chunk([-1])
    with pytest.raises(UnexpectedChunkError, match="Expected CLUMP"):
        DFFLoader().load_from_memory(data)


def test_frame_list_must_come_first():
    """Geometry list before frame list must fail, there is no reordering."""
    frames = frame_list_chunk([-1])
    geometries = geometry_list_chunk([triangle_geometry()])
    counts = chunk(ChunkType.STRUCT, struct.pack("<III", 0, 0, 0))
    swapped = chunk(ChunkType.CLUMP, counts + geometries + frames + extension_chunk())

    with pytest.raises(UnexpectedChunkError) as info:
        DFFLoader().load_from_memory(swapped)
    assert info.value.chunk_type == ChunkType.GEOMETRY_LIST


def test_unknown_top_level_chunk():
    """An unknown chunk between the geometry list and the atomics must fail."""
    data = clump_chunk(
        frame_list_chunk([-1]),
        geometry_list_chunk([triangle_geometry()]) + chunk(0x99, b"\x00" * 4),
        [atomic_chunk(0, 0)],
    )
    with pytest.raises(UnexpectedChunkError) as info:
        DFFLoader().load_from_memory(data)
    assert info.value.chunk_type == 0x99


def test_unknown_chunk_instead_of_extension():
    """An unknown chunk after the atomics must fail."""
    data = clump_chunk(
        frame_list_chunk([-1]),
        geometry_list_chunk([triangle_geometry()]),
        [atomic_chunk(0, 0)],
        trailing=chunk(0x12, b"\x00" * 8),
    )
    with pytest.raises(UnexpectedChunkError):
        DFFLoader().load_from_memory(data)


def test_missing_atomics():
    """Fewer atomics than declared must fail as truncated."""
    data = clump_chunk(
        frame_list_chunk([-1]),
        geometry_list_chunk([triangle_geometry()]),
        [atomic_chunk(0, 0)],
        atomic_count=2,
        trailing=b"",
    )
    with pytest.raises(TruncatedError):
        DFFLoader().load_from_memory(data)


def test_extra_atomic():
    """More atomics than declared must fail."""
    data = clump_chunk(
        frame_list_chunk([-1]),
        geometry_list_chunk([triangle_geometry()]),
        [atomic_chunk(0, 0), atomic_chunk(0, 0)],
        atomic_count=1,
    )
    with pytest.raises(UnexpectedChunkError):
        DFFLoader().load_from_memory(data)


def test_trailing_extension_contents_skipped():
    """Unknown plugins inside the trailing extension should be ignored."""
    data = clump_chunk(
        frame_list_chunk([-1]),
        geometry_list_chunk([triangle_geometry()]),
        [atomic_chunk(0, 0)],
        trailing=extension_chunk(chunk(0x0253F2F3, b"\x01\x02\x03\x04" * 5)),
    )
    clump = DFFLoader().load_from_memory(data)
    assert len(clump.atomics) == 1


def test_missing_trailing_extension():
    """The trailing extension is optional."""
    data = clump_chunk(
        frame_list_chunk([-1]),
        geometry_list_chunk([triangle_geometry()]),
        [atomic_chunk(0, 0)],
        trailing=b"",
    )
    assert len(DFFLoader().load_from_memory(data).atomics) == 1


def test_bytes_after_clump_ignored():
    """Data after the outer clump chunk is not part of the model."""
    data = minimal_clump() + b"\xde\xad\xbe\xef" * 8
    assert len(DFFLoader().load_from_memory(data).frames) == 1


def test_geometry_list_count_mismatch():
    """A geometry list declaring more geometries than it holds must fail."""
    geometry_list = chunk(
        ChunkType.GEOMETRY_LIST,
        chunk(ChunkType.STRUCT, struct.pack("<I", 2)) + triangle_geometry(),
    )
    data = clump_chunk(frame_list_chunk([-1]), geometry_list)

    with pytest.raises(TruncatedError):
        DFFLoader().load_from_memory(data)


def test_geometry_list_with_foreign_chunk():
    """Only geometry chunks may follow the geometry list struct."""
    geometry_list = chunk(
        ChunkType.GEOMETRY_LIST,
        chunk(ChunkType.STRUCT, struct.pack("<I", 1)) + frame_list_chunk([-1]),
    )
    data = clump_chunk(frame_list_chunk([-1]), geometry_list)

    with pytest.raises(UnexpectedChunkError):
        DFFLoader().load_from_memory(data)


def test_geometry_list_with_extra_chunks():
    """Chunks beyond the declared geometry count must fail."""
    geometry_list = chunk(
        ChunkType.GEOMETRY_LIST,
        chunk(ChunkType.STRUCT, struct.pack("<I", 1))
        + triangle_geometry() + triangle_geometry() + frame_list_chunk([-1]),
    )
    data = clump_chunk(frame_list_chunk([-1]), geometry_list)

    with pytest.raises(UnexpectedChunkError, match="end of the geometry list") as info:
        DFFLoader().load_from_memory(data)
    assert info.value.chunk_type == ChunkType.GEOMETRY


def test_unsupported_version():
    """A library id that does not decode to RenderWare 3.x must be rejected."""
    library_id = 0x00000002
    data = clump_chunk(
        frame_list_chunk([-1], library_id=library_id),
        geometry_list_chunk([], library_id=library_id),
        library_id=library_id,
    )
    with pytest.raises(UnsupportedVersionError, match="0x200"):
        DFFLoader().load_from_memory(data)


def test_old_clump_has_no_light_counts():
    """Clumps before 3.3 only store the atomic count."""
    library_id = 0x00000310
    geometry = geometry_chunk(TRIANGLE_POSITIONS, [(0, 1, 2, 0)], library_id=library_id)
    data = clump_chunk(
        frame_list_chunk([-1], library_id=library_id),
        geometry_list_chunk([geometry], library_id=library_id),
        [atomic_chunk(0, 0, library_id=library_id)],
        library_id=library_id,
    )
    clump = DFFLoader().load_from_memory(data)

    assert clump.light_count == 0
    assert clump.camera_count == 0
    assert len(clump.atomics) == 1


def test_errors_are_value_errors():
    """All load failures share DFFError, itself a ValueError."""
    with pytest.raises(DFFError):
        DFFLoader().load_from_memory(b"")
    with pytest.raises(ValueError):
        DFFLoader().load_from_memory(b"")


def test_property_indices_in_range():
    """Every atomic, triangle and frame index of a loaded clump is in range."""
    geometries = [
        geometry_chunk(
            [(0.0, 0.0, 0.0), (1.0, 0.0, 0.0), (0.0, 1.0, 0.0), (1.0, 1.0, 0.0)],
            [(0, 1, 2, 0), (1, 3, 2, 1)],
            material_entries=[-1, 0],
        ),
        triangle_geometry(),
    ]
    data = clump_chunk(
        frame_list_chunk([-1, 0, 1, 0]),
        geometry_list_chunk(geometries),
        [atomic_chunk(1, 0), atomic_chunk(2, 1), atomic_chunk(3, 0)],
    )
    clump = DFFLoader().load_from_memory(data)

    for atomic in clump.atomics:
        assert 0 <= atomic.frame_index < len(clump.frames)
        assert 0 <= atomic.geometry_index < len(clump.geometries)
    for geometry in clump.geometries:
        for triangle in geometry.triangles:
            assert all(v < geometry.vertex_count for v in triangle.vertices)
            assert triangle.material < geometry.material_count
    for frame in clump.frames:
        assert frame.parent is None or (frame.parent < len(clump.frames) and frame.parent != frame.index)
